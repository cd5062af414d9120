from .collaborators import (
    CompletionStore,
    EntityGenerator,
    FeedbackGenerator,
    NarrativeGenerator,
    NarrativeStateProvider,
)
from .completion_store import SqlCompletionStore
from .entity_service import SqlEntityGenerator
from .milestone_service import MilestoneService
from .notification_service import GMNotificationService
from .progress_service import MilestoneProgressService
from .session_events import SessionEventProcessor, SessionLockRegistry, EntityEventResult
from .unlock_service import EntityUnlockService

__all__ = [
    "CompletionStore",
    "EntityGenerator",
    "FeedbackGenerator",
    "NarrativeGenerator",
    "NarrativeStateProvider",
    "SqlCompletionStore",
    "SqlEntityGenerator",
    "MilestoneService",
    "GMNotificationService",
    "MilestoneProgressService",
    "SessionEventProcessor",
    "SessionLockRegistry",
    "EntityEventResult",
    "EntityUnlockService",
]
