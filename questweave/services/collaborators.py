"""Interfaces of the components the engines call but do not own.

The engines receive implementations through their constructors. The
``Sql*`` services in this package implement them on top of the row store;
tests pass in-memory fakes.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from questweave.database.models import Milestone
from questweave.model import EntityCompletionDetail, NarrativeState


@runtime_checkable
class CompletionStore(Protocol):
    async def list_completed(self, session_id: str, entity_ids: List[str]) -> List[str]:
        ...

    async def get_completion_details(
        self, session_id: str, entity_ids: List[str]
    ) -> Dict[str, EntityCompletionDetail]:
        ...


@runtime_checkable
class NarrativeStateProvider(Protocol):
    async def get_narrative_state(self, session_id: str) -> NarrativeState:
        ...


@runtime_checkable
class EntityGenerator(Protocol):
    async def generate_entity(
        self,
        session_id: str,
        location_id: str,
        name: str,
        kind: str,
        actions: List[Dict[str, Any]],
        *,
        description: Optional[str] = None,
    ) -> str:
        ...


@runtime_checkable
class NarrativeGenerator(Protocol):
    async def process_story_progression(
        self, milestone: Milestone, session_id: str, character_id: Optional[str], narrative_text: str
    ) -> None:
        ...


@runtime_checkable
class FeedbackGenerator(Protocol):
    async def process_narrative_feedback(
        self, milestone: Milestone, session_id: str, character_id: Optional[str], narrative_text: str
    ) -> None:
        ...
