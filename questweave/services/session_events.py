import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from aiogram import Bot
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from questweave.services.collaborators import (
    CompletionStore,
    EntityGenerator,
    FeedbackGenerator,
    NarrativeGenerator,
)
from questweave.services.completion_store import SqlCompletionStore
from questweave.services.entity_service import SqlEntityGenerator
from questweave.services.notification_service import GMNotificationService
from questweave.services.progress_service import MilestoneProgressService
from questweave.services.unlock_service import EntityUnlockService
from questweave.utils.config import BOT_TOKEN
from questweave.utils.notify_admins import build_bot

logger = logging.getLogger(__name__)


class SessionLockRegistry:
    """One asyncio lock per game session.

    Events of one session run one at a time in arrival order; distinct
    sessions never wait on each other.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str):
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._holders[session_id] = self._holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[session_id] -= 1
            if self._holders[session_id] == 0:
                del self._holders[session_id]
                del self._locks[session_id]

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return bool(lock and lock.locked())


@dataclass
class EntityEventResult:
    session_id: str
    entity_id: str
    changed_milestones: List[str] = field(default_factory=list)
    completed_milestones: List[str] = field(default_factory=list)
    interaction_unlocks: List[str] = field(default_factory=list)


class SessionEventProcessor:
    """Entry point for "entity X was resolved by character C in session S" events."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        locks: SessionLockRegistry | None = None,
        completion_store_factory: Callable[[AsyncSession], CompletionStore] = SqlCompletionStore,
        entity_generator_factory: Callable[[AsyncSession], EntityGenerator] = SqlEntityGenerator,
        narrative_generator: NarrativeGenerator | None = None,
        feedback_generator: FeedbackGenerator | None = None,
        bot: Bot | None = None,
        admin_ids: list[int] | None = None,
        bot_token: str | None = BOT_TOKEN,
    ):
        self.session_factory = session_factory
        self.locks = locks or SessionLockRegistry()
        self.completion_store_factory = completion_store_factory
        self.entity_generator_factory = entity_generator_factory
        self.narrative_generator = narrative_generator
        self.feedback_generator = feedback_generator
        self._owns_bot = bot is None and bool(bot_token)
        self.bot = bot or build_bot(bot_token)
        self.admin_ids = admin_ids

    def build_services(self, session: AsyncSession) -> tuple[MilestoneProgressService, EntityUnlockService]:
        completion_store = self.completion_store_factory(session)
        notifier = GMNotificationService(session, self.bot, self.admin_ids)
        unlock_service = EntityUnlockService(
            session,
            completion_store,
            self.entity_generator_factory(session),
            notifier,
        )
        progress_service = MilestoneProgressService(
            session,
            completion_store,
            unlock_service,
            narrative_generator=self.narrative_generator,
            feedback_generator=self.feedback_generator,
            notifier=notifier,
        )
        return progress_service, unlock_service

    async def close(self) -> None:
        if self._owns_bot and self.bot:
            await self.bot.session.close()
            self.bot = None

    async def handle_entity_event(
        self,
        session_id: str,
        entity_id: str,
        character_id: str,
        success: bool = True,
        *,
        record: bool = True,
        dice_result: int | None = None,
        approach: str | None = None,
        outcome: str | None = None,
    ) -> EntityEventResult:
        result = EntityEventResult(session_id=session_id, entity_id=entity_id)
        async with self.locks.hold(session_id):
            async with self.session_factory() as session:
                progress_service, unlock_service = self.build_services(session)
                store = progress_service.completion_store
                if record and hasattr(store, "record_interaction"):
                    await store.record_interaction(
                        session_id,
                        entity_id,
                        character_id,
                        success=success,
                        dice_result=dice_result,
                        approach=approach,
                        outcome=outcome,
                    )

                events = await unlock_service.on_entity_interaction(session_id, entity_id, character_id, success)
                result.interaction_unlocks = [e.id for e in events]

                if success:
                    changed = await progress_service.on_entity_completed(session_id, entity_id, character_id)
                    result.changed_milestones = [m.id for m in changed]
                    result.completed_milestones = [m.id for m in changed if m.status == "completed"]

        logger.info(
            f"Processed entity {entity_id} in session {session_id}: "
            f"{len(result.changed_milestones)} milestone(s) changed, "
            f"{len(result.interaction_unlocks)} unlock(s) from interaction"
        )
        return result
