"""Milestone progress engine.

Turns entity completion facts into milestone progress, moves milestones
through ``pending -> in_progress -> completed`` and hands progress and
completion signals to the unlock engine.
"""
import logging
from typing import List, Optional, Tuple

from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questweave.database.models import Milestone, MilestoneCompletion
from questweave.model import (
    CompletionSnapshot,
    MilestoneProgressReport,
    NarrativeState,
    RelationshipSpec,
    RuleProgress,
)
from questweave.scoring import (
    FLOAT_TOLERANCE,
    aggregate_progress,
    build_rule_progresses,
    meets_completion_policy,
    rule_progress,
)
from questweave.services.collaborators import (
    CompletionStore,
    FeedbackGenerator,
    NarrativeGenerator,
    NarrativeStateProvider,
)
from questweave.services.milestone_service import MilestoneService, relationship_spec_of
from questweave.services.notification_service import GMNotificationService
from questweave.services.unlock_service import EntityUnlockService
from questweave.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class MilestoneProgressService:
    def __init__(
        self,
        session: AsyncSession,
        completion_store: CompletionStore,
        unlock_service: EntityUnlockService | None = None,
        *,
        narrative_generator: NarrativeGenerator | None = None,
        feedback_generator: FeedbackGenerator | None = None,
        notifier: GMNotificationService | None = None,
        narrative_states: NarrativeStateProvider | None = None,
    ):
        self.session = session
        self.completion_store = completion_store
        self.unlock_service = unlock_service
        self.narrative_generator = narrative_generator
        self.feedback_generator = feedback_generator
        self.notifier = notifier
        if narrative_states is None and isinstance(completion_store, NarrativeStateProvider):
            narrative_states = completion_store
        self.narrative_states = narrative_states
        self.milestones = MilestoneService(session)

    # ----- Calculation -----

    async def _narrative_state(self, session_id: str) -> NarrativeState:
        if not self.narrative_states:
            return NarrativeState(session_id=session_id)
        try:
            return await self.narrative_states.get_narrative_state(session_id)
        except Exception:
            logger.exception(f"Failed to load narrative state for session {session_id}")
            return NarrativeState(session_id=session_id)

    async def _snapshot(self, session_id: str, entity_ids: List[str]) -> CompletionSnapshot:
        completed = await self.completion_store.list_completed(session_id, entity_ids)
        details = await self.completion_store.get_completion_details(session_id, entity_ids) if completed else {}
        return CompletionSnapshot(completed=list(completed), details=details)

    async def calculate_progress(
        self, milestone: Milestone, spec: RelationshipSpec | None = None
    ) -> Tuple[float, List[RuleProgress]]:
        """Aggregated progress and per-rule progress of a milestone.

        Completion store failures propagate; callers decide how to degrade.
        """
        spec = spec or relationship_spec_of(milestone)
        if spec is None or not spec.rules:
            return 0.0, []
        snapshot = await self._snapshot(milestone.session_id, spec.entity_ids())
        state = await self._narrative_state(milestone.session_id)
        progresses = [rule_progress(rule, snapshot, state) for rule in spec.rules]
        return aggregate_progress(spec.rules, progresses), build_rule_progresses(spec.rules, progresses)

    async def milestone_progress(self, milestone: Milestone) -> float:
        progress, _ = await self.calculate_progress(milestone)
        return progress

    def is_completed(self, milestone: Milestone, progress: float) -> bool:
        spec = relationship_spec_of(milestone)
        if spec is None:
            # legacy milestones carry externally supplied progress
            return (milestone.progress or 0.0) >= 1.0 - FLOAT_TOLERANCE
        return meets_completion_policy(spec, progress)

    async def get_milestone_progress(self, session_id: str, milestone_id: str) -> Optional[MilestoneProgressReport]:
        milestone = await self.milestones.get_milestone(milestone_id)
        if not milestone or milestone.session_id != session_id:
            return None
        try:
            overall, rule_progresses = await self.calculate_progress(milestone)
        except Exception:
            logger.exception(f"Failed to calculate progress for milestone {milestone_id}")
            return None
        if relationship_spec_of(milestone) is None:
            overall = milestone.progress or 0.0
        return MilestoneProgressReport(
            milestone_id=milestone_id,
            overall_progress=overall,
            rule_progresses=rule_progresses,
            is_completed=milestone.status == "completed" or self.is_completed(milestone, overall),
        )

    # ----- Event handling -----

    async def on_entity_completed(self, session_id: str, entity_id: str, character_id: str | None) -> list[Milestone]:
        """Recompute every milestone that references ``entity_id``.

        Returns the milestones whose progress changed.
        """
        related = await self.milestones.find_milestones_by_entity(session_id, entity_id)
        if not related:
            logger.debug(f"No milestones related to entity {entity_id}, skipping progress check")
            return []

        logger.info(f"Found {len(related)} milestones related to entity {entity_id}")
        changed = []
        for milestone_id in [m.id for m in related]:
            try:
                milestone = await self.session.get(Milestone, milestone_id)
                if milestone is None or milestone.status == "completed":
                    continue
                progress, rule_progresses = await self.calculate_progress(milestone)
            except Exception:
                logger.exception(f"Failed to calculate progress for milestone {milestone_id}")
                continue

            if abs(progress - (milestone.progress or 0.0)) <= FLOAT_TOLERANCE:
                continue

            try:
                await self._store_progress(milestone, progress)
                changed.append(milestone)
                logger.info(f"Milestone {milestone_id} progress {progress:.3f} after entity {entity_id} completion")

                if self.is_completed(milestone, progress):
                    await self.complete_milestone(milestone, progress, rule_progresses, character_id)

                if self.unlock_service:
                    await self.unlock_service.on_milestone_progress(session_id, milestone_id, progress, character_id)
            except Exception:
                logger.exception(f"Failed to process progress for milestone {milestone_id}")
                await self.session.rollback()

        # a rollback above expires milestones that were already handled
        for milestone in changed:
            if inspect(milestone).expired_attributes:
                await self.session.refresh(milestone)
        return changed

    async def set_legacy_progress(self, milestone_id: str, progress: float, character_id: str | None = None) -> Milestone:
        """Record externally computed progress for a milestone without relationship rules."""
        milestone = await self.milestones.require_milestone(milestone_id)
        if milestone.status == "completed":
            return milestone
        progress = max(0.0, min(1.0, progress))
        session_id = milestone.session_id
        await self._store_progress(milestone, progress)
        if self.is_completed(milestone, progress):
            await self.complete_milestone(milestone, progress, [], character_id)
        if self.unlock_service:
            await self.unlock_service.on_milestone_progress(session_id, milestone_id, progress, character_id)
        if inspect(milestone).expired_attributes:
            await self.session.refresh(milestone)
        return milestone

    async def _store_progress(self, milestone: Milestone, progress: float) -> None:
        milestone.progress = progress
        milestone.progress_percentage = round(progress * 100, 2)
        if milestone.status == "pending" and progress > 0:
            milestone.status = "in_progress"
        await self.session.commit()

    async def complete_milestone(
        self,
        milestone: Milestone,
        progress: float,
        rule_progresses: List[RuleProgress],
        character_id: str | None = None,
    ) -> bool:
        """Mark a milestone completed once. Returns False when it already was."""
        if milestone.status == "completed":
            return False

        milestone_id = milestone.id
        now = utcnow()
        milestone.status = "completed"
        milestone.completed_at = now
        completion = MilestoneCompletion(
            milestone_id=milestone_id,
            session_id=milestone.session_id,
            completed_by=character_id,
            completed_at=now,
            overall_progress=progress,
            rule_progress=[
                {"rule_index": r.rule_index, "rule_type": r.rule_type, "progress": r.progress}
                for r in rule_progresses
            ],
        )
        self.session.add(completion)
        notification = self.notifier.queue_milestone_notification(milestone, completion) if self.notifier else None
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.warning(f"Milestone {milestone_id} already has a completion record")
            return False

        logger.info(f"🎉 Milestone completed: {milestone.title} ({milestone_id})")

        if notification is not None:
            try:
                await self.notifier.deliver(notification)
            except Exception:
                logger.exception(f"Failed to deliver completion notification for milestone {milestone_id}")

        spec = relationship_spec_of(milestone)
        narrative_text = (spec.completion_narrative if spec else None) or f"Milestone «{milestone.title}» completed."

        if self.narrative_generator:
            try:
                await self.narrative_generator.process_story_progression(
                    milestone, milestone.session_id, character_id, narrative_text
                )
            except Exception:
                logger.exception("Story progression processing failed")

        if self.feedback_generator:
            try:
                await self.feedback_generator.process_narrative_feedback(
                    milestone, milestone.session_id, character_id, narrative_text
                )
            except Exception:
                logger.exception("Narrative feedback processing failed")

        if self.unlock_service:
            await self.unlock_service.on_milestone_completion(milestone.session_id, milestone, character_id)
        return True
