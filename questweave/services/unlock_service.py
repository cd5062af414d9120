"""Unlock condition engine.

Decides from milestone progress, milestone completion and entity
interaction signals whether new entities should appear in the world, and
keeps the append-only unlock history.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, List

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from questweave.database.models import Milestone, MilestoneCompletion
from questweave.database.unlock_models import UnlockCondition, UnlockEvent
from questweave.exceptions import InvalidRuleDefinition
from questweave.model import (
    CONDITION_RULE_TYPES,
    TRIGGER_TYPES,
    UnlockConditionRule,
    UnlockContext,
    UnlockTarget,
)
from questweave.services.collaborators import CompletionStore, EntityGenerator
from questweave.services.notification_service import GMNotificationService
from questweave.utils.config import UNLOCK_SCORE_THRESHOLD
from questweave.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_THRESHOLD = 0.5
EQ_TOLERANCE = 0.01
MILESTONE_RULE_TYPES = ("milestone_progress_threshold", "milestone_completed")


def _as_dict(item: Any) -> dict:
    return item.to_dict() if hasattr(item, "to_dict") else dict(item)


class EntityUnlockService:
    def __init__(
        self,
        session: AsyncSession,
        completion_store: CompletionStore,
        entity_generator: EntityGenerator,
        notifier: GMNotificationService | None = None,
        *,
        score_threshold: float = UNLOCK_SCORE_THRESHOLD,
    ):
        self.session = session
        self.completion_store = completion_store
        self.entity_generator = entity_generator
        self.notifier = notifier
        self.score_threshold = score_threshold

    # ----- Condition management -----

    async def register_condition(
        self,
        session_id: str,
        name: str,
        trigger_type: str,
        rules: Iterable[UnlockConditionRule | dict],
        targets: Iterable[UnlockTarget | dict],
        *,
        description: str | None = None,
        priority: int = 0,
        is_active: bool = True,
        is_repeatable: bool = False,
    ) -> UnlockCondition:
        rules = [_as_dict(r) for r in rules]
        targets = [_as_dict(t) for t in targets]
        if trigger_type not in TRIGGER_TYPES:
            raise InvalidRuleDefinition(f"Unknown trigger type {trigger_type!r}")
        if not rules:
            raise InvalidRuleDefinition(f"Unlock condition {name!r} has no rules")
        if not targets:
            raise InvalidRuleDefinition(f"Unlock condition {name!r} has no targets")
        for rule in rules:
            if rule.get("type") not in CONDITION_RULE_TYPES:
                logger.warning(f"Unlock condition {name!r} has a rule of unknown type {rule.get('type')!r}; it will never match")

        condition = UnlockCondition(
            session_id=session_id,
            name=name,
            description=description,
            trigger_type=trigger_type,
            rules=rules,
            targets=targets,
            priority=priority,
            is_active=is_active,
            is_repeatable=is_repeatable,
        )
        self.session.add(condition)
        await self.session.commit()
        await self.session.refresh(condition)
        logger.info(f"Registered unlock condition: {name} ({condition.id})")
        return condition

    async def get_condition(self, condition_id: str) -> UnlockCondition | None:
        return await self.session.get(UnlockCondition, condition_id)

    async def list_active_conditions(self, session_id: str, trigger_type: str | None = None) -> list[UnlockCondition]:
        """Active conditions of a session, highest priority first.

        With ``trigger_type`` only conditions of that type or ``combined`` are returned.
        """
        stmt = select(UnlockCondition).where(
            UnlockCondition.session_id == session_id,
            UnlockCondition.is_active == True,
        )
        if trigger_type:
            stmt = stmt.where(UnlockCondition.trigger_type.in_((trigger_type, "combined")))
        stmt = stmt.order_by(UnlockCondition.priority.desc(), UnlockCondition.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def deactivate_condition(self, condition_id: str) -> bool:
        condition = await self.session.get(UnlockCondition, condition_id)
        if not condition:
            return False
        condition.is_active = False
        await self.session.commit()
        return True

    # ----- Entry points -----

    async def on_milestone_progress(
        self, session_id: str, milestone_id: str, progress: float, character_id: str | None = None
    ) -> list[UnlockEvent]:
        context = UnlockContext(milestone_id=milestone_id, progress=progress, character_id=character_id)
        return await self._check_conditions(session_id, "milestone_progress", context)

    async def on_milestone_completion(
        self, session_id: str, milestone: Milestone, character_id: str | None = None
    ) -> list[UnlockEvent]:
        context = UnlockContext(
            milestone_id=milestone.id,
            progress=milestone.progress,
            completed=True,
            character_id=character_id,
        )
        return await self._check_conditions(session_id, "milestone_completion", context)

    async def on_entity_interaction(
        self, session_id: str, entity_id: str, character_id: str, success: bool
    ) -> list[UnlockEvent]:
        context = UnlockContext(entity_id=entity_id, character_id=character_id, success=success)
        return await self._check_conditions(session_id, "entity_interaction", context)

    async def _check_conditions(self, session_id: str, trigger_type: str, context: UnlockContext) -> list[UnlockEvent]:
        events: list[UnlockEvent] = []
        try:
            conditions = await self.list_active_conditions(session_id, trigger_type)
        except Exception:
            logger.exception(f"Failed to load unlock conditions for session {session_id}")
            return events

        for condition_id in [c.id for c in conditions]:
            try:
                condition = await self.session.get(UnlockCondition, condition_id)
                if condition and await self.evaluate(condition, context):
                    event = await self.execute(condition, context.character_id)
                    if event:
                        events.append(event)
            except Exception:
                logger.exception(f"Unlock check failed for condition {condition_id}")

        # a failed execution rolls back and expires what was loaded before it
        for event in events:
            if inspect(event).expired_attributes:
                await self.session.refresh(event)
        return events

        for condition in conditions:
            try:
                if await self.evaluate(condition, context):
                    event = await self.execute(condition, context.character_id)
                    if event:
                        events.append(event)
            except Exception:
                logger.exception(f"Unlock check failed for condition {condition.id}")
        return events

    # ----- Evaluation -----

    async def evaluate(self, condition: UnlockCondition, context: UnlockContext) -> bool:
        """All required rules must hold and the weighted score must reach the threshold."""
        rules = [UnlockConditionRule.from_dict(r) for r in condition.rules or []]

        if not await self._references_exist(condition, rules):
            return False

        required_met = True
        total_score = 0.0
        total_weight = 0.0
        for rule in rules:
            result = await self._evaluate_rule(rule, context, condition.session_id)
            if not rule.is_optional and not result:
                required_met = False
            if result or not rule.is_optional:
                total_weight += rule.weight
                total_score += rule.weight if result else 0.0

        score = total_score / total_weight if total_weight > 0 else 0.0
        should_unlock = required_met and score >= self.score_threshold
        logger.debug(
            f"Unlock condition evaluation: {condition.name}, required={required_met}, "
            f"score={score:.3f}, unlock={should_unlock}"
        )
        return should_unlock

    async def _references_exist(self, condition: UnlockCondition, rules: List[UnlockConditionRule]) -> bool:
        for rule in rules:
            if rule.type in MILESTONE_RULE_TYPES:
                if not await self.session.get(Milestone, rule.target_id):
                    logger.warning(
                        f"Unlock condition {condition.id} references unknown milestone "
                        f"{rule.target_id}, skipping"
                    )
                    return False
        return True

    async def _evaluate_rule(self, rule: UnlockConditionRule, context: UnlockContext, session_id: str) -> bool:
        try:
            if rule.type == "milestone_progress_threshold":
                return self._progress_rule(rule, context)
            elif rule.type == "milestone_completed":
                return await self._milestone_completed_rule(rule, context, session_id)
            elif rule.type == "entity_completed":
                return await self._entity_completed_rule(rule, context, session_id)
            elif rule.type == "character_action":
                return self._character_action_rule(rule, context)
            logger.warning(f"Unknown condition rule type: {rule.type}")
            return False
        except Exception:
            logger.exception(f"Failed to evaluate {rule.type} rule for {rule.target_id}")
            return False

    @staticmethod
    def _progress_rule(rule: UnlockConditionRule, context: UnlockContext) -> bool:
        if context.milestone_id != rule.target_id:
            return False
        current = context.progress or 0.0
        threshold = rule.threshold if rule.threshold is not None else DEFAULT_PROGRESS_THRESHOLD
        if rule.operator == "gte":
            return current >= threshold
        if rule.operator == "lte":
            return current <= threshold
        if rule.operator == "eq":
            return abs(current - threshold) < EQ_TOLERANCE
        return False

    async def _milestone_completed_rule(self, rule: UnlockConditionRule, context: UnlockContext, session_id: str) -> bool:
        if context.milestone_id == rule.target_id and context.completed:
            return True
        stmt = select(MilestoneCompletion.id).where(
            MilestoneCompletion.milestone_id == rule.target_id,
            MilestoneCompletion.session_id == session_id,
        )
        return (await self.session.execute(stmt)).first() is not None

    async def _entity_completed_rule(self, rule: UnlockConditionRule, context: UnlockContext, session_id: str) -> bool:
        if context.entity_id == rule.target_id and context.success:
            return True
        completed = await self.completion_store.list_completed(session_id, [rule.target_id])
        return rule.target_id in completed

    @staticmethod
    def _character_action_rule(rule: UnlockConditionRule, context: UnlockContext) -> bool:
        if context.character_id is None or context.character_id != rule.target_id:
            return False
        value = rule.value
        if rule.operator == "contains":
            if not context.entity_id:
                return False
            if isinstance(value, (list, tuple, set)):
                return context.entity_id in value
            return isinstance(value, str) and value in context.entity_id
        action_type = value.get("type") if isinstance(value, dict) else value
        if action_type == "interaction_success":
            return context.success
        if action_type == "any_interaction":
            return True
        return False

    # ----- Execution -----

    async def execute(self, condition: UnlockCondition, trigger_character_id: str | None = None) -> UnlockEvent | None:
        """Materialize every target and record one event for all of them."""
        condition_id = condition.id
        condition_name = condition.name
        session_id = condition.session_id
        unlocked_ids: list[str] = []
        narratives: list[str] = []
        for raw_target in condition.targets or []:
            target = UnlockTarget.from_dict(raw_target)
            try:
                entity_id = await self.entity_generator.generate_entity(
                    session_id,
                    target.location_id,
                    target.entity_name,
                    target.entity_kind,
                    target.available_actions,
                    description=target.entity_description or None,
                )
            except Exception:
                logger.exception(f"Failed to generate entity {target.entity_name} for condition {condition_id}")
                continue
            unlocked_ids.append(entity_id)
            narratives.append(target.narrative_context or target.unlock_message)
            logger.info(f"Unlocked entity: {target.entity_name} ({entity_id}) in {target.location_id}")

        if not unlocked_ids:
            logger.warning(f"Unlock condition {condition_name} fired but no entity could be generated")
            return None

        now = utcnow()
        event = UnlockEvent(
            condition_id=condition_id,
            session_id=session_id,
            triggered_at=now,
            trigger_character_id=trigger_character_id,
            unlocked_entities=unlocked_ids,
            narrative_description="\n".join(n for n in narratives if n),
            notification_sent=False,
        )
        notification = None
        try:
            self.session.add(event)
            await self.session.flush()
            condition.last_triggered_at = now
            if not condition.is_repeatable:
                condition.is_active = False
            if self.notifier:
                notification = self.notifier.queue_unlock_notification(event, condition)
            await self.session.commit()
        except Exception:
            # entities generated above go with the event
            await self.session.rollback()
            logger.exception(f"Failed to record unlock event for condition {condition_id}")
            return None

        event_id = event.id
        logger.info(f"🔓 Entity unlock executed: {condition_name}, unlocked {len(unlocked_ids)} entities")

        if notification is not None:
            try:
                if await self.notifier.deliver(notification):
                    await self.mark_notification_sent(event_id)
            except Exception:
                logger.exception(f"Failed to deliver unlock notification for event {event_id}")
        return event

    # ----- History -----

    async def get_session_unlock_history(self, session_id: str) -> list[UnlockEvent]:
        stmt = (
            select(UnlockEvent)
            .where(UnlockEvent.session_id == session_id)
            .order_by(UnlockEvent.triggered_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_notification_sent(self, event_id: str) -> bool:
        event = await self.session.get(UnlockEvent, event_id)
        if not event:
            return False
        if not event.notification_sent:
            event.notification_sent = True
            await self.session.commit()
        return True
