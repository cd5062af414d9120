import logging
import math
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questweave.database.models import EntityInteraction, GameEntity, GameSession
from questweave.model import EntityCompletionDetail, NarrativeState
from questweave.utils.time_utils import hours_between, utcnow

logger = logging.getLogger(__name__)

TIMING_PEAK_HOURS = 3.0
TIMING_SPREAD_HOURS = 2.0


def success_quality(success: bool, dice_result: Optional[int], approach: Optional[str]) -> float:
    """Quality of a resolved interaction from its outcome, d20 roll and description."""
    quality = 0.7 if success else 0.3
    if dice_result:
        quality += (dice_result / 20) * 0.2
    if approach and len(approach) > 30:
        quality += 0.1
    return min(1.0, quality)


def ideal_timing_curve(elapsed_hours: float) -> float:
    """Bell curve peaking mid-session, where milestones land best."""
    return math.exp(-((elapsed_hours - TIMING_PEAK_HOURS) ** 2) / (2 * TIMING_SPREAD_HOURS ** 2))


class SqlCompletionStore:
    """Completion store backed by the ``entity_interactions`` table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_interaction(
        self,
        session_id: str,
        entity_id: str,
        character_id: str | None,
        *,
        success: bool = True,
        dice_result: int | None = None,
        approach: str | None = None,
        outcome: str | None = None,
        interacted_at=None,
    ) -> EntityInteraction:
        interaction = EntityInteraction(
            session_id=session_id,
            entity_id=entity_id,
            character_id=character_id,
            success=success,
            dice_result=dice_result,
            approach=approach,
            outcome=outcome,
            interacted_at=interacted_at or utcnow(),
        )
        self.session.add(interaction)
        await self.session.commit()
        await self.session.refresh(interaction)
        return interaction

    async def list_completed(self, session_id: str, entity_ids: List[str]) -> List[str]:
        if not entity_ids:
            return []
        stmt = (
            select(EntityInteraction.entity_id)
            .where(
                EntityInteraction.session_id == session_id,
                EntityInteraction.entity_id.in_(entity_ids),
                EntityInteraction.success == True,
            )
            .distinct()
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_completion_details(
        self, session_id: str, entity_ids: List[str]
    ) -> Dict[str, EntityCompletionDetail]:
        details: Dict[str, EntityCompletionDetail] = {}
        if not entity_ids:
            return details

        stmt = (
            select(EntityInteraction)
            .where(
                EntityInteraction.session_id == session_id,
                EntityInteraction.entity_id.in_(entity_ids),
                EntityInteraction.success == True,
            )
            .order_by(EntityInteraction.interacted_at.desc(), EntityInteraction.id.desc())
        )
        interactions = (await self.session.execute(stmt)).scalars().all()
        if not interactions:
            return details

        entities = {
            e.id: e
            for e in (
                await self.session.execute(select(GameEntity).where(GameEntity.id.in_(entity_ids)))
            ).scalars().all()
        }
        session_start = await self._session_start(session_id, interactions)
        mean_elapsed = sum(hours_between(session_start, i.interacted_at) for i in interactions) / len(interactions)

        for interaction in interactions:
            # newest successful interaction wins
            if interaction.entity_id in details:
                continue
            elapsed = hours_between(session_start, interaction.interacted_at)
            spread = max(0.0, 1 - abs(elapsed - mean_elapsed) / 24)
            entity = entities.get(interaction.entity_id)
            details[interaction.entity_id] = EntityCompletionDetail(
                entity_id=interaction.entity_id,
                completed_at=interaction.interacted_at,
                success_quality=success_quality(interaction.success, interaction.dice_result, interaction.approach),
                story_timing_score=ideal_timing_curve(elapsed) * 0.7 + spread * 0.3,
                narrative_importance=entity.narrative_importance if entity else 0.5,
                contextual_relevance=entity.contextual_relevance if entity else 0.5,
                character=interaction.character_id or "unknown",
                approach=interaction.approach or "default",
                outcome=interaction.outcome or "completed",
            )
        return details

    async def _session_start(self, session_id: str, interactions: List[EntityInteraction]):
        game_session = await self.session.get(GameSession, session_id)
        if game_session and game_session.started_at:
            return game_session.started_at
        return min(i.interacted_at for i in interactions)

    async def get_narrative_state(self, session_id: str) -> NarrativeState:
        game_session = await self.session.get(GameSession, session_id)
        if not game_session:
            return NarrativeState(session_id=session_id)
        return NarrativeState(
            session_id=session_id,
            current_theme=game_session.current_theme or "exploration",
            story_phase=game_session.story_phase or "development",
            tension_level=game_session.tension_level if game_session.tension_level is not None else 0.5,
            active_story_elements=list(game_session.active_story_elements or []),
            narrative_coherence=(
                game_session.narrative_coherence if game_session.narrative_coherence is not None else 0.7
            ),
        )
