import logging
from typing import Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questweave.database.models import Milestone
from questweave.database.unlock_models import UnlockCondition
from questweave.exceptions import MilestoneInUse, MilestoneNotFound
from questweave.model import RULE_TYPES, RelationshipSpec
from questweave.utils.text_utils import sanitize_text

logger = logging.getLogger(__name__)


def relationship_spec_of(milestone: Milestone) -> RelationshipSpec | None:
    """Parsed relationship spec of a milestone; None for legacy milestones.

    A record that cannot be parsed yields an empty spec, which scores 0.
    """
    if not milestone.relationships:
        return None
    try:
        return RelationshipSpec.from_dict(milestone.relationships)
    except (TypeError, ValueError, AttributeError) as e:
        logger.error(f"Malformed relationships on milestone {milestone.id}: {e}")
        return RelationshipSpec(completion_condition="all_rules", rules=[])


class MilestoneService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_milestone(
        self,
        session_id: str,
        title: str,
        relationships: RelationshipSpec | dict | None = None,
        *,
        description: str | None = None,
        campaign_id: str | None = None,
        milestone_id: str | None = None,
    ) -> Milestone:
        if isinstance(relationships, RelationshipSpec):
            relationships = relationships.to_dict()
        for rule in (relationships or {}).get("rules") or []:
            if isinstance(rule, dict) and rule.get("type") not in RULE_TYPES:
                logger.warning(f"Milestone {title!r} has a rule of unknown type {rule.get('type')!r}; it will score 0")
        milestone = Milestone(
            session_id=session_id,
            campaign_id=campaign_id,
            title=sanitize_text(title),
            description=sanitize_text(description),
            relationships=relationships,
            status="pending",
            progress=0.0,
            progress_percentage=0.0,
        )
        if milestone_id:
            milestone.id = milestone_id
        self.session.add(milestone)
        await self.session.commit()
        await self.session.refresh(milestone)
        logger.info(f"Created milestone {milestone.title} ({milestone.id}) for session {session_id}")
        return milestone

    async def get_milestone(self, milestone_id: str) -> Milestone | None:
        return await self.session.get(Milestone, milestone_id)

    async def require_milestone(self, milestone_id: str) -> Milestone:
        milestone = await self.get_milestone(milestone_id)
        if not milestone:
            raise MilestoneNotFound(milestone_id)
        return milestone

    async def list_session_milestones(self, session_id: str) -> list[Milestone]:
        stmt = (
            select(Milestone)
            .where(Milestone.session_id == session_id)
            .order_by(Milestone.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_milestones_by_entity(self, session_id: str, entity_id: str) -> list[Milestone]:
        related = []
        for milestone in await self.list_session_milestones(session_id):
            spec = relationship_spec_of(milestone)
            if spec and any(entity_id in rule.entity_ids for rule in spec.rules):
                related.append(milestone)
        return related

    async def find_milestones_by_entities(self, session_id: str, entity_ids: List[str]) -> Dict[str, list[Milestone]]:
        milestones = await self.list_session_milestones(session_id)
        specs = [(m, relationship_spec_of(m)) for m in milestones]
        result: Dict[str, list[Milestone]] = {}
        for entity_id in entity_ids:
            result[entity_id] = [
                m for m, spec in specs
                if spec and any(entity_id in rule.entity_ids for rule in spec.rules)
            ]
        return result

    async def build_relationship_map(self, session_id: str) -> Dict[str, List[str]]:
        """Milestone id -> unique entity ids across its rules."""
        relationship_map: Dict[str, List[str]] = {}
        for milestone in await self.list_session_milestones(session_id):
            spec = relationship_spec_of(milestone)
            if spec:
                relationship_map[milestone.id] = spec.entity_ids()
        return relationship_map

    async def update_relationships(self, milestone_id: str, relationships: RelationshipSpec | dict) -> Milestone:
        milestone = await self.require_milestone(milestone_id)
        if isinstance(relationships, RelationshipSpec):
            relationships = relationships.to_dict()
        milestone.relationships = relationships
        await self.session.commit()
        await self.session.refresh(milestone)
        return milestone

    async def delete_milestone(self, milestone_id: str) -> bool:
        milestone = await self.get_milestone(milestone_id)
        if not milestone:
            return False
        referencing = await self._active_conditions_referencing(milestone)
        if referencing:
            raise MilestoneInUse(milestone_id, referencing)
        await self.session.delete(milestone)
        await self.session.commit()
        return True

    async def _active_conditions_referencing(self, milestone: Milestone) -> list[str]:
        stmt = select(UnlockCondition).where(
            UnlockCondition.session_id == milestone.session_id,
            UnlockCondition.is_active == True,
        )
        conditions = (await self.session.execute(stmt)).scalars().all()
        return [
            c.id for c in conditions
            if any(
                r.get("target_id") == milestone.id
                and r.get("type") in ("milestone_progress_threshold", "milestone_completed")
                for r in c.rules or []
            )
        ]
