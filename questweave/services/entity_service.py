import logging
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questweave.database.models import GameEntity
from questweave.utils.text_utils import sanitize_text

logger = logging.getLogger(__name__)


class SqlEntityGenerator:
    """Materializes unlocked entities as ``game_entities`` rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def generate_entity(
        self,
        session_id: str,
        location_id: str,
        name: str,
        kind: str,
        actions: List[Dict[str, Any]],
        *,
        description: str | None = None,
    ) -> str:
        entity = GameEntity(
            session_id=session_id,
            location_id=location_id,
            name=sanitize_text(name),
            kind=kind,
            description=sanitize_text(description) if description else None,
            available_actions=list(actions),
            is_revealed=True,
        )
        # a rejected row only rolls back its own savepoint; the unlock engine
        # commits the rest together with its event
        async with self.session.begin_nested():
            self.session.add(entity)
        logger.info(f"Generated entity {entity.name} ({entity.id}) in {location_id}")
        return entity.id

    async def list_session_entities(self, session_id: str, location_id: str | None = None) -> list[GameEntity]:
        stmt = select(GameEntity).where(GameEntity.session_id == session_id)
        if location_id:
            stmt = stmt.where(GameEntity.location_id == location_id)
        result = await self.session.execute(stmt.order_by(GameEntity.created_at))
        return list(result.scalars().all())
