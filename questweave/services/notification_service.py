from __future__ import annotations

import datetime
import logging

from aiogram import Bot
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from questweave.database.models import Milestone, MilestoneCompletion
from questweave.database.unlock_models import GMNotification, UnlockCondition, UnlockEvent
from questweave.utils.config import ADMIN_IDS, NOTIFICATION_TTL_HOURS
from questweave.utils.notify_admins import notify_admins
from questweave.utils.text_utils import format_progress, truncate_text
from questweave.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_STATUSES = ("unread", "read", "acknowledged", "dismissed", "expired")


class GMNotificationService:
    """Stores GM notifications and optionally pushes them through a Telegram bot."""

    def __init__(self, session: AsyncSession, bot: Bot | None = None, admin_ids: list[int] | None = None):
        self.session = session
        self.bot = bot
        self.admin_ids = ADMIN_IDS if admin_ids is None else admin_ids

    def queue_unlock_notification(self, event: UnlockEvent, condition: UnlockCondition) -> GMNotification:
        """Add the notification for an unlock to the current transaction without committing."""
        count = len(event.unlocked_entities)
        notification = GMNotification(
            type="entity_unlocked",
            session_id=event.session_id,
            priority="medium",
            title=f"Contenido desbloqueado: {condition.name}",
            message=(
                f"🔓 {condition.name}: {count} nueva(s) entidad(es) disponible(s).\n\n"
                f"{truncate_text(event.narrative_description, 500)}"
            ),
            event_data={
                "unlock_event_id": event.id,
                "condition_id": condition.id,
                "unlocked_entities": list(event.unlocked_entities),
                "trigger_character_id": event.trigger_character_id,
            },
            expires_at=utcnow() + datetime.timedelta(hours=NOTIFICATION_TTL_HOURS),
        )
        self.session.add(notification)
        return notification

    def queue_milestone_notification(
        self, milestone: Milestone, completion: MilestoneCompletion
    ) -> GMNotification:
        notification = GMNotification(
            type="milestone_completed",
            session_id=milestone.session_id,
            priority="high",
            title=f"Hito alcanzado: {milestone.title}",
            message=(
                f"🎯 {milestone.title} se ha completado "
                f"({format_progress(completion.overall_progress)}).\n"
                "La historia está lista para avanzar."
            ),
            event_data={
                "milestone_id": milestone.id,
                "completed_by": completion.completed_by,
                "rule_progress": completion.rule_progress,
            },
            # milestone completions stay until a GM acknowledges them
            expires_at=None,
        )
        self.session.add(notification)
        return notification

    async def deliver(self, notification: GMNotification) -> bool:
        """Push a stored notification to the admins. Returns True when at least one got it."""
        if not self.bot:
            logger.debug(f"No bot configured, notification {notification.id} kept in database only")
            return False
        text = f"{notification.title}\n\n{notification.message}"
        sent = await notify_admins(self.bot, text, self.admin_ids)
        if sent:
            logger.info(f"GM notification sent: {notification.title} ({notification.id})")
        return sent > 0

    async def update_status(self, notification_id: str, status: str) -> bool:
        if status not in NOTIFICATION_STATUSES:
            logger.warning(f"Ignoring unknown notification status {status!r}")
            return False
        notification = await self.session.get(GMNotification, notification_id)
        if not notification:
            return False
        notification.status = status
        notification.acknowledged_at = utcnow() if status == "acknowledged" else None
        await self.session.commit()
        return True

    async def list_notifications(
        self, session_id: str, statuses: list[str] | None = None, limit: int = 50
    ) -> list[GMNotification]:
        stmt = select(GMNotification).where(GMNotification.session_id == session_id)
        if statuses:
            stmt = stmt.where(GMNotification.status.in_(statuses))
        stmt = stmt.order_by(GMNotification.created_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def expire_stale(self) -> int:
        now = utcnow()
        stmt = (
            update(GMNotification)
            .where(
                GMNotification.expires_at.is_not(None),
                GMNotification.expires_at <= now,
                GMNotification.status.in_(("unread", "read")),
            )
            .values(status="expired")
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount or 0
