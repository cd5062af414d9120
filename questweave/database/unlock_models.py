from uuid import uuid4
from sqlalchemy import Column, String, Text, Boolean, Integer, DateTime, JSON, Index
from sqlalchemy.sql import func
from .base import Base


def _uuid() -> str:
    return str(uuid4())


class UnlockCondition(Base):
    __tablename__ = "unlock_conditions"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(String, nullable=False)
    rules = Column(JSON, nullable=False, default=list)
    targets = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    is_repeatable = Column(Boolean, default=False, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    session_id = Column(String, nullable=False)
    created_at = Column(DateTime, default=func.now())
    last_triggered_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_unlock_conditions_session_active", "session_id", "is_active"),)


class UnlockEvent(Base):
    """Append-only unlock history. Only ``notification_sent`` changes after insert."""

    __tablename__ = "unlock_events"

    id = Column(String, primary_key=True, default=_uuid)
    condition_id = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=False, index=True)
    triggered_at = Column(DateTime, nullable=False)
    trigger_character_id = Column(String, nullable=True)
    unlocked_entities = Column(JSON, nullable=False, default=list)
    narrative_description = Column(Text, nullable=False, default="")
    notification_sent = Column(Boolean, default=False, nullable=False)


class GMNotification(Base):
    __tablename__ = "gm_notifications"

    id = Column(String, primary_key=True, default=_uuid)
    type = Column(String, nullable=False)
    session_id = Column(String, nullable=False)
    priority = Column(String, nullable=False, default="medium")
    status = Column(String, nullable=False, default="unread")
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    event_data = Column(JSON, default=dict)
    created_at = Column(DateTime, default=func.now())
    acknowledged_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_gm_notifications_session_status", "session_id", "status"),)
