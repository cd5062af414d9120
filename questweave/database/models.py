# database/models.py
from uuid import uuid4
from sqlalchemy import (
    Column,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Float,
    Integer,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.sql import func
from .base import Base


def _uuid() -> str:
    return str(uuid4())


class GameSession(Base):
    """A play session; also carries the narrative state used for scoring."""

    __tablename__ = "game_sessions"
    id = Column(String, primary_key=True, default=_uuid)
    campaign_id = Column(String, nullable=True, index=True)
    started_at = Column(DateTime, default=func.now())
    current_theme = Column(String, default="exploration")
    story_phase = Column(String, default="development")
    tension_level = Column(Float, default=0.5)
    active_story_elements = Column(JSON, default=list)
    narrative_coherence = Column(Float, default=0.7)


class Milestone(Base):
    __tablename__ = "milestones"
    id = Column(String, primary_key=True, default=_uuid)
    campaign_id = Column(String, nullable=True, index=True)
    session_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    # RelationshipSpec serialized as a dict; null for legacy milestones
    relationships = Column(JSON, nullable=True)
    status = Column(String, default="pending", nullable=False)
    progress = Column(Float, default=0.0, nullable=False)
    progress_percentage = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime, nullable=True)


class MilestoneCompletion(Base):
    """Append-only completion record, one per milestone and session."""

    __tablename__ = "milestone_completions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    milestone_id = Column(String, ForeignKey("milestones.id"), nullable=False)
    session_id = Column(String, nullable=False, index=True)
    completed_by = Column(String, nullable=True)
    completed_at = Column(DateTime, default=func.now())
    overall_progress = Column(Float, nullable=False)
    rule_progress = Column(JSON, default=list)

    __table_args__ = (UniqueConstraint("milestone_id", "session_id", name="uix_milestone_completion"),)


class GameEntity(Base):
    """An interactable object in the world, either authored or unlocked."""

    __tablename__ = "game_entities"
    id = Column(String, primary_key=True, default=_uuid)
    session_id = Column(String, nullable=False, index=True)
    location_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    kind = Column(String, nullable=False, default="object")
    description = Column(Text, nullable=True)
    available_actions = Column(JSON, default=list)
    narrative_importance = Column(Float, default=0.5)
    contextual_relevance = Column(Float, default=0.5)
    is_revealed = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())


class EntityInteraction(Base):
    """One resolved interaction of a character with an entity."""

    __tablename__ = "entity_interactions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    character_id = Column(String, nullable=True)
    success = Column(Boolean, default=True, nullable=False)
    dice_result = Column(Integer, nullable=True)
    approach = Column(Text, nullable=True)
    outcome = Column(Text, nullable=True)
    interacted_at = Column(DateTime, default=func.now())

    __table_args__ = (Index("idx_entity_interactions_session_entity", "session_id", "entity_id"),)
