"""Rule data structures for milestones and unlock conditions.

The database keeps rule sets as JSON; these dataclasses are the parsed
form the engines evaluate. ``from_dict``/``to_dict`` convert between both.
"""

import datetime
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional

RULE_TYPES = ("sequential", "required_all", "required_any", "story_meaning")
COMPLETION_CONDITIONS = ("all_rules", "any_rule", "weighted_threshold")
TRIGGER_TYPES = ("milestone_progress", "milestone_completion", "entity_interaction", "combined")
CONDITION_RULE_TYPES = (
    "milestone_progress_threshold",
    "milestone_completed",
    "entity_completed",
    "character_action",
)


@dataclass
class RelationshipRule:
    """One clause describing how a subset of entities counts toward a milestone."""
    type: str
    entity_ids: List[str]
    is_optional: bool = False
    completion_weight: float = 1.0
    story_meaning: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelationshipRule":
        return cls(
            type=data.get("type", ""),
            entity_ids=list(data.get("entity_ids") or []),
            is_optional=bool(data.get("is_optional", False)),
            completion_weight=float(data.get("completion_weight", 1.0)),
            story_meaning=data.get("story_meaning"),
            description=data.get("description"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RelationshipSpec:
    """Completion policy plus the ordered rules of a milestone.

    ``completion_condition`` accepts the compact ``"weighted_threshold,0.7"``
    form; the number is moved into ``weighted_threshold``.
    """
    completion_condition: str = "all_rules"
    rules: List[RelationshipRule] = field(default_factory=list)
    weighted_threshold: Optional[float] = None
    completion_narrative: Optional[str] = None

    def __post_init__(self):
        if "," in self.completion_condition:
            policy, _, threshold = self.completion_condition.partition(",")
            self.completion_condition = policy.strip()
            if self.weighted_threshold is None and threshold.strip():
                self.weighted_threshold = float(threshold)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelationshipSpec":
        return cls(
            completion_condition=data.get("completion_condition", "all_rules"),
            rules=[RelationshipRule.from_dict(r) for r in data.get("rules", [])],
            weighted_threshold=data.get("weighted_threshold"),
            completion_narrative=data.get("completion_narrative"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completion_condition": self.completion_condition,
            "rules": [r.to_dict() for r in self.rules],
            "weighted_threshold": self.weighted_threshold,
            "completion_narrative": self.completion_narrative,
        }

    def entity_ids(self) -> List[str]:
        """Unique entity ids across all rules, first occurrence order."""
        seen: Dict[str, None] = {}
        for rule in self.rules:
            for entity_id in rule.entity_ids:
                seen.setdefault(entity_id, None)
        return list(seen)


@dataclass
class EntityCompletionDetail:
    entity_id: str
    completed_at: datetime.datetime
    success_quality: float = 0.5
    story_timing_score: float = 0.5
    narrative_importance: float = 0.5
    contextual_relevance: float = 0.5
    character: str = "unknown"
    approach: str = "default"
    outcome: str = "completed"


@dataclass
class NarrativeState:
    """Current story state of a session, used by the story-meaning heuristics."""
    session_id: str
    current_theme: str = "exploration"
    story_phase: str = "development"
    tension_level: float = 0.5
    active_story_elements: List[str] = field(default_factory=lambda: ["exploration", "mystery"])
    narrative_coherence: float = 0.7


@dataclass
class CompletionSnapshot:
    """What the completion store knows about the entities of one rule."""
    completed: List[str] = field(default_factory=list)
    details: Dict[str, EntityCompletionDetail] = field(default_factory=dict)


@dataclass
class UnlockConditionRule:
    type: str
    target_id: str
    operator: str = "gte"
    threshold: Optional[float] = None
    value: Any = None
    is_optional: bool = False
    weight: float = 1.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnlockConditionRule":
        return cls(
            type=data.get("type", ""),
            target_id=data.get("target_id", ""),
            operator=data.get("operator", "gte"),
            threshold=data.get("threshold"),
            value=data.get("value"),
            is_optional=bool(data.get("is_optional", False)),
            weight=float(data.get("weight", 1.0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UnlockTarget:
    """One entity to materialize when a condition fires."""
    entity_kind: str
    entity_name: str
    location_id: str
    entity_description: str = ""
    available_actions: List[Dict[str, Any]] = field(default_factory=list)
    unlock_message: str = ""
    narrative_context: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnlockTarget":
        return cls(
            entity_kind=data.get("entity_kind", "object"),
            entity_name=data.get("entity_name", ""),
            location_id=data.get("location_id", ""),
            entity_description=data.get("entity_description", ""),
            available_actions=list(data.get("available_actions") or []),
            unlock_message=data.get("unlock_message", ""),
            narrative_context=data.get("narrative_context", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UnlockContext:
    """The signal an unlock check was started from."""
    milestone_id: Optional[str] = None
    progress: Optional[float] = None
    completed: bool = False
    entity_id: Optional[str] = None
    character_id: Optional[str] = None
    success: bool = False


@dataclass
class RuleProgress:
    rule_index: int
    rule_type: str
    progress: float
    is_optional: bool
    completion_weight: float
    description: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.progress >= 1.0


@dataclass
class MilestoneProgressReport:
    milestone_id: str
    overall_progress: float
    rule_progresses: List[RuleProgress] = field(default_factory=list)
    is_completed: bool = False
