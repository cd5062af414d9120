"""Rule scoring for milestone progress.

Every function here is pure: it receives what the completion store reported
and returns a progress value in [0, 1]. Database access lives in the
services that call these functions.

Rule types:
- required_all: every listed entity, with coverage and balance bonuses
- required_any: any single listed entity completes the rule
- sequential: entities in listed order, scored by the completed prefix
- story_meaning: completion ratio scaled by weight and narrative bonuses
"""

import logging
import re
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence

from .model import (
    COMPLETION_CONDITIONS,
    CompletionSnapshot,
    EntityCompletionDetail,
    NarrativeState,
    RelationshipRule,
    RelationshipSpec,
    RuleProgress,
)
from .utils.config import DEFAULT_WEIGHTED_THRESHOLD
from .utils.time_utils import hours_between

logger = logging.getLogger(__name__)

FLOAT_TOLERANCE = 1e-9

# required_all: (base ratio reached, bonus), highest first
COVERAGE_BONUSES = ((0.8, 0.15), (0.6, 0.10), (0.4, 0.05))
IMPORTANCE_WEIGHTS = {"high": 1.5, "medium": 1.0, "low": 0.7}
BALANCE_FACTOR = 0.1

# sequential
IDEAL_GAP_HOURS = (0.5, 3.0)
SEQUENTIAL_BONUS_CAP = 0.05

# story_meaning
COMBINATION_FACTOR = 0.3
CONTEXT_FACTOR = 0.2
PROXIMITY_WINDOW_HOURS = 24.0


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _completed_in_rule(entity_ids: Sequence[str], completed: Iterable[str]) -> List[str]:
    done = set(completed)
    return [entity_id for entity_id in dict.fromkeys(entity_ids) if entity_id in done]


def group_by_importance(entity_ids: Sequence[str]) -> Dict[str, List[str]]:
    """Split entity ids into importance tiers by position.

    The first 30% are ``high``, the next 40% ``medium`` and the rest ``low``.
    """
    groups: Dict[str, List[str]] = {"high": [], "medium": [], "low": []}
    total = len(entity_ids)
    for index, entity_id in enumerate(entity_ids):
        if index < total * 0.3:
            groups["high"].append(entity_id)
        elif index < total * 0.7:
            groups["medium"].append(entity_id)
        else:
            groups["low"].append(entity_id)
    return groups


def required_all_progress(entity_ids: Sequence[str], completed: Iterable[str]) -> float:
    entity_ids = list(dict.fromkeys(entity_ids))
    done = _completed_in_rule(entity_ids, completed)
    if not entity_ids or not done:
        return 0.0

    base = len(done) / len(entity_ids)
    coverage = next((bonus for reached, bonus in COVERAGE_BONUSES if base >= reached), 0.0)

    done_set = set(done)
    weighted_ratios = []
    for tier, members in group_by_importance(entity_ids).items():
        if members:
            ratio = sum(1 for m in members if m in done_set) / len(members)
            weighted_ratios.append(ratio * IMPORTANCE_WEIGHTS[tier])
    balance = sum(weighted_ratios) / len(weighted_ratios) if weighted_ratios else base

    final = clamp(base + coverage + (balance - base) * BALANCE_FACTOR)
    logger.debug(
        f"required_all: base={base:.3f} completed={len(done)}/{len(entity_ids)} "
        f"coverage={coverage:.3f} balance={balance:.3f} final={final:.3f}"
    )
    return final


def required_any_progress(entity_ids: Sequence[str], completed: Iterable[str]) -> float:
    # Any single completion satisfies the rule; extra completions add nothing.
    return 1.0 if _completed_in_rule(entity_ids, completed) else 0.0


def completed_prefix(entity_ids: Sequence[str], completed: Iterable[str]) -> List[str]:
    """Entities completed in listed order, stopping at the first gap."""
    done = set(completed)
    prefix = []
    for entity_id in entity_ids:
        if entity_id not in done:
            break
        prefix.append(entity_id)
    return prefix


def sequential_progress(
    entity_ids: Sequence[str],
    completed: Iterable[str],
    details: Optional[Dict[str, EntityCompletionDetail]] = None,
) -> float:
    if not entity_ids:
        return 0.0
    details = details or {}
    total = len(entity_ids)
    prefix = completed_prefix(entity_ids, completed)
    base = len(prefix) / total
    if len(prefix) < 2:
        return clamp(base)

    reach = len(prefix) / total

    gap_scores = []
    for earlier, later in zip(prefix, prefix[1:]):
        first, second = details.get(earlier), details.get(later)
        if first and second:
            gap = hours_between(first.completed_at, second.completed_at)
            in_range = IDEAL_GAP_HOURS[0] <= gap <= IDEAL_GAP_HOURS[1]
            gap_scores.append(1.0 if in_range else 0.5)
    spacing_bonus = 0.0
    if gap_scores:
        spacing_bonus = SEQUENTIAL_BONUS_CAP * (sum(gap_scores) / len(gap_scores)) * reach

    quality_scores = []
    for index, entity_id in enumerate(prefix):
        detail = details.get(entity_id)
        if detail:
            # later steps are expected to be resolved with more finesse
            expectation = 0.5 + (index / total) * 0.3
            quality_scores.append(1.0 if detail.success_quality >= expectation else 0.5)
    quality_bonus = 0.0
    if quality_scores:
        quality_bonus = SEQUENTIAL_BONUS_CAP * (sum(quality_scores) / len(quality_scores)) * reach

    final = clamp(base + spacing_bonus + quality_bonus)
    logger.debug(
        f"sequential: prefix={len(prefix)}/{total} spacing={spacing_bonus:.3f} "
        f"quality={quality_bonus:.3f} final={final:.3f}"
    )
    return final


def timing_proximity(first: EntityCompletionDetail, second: EntityCompletionDetail) -> float:
    """1.0 for simultaneous completions, decaying linearly to 0 over 24 hours."""
    gap = abs(hours_between(first.completed_at, second.completed_at))
    return clamp(1 - gap / PROXIMITY_WINDOW_HOURS)


def _keywords(text: str) -> set:
    return {word for word in re.findall(r"[\w']+", text.lower()) if len(word) > 2}


def meaning_alignment(story_meaning: Optional[str], state: NarrativeState) -> float:
    """Keyword overlap between a rule's story meaning and the session's story."""
    if not story_meaning:
        return 0.5
    meaning_words = _keywords(story_meaning)
    if not meaning_words:
        return 0.5
    story_words = _keywords(" ".join([state.current_theme, *state.active_story_elements]))
    if not story_words:
        return 0.5
    overlap = len(meaning_words & story_words) / len(story_words)
    return clamp(0.5 + overlap * 0.5)


def narrative_combination_score(
    completed: Sequence[str], details: Dict[str, EntityCompletionDetail]
) -> float:
    scores = []
    for first_id, second_id in combinations(completed, 2):
        first, second = details.get(first_id), details.get(second_id)
        if first and second:
            relation = (first.contextual_relevance + second.contextual_relevance) / 2
            scores.append(timing_proximity(first, second) * 0.4 + relation * 0.6)
    if not scores:
        return 0.0
    return clamp(sum(scores) / len(scores))


def story_context_score(
    rule: RelationshipRule,
    completed: Sequence[str],
    details: Dict[str, EntityCompletionDetail],
    state: NarrativeState,
) -> float:
    known = [details[e] for e in completed if e in details]
    importance = sum(d.narrative_importance for d in known) / len(known) if known else 0.6
    relevance = sum(d.contextual_relevance for d in known) / len(known) if known else 0.5
    alignment = meaning_alignment(rule.story_meaning, state)
    return clamp(alignment * 0.4 + importance * 0.3 + relevance * 0.3)


def story_meaning_progress(
    rule: RelationshipRule,
    completed: Iterable[str],
    details: Optional[Dict[str, EntityCompletionDetail]] = None,
    state: Optional[NarrativeState] = None,
) -> float:
    entity_ids = list(dict.fromkeys(rule.entity_ids))
    if not entity_ids:
        return 0.0
    details = details or {}
    state = state or NarrativeState(session_id="")
    done = _completed_in_rule(entity_ids, completed)
    base = len(done) / len(entity_ids)
    if base == 0:
        return 0.0

    combination = narrative_combination_score(done, details)
    context = story_context_score(rule, done, details, state)
    multiplier = 1 + combination * COMBINATION_FACTOR + context * CONTEXT_FACTOR
    final = clamp(base * rule.completion_weight * multiplier)
    logger.debug(
        f"story_meaning: base={base:.3f} combination={combination:.3f} "
        f"context={context:.3f} final={final:.3f}"
    )
    return final


def rule_progress(
    rule: RelationshipRule,
    snapshot: CompletionSnapshot,
    state: Optional[NarrativeState] = None,
) -> float:
    """Progress of one relationship rule. Malformed rules score 0."""
    if not rule.entity_ids:
        logger.warning(f"Rule of type {rule.type!r} has no entity ids, scoring 0")
        return 0.0

    if rule.type == "required_all":
        return required_all_progress(rule.entity_ids, snapshot.completed)
    elif rule.type == "required_any":
        return required_any_progress(rule.entity_ids, snapshot.completed)
    elif rule.type == "sequential":
        return sequential_progress(rule.entity_ids, snapshot.completed, snapshot.details)
    elif rule.type == "story_meaning":
        return story_meaning_progress(rule, snapshot.completed, snapshot.details, state)

    logger.warning(f"Unknown relationship rule type {rule.type!r}, scoring 0")
    return 0.0


def aggregate_progress(rules: Sequence[RelationshipRule], progresses: Sequence[float]) -> float:
    """Weighted average of rule progress.

    An optional rule only takes part once it has some progress.
    """
    numerator = 0.0
    denominator = 0.0
    for rule, progress in zip(rules, progresses):
        if rule.is_optional and progress == 0:
            continue
        weight = rule.completion_weight if rule.completion_weight > 0 else 0.0
        numerator += progress * weight
        denominator += weight
    if denominator == 0:
        return 0.0
    return numerator / denominator


def build_rule_progresses(rules: Sequence[RelationshipRule], progresses: Sequence[float]) -> List[RuleProgress]:
    return [
        RuleProgress(
            rule_index=index,
            rule_type=rule.type,
            progress=progress,
            is_optional=rule.is_optional,
            completion_weight=rule.completion_weight,
            description=rule.description,
        )
        for index, (rule, progress) in enumerate(zip(rules, progresses))
    ]


def completion_threshold(spec: RelationshipSpec) -> float:
    if spec.completion_condition == "all_rules":
        return 1.0
    if spec.completion_condition == "any_rule":
        return 0.0
    if spec.weighted_threshold is not None:
        return spec.weighted_threshold
    return DEFAULT_WEIGHTED_THRESHOLD


def meets_completion_policy(spec: RelationshipSpec, progress: float) -> bool:
    condition = spec.completion_condition
    if condition == "any_rule":
        return progress > 0
    if condition == "weighted_threshold":
        return progress >= completion_threshold(spec) - FLOAT_TOLERANCE
    if condition not in COMPLETION_CONDITIONS:
        logger.warning(f"Unknown completion condition {condition!r}, requiring full progress")
    return progress >= 1.0 - FLOAT_TOLERANCE
