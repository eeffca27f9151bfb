"""
Target Selection for Adaptive Batches.

Decides which concept each slot of a batch should test:
- Focus: highest-priority concepts (weak, uncertain, slow, tutor-heavy)
- Explore: least-attempted concepts, spread evenly through the batch

Also scores how well a question fits a target concept, used when picking
questions out of the curated and cached pools.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field

from examfunnel.core.mastery import (
    DEFAULT_CONCEPT_KEY,
    ConceptMasteryState,
    FunnelState,
    normalize_concept_key,
    priority,
)
from examfunnel.core.models import GuideItem, Question

MIN_KEY_LENGTH = 3
MIN_TOKEN_LENGTH = 3
MAX_DISTINCT_FOCUS = 4
REPEAT_POOL_SIZE = 10
CONCEPT_MATCH_WEIGHT = 3


@dataclass
class TargetSelection:
    """Per-slot concept targets for one batch."""

    focus_count: int
    explore_count: int
    focus_targets: list[str] = field(default_factory=list)
    explore_targets: list[str] = field(default_factory=list)
    targets_per_question: list[str] = field(default_factory=list)


def tokenize(value: str | None) -> list[str]:
    """Normalized whitespace tokens of at least three characters."""
    return [token for token in normalize_concept_key(value).split() if len(token) >= MIN_TOKEN_LENGTH]


def build_concept_universe(
    guide_items: Iterable[GuideItem] | None,
    state: FunnelState,
    extra_concepts: Iterable[str] = (),
) -> dict[str, str]:
    """
    Collect candidate concepts as key -> display name.

    Guide titles come first, then concepts already tracked for the learner,
    then ``extra_concepts``. Keys shorter than three characters are skipped
    and the first display name seen for a key wins.
    """
    universe: dict[str, str] = {}

    for item in guide_items or ():
        title = (item.title or "").strip()
        key = normalize_concept_key(title)
        if len(key) >= MIN_KEY_LENGTH and key not in universe:
            universe[key] = title

    for key, concept in state.concepts.items():
        if len(key) >= MIN_KEY_LENGTH and key not in universe:
            universe[key] = concept.display_name or key

    for label in extra_concepts:
        display = (label or "").strip()
        key = normalize_concept_key(display)
        if len(key) >= MIN_KEY_LENGTH and key not in universe:
            universe[key] = display

    return universe


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def select_targets(
    universe: dict[str, str],
    state: FunnelState,
    total: int,
    explore_ratio: float = 0.2,
) -> TargetSelection:
    """
    Assign a concept key to every slot of a batch of ``total`` questions.

    Args:
        universe: Candidate concepts (key -> display), in preference order
        state: Learner mastery state; unknown concepts count as Beta(1, 1)
        total: Batch size (at least 1)
        explore_ratio: Share of slots reserved for exploration, clamped to [0, 1]

    Returns:
        TargetSelection whose targets_per_question has exactly ``total`` entries
    """
    total = max(1, int(total))
    explore_ratio = min(1.0, max(0.0, explore_ratio))
    explore_count = max(2, _round_half_up(explore_ratio * total))
    focus_count = max(0, total - explore_count)

    stats = []
    for key in universe:
        concept = state.concepts.get(key) or ConceptMasteryState()
        stats.append((key, concept.attempts, priority(concept)))

    by_priority = sorted(stats, key=lambda s: s[2], reverse=True)
    by_attempts = sorted(stats, key=lambda s: s[1])

    focus_targets = [key for key, _, _ in by_priority[: min(MAX_DISTINCT_FOCUS, focus_count)]]
    repeat_pool = [key for key, _, _ in by_priority[:REPEAT_POOL_SIZE]]

    focus_queue = list(focus_targets)
    if repeat_pool:
        for i in range(len(focus_queue), focus_count):
            focus_queue.append(repeat_pool[i % len(repeat_pool)])

    explore_targets = [key for key, _, _ in by_attempts[: min(explore_count, len(by_attempts))]]

    stride = max(1, total // len(explore_targets)) if explore_targets else total
    targets: list[str] = []
    i_focus = 0
    i_explore = 0
    for i in range(total):
        if i_explore < len(explore_targets) and i % stride == 0:
            targets.append(explore_targets[i_explore])
            i_explore += 1
        elif i_focus < len(focus_queue):
            targets.append(focus_queue[i_focus])
            i_focus += 1
        elif i_explore < len(explore_targets):
            targets.append(explore_targets[i_explore])
            i_explore += 1
        elif repeat_pool:
            targets.append(repeat_pool[i % len(repeat_pool)])
        else:
            targets.append(DEFAULT_CONCEPT_KEY)

    return TargetSelection(
        focus_count=focus_count,
        explore_count=explore_count,
        focus_targets=focus_targets,
        explore_targets=explore_targets,
        targets_per_question=targets,
    )


def _concept_matches(question: Question, target_key: str) -> int:
    needle = normalize_concept_key(target_key)
    if not needle:
        return 0
    hits = 0
    for tag in question.concepts:
        normalized = normalize_concept_key(tag)
        if normalized and (needle in normalized or normalized in needle):
            hits += 1
    return hits


def score_question_for_concept(question: Question, target_key: str) -> int:
    """3 points per matching concept tag plus 1 per shared stem token."""
    target_tokens = set(tokenize(target_key))
    stem_tokens = set(tokenize(question.stem))
    overlap = len(target_tokens & stem_tokens)
    return CONCEPT_MATCH_WEIGHT * _concept_matches(question, target_key) + overlap
