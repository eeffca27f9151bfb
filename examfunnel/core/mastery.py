"""
Core Mastery Module.

Per-concept Beta(alpha, beta) belief about the probability a learner answers
a question on that concept correctly.

Design:
- MasteryLevel: Enum for categorizing expected mastery
- ConceptMasteryState: Beta parameters plus activity counters for one concept
- FunnelState: all concept states for one learner, passed explicitly
- apply_response / record_tutor_touch: pure updates returning a new FunnelState
"""

from __future__ import annotations

import copy
import math
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any

from examfunnel.core.models import Question

DEFAULT_CONCEPT_KEY = "general"
DEFAULT_CONCEPT_DISPLAY = "General"

# Priority weights
WEIGHT_LOW_MASTERY = 1.0
WEIGHT_UNCERTAINTY = 0.4
WEIGHT_SLOW_RESPONSE = 0.3
WEIGHT_TUTOR = 0.2

SLOW_RESPONSE_MS = 60_000.0
VERY_SLOW_RESPONSE_MS = 120_000.0
TUTOR_TOUCH_SATURATION = 3.0
MIN_PARAMETER = 1e-4

_WHITESPACE = re.compile(r"\s+")
_KEY_CHARS = re.compile(r"[^\w\s-]")


class MasteryLevel(str, Enum):
    """
    Mastery level categorization.

    Aligned with learning science research on skill acquisition stages.
    """

    NOT_STARTED = "not_started"  # no attempts
    NOVICE = "novice"  # <40%
    DEVELOPING = "developing"  # 40-69%
    PROFICIENT = "proficient"  # 70-89%
    MASTERED = "mastered"  # 90-100%

    @classmethod
    def from_score(cls, score: float, attempts: int | None = None) -> MasteryLevel:
        """
        Convert a 0-1 expected mastery to a level.

        Args:
            score: Expected mastery between 0 and 1
            attempts: Number of answered questions; 0 means not started

        Returns:
            Corresponding MasteryLevel
        """
        if attempts == 0 or score <= 0:
            return cls.NOT_STARTED
        elif score < 0.4:
            return cls.NOVICE
        elif score < 0.7:
            return cls.DEVELOPING
        elif score < 0.9:
            return cls.PROFICIENT
        else:
            return cls.MASTERED

    @property
    def display_name(self) -> str:
        """Human-readable name."""
        return self.value.replace("_", " ").title()


class ConfidenceRating(IntEnum):
    """Learner's self-reported recall quality."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4


@dataclass
class ConceptMasteryState:
    """
    Mastery belief for one concept.

    alpha and beta stay positive; attempts counts applied Bayesian updates.
    """

    alpha: float = 1.0
    beta: float = 1.0
    attempts: int = 0
    last_seen_at: datetime | None = None
    avg_response_time_ms: float | None = None
    tutor_touches: int = 0
    display_name: str = ""

    @property
    def expected_mastery(self) -> float:
        return expected_mastery(self)

    @property
    def uncertainty(self) -> float:
        return uncertainty(self)

    @property
    def priority(self) -> float:
        return priority(self)

    @property
    def level(self) -> MasteryLevel:
        return MasteryLevel.from_score(self.expected_mastery, self.attempts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return {
            "alpha": self.alpha,
            "beta": self.beta,
            "attempts": self.attempts,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "avg_response_time_ms": self.avg_response_time_ms,
            "tutor_touches": self.tutor_touches,
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConceptMasteryState:
        last_seen = data.get("last_seen_at")
        return cls(
            alpha=float(data.get("alpha", 1.0)),
            beta=float(data.get("beta", 1.0)),
            attempts=int(data.get("attempts", 0)),
            last_seen_at=datetime.fromisoformat(last_seen) if last_seen else None,
            avg_response_time_ms=data.get("avg_response_time_ms"),
            tutor_touches=int(data.get("tutor_touches", 0)),
            display_name=data.get("display_name") or "",
        )


@dataclass
class FunnelState:
    """All concept mastery states for one learner."""

    concepts: dict[str, ConceptMasteryState] = field(default_factory=dict)

    def get(self, key: str) -> ConceptMasteryState | None:
        return self.concepts.get(key)

    def to_dict(self) -> dict[str, Any]:
        return {"concepts": {key: s.to_dict() for key, s in self.concepts.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FunnelState:
        concepts = (data or {}).get("concepts") or {}
        return cls(concepts={key: ConceptMasteryState.from_dict(value) for key, value in concepts.items()})


@dataclass(frozen=True)
class MasteryUpdate:
    """New state after an update, with the concept keys it touched."""

    state: FunnelState
    updated_keys: list[str]


# ============================================================================
# Beta Formulas
# ============================================================================


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def expected_mastery(s: ConceptMasteryState) -> float:
    """
    Mean of the Beta belief.

    Formula: E = alpha / (alpha + beta)
    """
    a = max(MIN_PARAMETER, s.alpha)
    b = max(MIN_PARAMETER, s.beta)
    return a / (a + b)


def uncertainty(s: ConceptMasteryState) -> float:
    """
    Standard deviation of the Beta belief.

    Formula: sqrt(a*b / ((a+b)^2 * (a+b+1)))
    """
    a = max(MIN_PARAMETER, s.alpha)
    b = max(MIN_PARAMETER, s.beta)
    total = a + b
    return math.sqrt((a * b) / (total * total * (total + 1)))


def priority(s: ConceptMasteryState) -> float:
    """
    How urgently a concept should be tested.

    Formula:
        1.0 × (1 - expected) +
        0.4 × uncertainty +
        0.3 × clamp((avg_ms - 60000) / 60000, 0, 1) +
        0.2 × clamp(tutor_touches / 3, 0, 1)
    """
    avg_ms = s.avg_response_time_ms or 0.0
    time_factor = _clamp((avg_ms - SLOW_RESPONSE_MS) / SLOW_RESPONSE_MS, 0.0, 1.0)
    tutor_factor = _clamp(s.tutor_touches / TUTOR_TOUCH_SATURATION, 0.0, 1.0)
    return (
        WEIGHT_LOW_MASTERY * (1 - expected_mastery(s))
        + WEIGHT_UNCERTAINTY * uncertainty(s)
        + WEIGHT_SLOW_RESPONSE * time_factor
        + WEIGHT_TUTOR * tutor_factor
    )


# ============================================================================
# State Updates
# ============================================================================


def normalize_concept_key(label: str | None) -> str:
    """Lowercase, trim, collapse whitespace and drop punctuation other than hyphens."""
    key = _WHITESPACE.sub(" ", (label or "").strip().lower())
    return _KEY_CHARS.sub("", key)


def ensure_concept(state: FunnelState, key: str, display: str | None = None) -> ConceptMasteryState:
    """Return the concept's state, creating Beta(1, 1) on first sight. First display name wins."""
    existing = state.concepts.get(key)
    if existing is not None:
        if not existing.display_name and display:
            existing.display_name = display
        return existing

    created = ConceptMasteryState(display_name=display or key)
    state.concepts[key] = created
    return created


def response_weights(
    rating: ConfidenceRating | int,
    is_correct: bool,
    response_time_ms: float | None = None,
    tutor_used_before_answer: bool = False,
) -> tuple[float, float]:
    """
    Map a response to (correct_weight, wrong_weight) pseudo-counts.

    AGAIN always counts as a strong miss; HARD on a correct answer splits
    the credit; slow answers and tutor help before answering add to the
    wrong weight.
    """
    rating = int(rating)
    if rating <= ConfidenceRating.AGAIN:
        correct_weight, wrong_weight = 0.0, 1.2
    elif rating == ConfidenceRating.HARD:
        correct_weight, wrong_weight = (0.6, 0.4) if is_correct else (0.0, 1.0)
    elif rating == ConfidenceRating.GOOD:
        correct_weight, wrong_weight = (1.0, 0.0) if is_correct else (0.0, 1.0)
    else:
        correct_weight, wrong_weight = (1.3, 0.0) if is_correct else (0.0, 1.0)

    if response_time_ms is not None and response_time_ms > VERY_SLOW_RESPONSE_MS:
        wrong_weight += 0.2
    if tutor_used_before_answer:
        wrong_weight += 0.2

    return correct_weight, wrong_weight


def _concept_labels(question: Question) -> list[tuple[str, str]]:
    labels: list[tuple[str, str]] = []
    for concept in question.concepts or [DEFAULT_CONCEPT_DISPLAY]:
        display = (concept or "").strip() or DEFAULT_CONCEPT_DISPLAY
        key = normalize_concept_key(display) or DEFAULT_CONCEPT_KEY
        if all(key != existing for existing, _ in labels):
            labels.append((key, display))
    return labels


def apply_response(
    state: FunnelState,
    question: Question,
    is_correct: bool,
    rating: ConfidenceRating | int,
    response_time_ms: float | None = None,
    tutor_used_before_answer: bool = False,
    now: datetime | None = None,
) -> MasteryUpdate:
    """
    Apply one answered question to every concept it is tagged with.

    Args:
        state: Current learner state (not modified)
        question: The answered question; untagged questions update "General"
        is_correct: Whether the learner chose the correct option
        rating: Self-reported confidence 1-4
        response_time_ms: Time to answer; only positive finite values count
        tutor_used_before_answer: Learner consulted the tutor first
        now: Timestamp recorded as last_seen_at (defaults to UTC now)

    Returns:
        MasteryUpdate with a new FunnelState and the updated concept keys
    """
    now = now or datetime.now(UTC)
    new_state = copy.deepcopy(state)
    correct_weight, wrong_weight = response_weights(
        rating, is_correct, response_time_ms, tutor_used_before_answer
    )
    counted_time = (
        float(response_time_ms)
        if response_time_ms is not None and math.isfinite(response_time_ms) and response_time_ms > 0
        else None
    )

    updated: list[str] = []
    for key, display in _concept_labels(question):
        concept = ensure_concept(new_state, key, display)
        previous_attempts = concept.attempts
        concept.alpha += correct_weight
        concept.beta += wrong_weight
        concept.attempts += 1
        if counted_time is not None:
            if concept.avg_response_time_ms is None:
                concept.avg_response_time_ms = counted_time
            else:
                concept.avg_response_time_ms = (
                    concept.avg_response_time_ms * previous_attempts + counted_time
                ) / (previous_attempts + 1)
        concept.last_seen_at = now
        updated.append(key)

    return MasteryUpdate(state=new_state, updated_keys=updated)


def record_tutor_touch(
    state: FunnelState,
    question: Question,
    now: datetime | None = None,
) -> MasteryUpdate:
    """Count a tutor consultation on the question's concepts without touching alpha/beta."""
    now = now or datetime.now(UTC)
    new_state = copy.deepcopy(state)

    updated: list[str] = []
    for key, display in _concept_labels(question):
        concept = ensure_concept(new_state, key, display)
        concept.tutor_touches += 1
        concept.last_seen_at = now
        updated.append(key)

    return MasteryUpdate(state=new_state, updated_keys=updated)
