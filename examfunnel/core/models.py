"""
Question domain models.

Design:
- Question: trusted, validated question object delivered to learners
- RawCandidate: untrusted payload returned by a generation provider
- AdminReview: reviewer decision attached to a cached (prefab) question
- GuideItem: one titled section of the active study guide
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class QuestionType(str, Enum):
    """Question formats the funnel understands."""

    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    TRUE_FALSE = "TRUE_FALSE"
    DESCRIPTIVE = "DESCRIPTIVE"
    FLASHCARD = "FLASHCARD"

    @property
    def is_selectable(self) -> bool:
        """Whether the learner picks from a list of options."""
        return self in (QuestionType.MULTIPLE_CHOICE, QuestionType.TRUE_FALSE)


class SourceType(str, Enum):
    """Where a delivered question came from."""

    GOLD = "gold"  # Hand-reviewed curated bank
    PREFAB = "prefab"  # Cached per-guide bank
    GENERATED = "generated"  # On-demand generation


class ReviewReason(str, Enum):
    """
    Closed set of reasons a reviewer may give when retiring a cached question.

    OTHER requires a free-text note. RESTORED_ORIGINAL is assigned by the
    system when a retired original is restored over its replacement.
    """

    TOO_HARD = "Too hard"
    TOO_EASY = "Too easy"
    OFF_GUIDE = "Not related to study guide"
    AMBIGUOUS = "Ambiguous"
    INCORRECT = "Incorrect"
    POOR_EXPLANATION = "Poor explanation"
    FORMATTING = "Formatting/typo"
    DUPLICATE = "Duplicate"
    OTHER = "Other"
    RESTORED_ORIGINAL = "Restored original"


class AdminReview(BaseModel):
    """Reviewer decision for a cached question."""

    status: Literal["active", "retired"] = "active"
    reason: ReviewReason | None = None
    note: str | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    replaced_by_id: str | None = None
    replaced_from_id: str | None = None

    @field_validator("note")
    @classmethod
    def _strip_note(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _check_reason(self) -> AdminReview:
        if self.status == "retired" and self.reason is None:
            raise ValueError("retired questions need a review reason")
        if self.reason == ReviewReason.OTHER and not self.note:
            raise ValueError("a note is required when the reason is 'Other'")
        return self

    @property
    def is_retired(self) -> bool:
        return self.status == "retired"


class Question(BaseModel):
    """
    A question ready for the funnel.

    After answer-key validation, ``correct_answer`` equals exactly one entry
    of ``options`` for selectable types.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    type: QuestionType = QuestionType.MULTIPLE_CHOICE
    stem: str = ""
    options: list[str] = Field(default_factory=list)
    correct_answer: str = ""
    explanation: str = ""
    concepts: list[str] = Field(default_factory=list)
    difficulty: str = ""

    # Provenance
    source_type: SourceType | None = None
    guide_id: str | None = None
    module_id: str | None = None
    source_item_id: str | None = None
    source_item_title: str | None = None

    # Cached-bank bookkeeping
    prefab_index: int | None = None
    admin_review: AdminReview | None = None

    @property
    def is_retired(self) -> bool:
        return self.admin_review is not None and self.admin_review.is_retired


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


class RawCandidate(BaseModel):
    """
    Untrusted question payload from a generation provider.

    Option and answer fields keep whatever shape the provider sent; the
    answer-key gate (``admit_candidate``) turns a RawCandidate into a
    Question or rejects it.
    """

    model_config = ConfigDict(extra="ignore")

    kind: Literal["raw"] = "raw"
    id: str | None = None
    type: QuestionType = QuestionType.MULTIPLE_CHOICE
    stem: str = Field(
        default="",
        validation_alias=AliasChoices("stem", "questionText", "question_text", "question"),
    )
    options: Any = None
    correct_answer: Any = Field(
        default=None,
        validation_alias=AliasChoices("correct_answer", "correctAnswer", "answer"),
    )
    correct_index: int | None = Field(
        default=None,
        validation_alias=AliasChoices("correct_index", "correctIndex"),
    )
    explanation: str = ""
    concepts: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("concepts", "studyConcepts", "study_concepts", "tags"),
    )
    difficulty: str = ""

    @field_validator("correct_index", mode="before")
    @classmethod
    def _coerce_index(cls, value: Any) -> int | None:
        if isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> QuestionType:
        if isinstance(value, QuestionType):
            return value
        text = _coerce_text(value).strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return QuestionType(text)
        except ValueError:
            return QuestionType.MULTIPLE_CHOICE

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str | None:
        text = _coerce_text(value).strip()
        return text or None

    @field_validator("stem", "explanation", "difficulty", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str:
        return _coerce_text(value)

    @field_validator("concepts", mode="before")
    @classmethod
    def _coerce_concepts(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            return []
        return [str(v).strip() for v in value if v is not None and str(v).strip()]


@dataclass(frozen=True)
class GuideItem:
    """One titled section of a study guide."""

    id: str
    title: str
    content: str = ""
