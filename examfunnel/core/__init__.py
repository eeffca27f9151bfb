"""
Core Module - Shared domain models and algorithms.

Components:
- models: Question, RawCandidate, AdminReview, GuideItem
- fingerprint: Duplicate detection keys
- answer_key: Answer-key resolution, validation and session preparation
- mastery: Beta mastery model and FunnelState

Design Principle:
Everything here is pure; state is passed in and returned, never held.
"""

from examfunnel.core.answer_key import (
    AnswerSource,
    IntegrityStats,
    KeyValidation,
    PreparedQuestion,
    ResolvedAnswer,
    admit_candidate,
    normalize_options,
    prepare_batch_for_session,
    prepare_for_session,
    resolve_correct_answer,
    validate_answer_key,
)
from examfunnel.core.fingerprint import (
    DedupeResult,
    build_fingerprint_set,
    filter_duplicate_questions,
    fingerprint,
    fingerprint_variants,
)
from examfunnel.core.mastery import (
    ConceptMasteryState,
    ConfidenceRating,
    FunnelState,
    MasteryLevel,
    MasteryUpdate,
    apply_response,
    record_tutor_touch,
)
from examfunnel.core.models import (
    AdminReview,
    GuideItem,
    Question,
    QuestionType,
    RawCandidate,
    ReviewReason,
    SourceType,
)

__all__ = [
    # Models
    "AdminReview",
    "GuideItem",
    "Question",
    "QuestionType",
    "RawCandidate",
    "ReviewReason",
    "SourceType",
    # Fingerprinting
    "DedupeResult",
    "build_fingerprint_set",
    "filter_duplicate_questions",
    "fingerprint",
    "fingerprint_variants",
    # Answer keys
    "AnswerSource",
    "IntegrityStats",
    "KeyValidation",
    "PreparedQuestion",
    "ResolvedAnswer",
    "admit_candidate",
    "normalize_options",
    "prepare_batch_for_session",
    "prepare_for_session",
    "resolve_correct_answer",
    "validate_answer_key",
    # Mastery
    "ConceptMasteryState",
    "ConfidenceRating",
    "FunnelState",
    "MasteryLevel",
    "MasteryUpdate",
    "apply_response",
    "record_tutor_touch",
]
