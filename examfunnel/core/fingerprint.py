"""
Question fingerprinting for duplicate detection.

Two canonical forms are derived from a question's stem and options:
- strict: boilerplate removed, whitespace collapsed, option order kept
- aggressive: lowercase alphanumerics only, option labels dropped, options sorted

A question counts as already seen when either form is present in a set.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from examfunnel.core.models import Question

BOILERPLATE_SENTENCES = [
    re.compile(r"A representative histology image is provided below\.?", re.IGNORECASE),
    re.compile(r"A representative image is provided below\.?", re.IGNORECASE),
]

STEM_SEPARATOR = "||"
OPTION_SEPARATOR = "|"

_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_OPTION_LABEL = re.compile(r"^[A-E][\).:\-\s]+", re.IGNORECASE)


def _strip_boilerplate(value: str) -> str:
    for pattern in BOILERPLATE_SENTENCES:
        value = pattern.sub("", value)
    return value


def normalize_strict(value: str | None) -> str:
    """Remove boilerplate sentences and collapse whitespace."""
    return _WHITESPACE.sub(" ", _strip_boilerplate(value or "").strip()).strip()


def normalize_aggressive(value: str | None) -> str:
    """Lowercase, replace punctuation with spaces, collapse whitespace."""
    value = _NON_ALNUM.sub(" ", _strip_boilerplate(value or "").lower())
    return _WHITESPACE.sub(" ", value).strip()


def strip_option_label(value: str | None) -> str:
    return _OPTION_LABEL.sub("", value or "").strip()


def fingerprint(question: Question) -> str:
    """
    Order-sensitive canonical key for a question.

    Two questions that differ only in whitespace or in the fixed
    "representative image" sentence share a fingerprint.
    """
    stem = normalize_strict(question.stem)
    options = OPTION_SEPARATOR.join(normalize_strict(option) for option in question.options)
    return f"{stem}{STEM_SEPARATOR}{options}"


def aggressive_fingerprint(question: Question) -> str:
    """Punctuation-, case- and option-order-insensitive key for a question."""
    stem = normalize_aggressive(question.stem)
    options = sorted(
        cleaned
        for cleaned in (normalize_aggressive(strip_option_label(option)) for option in question.options)
        if cleaned
    )
    return f"{stem}{STEM_SEPARATOR}{OPTION_SEPARATOR.join(options)}"


def fingerprint_variants(question: Question) -> list[str]:
    """Distinct non-empty fingerprints of a question, strict form first."""
    variants: list[str] = []
    for value in (fingerprint(question), aggressive_fingerprint(question)):
        value = value.strip()
        if value and value not in variants:
            variants.append(value)
    return variants


def has_seen(question: Question, fingerprints: set[str]) -> bool:
    return any(variant in fingerprints for variant in fingerprint_variants(question))


def build_fingerprint_set(questions: Iterable[Question]) -> set[str]:
    """Union of every fingerprint variant of ``questions``."""
    result: set[str] = set()
    for question in questions:
        result.update(fingerprint_variants(question))
    return result


@dataclass
class DedupeResult:
    """Questions kept by a dedupe pass and the fingerprint set afterwards."""

    unique: list[Question]
    fingerprints: set[str]


def filter_duplicate_questions(
    questions: Iterable[Question],
    existing: set[str] | None = None,
) -> DedupeResult:
    """
    Keep questions whose fingerprints are not yet known, in input order.

    Each kept question's fingerprints are added immediately, so later
    duplicates inside the same input are rejected as well. ``existing`` is
    copied, never modified.
    """
    seen = set(existing) if existing else set()
    unique: list[Question] = []

    for question in questions:
        variants = fingerprint_variants(question)
        if any(variant in seen for variant in variants):
            continue
        seen.update(variants)
        unique.append(question)

    return DedupeResult(unique=unique, fingerprints=seen)
