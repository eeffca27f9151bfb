"""
Answer-Key Resolution and Validation.

Every question is checked here before a learner sees it:
- normalize_options: coerce provider option payloads to a clean list
- resolve_correct_answer: pick the authoritative correct option
- validate_answer_key: correct answer must match exactly one option
- prepare_for_session: shuffle and re-snap the key, or reject the question
- admit_candidate: gate that turns a RawCandidate into a trusted Question

Resolution order (strict):
    1. Choice Analysis table in the explanation (one row marked "Correct")
    2. Letter reference in the raw answer field ("B", "B)", "B. Heparin")
    3. Text match of the raw answer field against the options
    4. Empty raw answer
    5. Unresolved (raw answer with its letter prefix stripped)
"""

from __future__ import annotations

import random
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from loguru import logger
from pydantic import ValidationError

from examfunnel.core.models import Question, RawCandidate, SourceType

_PREFIX_PUNCT = re.compile(r"^[A-E]\s*[).:]\s*", re.IGNORECASE)
_PREFIX_DASH = re.compile(r"^[A-E]\s*-\s*", re.IGNORECASE)
_ANALYSIS_MARKER = re.compile(r"(?:\*\*)?(?:Answer\s+)?Choice Analysis:(?:\*\*)?", re.IGNORECASE)
_SEPARATOR_CELL = re.compile(r"^:?-{2,}:?$")
_CORRECT_RATIONALE = re.compile(r"^correct\b", re.IGNORECASE)
_LEADING_LETTER = re.compile(r"^([A-E])(?:[).:\s]|$)", re.IGNORECASE)
_BOUNDED_LETTER = re.compile(r"\b([A-E])\b")
_BARE_LETTER = re.compile(r"^([A-E])$", re.IGNORECASE)

LETTER_KEYS = ("A", "B", "C", "D", "E", "a", "b", "c", "d", "e")


class AnswerSource(str, Enum):
    """Which rule produced the resolved correct answer."""

    ANALYSIS = "analysis"
    LETTER = "letter"
    FIELD = "field"
    EMPTY = "empty"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class ResolvedAnswer:
    value: str
    source: AnswerSource


@dataclass(frozen=True)
class ChoiceAnalysisRow:
    option_text: str
    rationale: str


@dataclass(frozen=True)
class KeyValidation:
    ok: bool
    reason: str | None = None


@dataclass(frozen=True)
class PreparedQuestion:
    """A question whose correct answer is exactly one of its rendered options."""

    question: Question
    correct_source: AnswerSource
    shuffled: bool


# ============================================================================
# Option Normalization
# ============================================================================


def strip_option_prefix(text: Any) -> str:
    """Remove a leading option label such as ``A.``, ``B)``, ``C:`` or ``D -``."""
    cleaned = ("" if text is None else str(text)).strip()
    cleaned = _PREFIX_PUNCT.sub("", cleaned)
    cleaned = _PREFIX_DASH.sub("", cleaned)
    return cleaned.strip()


def normalize_option_text(text: Any) -> str:
    """Comparison form of an option: label stripped, lowercased."""
    return strip_option_prefix(text).lower()


def _clean(values: Iterable[Any]) -> list[str]:
    return [cleaned for cleaned in (strip_option_prefix(v) for v in values) if cleaned]


def normalize_options(raw: Any) -> list[str]:
    """
    Coerce a provider's option payload into an ordered list of option texts.

    Accepts a list, a mapping keyed by letters (A-E) or by numbers, any other
    mapping (values in insertion order), or a newline-delimited string.
    """
    if isinstance(raw, (list, tuple)):
        return _clean(raw)

    if isinstance(raw, Mapping):
        letter_values = _clean(raw[key] for key in LETTER_KEYS if key in raw)
        if letter_values:
            return letter_values

        numeric_keys = sorted((key for key in raw if str(key).isdigit()), key=lambda k: int(k))
        if numeric_keys:
            return _clean(raw[key] for key in numeric_keys)

        return _clean(raw.values())

    if isinstance(raw, str):
        return _clean(raw.splitlines())

    return []


# ============================================================================
# Choice Analysis
# ============================================================================


def _table_cells(line: str) -> list[str]:
    return [cell.strip() for cell in line.split("|") if cell.strip()]


def _is_separator(cells: list[str]) -> bool:
    return bool(cells) and all(_SEPARATOR_CELL.match(cell) for cell in cells)


def parse_choice_analysis(explanation: str | None) -> list[ChoiceAnalysisRow]:
    """
    Parse the "Choice Analysis" table embedded in an explanation.

    The table is the block of pipe-delimited lines following the marker.
    Rows up to and including the dash separator are treated as header.
    """
    text = explanation or ""
    match = _ANALYSIS_MARKER.search(text)
    if not match:
        return []

    block: list[str] = []
    for line in text[match.end():].splitlines():
        line = line.strip()
        if line.startswith("|"):
            block.append(line)
        elif block:
            break

    table = [_table_cells(line) for line in block]
    separator_at = next((i for i, cells in enumerate(table) if _is_separator(cells)), None)
    if separator_at is not None:
        table = table[separator_at + 1:]

    rows: list[ChoiceAnalysisRow] = []
    for cells in table:
        if len(cells) < 2 or _is_separator(cells):
            continue
        rows.append(ChoiceAnalysisRow(option_text=cells[0], rationale=cells[1]))
    return rows


def _match_option_from_text(needle: str, options: list[str]) -> str | None:
    raw = (needle or "").strip()
    if not raw:
        return None

    letter = _BARE_LETTER.match(raw)
    if letter:
        index = ord(letter.group(1).upper()) - ord("A")
        return options[index] if index < len(options) else None

    normalized = normalize_option_text(raw)
    if not normalized:
        return None

    exact = [opt for opt in options if normalize_option_text(opt) == normalized]
    if len(exact) == 1:
        return exact[0]
    if len(exact) > 1:
        return None

    fuzzy = [
        opt
        for opt in options
        if (norm := normalize_option_text(opt)) and (normalized in norm or norm in normalized)
    ]
    return fuzzy[0] if len(fuzzy) == 1 else None


def infer_correct_from_choice_analysis(explanation: str | None, options: list[str]) -> str | None:
    """Option marked "Correct" by exactly one analysis row, if it maps to one option."""
    rows = parse_choice_analysis(explanation)
    correct_rows = [row for row in rows if _CORRECT_RATIONALE.match(row.rationale.strip())]
    if len(correct_rows) != 1:
        return None
    return _match_option_from_text(correct_rows[0].option_text, options)


# ============================================================================
# Resolution & Validation
# ============================================================================


def _letter_reference(raw_answer: str, options: list[str]) -> str | None:
    # An answer that is verbatim one of the options is text, not a letter.
    lowered = raw_answer.lower()
    if any(opt.strip().lower() == lowered for opt in options):
        return None

    match = _LEADING_LETTER.match(raw_answer) or _BOUNDED_LETTER.search(raw_answer)
    if not match:
        return None
    index = ord(match.group(1).upper()) - ord("A")
    return options[index] if index < len(options) else None


def resolve_correct_answer(
    correct_answer: Any,
    options: list[str],
    explanation: str | None = None,
) -> ResolvedAnswer:
    """
    Determine the single authoritative correct option.

    Args:
        correct_answer: Raw answer field (letter, labelled text or plain text)
        options: Option texts in display order
        explanation: Explanation that may embed a Choice Analysis table

    Returns:
        ResolvedAnswer with the chosen value and the rule that produced it
    """
    options = list(options or [])

    if options and explanation:
        inferred = infer_correct_from_choice_analysis(explanation, options)
        if inferred is not None:
            return ResolvedAnswer(inferred, AnswerSource.ANALYSIS)

    raw_answer = ("" if correct_answer is None else str(correct_answer)).strip()
    if not raw_answer:
        return ResolvedAnswer("", AnswerSource.EMPTY)

    by_letter = _letter_reference(raw_answer, options)
    if by_letter is not None:
        return ResolvedAnswer(by_letter, AnswerSource.LETTER)

    if options:
        normalized = normalize_option_text(raw_answer)
        exact = [opt for opt in options if normalize_option_text(opt) == normalized]
        if len(exact) == 1:
            return ResolvedAnswer(exact[0], AnswerSource.FIELD)

        if normalized:
            partial = [
                opt
                for opt in options
                if (norm := normalize_option_text(opt)) and (normalized in norm or norm in normalized)
            ]
            if len(partial) == 1:
                return ResolvedAnswer(partial[0], AnswerSource.FIELD)

    return ResolvedAnswer(strip_option_prefix(raw_answer), AnswerSource.UNRESOLVED)


def validate_answer_key(question: Question) -> KeyValidation:
    """Check that a selectable question's key names exactly one of its options."""
    if not question.type.is_selectable:
        return KeyValidation(ok=True)

    options = question.options or []
    if len(options) < 2:
        return KeyValidation(ok=False, reason="Options missing")

    correct = (question.correct_answer or "").strip()
    if not correct:
        return KeyValidation(ok=False, reason="Correct answer missing")

    normalized = normalize_option_text(correct)
    matches = [opt for opt in options if normalize_option_text(opt) == normalized]
    if not matches:
        return KeyValidation(ok=False, reason="Correct answer not found in options")
    if len(matches) > 1:
        return KeyValidation(ok=False, reason="Correct answer ambiguous")
    return KeyValidation(ok=True)


def prepare_for_session(
    question: Question,
    shuffle: bool = False,
    rng: random.Random | None = None,
) -> PreparedQuestion | None:
    """
    Produce a display-ready copy of ``question`` or None to skip it.

    Options are normalized, the key resolved, the options optionally shuffled,
    and the resolved key re-located in the final order. Anything other than
    exactly one match rejects the question.
    """
    options = normalize_options(question.options)
    resolved = resolve_correct_answer(question.correct_answer, options, question.explanation)

    if not question.type.is_selectable:
        return PreparedQuestion(
            question=question.model_copy(update={"options": options, "correct_answer": resolved.value}),
            correct_source=resolved.source,
            shuffled=False,
        )

    if len(options) < 2:
        return None

    final_options = list(options)
    if shuffle:
        (rng or random).shuffle(final_options)

    target = normalize_option_text(resolved.value)
    snapped = [opt for opt in final_options if normalize_option_text(opt) == target]
    if len(snapped) != 1:
        return None

    prepared = question.model_copy(update={"options": final_options, "correct_answer": snapped[0]})
    if not validate_answer_key(prepared).ok:
        return None

    return PreparedQuestion(question=prepared, correct_source=resolved.source, shuffled=shuffle)


# ============================================================================
# Integrity Counters
# ============================================================================


@dataclass
class IntegrityCounters:
    """Per-source tallies of how answer keys were repaired or dropped."""

    total_questions_rendered: int = 0
    repaired_from_choice_analysis: int = 0
    repaired_from_letter: int = 0
    dropped_unrepairable: int = 0


@dataclass
class IntegrityStats:
    by_source: dict[str, IntegrityCounters] = field(default_factory=dict)

    def counters(self, source: str | None) -> IntegrityCounters:
        return self.by_source.setdefault(source or "other", IntegrityCounters())

    def record_rendered(self, source: str | None, prepared: PreparedQuestion) -> None:
        current = self.counters(source)
        current.total_questions_rendered += 1
        if prepared.correct_source == AnswerSource.ANALYSIS:
            current.repaired_from_choice_analysis += 1
        elif prepared.correct_source == AnswerSource.LETTER:
            current.repaired_from_letter += 1

    def record_dropped(self, source: str | None) -> None:
        self.counters(source).dropped_unrepairable += 1


def prepare_batch_for_session(
    questions: Iterable[Question],
    shuffle: bool = True,
    stats: IntegrityStats | None = None,
    rng: random.Random | None = None,
) -> tuple[list[Question], IntegrityStats]:
    """
    Prepare every question of a batch, skipping the ones that fail.

    Returns:
        Tuple of (prepared questions in input order, updated stats)
    """
    stats = stats if stats is not None else IntegrityStats()
    prepared_questions: list[Question] = []

    for question in questions:
        source = question.source_type.value if question.source_type else None
        prepared = prepare_for_session(question, shuffle=shuffle, rng=rng)
        if prepared is None:
            stats.record_dropped(source)
            logger.debug(f"Dropped question {question.id} ({source or 'other'}): answer key unrepairable")
            continue
        stats.record_rendered(source, prepared)
        prepared_questions.append(prepared.question)

    return prepared_questions, stats


# ============================================================================
# Candidate Gate
# ============================================================================


def admit_candidate(
    raw: RawCandidate | Mapping[str, Any],
    source_type: SourceType = SourceType.GENERATED,
    guide_id: str | None = None,
    module_id: str | None = None,
) -> Question | None:
    """
    Turn an untrusted provider payload into a Question, or reject it.

    Rejected: unparseable payloads, empty stems, and selectable questions
    whose answer key does not resolve to exactly one option.
    """
    if not isinstance(raw, RawCandidate):
        try:
            raw = RawCandidate.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"Rejected unparseable candidate: {e.error_count()} errors")
            return None

    if not raw.stem.strip():
        logger.debug("Rejected candidate with empty stem")
        return None

    options = normalize_options(raw.options)
    correct = raw.correct_answer
    if (correct is None or not str(correct).strip()) and raw.correct_index is not None:
        if 0 <= raw.correct_index < len(options):
            correct = options[raw.correct_index]

    resolved = resolve_correct_answer(correct, options, raw.explanation)
    question = Question(
        id=raw.id or uuid4().hex,
        type=raw.type,
        stem=raw.stem.strip(),
        options=options,
        correct_answer=resolved.value,
        explanation=raw.explanation,
        concepts=raw.concepts,
        difficulty=raw.difficulty,
        source_type=source_type,
        guide_id=guide_id,
        module_id=module_id,
    )

    validation = validate_answer_key(question)
    if not validation.ok:
        logger.debug(f"Rejected candidate {question.id}: {validation.reason}")
        return None
    return question
