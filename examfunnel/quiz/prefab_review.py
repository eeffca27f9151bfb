"""
Admin review of cached (prefab) question sets.

A cached set is seeded once per study guide by generating a few questions
per guide item. Reviewers then retire weak questions, optionally generating
a replacement that takes the same slot (``prefab_index``), and can restore
a retired original. All operations return new lists; the caller persists them.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime

from loguru import logger
from pydantic import ValidationError

from examfunnel.core.answer_key import admit_candidate
from examfunnel.core.fingerprint import build_fingerprint_set, filter_duplicate_questions, has_seen
from examfunnel.core.models import AdminReview, GuideItem, Question, ReviewReason, SourceType
from examfunnel.errors import PrefabReviewError
from examfunnel.quiz.providers import (
    CachedSet,
    GenerationPreferences,
    GenerationProvider,
    normalize_prefab_questions,
)

REASON_INSTRUCTIONS: dict[ReviewReason, str] = {
    ReviewReason.TOO_HARD: (
        "Make the question simpler: fewer steps, fewer extraneous details, "
        "straightforward cues; keep one-best-answer."
    ),
    ReviewReason.TOO_EASY: (
        "Make it more challenging: add a key lab/imaging nuance and require "
        "multi-step reasoning; keep it fair (no trickery)."
    ),
    ReviewReason.OFF_GUIDE: (
        "Strictly align to the provided item content; use item keywords and avoid off-topic topics."
    ),
    ReviewReason.AMBIGUOUS: "Clarify stem and lead-in, remove ambiguous wording, ensure one best answer.",
    ReviewReason.INCORRECT: "Fix the correct answer and explanation; ensure internal consistency.",
    ReviewReason.POOR_EXPLANATION: "Provide clearer rationale for all options; contrast key differentiators.",
    ReviewReason.FORMATTING: "Clean formatting, fix typos, consistent units and labels.",
    ReviewReason.DUPLICATE: (
        "Cover a different angle or sub-concept from the same item; avoid repeating the same key clue."
    ),
    ReviewReason.OTHER: "Follow reviewer note exactly.",
}

REVIEWER_REASONS = tuple(reason for reason in ReviewReason if reason != ReviewReason.RESTORED_ORIGINAL)


def reason_instruction(reason: ReviewReason) -> str:
    """Generation guidance for a replacement retired for ``reason``."""
    return REASON_INSTRUCTIONS.get(reason, "")


def parse_review_reason(value: ReviewReason | str | None) -> ReviewReason:
    """
    Validate a reviewer-supplied reason.

    Accepts the enum, its label ("Too hard") or its name ("TOO_HARD").

    Raises:
        PrefabReviewError: Unknown reason, or the system-only "Restored original"
    """
    if isinstance(value, ReviewReason):
        reason = value
    else:
        text = (value or "").strip()
        reason = next(
            (
                candidate
                for candidate in ReviewReason
                if text.lower() in (candidate.value.lower(), candidate.name.lower())
            ),
            None,
        )
        if reason is None:
            raise PrefabReviewError(f"Unknown review reason: {value!r}")

    if reason not in REVIEWER_REASONS:
        raise PrefabReviewError(f"'{reason.value}' cannot be chosen by a reviewer")
    return reason


def _find(questions: list[Question], question_id: str) -> int:
    for index, question in enumerate(questions):
        if question.id == question_id:
            return index
    raise PrefabReviewError("Question not found in prefab set.")


def _review(base: AdminReview | None, **changes) -> AdminReview:
    data = base.model_dump() if base else {}
    data.update(changes)
    try:
        return AdminReview.model_validate(data)
    except ValidationError as e:
        raise PrefabReviewError(f"Invalid review: {e.errors()[0]['msg']}") from e


def retire_question(
    questions: Iterable[Question],
    question_id: str,
    reason: ReviewReason | str,
    note: str | None = None,
    reviewer: str | None = None,
    now: datetime | None = None,
) -> list[Question]:
    """Mark one cached question retired with a reviewer reason."""
    normalized = normalize_prefab_questions(questions)
    index = _find(normalized, question_id)
    target = normalized[index]
    review = _review(
        target.admin_review,
        status="retired",
        reason=parse_review_reason(reason),
        note=note,
        reviewed_at=now or datetime.now(UTC),
        reviewed_by=reviewer or (target.admin_review.reviewed_by if target.admin_review else None),
    )
    normalized[index] = target.model_copy(update={"admin_review": review})
    logger.info(f"Retired prefab question {question_id}: {review.reason.value}")
    return normalized


def restore_question(
    questions: Iterable[Question],
    question_id: str,
    reviewer: str | None = None,
    now: datetime | None = None,
) -> list[Question]:
    """
    Re-activate a retired question.

    If it had been replaced, the replacement is retired with reason
    "Restored original" unless it already carries a reason.
    """
    now = now or datetime.now(UTC)
    normalized = normalize_prefab_questions(questions)
    index = _find(normalized, question_id)
    target = normalized[index]
    previous = target.admin_review

    normalized[index] = target.model_copy(
        update={
            "admin_review": _review(
                previous,
                status="active",
                reviewed_at=now,
                reviewed_by=reviewer or (previous.reviewed_by if previous else None),
            )
        }
    )

    replacement_id = previous.replaced_by_id if previous else None
    if replacement_id:
        for i, question in enumerate(normalized):
            if question.id != replacement_id:
                continue
            current = question.admin_review
            normalized[i] = question.model_copy(
                update={
                    "admin_review": _review(
                        current,
                        status="retired",
                        reason=(current.reason if current and current.reason else ReviewReason.RESTORED_ORIGINAL),
                        reviewed_at=now,
                        reviewed_by=reviewer or (current.reviewed_by if current else None),
                    )
                }
            )
            break

    logger.info(f"Restored prefab question {question_id}")
    return normalized


def _fallback_content(items: list[GuideItem]) -> str:
    return "\n\n".join(
        f"{item.title}\n{item.content}".strip() for item in items if (item.title or item.content)
    )


async def replace_prefab_question(
    cached_set: CachedSet,
    question_id: str,
    reason: ReviewReason | str,
    note: str | None,
    generator: GenerationProvider,
    reviewer: str | None = None,
    now: datetime | None = None,
) -> CachedSet:
    """
    Retire a cached question and generate a replacement for its slot.

    The replacement is generated from the question's source item (or the
    whole guide when the item is unknown), passes the answer-key gate, must
    not match any question already in the set, and is inserted directly
    after the retired original with the same ``prefab_index``.

    Returns:
        A new CachedSet; ``cached_set`` is left untouched

    Raises:
        PrefabReviewError: Unknown question, no source content, generation
            failure, invalid or duplicate replacement
    """
    now = now or datetime.now(UTC)
    parsed_reason = parse_review_reason(reason)
    retired = retire_question(cached_set.questions, question_id, parsed_reason, note, reviewer, now)
    index = _find(retired, question_id)
    target = retired[index]

    source_item = next(
        (item for item in cached_set.items if target.source_item_id and item.id == target.source_item_id),
        None,
    ) or next(
        (item for item in cached_set.items if target.source_item_title and item.title == target.source_item_title),
        None,
    )
    source_content = source_item.content if source_item and source_item.content else _fallback_content(cached_set.items)
    if not source_content.strip():
        raise PrefabReviewError("No source content available to generate a replacement question.")

    instruction_parts = [
        f"Item Title: {source_item.title}\nUse ONLY the provided item content."
        if source_item
        else "Use ONLY the provided guide content."
    ]
    if reason_instruction(parsed_reason):
        instruction_parts.append(reason_instruction(parsed_reason))
    review_note = target.admin_review.note if target.admin_review else None
    if review_note:
        instruction_parts.append(f"Reviewer note: {review_note}")

    preferences = GenerationPreferences(
        question_count=1,
        question_type="MULTIPLE_CHOICE",
        difficulty="clinical_vignette",
        custom_instructions="\n".join(instruction_parts),
        auto_question_count=False,
    )
    try:
        generated = await generator.generate(source_content, preferences)
    except Exception as e:
        raise PrefabReviewError(f"Failed to generate a replacement question: {e}") from e
    if not generated:
        raise PrefabReviewError("Failed to generate a replacement question.")

    candidate = admit_candidate(
        generated[0], SourceType.PREFAB, guide_id=cached_set.guide_id, module_id=target.module_id
    )
    if candidate is None:
        raise PrefabReviewError("Replacement question failed answer-key validation.")
    if has_seen(candidate, build_fingerprint_set(retired)):
        raise PrefabReviewError("Replacement matched an existing question. Please try again.")

    replacement = candidate.model_copy(
        update={
            "source_item_id": source_item.id if source_item else target.source_item_id,
            "source_item_title": source_item.title if source_item else target.source_item_title,
            "prefab_index": target.prefab_index,
            "admin_review": AdminReview(
                status="active",
                reviewed_at=now,
                reviewed_by=reviewer or (target.admin_review.reviewed_by if target.admin_review else None),
                replaced_from_id=target.id,
            ),
        }
    )

    retired[index] = target.model_copy(
        update={"admin_review": _review(target.admin_review, replaced_by_id=replacement.id)}
    )
    retired.insert(index + 1, replacement)

    logger.info(f"Replaced prefab question {question_id} with {replacement.id} ({parsed_reason.value})")
    return replace(cached_set, questions=retired)


FOCUS_PATTERN = ("diagnosis", "management", "diagnosis", "management", "mechanism")


def distribute_counts(item_count: int, total: int) -> list[int]:
    """Split ``total`` across ``item_count`` items; earlier items take the remainder."""
    if item_count <= 0:
        return []
    base, remainder = divmod(total, item_count)
    return [base + (1 if index < remainder else 0) for index in range(item_count)]


def build_focus_queue(total: int) -> list[str]:
    """
    Question focus per seeded slot: about 40% diagnosis, 40% management,
    the rest mechanism, interleaved.
    """
    diagnosis = int(math.floor(total * 0.4 + 0.5))
    management = diagnosis
    remaining = {
        "diagnosis": diagnosis,
        "management": management,
        "mechanism": max(0, total - diagnosis - management),
    }

    queue: list[str] = []
    while len(queue) < total and any(remaining.values()):
        for key in FOCUS_PATTERN:
            if len(queue) >= total:
                break
            if remaining[key] > 0:
                queue.append(key)
                remaining[key] -= 1
    return queue


def build_focus_instruction(focus_types: list[str]) -> str:
    if not focus_types:
        return ""
    if len(focus_types) == 1:
        return f"Focus type: {focus_types[0]} (diagnosis / management / mechanism)."
    numbered = " ".join(f"{i}) {focus}" for i, focus in enumerate(focus_types, start=1))
    return f"Generate {len(focus_types)} questions in this order: {numbered}"


def _pick_items(items: list[GuideItem], target: int, prefer_longest: bool) -> list[GuideItem]:
    if len(items) <= target:
        return list(items)
    if not prefer_longest:
        return items[:target]
    longest = sorted(range(len(items)), key=lambda i: len(items[i].content or ""), reverse=True)[:target]
    return [items[i] for i in sorted(longest)]


async def seed_cached_set(
    guide_id: str,
    guide_title: str,
    items: Iterable[GuideItem],
    preferences: GenerationPreferences,
    generator: GenerationProvider,
    per_item_count: int = 2,
    max_questions: int = 20,
    total_questions: int | None = None,
    prefer_longest_items: bool = False,
) -> CachedSet:
    """
    Build a cached question set for a study guide.

    The total (``total_questions``, else ``per_item_count`` per item, capped
    at ``max_questions``) is spread across the guide items. Each item gets
    its own generation request restricted to that item's content. Generated
    questions pass the answer-key gate and are deduplicated across items.

    Args:
        guide_id: Identifier of the guide the set belongs to
        guide_title: Display title of the guide
        items: Guide items, in guide order
        preferences: Base generation preferences
        generator: Generation provider
        per_item_count: Questions per item when no total is given
        max_questions: Upper bound on the set size
        total_questions: Explicit set size
        prefer_longest_items: With more items than questions, use the items
            with the most content instead of the first ones

    Returns:
        CachedSet whose questions carry their source item and ``prefab_index``

    Raises:
        PrefabReviewError: No guide items, or a generation request failed
    """
    items = list(items)
    if not items:
        raise PrefabReviewError("No study guide items to seed from.")

    requested = total_questions if total_questions is not None else len(items) * per_item_count
    total = max(1, min(requested, max_questions))
    chosen = _pick_items(items, total, prefer_longest_items)
    counts = distribute_counts(len(chosen), total)
    focus_queue = build_focus_queue(total)
    base = (preferences.custom_instructions or "").strip()

    questions: list[Question] = []
    fingerprints: set[str] = set()
    focus_index = 0
    dropped = 0

    for item, planned in zip(chosen, counts):
        count = min(planned, total - len(questions))
        if count <= 0:
            continue
        focus_types = focus_queue[focus_index : focus_index + count]
        focus_index += count

        instruction = "\n".join(
            part
            for part in (
                base,
                f"Item Title: {item.title}\nUse ONLY the provided item content.",
                build_focus_instruction(focus_types),
            )
            if part
        )
        request = preferences.model_copy(
            update={"question_count": count, "auto_question_count": False, "custom_instructions": instruction}
        )
        try:
            generated = await generator.generate(item.content, request)
        except Exception as e:
            raise PrefabReviewError(f"Failed to generate questions for item '{item.title}': {e}") from e

        admitted: list[Question] = []
        for raw in generated or []:
            question = admit_candidate(raw, SourceType.PREFAB, guide_id=guide_id)
            if question is None:
                dropped += 1
                continue
            admitted.append(
                question.model_copy(update={"source_item_id": item.id, "source_item_title": item.title})
            )

        accepted = filter_duplicate_questions(admitted, fingerprints).unique[:count]
        dropped += len(admitted) - len(accepted)
        fingerprints |= build_fingerprint_set(accepted)
        questions.extend(accepted)

    logger.info(
        f"Seeded cached set for guide '{guide_id}': {len(questions)}/{total} questions "
        f"from {len(chosen)} items ({dropped} dropped)"
    )
    return CachedSet(
        guide_id=guide_id,
        guide_title=guide_title,
        items=chosen,
        questions=normalize_prefab_questions(questions),
    )
