"""
Funnel Orchestrator.

Builds one adaptive batch of questions:

    targets ─► gold pool ─► cached pool ─► generation backfill
                 (best unseen match per target, first source that has one wins)

Every delivered question is new to the learner: fingerprints of previously
seen questions, questions already on screen, and questions picked earlier
in the same batch are all excluded. Generated items pass the answer-key
gate before they are considered. Partial batches come back with a
shortfall count and a warning instead of an exception.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TypeVar

from loguru import logger

from examfunnel.adaptive.target_selector import (
    build_concept_universe,
    score_question_for_concept,
    select_targets,
)
from examfunnel.config import Settings, get_settings
from examfunnel.core.answer_key import admit_candidate
from examfunnel.core.fingerprint import (
    build_fingerprint_set,
    filter_duplicate_questions,
    fingerprint_variants,
    has_seen,
)
from examfunnel.core.mastery import FunnelState, normalize_concept_key
from examfunnel.core.models import GuideItem, Question, SourceType
from examfunnel.quiz.providers import (
    CachedPoolProvider,
    CuratedPoolProvider,
    GenerationPreferences,
    GenerationProvider,
)

MIXED_MODULE_ID = "mixed"
CUSTOM_GUIDE_ID = "custom"
SHORTFALL_WARNING = "Some questions failed validation; try again."

T = TypeVar("T")


@dataclass(frozen=True)
class ModuleScope:
    """One module taking part in a batch: its banks, guide and study content."""

    module_id: str
    guide_id: str
    content: str = ""
    guide_title: str = ""
    guide_items: tuple[GuideItem, ...] = ()


@dataclass
class FunnelContext:
    """
    Where a batch draws from.

    Single module: set ``module_id`` (gold bank) and ``guide_id`` (cached bank).
    Mixed: ``module_id="mixed"`` with two or more ``modules``.
    """

    guide_id: str | None = None
    guide_title: str | None = None
    guide_items: list[GuideItem] = field(default_factory=list)
    module_id: str | None = None
    modules: list[ModuleScope] = field(default_factory=list)

    @property
    def is_mixed(self) -> bool:
        return self.module_id == MIXED_MODULE_ID and len(self.modules) >= 2


@dataclass
class Candidate:
    """A pooled question with the scope it was loaded from."""

    question: Question
    source_type: SourceType
    module_id: str | None
    guide_id: str | None


@dataclass(frozen=True)
class BatchMeta:
    """Record of how a batch was assembled."""

    guide_id: str
    guide_title: str | None
    created_at: datetime
    total: int
    focus_count: int
    explore_count: int
    focus_targets: list[str]
    explore_targets: list[str]
    targets_per_question: list[str]
    target_by_question_id: dict[str, str]
    source_counts: dict[str, int]
    backfill_attempts: int
    dropped_generated: int
    dropped_invalid: int
    shortfall: int
    display_by_key: dict[str, str]


@dataclass
class BatchResult:
    questions: list[Question]
    meta: BatchMeta
    warning: str | None = None


@dataclass
class _Assembly:
    """Mutable bookkeeping for a single build_batch call."""

    fingerprints: set[str]
    selected: list[Question] = field(default_factory=list)
    target_by_question_id: dict[str, str] = field(default_factory=dict)
    source_counts: dict[str, int] = field(
        default_factory=lambda: {source.value: 0 for source in SourceType}
    )
    dropped_generated: int = 0
    dropped_invalid: int = 0

    def add(self, question: Question, target: str) -> None:
        self.selected.append(question)
        self.target_by_question_id[question.id] = target
        if question.source_type is not None:
            self.source_counts[question.source_type.value] += 1
        self.fingerprints.update(fingerprint_variants(question))


# ============================================================================
# Helpers
# ============================================================================


def build_generation_instruction(targets: list[str], display_by_key: dict[str, str]) -> str:
    """
    Instruction asking the generator for one question per target, in order.

    Returns an empty string when no target has a usable display name.
    """
    ordered = [
        value
        for value in ((display_by_key.get(key) or key or "").strip() for key in targets)
        if value
    ]
    if not ordered:
        return ""
    if len(ordered) == 1:
        return "\n".join(
            [
                f"Target concept: {ordered[0]}.",
                "Generate exactly 1 question primarily about this concept.",
                f'The question MUST include "{ordered[0]}" in studyConcepts.',
            ]
        )
    numbered = " ".join(f"{i}) {concept}" for i, concept in enumerate(ordered, start=1))
    return "\n".join(
        [
            f"Generate exactly {len(ordered)} questions in this order: {numbered}",
            "Each question MUST include its target concept in studyConcepts and be primarily about it.",
            "Avoid repeating stems/phrasing from prior questions.",
        ]
    )


def remove_targets_once(haystack: list[str], needles: Iterable[str]) -> list[str]:
    """Remove one occurrence of each needle, keeping the order of what is left."""
    counts = Counter(needles)
    remaining: list[str] = []
    for value in haystack:
        if counts[value] > 0:
            counts[value] -= 1
        else:
            remaining.append(value)
    return remaining


def pick_best_for_target(
    pool: list[Candidate],
    target_key: str,
    fingerprints: set[str],
) -> Candidate | None:
    """Highest-scoring unseen candidate; ties go to the earlier candidate."""
    best: Candidate | None = None
    best_score = 0
    for candidate in pool:
        if has_seen(candidate.question, fingerprints):
            continue
        score = score_question_for_concept(candidate.question, target_key)
        if best is None or score > best_score:
            best, best_score = candidate, score
    return best


def _module_hint(item_id: str, module_ids: list[str]) -> str | None:
    return next((module_id for module_id in module_ids if item_id.startswith(f"{module_id}-")), None)


def build_concept_module_map(context: FunnelContext) -> dict[str, str]:
    """
    Map concept keys to the module that should generate them.

    An item id prefixed ``"<module>-"`` decides first; otherwise the module
    whose own guide lists the concept.
    """
    module_ids = [scope.module_id for scope in context.modules]
    all_items = list(context.guide_items) + [item for scope in context.modules for item in scope.guide_items]

    mapping: dict[str, str] = {}
    for item in all_items:
        key = normalize_concept_key(item.title)
        hint = _module_hint(item.id or "", module_ids)
        if key and hint:
            mapping[key] = hint

    for scope in context.modules:
        for item in scope.guide_items:
            key = normalize_concept_key(item.title)
            if key:
                mapping.setdefault(key, scope.module_id)
    return mapping


def _requested_total(preferences: GenerationPreferences, settings: Settings) -> int:
    count = preferences.question_count
    if count is None:
        count = settings.default_question_count
    return max(1, min(settings.max_questions_per_batch, count))


# ============================================================================
# Orchestrator
# ============================================================================


class FunnelOrchestrator:
    """
    Assemble adaptive question batches from curated, cached and generated sources.

    The orchestrator never mutates the FunnelState it is given; mastery is
    updated only when responses are recorded.
    """

    def __init__(
        self,
        curated: CuratedPoolProvider | None,
        cached: CachedPoolProvider | None,
        generator: GenerationProvider | None,
        settings: Settings | None = None,
    ):
        self.curated = curated
        self.cached = cached
        self.generator = generator
        self.settings = settings or get_settings()

    async def _call(self, label: str, call: Awaitable[T], default: T) -> T:
        """Await a provider call with the configured timeout; failures yield ``default``."""
        try:
            return await asyncio.wait_for(call, timeout=self.settings.provider_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"{label} timed out after {self.settings.provider_timeout_seconds}s")
        except Exception as e:
            logger.warning(f"{label} failed: {e}")
        return default

    def _scopes(self, context: FunnelContext, guide_id: str) -> list[ModuleScope]:
        if context.is_mixed:
            scopes = [scope for scope in context.modules if scope.module_id and scope.guide_id]
            if len(scopes) >= 2:
                return scopes
            logger.warning(f"Mixed run has {len(scopes)} usable module scopes; building as a single guide")
        module_id = context.module_id if context.module_id != MIXED_MODULE_ID else None
        return [ModuleScope(module_id=module_id or "", guide_id=guide_id)]

    async def _load_pools(self, scopes: list[ModuleScope]) -> tuple[list[Candidate], list[Candidate]]:
        gold: list[Candidate] = []
        prefab: list[Candidate] = []

        for scope in scopes:
            module_id = scope.module_id or None

            if self.curated is not None and module_id:
                approved = await self._call(
                    f"Gold pool for module '{module_id}'", self.curated.get_approved(module_id), []
                )
                for question in approved or []:
                    tagged = question.model_copy(
                        update={
                            "source_type": SourceType.GOLD,
                            "guide_id": scope.guide_id,
                            "module_id": module_id,
                        }
                    )
                    gold.append(Candidate(tagged, SourceType.GOLD, module_id, scope.guide_id))

            if self.cached is not None and scope.guide_id and scope.guide_id != CUSTOM_GUIDE_ID:
                cached_set = await self._call(
                    f"Cached pool for guide '{scope.guide_id}'", self.cached.get_cached(scope.guide_id), None
                )
                for question in cached_set.active_questions() if cached_set else []:
                    tagged = question.model_copy(
                        update={
                            "source_type": SourceType.PREFAB,
                            "guide_id": scope.guide_id,
                            "module_id": module_id,
                        }
                    )
                    prefab.append(Candidate(tagged, SourceType.PREFAB, module_id, scope.guide_id))

        logger.debug(f"Loaded pools: {len(gold)} gold, {len(prefab)} prefab")
        return gold, prefab

    async def _generate_for_targets(
        self,
        assembly: _Assembly,
        content: str,
        targets: list[str],
        preferences: GenerationPreferences,
        display_by_key: dict[str, str],
        guide_id: str | None,
        module_id: str | None,
    ) -> int:
        """Request one generated question per target; returns how many targets were satisfied."""
        if self.generator is None or not targets:
            return 0

        instruction = build_generation_instruction(targets, display_by_key)
        base = (preferences.custom_instructions or "").strip()
        request = preferences.model_copy(
            update={
                "auto_question_count": False,
                "question_count": len(targets),
                "custom_instructions": "\n".join(part for part in (base, instruction) if part),
            }
        )

        raw_items = await self._call("Question generation", self.generator.generate(content, request), [])

        admitted: list[Question] = []
        for raw in raw_items or []:
            question = admit_candidate(raw, SourceType.GENERATED, guide_id=guide_id, module_id=module_id)
            if question is None:
                assembly.dropped_invalid += 1
            else:
                admitted.append(question)

        dedupe = filter_duplicate_questions(admitted, assembly.fingerprints)
        assembly.dropped_generated += len(admitted) - len(dedupe.unique)

        accepted = dedupe.unique[: len(targets)]
        for question, target in zip(accepted, targets):
            assembly.add(question, target)
        return len(accepted)

    async def build_batch(
        self,
        content: str,
        preferences: GenerationPreferences,
        context: FunnelContext | None,
        state: FunnelState,
        seen_fingerprints: Iterable[str],
        existing_questions: Iterable[Question] = (),
        extra_concepts: Iterable[str] = (),
    ) -> BatchResult:
        """
        Build one batch of new questions for the learner.

        Args:
            content: Study material used for generation (single module runs)
            preferences: Requested count and generation knobs
            context: Guide, module and bank scope of the batch
            state: Learner mastery snapshot (read only)
            seen_fingerprints: Fingerprints of questions the learner has already seen
            existing_questions: Questions currently on screen, also excluded
            extra_concepts: Additional concept labels to consider as targets

        Returns:
            BatchResult with at most the requested number of questions
        """
        context = context or FunnelContext()
        settings = self.settings
        total = _requested_total(preferences, settings)
        guide_id = context.guide_id or CUSTOM_GUIDE_ID

        assembly = _Assembly(fingerprints=set(seen_fingerprints) | build_fingerprint_set(existing_questions))

        guide_items = context.guide_items
        if not guide_items and context.is_mixed:
            guide_items = [item for scope in context.modules for item in scope.guide_items]
        universe = build_concept_universe(guide_items, state, extra_concepts)
        selection = select_targets(universe, state, total, settings.explore_ratio)
        display_by_key = dict(universe)

        scopes = self._scopes(context, guide_id)
        gold, prefab = await self._load_pools(scopes)

        missing: list[str] = []
        for target in selection.targets_per_question:
            chosen = pick_best_for_target(gold, target, assembly.fingerprints) or pick_best_for_target(
                prefab, target, assembly.fingerprints
            )
            if chosen is None:
                missing.append(target)
            else:
                assembly.add(chosen.question, target)

        backfill_attempts = 0
        remaining = list(missing)
        mixed = len(scopes) >= 2
        concept_modules = build_concept_module_map(context) if mixed else {}

        while remaining and backfill_attempts < settings.max_backfill_attempts:
            backfill_attempts += 1
            before = len(remaining)

            if mixed:
                fallback = scopes[0].module_id
                by_module: dict[str, list[str]] = {}
                for target in remaining:
                    module_id = concept_modules.get(target, fallback)
                    if all(scope.module_id != module_id for scope in scopes):
                        module_id = fallback
                    by_module.setdefault(module_id, []).append(target)

                for scope in scopes:
                    targets = by_module.get(scope.module_id, [])
                    if not targets or not scope.content.strip():
                        continue
                    consumed = await self._generate_for_targets(
                        assembly, scope.content, targets, preferences, display_by_key,
                        scope.guide_id, scope.module_id,
                    )
                    remaining = remove_targets_once(remaining, targets[:consumed])
            else:
                consumed = await self._generate_for_targets(
                    assembly, content, remaining, preferences, display_by_key,
                    guide_id, scopes[0].module_id or None,
                )
                remaining = remaining[consumed:]

            logger.debug(
                f"Backfill attempt {backfill_attempts}: {before - len(remaining)}/{before} targets satisfied"
            )
            if len(remaining) == before:
                break

        shortfall = max(0, total - len(assembly.selected))
        warning = SHORTFALL_WARNING if shortfall > 0 else None
        if warning:
            logger.warning(
                f"Batch for guide '{guide_id}' short by {shortfall}/{total} "
                f"(dropped {assembly.dropped_generated} duplicate, {assembly.dropped_invalid} invalid)"
            )

        meta = BatchMeta(
            guide_id=guide_id,
            guide_title=context.guide_title,
            created_at=datetime.now(UTC),
            total=total,
            focus_count=selection.focus_count,
            explore_count=selection.explore_count,
            focus_targets=list(selection.focus_targets),
            explore_targets=list(selection.explore_targets),
            targets_per_question=list(selection.targets_per_question),
            target_by_question_id=dict(assembly.target_by_question_id),
            source_counts=dict(assembly.source_counts),
            backfill_attempts=backfill_attempts,
            dropped_generated=assembly.dropped_generated,
            dropped_invalid=assembly.dropped_invalid,
            shortfall=shortfall,
            display_by_key=display_by_key,
        )
        return BatchResult(questions=assembly.selected[:total], meta=meta, warning=warning)

