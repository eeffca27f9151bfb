"""
Quiz sourcing: providers, the funnel orchestrator and cached-bank review.
"""
from examfunnel.quiz.funnel import (
    BatchMeta,
    BatchResult,
    FunnelContext,
    FunnelOrchestrator,
    ModuleScope,
)
from examfunnel.quiz.prefab_review import (
    replace_prefab_question,
    restore_question,
    retire_question,
    seed_cached_set,
)
from examfunnel.quiz.providers import (
    CachedPoolProvider,
    CachedSet,
    CuratedPoolProvider,
    GenerationPreferences,
    GenerationProvider,
    HttpGenerationProvider,
    active_prefab_questions,
    normalize_prefab_questions,
)

__all__ = [
    "BatchMeta",
    "BatchResult",
    "CachedPoolProvider",
    "CachedSet",
    "CuratedPoolProvider",
    "FunnelContext",
    "FunnelOrchestrator",
    "GenerationPreferences",
    "GenerationProvider",
    "HttpGenerationProvider",
    "ModuleScope",
    "active_prefab_questions",
    "normalize_prefab_questions",
    "replace_prefab_question",
    "restore_question",
    "retire_question",
    "seed_cached_set",
]
