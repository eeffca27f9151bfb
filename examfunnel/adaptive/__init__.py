"""
Adaptive target selection.

Components:
- build_concept_universe: Candidate concepts from the guide and learner history
- select_targets: Focus/explore assignment of concepts to batch slots
- score_question_for_concept: Fit of a pooled question to a target
"""
from examfunnel.adaptive.target_selector import (
    TargetSelection,
    build_concept_universe,
    score_question_for_concept,
    select_targets,
)

__all__ = [
    "TargetSelection",
    "build_concept_universe",
    "score_question_for_concept",
    "select_targets",
]
