"""Response processing against stored learner mastery."""
from examfunnel.learning.mastery_tracker import MasteryTracker, ResponseEvent, ResponseOutcome

__all__ = ["MasteryTracker", "ResponseEvent", "ResponseOutcome"]
