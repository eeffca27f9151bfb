"""Exception hierarchy for examfunnel."""

from __future__ import annotations


class ExamFunnelError(Exception):
    """Base class for errors raised by examfunnel."""


class ProviderError(ExamFunnelError):
    """A question provider returned an unusable response."""


class PrefabReviewError(ExamFunnelError):
    """An admin review operation on a cached question set could not be applied."""
