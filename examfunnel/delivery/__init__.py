"""Persistence of learner state."""
from examfunnel.delivery.state_store import StateStore

__all__ = ["StateStore"]
