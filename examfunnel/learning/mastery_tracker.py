"""
Mastery Tracker with Bayesian Updates and Idempotent Persistence.

This module applies learner responses to the stored FunnelState:
- Beta(alpha, beta) update per concept tag of the answered question
- Event ids make repeated deliveries of the same response a no-op
- State and processed-event marker are written in one transaction
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime

from loguru import logger

from examfunnel.core.mastery import (
    ConfidenceRating,
    FunnelState,
    apply_response,
    record_tutor_touch,
)
from examfunnel.core.models import Question
from examfunnel.delivery.state_store import StateStore


@dataclass
class ResponseEvent:
    """One answered question, as reported by the client."""

    event_id: str
    learner_id: str
    question: Question
    is_correct: bool
    rating: ConfidenceRating
    response_time_ms: float | None = None
    tutor_used_before_answer: bool = False
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ResponseOutcome:
    """Result of processing a ResponseEvent."""

    applied: bool
    persisted: bool
    updated_keys: list[str]
    state: FunnelState


class MasteryTracker:
    """
    Track learner mastery per concept from answered questions.

    Processing is at-most-once per event id: an event is marked processed
    only in the same commit that stores its effect.
    """

    def __init__(self, store: StateStore):
        """
        Initialize tracker with a state store.

        Args:
            store: SQLite StateStore holding learner state
        """
        self.store = store

    def record_response(self, event: ResponseEvent) -> ResponseOutcome:
        """
        Apply a response to the learner's stored mastery state.

        Args:
            event: The response to apply

        Returns:
            ResponseOutcome; applied=False when the event was already processed,
            persisted=False when the new state could not be written
        """
        if self.store.is_processed(event.event_id):
            logger.debug(f"Event {event.event_id} already processed - skipping")
            return ResponseOutcome(
                applied=False,
                persisted=True,
                updated_keys=[],
                state=self.store.load_state(event.learner_id),
            )

        current = self.store.load_state(event.learner_id)
        update = apply_response(
            current,
            event.question,
            is_correct=event.is_correct,
            rating=event.rating,
            response_time_ms=event.response_time_ms,
            tutor_used_before_answer=event.tutor_used_before_answer,
            now=event.occurred_at,
        )

        try:
            self.store.save_state(event.learner_id, update.state, event_id=event.event_id)
        except sqlite3.IntegrityError:
            # Another writer committed this event between the check and the write.
            logger.info(f"Event {event.event_id} was recorded concurrently - skipping")
            return ResponseOutcome(
                applied=False,
                persisted=True,
                updated_keys=[],
                state=self.store.load_state(event.learner_id),
            )
        except sqlite3.Error as e:
            logger.error(f"Failed to persist mastery update for event {event.event_id}: {e}")
            return ResponseOutcome(applied=True, persisted=False, updated_keys=update.updated_keys, state=update.state)

        logger.debug(
            f"Event {event.event_id}: updated {len(update.updated_keys)} concepts for learner {event.learner_id}"
        )
        return ResponseOutcome(applied=True, persisted=True, updated_keys=update.updated_keys, state=update.state)

    def record_tutor_touch(
        self,
        learner_id: str,
        question: Question,
        now: datetime | None = None,
    ) -> FunnelState:
        """Count a tutor consultation; a failed write is logged and the new state still returned."""
        update = record_tutor_touch(self.store.load_state(learner_id), question, now=now)
        try:
            self.store.save_state(learner_id, update.state)
        except sqlite3.Error as e:
            logger.warning(f"Failed to persist tutor touch for learner {learner_id}: {e}")
        return update.state
