"""
SQLite State Store for examfunnel.

Provides portable persistence for:
- FunnelState (per-concept mastery) per learner
- Processed response event ids, for idempotent updates
- Fingerprints of questions each learner has already seen

Database location: ~/.examfunnel/state.db
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from examfunnel.config import Settings, get_settings
from examfunnel.core.fingerprint import fingerprint_variants
from examfunnel.core.mastery import FunnelState
from examfunnel.core.models import Question

GLOBAL_MODULE = ""


class StateStore:
    """
    SQLite-backed persistence for learner funnel state.

    Handles:
    - FunnelState snapshots, stored as JSON per learner
    - Processed event ids, written in the same transaction as the state
    - Seen question fingerprints per learner and module
    """

    DEFAULT_DB_PATH = Path.home() / ".examfunnel" / "state.db"

    def __init__(self, db_path: Path | str | None = None):
        """
        Initialize the state store.

        Args:
            db_path: Custom database path (defaults to ~/.examfunnel/state.db)
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: sqlite3.Connection | None = None
        self._init_schema()

        logger.info(f"StateStore initialized at {self.db_path}")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> StateStore:
        """Open the store at the configured ``state_db_path``."""
        return cls((settings or get_settings()).state_db_path)

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_schema(self) -> None:
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS funnel_state (
                learner_id TEXT PRIMARY KEY,
                state_json TEXT NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS processed_events (
                event_id TEXT PRIMARY KEY,
                learner_id TEXT NOT NULL,
                processed_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS seen_fingerprints (
                learner_id TEXT NOT NULL,
                module_id TEXT NOT NULL DEFAULT '',
                fingerprint TEXT NOT NULL,
                question_id TEXT,
                seen_at TIMESTAMP NOT NULL,
                PRIMARY KEY (learner_id, module_id, fingerprint)
            )
        """)

        self.conn.commit()

    # =========================================================================
    # Funnel State
    # =========================================================================

    def load_state(self, learner_id: str) -> FunnelState:
        """
        Get the stored FunnelState for a learner.

        Returns:
            FunnelState (empty if the learner has none yet)
        """
        cursor = self.conn.cursor()
        cursor.execute("SELECT state_json FROM funnel_state WHERE learner_id = ?", (learner_id,))
        row = cursor.fetchone()
        if row is None:
            return FunnelState()
        return FunnelState.from_dict(json.loads(row["state_json"]))

    def save_state(self, learner_id: str, state: FunnelState, event_id: str | None = None) -> None:
        """
        Save a learner's FunnelState, optionally marking an event processed.

        Both writes commit together or not at all.

        Raises:
            sqlite3.Error: If the write fails (nothing is committed)
        """
        now = datetime.now(UTC).isoformat()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO funnel_state (learner_id, state_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(learner_id) DO UPDATE SET
                    state_json = excluded.state_json,
                    updated_at = excluded.updated_at
            """,
                (learner_id, json.dumps(state.to_dict()), now),
            )
            if event_id:
                self.conn.execute(
                    "INSERT INTO processed_events (event_id, learner_id, processed_at) VALUES (?, ?, ?)",
                    (event_id, learner_id, now),
                )

    def is_processed(self, event_id: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("SELECT 1 FROM processed_events WHERE event_id = ?", (event_id,))
        return cursor.fetchone() is not None

    # =========================================================================
    # Seen Questions
    # =========================================================================

    def record_seen(
        self,
        learner_id: str,
        module_id: str | None,
        questions: Iterable[Question],
    ) -> int:
        """
        Remember questions shown to a learner, one row per fingerprint variant.

        Returns:
            Number of new fingerprint rows
        """
        now = datetime.now(UTC).isoformat()
        rows = [
            (learner_id, module_id or GLOBAL_MODULE, variant, question.id, now)
            for question in questions
            for variant in fingerprint_variants(question)
        ]
        with self.conn:
            cursor = self.conn.executemany(
                """
                INSERT INTO seen_fingerprints (learner_id, module_id, fingerprint, question_id, seen_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(learner_id, module_id, fingerprint) DO NOTHING
            """,
                rows,
            )
        return max(0, cursor.rowcount)

    def fetch_seen_fingerprints(self, learner_id: str, module_id: str | None = None) -> set[str]:
        """
        Fingerprints of everything a learner has seen.

        Args:
            learner_id: Learner identifier
            module_id: Restrict to one module (None for all modules)
        """
        cursor = self.conn.cursor()
        if module_id is None:
            cursor.execute("SELECT fingerprint FROM seen_fingerprints WHERE learner_id = ?", (learner_id,))
        else:
            cursor.execute(
                "SELECT fingerprint FROM seen_fingerprints WHERE learner_id = ? AND module_id = ?",
                (learner_id, module_id),
            )
        return {row["fingerprint"] for row in cursor.fetchall()}

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
