from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from .base import PersistedState, StateBackend

logger = logging.getLogger(__name__)

_STATE_KEY = "processed_feedback"


class SQLiteStateBackend(StateBackend):
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS state_documents (
                    state_key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            connection.commit()

    def load(self) -> PersistedState | None:
        if not self.db_path.exists():
            return None

        try:
            with self._connect() as connection:
                row = connection.execute(
                    """
                    SELECT payload
                    FROM state_documents
                    WHERE state_key = ?
                    """,
                    (_STATE_KEY,),
                ).fetchone()
        except sqlite3.DatabaseError as exc:
            logger.warning("Could not read state database %s: %s", self.db_path, exc)
            return None

        if row is None:
            return None

        try:
            payload = json.loads(row["payload"])
        except json.JSONDecodeError as exc:
            logger.warning("Stored state in %s is not valid JSON: %s", self.db_path, exc)
            return None

        state = PersistedState.from_dict(payload)
        if state is None:
            logger.warning("Stored state in %s has an unexpected layout; ignoring it", self.db_path)
        return state

    def save(self, state: PersistedState) -> None:
        self.init_db()
        now = datetime.now(timezone.utc).isoformat()

        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO state_documents (state_key, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(state_key) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (_STATE_KEY, json.dumps(state.to_dict()), now),
            )
            connection.commit()

    def clear(self) -> None:
        if not self.db_path.exists():
            return
        self.init_db()
        with self._connect() as connection:
            connection.execute("DELETE FROM state_documents WHERE state_key = ?", (_STATE_KEY,))
            connection.commit()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self.db_path)
        connection.row_factory = sqlite3.Row
        return connection
