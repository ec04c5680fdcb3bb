"""
Simulator persistence port — a single durable slot for reload continuity.

The simulator only sees ``load()`` and ``save()``. What sits behind them is
the host's choice: process memory for tests, or a small SQLite key/value
table standing in for a browser's local storage slot.
"""

import sqlite3
from abc import ABC, abstractmethod
from typing import Dict, Optional

from geofeed_kernel.models.roaming import SimulatorState


class StatePort(ABC):
    """Load-on-start, save-on-mutate persistence for SimulatorState."""

    @abstractmethod
    def load(self) -> Optional[SimulatorState]:
        """Return the saved state, or None if the slot is empty."""

    @abstractmethod
    def save(self, state: SimulatorState) -> None:
        """Overwrite the slot with ``state``."""


class InMemoryStatePort(StatePort):
    """Keeps the serialized state in memory. Survives simulator re-creation only."""

    def __init__(self):
        self._payload: Optional[str] = None

    def load(self) -> Optional[SimulatorState]:
        if self._payload is None:
            return None
        return SimulatorState.model_validate_json(self._payload)

    def save(self, state: SimulatorState) -> None:
        self._payload = state.model_dump_json()


class SqliteStatePort(StatePort):
    """
    Key/value slot table in SQLite.
    Several simulators may share one database under different keys; use
    ``for_key`` to open further slots on the same connection.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        key: str = "geochat_npc_state_v2",
        connection: Optional[sqlite3.Connection] = None,
    ):
        self.db_path = db_path
        self.key = key
        self._owns_connection = connection is None
        if connection is None:
            connection = sqlite3.connect(db_path, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        self._conn = connection
        self._init_schema()

    def for_key(self, key: str) -> "SqliteStatePort":
        """Another slot backed by this port's connection."""
        return SqliteStatePort(self.db_path, key=key, connection=self._conn)

    def _init_schema(self) -> None:
        """Create the slot table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS roaming_state (
                key TEXT PRIMARY KEY,
                state_json TEXT NOT NULL,
                saved_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.commit()

    def load(self) -> Optional[SimulatorState]:
        row = self._conn.execute(
            "SELECT state_json FROM roaming_state WHERE key = ?", (self.key,)
        ).fetchone()
        if row is None:
            return None
        return SimulatorState.model_validate_json(row["state_json"])

    def save(self, state: SimulatorState) -> None:
        self._conn.execute(
            """
            INSERT INTO roaming_state (key, state_json, saved_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                state_json = excluded.state_json,
                saved_at = excluded.saved_at
            """,
            (self.key, state.model_dump_json()),
        )
        self._conn.commit()

    def keys(self) -> Dict[str, str]:
        """All stored keys and when they were last saved."""
        rows = self._conn.execute("SELECT key, saved_at FROM roaming_state").fetchall()
        return {r["key"]: r["saved_at"] for r in rows}

    def close(self) -> None:
        """Close the database connection. Ports from ``for_key`` leave it open."""
        if self._owns_connection:
            self._conn.close()
