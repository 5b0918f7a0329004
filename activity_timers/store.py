"""SQLite timer store.

The store is the single source of truth for timer records. Writes are
conditional on the status the caller last read, so two processes sharing the
database cannot silently overwrite each other's transitions.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from activity_timers.clock import Clock, SystemClock
from activity_timers.errors import ConcurrencyConflict, InvalidState, NotFound
from activity_timers.models import Status, TrackedEntity

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS timers (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL DEFAULT 'activity',
    owner_id TEXT NOT NULL,
    status TEXT NOT NULL,
    start_time TEXT NOT NULL,
    paused_at TEXT,
    total_paused_seconds INTEGER NOT NULL DEFAULT 0,
    end_time TEXT,
    total_seconds INTEGER NOT NULL DEFAULT 0,
    category TEXT NOT NULL DEFAULT 'other',
    name TEXT NOT NULL DEFAULT 'Untitled Activity',
    project_id TEXT,
    notes TEXT NOT NULL DEFAULT '',
    include_in_report INTEGER NOT NULL DEFAULT 1,
    report_section TEXT NOT NULL DEFAULT 'fieldwork',
    pause_history TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_timers_owner_status ON timers(owner_id, status);
CREATE INDEX IF NOT EXISTS idx_timers_project ON timers(project_id);
CREATE INDEX IF NOT EXISTS idx_timers_start ON timers(start_time);
"""

# Columns callers may write; id, created_at, updated_at and version belong to the store
WRITABLE_COLUMNS = frozenset({
    "kind",
    "owner_id",
    "status",
    "start_time",
    "paused_at",
    "total_paused_seconds",
    "end_time",
    "total_seconds",
    "category",
    "name",
    "project_id",
    "notes",
    "include_in_report",
    "report_section",
    "pause_history",
    "metadata",
})

JSON_COLUMNS = frozenset({"pause_history", "metadata"})


def format_timestamp(dt: datetime) -> str:
    """Format a datetime as an ISO 8601 UTC string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _to_column(name: str, value: Any) -> Any:
    if name not in WRITABLE_COLUMNS:
        raise ValueError(f"Unknown timer field: {name}")
    if value is None:
        return None
    if name in JSON_COLUMNS:
        return json.dumps(value, default=_json_default)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _row_to_entity(row: sqlite3.Row) -> TrackedEntity:
    data = dict(row)
    data["pause_history"] = json.loads(data["pause_history"] or "[]")
    data["metadata"] = json.loads(data["metadata"] or "{}")
    data["include_in_report"] = bool(data["include_in_report"])
    return TrackedEntity.model_validate(data)


class TimerStore:
    """SQLite-backed timer store.

    Not thread-safe. Each thread should have its own TimerStore instance;
    separate processes may share one database file.
    """

    def __init__(self, conn: sqlite3.Connection, *, clock: Clock | None = None) -> None:
        self._conn = conn
        self._clock = clock or SystemClock()
        self._init_schema()

    def __enter__(self) -> "TimerStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path, *, clock: Clock | None = None) -> TimerStore:
        """Open or create a database at the given path."""
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        # Wait on another process's write lock instead of failing immediately
        conn.execute("PRAGMA busy_timeout = 5000")
        return cls(conn, clock=clock)

    @classmethod
    def open_in_memory(cls, *, clock: Clock | None = None) -> TimerStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn, clock=clock)

    def _server_timestamp(self) -> str:
        return format_timestamp(self._clock.now())

    def create(self, fields: Mapping[str, Any], *, entity_id: str | None = None) -> str:
        """Insert a new timer record and return its ID.

        Args:
            fields: Initial column values (see WRITABLE_COLUMNS).
            entity_id: Caller-chosen ID. A fresh UUID is assigned when omitted.

        Raises:
            InvalidState: If a record with entity_id already exists.
        """
        entity_id = entity_id or str(uuid.uuid4())
        columns = {name: _to_column(name, value) for name, value in fields.items()}
        now = self._server_timestamp()
        columns["created_at"] = now
        columns["updated_at"] = now

        names = ["id", *columns.keys()]
        placeholders = ", ".join("?" * len(names))
        try:
            self._conn.execute(
                f"INSERT INTO timers ({', '.join(names)}) VALUES ({placeholders})",
                [entity_id, *columns.values()],
            )
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            if self.exists(entity_id):
                raise InvalidState(f"Timer {entity_id} already exists") from e
            raise
        self._conn.commit()
        logger.debug("Created timer %s", entity_id)
        return entity_id

    def exists(self, entity_id: str) -> bool:
        cursor = self._conn.execute("SELECT 1 FROM timers WHERE id = ?", (entity_id,))
        return cursor.fetchone() is not None

    def get(self, entity_id: str) -> TrackedEntity:
        """Get a snapshot of one timer.

        Raises:
            NotFound: If no timer has this ID.
        """
        cursor = self._conn.execute("SELECT * FROM timers WHERE id = ?", (entity_id,))
        row = cursor.fetchone()
        if row is None:
            raise NotFound(entity_id)
        return _row_to_entity(row)

    def patch(
        self,
        entity_id: str,
        expected_status: Status | str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> TrackedEntity:
        """Update fields only if the timer's status is still expected_status.

        Every successful patch increments the record's version. Passing the
        version from the caller's snapshot also rejects writes made after a
        round trip back to the same status (active -> paused -> active).

        Returns the updated snapshot.

        Raises:
            NotFound: If no timer has this ID.
            ConcurrencyConflict: If the record changed since the caller's read.
        """
        expected = _to_column("status", expected_status)
        columns = {name: _to_column(name, value) for name, value in fields.items()}
        columns["updated_at"] = self._server_timestamp()
        assignments = ", ".join(f"{name} = ?" for name in columns)

        query = f"UPDATE timers SET {assignments}, version = version + 1 WHERE id = ? AND status = ?"
        params = [*columns.values(), entity_id, expected]
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)
        cursor = self._conn.execute(query, params)
        self._conn.commit()

        if cursor.rowcount == 0:
            if not self.exists(entity_id):
                raise NotFound(entity_id)
            logger.info(
                "Conditional write rejected for timer %s (expected %s, version %s)",
                entity_id,
                expected,
                expected_version,
            )
            raise ConcurrencyConflict(entity_id, expected)
        return self.get(entity_id)

    def get_by_prefix(self, prefix: str) -> TrackedEntity | None:
        """Find a timer by ID prefix.

        Returns:
            The timer if exactly one matches, None if none does.

        Raises:
            ValueError: If prefix matches multiple timers.
        """
        # Escape LIKE metacharacters to prevent pattern injection
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cursor = self._conn.execute(
            "SELECT * FROM timers WHERE id LIKE ? ESCAPE '\\'",
            (escaped + "%",),
        )
        rows = cursor.fetchall()
        if len(rows) == 0:
            return None
        if len(rows) > 1:
            ids = [row["id"][:8] for row in rows]
            raise ValueError(f"Ambiguous prefix '{prefix}' matches: {', '.join(ids)}")
        return _row_to_entity(rows[0])

    def query_by_owner(
        self,
        owner_id: str,
        statuses: Iterable[Status | str],
        *,
        kind: str | None = None,
    ) -> list[TrackedEntity]:
        """Get an owner's timers in the given statuses, most recent first."""
        status_values = sorted({_to_column("status", s) for s in statuses})
        if not status_values:
            return []
        placeholders = ",".join("?" * len(status_values))
        query = f"SELECT * FROM timers WHERE owner_id = ? AND status IN ({placeholders})"
        params: list[str] = [owner_id, *status_values]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind)
        query += " ORDER BY start_time DESC"
        cursor = self._conn.execute(query, params)
        return [_row_to_entity(row) for row in cursor.fetchall()]

    def list_entities(
        self,
        *,
        owner_id: str | None = None,
        project_id: str | None = None,
        status: Status | str | None = None,
        category: str | None = None,
        kind: str | None = None,
        limit: int | None = None,
    ) -> list[TrackedEntity]:
        """Query timers, optionally filtered. Ordered by start_time descending."""
        query = "SELECT * FROM timers WHERE 1=1"
        params: list[str | int] = []

        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        if project_id is not None:
            query += " AND project_id = ?"
            params.append(project_id)
        if status is not None:
            query += " AND status = ?"
            params.append(_to_column("status", status))
        if category is not None:
            query += " AND category = ?"
            params.append(category)
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind)

        query += " ORDER BY start_time DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = self._conn.execute(query, params)
        return [_row_to_entity(row) for row in cursor.fetchall()]

    def delete(self, entity_id: str) -> bool:
        """Delete a timer. Returns True if a record was removed."""
        cursor = self._conn.execute("DELETE FROM timers WHERE id = ?", (entity_id,))
        self._conn.commit()
        return cursor.rowcount > 0
