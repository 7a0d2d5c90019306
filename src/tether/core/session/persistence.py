"""Session persistence - upsert/load session rows in SQLite.

One row per session. Indexed columns (user, channel, status, model,
timestamps) support querying; everything else lives in the JSON ``data``
blob:

    {"messages": [...], "messageCount": N, "model": ..., "status": ...,
     "lastActivity": ms}

Note: This saves conversation state, not the live backend. Restored
sessions must start a new process before they accept input.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    status TEXT NOT NULL,
    model TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    data TEXT
)
"""

_UPSERT = """
INSERT OR REPLACE INTO sessions
    (id, user_id, channel_id, status, model, created_at, updated_at, data)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

_COLUMNS = "id, user_id, channel_id, status, model, created_at, updated_at, data"


@dataclass
class SessionRecord:
    """A persisted session row.

    Attributes:
        id: Session id.
        user_id: Owner.
        channel_id: Channel the session is bound to.
        status: Session status value.
        model: Model identifier.
        created_at: Creation time in epoch milliseconds.
        updated_at: Last write time in epoch milliseconds.
        data: Decoded JSON blob (history, model, status, lastActivity).
    """

    id: str
    user_id: str
    channel_id: str
    status: str
    model: str | None
    created_at: int
    updated_at: int
    data: dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> tuple[Any, ...]:
        return (
            self.id,
            self.user_id,
            self.channel_id,
            self.status,
            self.model,
            self.created_at,
            self.updated_at,
            json.dumps(self.data),
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row | tuple[Any, ...]) -> SessionRecord:
        """Create from a database row.

        Raises:
            ValueError: If the data blob is not a JSON object.
        """
        data = json.loads(row[7] or "{}")
        if not isinstance(data, dict):
            raise ValueError("session data must be a JSON object")
        return cls(
            id=row[0],
            user_id=row[1],
            channel_id=row[2],
            status=row[3],
            model=row[4],
            created_at=int(row[5]),
            updated_at=int(row[6]),
            data=data,
        )

    @property
    def message_count(self) -> int:
        return int(self.data.get("messageCount", len(self.data.get("messages", []))))


class SessionStore:
    """SQLite-backed store for session rows.

    Example:
        >>> store = SessionStore("./data/sessions.db")
        >>> store.open()
        >>> store.upsert(record)
        >>> [r.id for r in store.load(status="active")]
        >>> store.close()
    """

    def __init__(self, path: str | Path = MEMORY_PATH) -> None:
        self.path = str(path)
        self._conn: sqlite3.Connection | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> None:
        """Open the database, creating its directory and table.

        Raises:
            sqlite3.Error: If the database cannot be opened.
            OSError: If the directory cannot be created.
        """
        if self._conn is not None:
            return
        target = self.path
        if target != MEMORY_PATH:
            db_path = Path(target).expanduser().resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        self._conn = sqlite3.connect(target)
        self._conn.execute(_SCHEMA)
        self._conn.commit()
        logger.info("session_store_opened: path=%s", self.path)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def upsert(self, record: SessionRecord) -> None:
        """Insert or replace a session row."""
        conn = self._require()
        conn.execute(_UPSERT, record.to_row())
        conn.commit()

    def delete(self, session_id: str) -> None:
        conn = self._require()
        conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        conn.commit()

    def get(self, session_id: str) -> SessionRecord | None:
        conn = self._require()
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return SessionRecord.from_row(row) if row else None

    def load(self, status: str | None = None, user_id: str | None = None) -> Iterator[SessionRecord]:
        """Yield rows matching the filters, skipping corrupt ones.

        Args:
            status: Only rows with this status (e.g. "active").
            user_id: Only rows owned by this user.
        """
        conn = self._require()
        clauses: list[str] = []
        params: list[str] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)

        query = f"SELECT {_COLUMNS} FROM sessions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"

        for row in conn.execute(query, params).fetchall():
            try:
                yield SessionRecord.from_row(row)
            except (ValueError, TypeError) as err:
                logger.error("session_row_corrupt: id=%s, error=%s", row[0], err)

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("session store is not open")
        return self._conn
