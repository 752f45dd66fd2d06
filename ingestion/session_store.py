"""SQLite-backed store for saved pieces and the live session.

Local-first: one table keyed by piece name. Tracks and mixer state are
stored as JSON-serialized TEXT blobs; the store never inspects their shape.
The reserved name ``_live`` (``LIVE_SESSION_NAME``) holds the live session.

Schema (auto-created on first use):
    pieces(
        name        TEXT PK,
        tracks      TEXT,   -- JSON object id -> code
        state       TEXT,   -- JSON object (MixState wire format)
        created_at  TEXT,
        updated_at  TEXT
    )

Reads never raise for a missing name; they return None. Write failures
(disk full, locked or unreadable file) propagate as ``sqlite3.Error``.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from core.session.types import LIVE_SESSION_NAME, PieceSummary, SessionRecord

DEFAULT_DB_PATH = Path("data/mix.db")

_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS pieces (
    name        TEXT PRIMARY KEY,
    tracks      TEXT NOT NULL DEFAULT '{}',
    state       TEXT NOT NULL DEFAULT '{}',
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""

_UPSERT_SQL = """
INSERT INTO pieces (name, tracks, state, created_at, updated_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(name) DO UPDATE SET
    tracks = excluded.tracks,
    state = excluded.state,
    updated_at = excluded.updated_at
"""


def _row_to_record(row: sqlite3.Row) -> SessionRecord:
    """Convert a SQLite row to a SessionRecord."""
    return SessionRecord(
        name=row["name"],
        tracks=json.loads(row["tracks"]),
        state=json.loads(row["state"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SessionStore:
    """SQLite-backed persistent store for sessions ("pieces").

    Every method opens a short-lived connection in WAL mode. All callers
    run on the event-loop thread, so there is no concurrent writer.

    Args:
        db_path: Path to the SQLite database file. Created on first use.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH) -> None:
        self._db_path = db_path
        self.created = not db_path.exists()
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_TABLE_SQL)
            conn.commit()

    # ------------------------------------------------------------------ #
    # CRUD                                                                 #
    # ------------------------------------------------------------------ #

    def get(self, name: str) -> SessionRecord | None:
        """Fetch a session by name. Returns None if not found.

        Args:
            name: Piece name, or ``LIVE_SESSION_NAME`` for the live session.

        Returns:
            SessionRecord or None.
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM pieces WHERE name = ?", (name,)).fetchone()
        return _row_to_record(row) if row else None

    def upsert(
        self,
        name: str,
        tracks: dict[str, str],
        state: dict[str, Any],
        now: datetime,
    ) -> None:
        """Insert or replace a session by name (last write wins).

        ``created_at`` is kept from the first insert; ``updated_at`` is
        refreshed on every write.

        Args:
            name: Piece name.
            tracks: Track id -> code. Serialized as-is.
            state: Mixer state in wire format. Serialized as-is.
            now: Current datetime (caller supplies — no datetime.now() here).

        Raises:
            sqlite3.Error: If the database cannot be written.
        """
        iso_now = now.isoformat()
        with self._connect() as conn:
            conn.execute(
                _UPSERT_SQL,
                (name, json.dumps(tracks), json.dumps(state), iso_now, iso_now),
            )
            conn.commit()

    def delete(self, name: str) -> bool:
        """Delete a saved piece permanently.

        The live session is never deleted.

        Args:
            name: Piece name.

        Returns:
            True if a piece was deleted, False if refused or not found.
        """
        if name == LIVE_SESSION_NAME:
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM pieces WHERE name = ?", (name,))
            conn.commit()
        return result.rowcount > 0

    def list_pieces(self) -> list[PieceSummary]:
        """Return saved pieces, most recently updated first.

        The live session is excluded.

        Returns:
            List of PieceSummary objects.
        """
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT name, created_at, updated_at FROM pieces WHERE name != ? "
                "ORDER BY updated_at DESC, name ASC",
                (LIVE_SESSION_NAME,),
            ).fetchall()
        return [
            PieceSummary(name=r["name"], created_at=r["created_at"], updated_at=r["updated_at"])
            for r in rows
        ]

    def piece_names(self) -> list[str]:
        """Names of saved pieces in listing order."""
        return [p.name for p in self.list_pieces()]
