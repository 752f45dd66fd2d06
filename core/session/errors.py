"""Error taxonomy for live session operations.

Refused deletes of the live session are not errors: they return ``False``.
Persistence failures surface as the underlying ``sqlite3.Error``.
"""

from __future__ import annotations


class SessionError(Exception):
    """Base class for live session errors."""


class TrackNotFoundError(SessionError, KeyError):
    """Raised when a track id does not exist in the live session."""

    def __init__(self, track_id: str) -> None:
        super().__init__(f"track not found: {track_id!r}")
        self.track_id = track_id

    def __str__(self) -> str:
        return str(self.args[0])


class PieceNotFoundError(SessionError, KeyError):
    """Raised when a named piece (or the live session itself) does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(f"piece not found: {name!r}")
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class MalformedInputError(SessionError, ValueError):
    """Raised for unparseable or incomplete input on destructive operations."""
