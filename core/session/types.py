"""Live session types — pure value objects.

These are the core data contracts for the session store, the compiler and
the broker. No I/O, no datetime.now(), no imports from ingestion/ or api/.

Wire format (JSON, camelCase as the browser mixer sends it)::

    {
        "muted": ["kick"],
        "solo": [],
        "bpm": 120,
        "globalFx": "all(x => x.room(0.2))",
        "groups": {"kick": 1},
        "trackFx": {"kick": "sparkle"}
    }
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

LIVE_SESSION_NAME = "_live"
"""Reserved piece name holding the live session. Never user-assignable."""

MIN_GROUP = 0
MAX_GROUP = 9


def _id_tuple(ids: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted({str(i) for i in ids}))


@dataclass(frozen=True)
class MixState:
    """Mixer state shared by every client of the live session.

    Attributes:
        muted: Track ids muted by the user (sorted, unique).
        solo: Track ids soloed by the user (sorted, unique).
        bpm: Tempo in beats per minute, or None when the script sets none.
        global_fx: Code appended after all tracks, never muted.
        groups: Track id -> group number 0-9 (keyboard mute groups).
        track_fx: Track id -> visual effect name.
    """

    muted: tuple[str, ...] = ()
    solo: tuple[str, ...] = ()
    bpm: float | None = None
    global_fx: str = ""
    groups: dict[str, int] = field(default_factory=dict)
    track_fx: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "muted", _id_tuple(self.muted))
        object.__setattr__(self, "solo", _id_tuple(self.solo))
        if self.bpm is not None and not math.isfinite(self.bpm):
            raise ValueError(f"bpm must be a finite number, got {self.bpm!r}")
        for track_id, group in self.groups.items():
            if isinstance(group, bool) or not isinstance(group, int):
                raise ValueError(f"group for {track_id!r} must be an int, got {group!r}")
            if not MIN_GROUP <= group <= MAX_GROUP:
                raise ValueError(
                    f"group for {track_id!r} must be in {MIN_GROUP}-{MAX_GROUP}, got {group}"
                )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> MixState:
        """Build a MixState from its JSON form.

        Read-side defaulting is permissive: missing or null fields become empty
        collections, unknown keys are ignored.
        """
        data = data or {}
        bpm = data.get("bpm")
        return cls(
            muted=tuple(data.get("muted") or ()),
            solo=tuple(data.get("solo") or ()),
            bpm=float(bpm) if bpm is not None else None,
            global_fx=data.get("globalFx") or "",
            groups={str(k): int(v) for k, v in (data.get("groups") or {}).items()},
            track_fx={str(k): str(v) for k, v in (data.get("trackFx") or {}).items()},
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the JSON wire format."""
        return {
            "muted": list(self.muted),
            "solo": list(self.solo),
            "bpm": _plain_number(self.bpm),
            "globalFx": self.global_fx,
            "groups": dict(sorted(self.groups.items())),
            "trackFx": dict(sorted(self.track_fx.items())),
        }

    def merged(self, **fields: Any) -> MixState:
        """Shallow merge: each given field replaces the current value wholesale.

        ``groups`` and ``track_fx`` are replaced, never deep-merged, so callers
        must send the complete map they want.
        """
        return replace(self, **fields)

    def without_track(self, track_id: str) -> MixState:
        """Drop every reference to ``track_id`` (mute, solo, group, fx)."""
        return replace(
            self,
            muted=tuple(i for i in self.muted if i != track_id),
            solo=tuple(i for i in self.solo if i != track_id),
            groups={k: v for k, v in self.groups.items() if k != track_id},
            track_fx={k: v for k, v in self.track_fx.items() if k != track_id},
        )

    def is_effectively_muted(self, track_id: str) -> bool:
        """Mute after solo precedence: any solo silences every non-soloed track."""
        if track_id in self.muted:
            return True
        return bool(self.solo) and track_id not in self.solo


def _plain_number(value: float | None) -> float | int | None:
    """Render integral floats as ints so 120.0 round-trips as 120."""
    if value is not None and float(value).is_integer():
        return int(value)
    return value


@dataclass(frozen=True)
class SessionRecord:
    """A stored session row.

    The store is agnostic to the shape of ``tracks`` and ``state``; they are
    kept here exactly as decoded from their JSON blobs.
    """

    name: str
    tracks: dict[str, str]
    state: dict[str, Any]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PieceSummary:
    """One entry of the saved-pieces listing."""

    name: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "createdAt": self.created_at, "updatedAt": self.updated_at}
