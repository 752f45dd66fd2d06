"""In-memory mirror of the live session.

The cache is the source of truth for compilation. It is owned by a single
``MixBroker``, which is its only mutator; everything else reads snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from core.session.compiler import compile_mix
from core.session.types import MixState, SessionRecord


@dataclass
class LiveCache:
    """Mutable live session: tracks, mixer state and the last compiled script.

    Attributes:
        tracks: Track id -> code.
        state: Current mixer state.
        last_compiled: Output of the last compilation, used for change detection.
    """

    tracks: dict[str, str] = field(default_factory=dict)
    state: MixState = field(default_factory=MixState)
    last_compiled: str = ""

    @classmethod
    def from_record(cls, record: SessionRecord | None) -> LiveCache:
        """Seed the cache from the stored live session (empty if absent)."""
        if record is None:
            cache = cls()
        else:
            cache = cls(tracks=dict(record.tracks), state=MixState.from_dict(record.state))
        cache.last_compiled = cache.compile()
        return cache

    def compile(self) -> str:
        return compile_mix(self.tracks, self.state)

    def sorted_tracks(self) -> dict[str, str]:
        return {track_id: self.tracks[track_id] for track_id in sorted(self.tracks)}

    def track_flags(self) -> list[dict[str, object]]:
        """Raw (not solo-resolved) mute/solo flags per track, sorted by id."""
        return [
            {
                "id": track_id,
                "muted": track_id in self.state.muted,
                "solo": track_id in self.state.solo,
            }
            for track_id in sorted(self.tracks)
        ]
