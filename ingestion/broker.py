"""ingestion/broker.py — Serializes live session mutations and fans out events.

                 ┌────────────┐
  agent/tool ───►│ HTTP route │───┐                      ┌──────────────┐
                 └────────────┘   │    ┌─────────────┐   │ SessionStore │
                                  ├───►│  MixBroker  │──►│   (SQLite)   │
                 ┌────────────┐   │    │  LiveCache  │   └──────────────┘
  browser   ◄───►│ WebSocket  │───┘    └──────┬──────┘
                 └────────────┘               │ compile_mix() ──► mix.strudel
                                              │ deliver()
                                              ▼
                                 every Subscriber (bounded queue each)

Every operation is a plain synchronous method with no suspension point.
Both transports call it from the event-loop thread, so two mutations can
never interleave; ordering is arrival order at the loop.

Mutation convention: mutate the cache, then persist. If persisting raises,
the error propagates to the caller and nothing is broadcast; the cache keeps
the mutation and the next successful write reconciles the store.

Fan-out is best-effort: ``deliver`` only enqueues, and a subscriber whose
queue is full (or that raises) is dropped without affecting the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import fields as dataclass_fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from core.session.errors import MalformedInputError, PieceNotFoundError, TrackNotFoundError
from core.session.types import LIVE_SESSION_NAME, MixState, PieceSummary
from infrastructure.metrics import (
    LatencyTimer,
    record_broadcast,
    record_compile,
    record_delivery_failure,
    record_mutation,
    set_subscriber_count,
)
from ingestion.live_cache import LiveCache
from ingestion.session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_TRACK_CODE = '$: s("bd")\n'
"""Body given to a track created without code."""

TRANSPORT_VERBS: frozenset[str] = frozenset({"play", "stop", "toggle", "play-once"})

_STATE_FIELDS: frozenset[str] = frozenset(f.name for f in dataclass_fields(MixState))

Message = dict[str, Any]
Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------


class Subscriber(Protocol):
    """A connected client as seen by the broker."""

    def deliver(self, message: Message) -> None:
        """Queue ``message`` for the client. Must not block."""
        ...


class SubscriberClosedError(Exception):
    """Raised when delivering to a subscriber whose connection has closed."""


class QueueSubscriber:
    """Subscriber backed by a bounded ``asyncio.Queue``.

    ``deliver`` enqueues without waiting; ``pump`` drains the queue to the
    connection in order. A slow client fills its own queue and gets dropped
    (``asyncio.QueueFull``) instead of stalling the broker.

    Args:
        maxsize: Messages buffered before delivery fails.
        label: Name used in log lines.
    """

    def __init__(self, maxsize: int = 256, label: str = "client") -> None:
        self.queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=maxsize)
        self.label = label
        self.closed = False

    def deliver(self, message: Message) -> None:
        if self.closed:
            raise SubscriberClosedError(self.label)
        self.queue.put_nowait(message)

    def close(self) -> None:
        self.closed = True

    async def pump(self, send: Callable[[Message], Awaitable[None]]) -> None:
        """Send queued messages until cancelled or the send fails."""
        while True:
            message = await self.queue.get()
            await send(message)

    def __repr__(self) -> str:
        return f"QueueSubscriber({self.label!r})"


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------


class MixBroker:
    """Sole mutator of the live session.

    Args:
        store: Durable session store.
        cache: Live cache this broker takes ownership of.
        artifact_path: File the compiled script is written to after each
            change, or None to skip writing.
        clock: Returns the current time for ``updated_at`` stamps.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: LiveCache,
        artifact_path: Path | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self._store = store
        self._cache = cache
        self._artifact_path = artifact_path
        self._clock = clock
        self._subscribers: list[Subscriber] = []

    @classmethod
    def open(
        cls,
        store: SessionStore,
        artifact_path: Path | None = None,
        clock: Clock = _utc_now,
    ) -> MixBroker:
        """Load the live session from ``store``, compile it and write the artifact."""
        cache = LiveCache.from_record(store.get(LIVE_SESSION_NAME))
        broker = cls(store, cache, artifact_path=artifact_path, clock=clock)
        broker._write_artifact(cache.last_compiled)
        logger.info(
            "Live session loaded: %d tracks, %d saved pieces",
            len(cache.tracks),
            len(store.list_pieces()),
        )
        return broker

    # ------------------------------------------------------------------ #
    # Read side                                                            #
    # ------------------------------------------------------------------ #

    @property
    def cache(self) -> LiveCache:
        """The owned live cache. Read it; mutate only through the broker."""
        return self._cache

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def get_tracks(self) -> dict[str, str]:
        return self._cache.sorted_tracks()

    def get_track(self, track_id: str) -> str:
        """Return one track's code.

        Raises:
            TrackNotFoundError: If the live session has no such track.
        """
        try:
            return self._cache.tracks[track_id]
        except KeyError:
            raise TrackNotFoundError(track_id) from None

    def get_state(self) -> MixState:
        return self._cache.state

    @property
    def compiled(self) -> str:
        return self._cache.last_compiled

    def list_pieces(self) -> list[PieceSummary]:
        return self._store.list_pieces()

    def snapshot(self) -> Message:
        """Full ``mixer:init`` payload: everything a late joiner needs."""
        return {
            "type": "mixer:init",
            "tracks": self._cache.sorted_tracks(),
            "state": self._cache.state.to_dict(),
            "compiled": self._cache.last_compiled,
            "pieces": self._store.piece_names(),
        }

    # ------------------------------------------------------------------ #
    # Subscriptions and fan-out                                            #
    # ------------------------------------------------------------------ #

    def subscribe(self, subscriber: Subscriber) -> None:
        """Add ``subscriber`` to the fan-out set and send it a snapshot."""
        self._subscribers.append(subscriber)
        set_subscriber_count(len(self._subscribers))
        logger.info("Subscriber connected (%d total)", len(self._subscribers))
        self._deliver(subscriber, self.snapshot())

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
            set_subscriber_count(len(self._subscribers))
            logger.info("Subscriber disconnected (%d total)", len(self._subscribers))

    def publish(self, message: Message) -> int:
        """Deliver ``message`` to every subscriber.

        Returns:
            Number of subscribers the message was queued for.
        """
        record_broadcast(str(message.get("type", "unknown")))
        delivered = 0
        for subscriber in list(self._subscribers):
            if self._deliver(subscriber, message):
                delivered += 1
        return delivered

    def _deliver(self, subscriber: Subscriber, message: Message) -> bool:
        try:
            subscriber.deliver(message)
        except Exception as exc:  # noqa: BLE001
            record_delivery_failure()
            logger.warning(
                "Dropping subscriber %r: %s delivery failed (%s)",
                subscriber,
                message.get("type"),
                type(exc).__name__,
            )
            self.unsubscribe(subscriber)
            return False
        return True

    def send_transport(self, verb: str) -> int:
        """Broadcast a transport command (play, stop, toggle, play-once)."""
        if verb not in TRANSPORT_VERBS:
            raise MalformedInputError(f"unknown transport command: {verb!r}")
        logger.info("Transport: %s", verb)
        return self.publish({"type": verb})

    # ------------------------------------------------------------------ #
    # Mutations                                                            #
    # ------------------------------------------------------------------ #

    def put_track(self, track_id: str, code: str, *, transport: str = "internal") -> None:
        """Create or replace a track, persist, announce it and recompile."""
        _require_name(track_id, "track id")
        if not isinstance(code, str):
            raise MalformedInputError(f"track code must be a string, got {type(code).__name__}")
        self._cache.tracks[track_id] = code
        self._persist_live()
        record_mutation(operation="put_track", transport=transport)
        logger.info("Track %r updated via %s", track_id, transport)
        self.publish({"type": "mixer:track", "id": track_id, "code": code})
        self._recompile()

    def remove_track(self, track_id: str, *, transport: str = "internal") -> bool:
        """Delete a track and every mute/solo/group/fx reference to it.

        Returns:
            False if the track did not exist (nothing changes), True otherwise.
        """
        if track_id not in self._cache.tracks:
            logger.info("Remove of unknown track %r via %s ignored", track_id, transport)
            return False
        del self._cache.tracks[track_id]
        self._cache.state = self._cache.state.without_track(track_id)
        self._persist_live()
        record_mutation(operation="remove_track", transport=transport)
        logger.info("Track %r removed via %s", track_id, transport)
        self.publish({"type": "mixer:track:removed", "id": track_id})
        self._recompile()
        return True

    def patch_state(
        self, changes: Mapping[str, Any], *, transport: str = "internal"
    ) -> MixState:
        """Shallow-merge ``changes`` into the mixer state.

        Args:
            changes: MixState field name -> new value. ``groups`` and
                ``track_fx`` replace the current maps wholesale.

        Returns:
            The updated MixState.

        Raises:
            MalformedInputError: For unknown fields or invalid values. The
                state is left untouched.
        """
        unknown = set(changes) - _STATE_FIELDS
        if unknown:
            raise MalformedInputError(f"unknown mix state fields: {sorted(unknown)}")
        try:
            updated = self._cache.state.merged(**changes)
        except (TypeError, ValueError) as exc:
            raise MalformedInputError(str(exc)) from exc
        self._cache.state = updated
        self._persist_live()
        record_mutation(operation="patch_state", transport=transport)
        logger.info("Mix state updated via %s: %s", transport, sorted(changes))
        self.publish({"type": "mixer:state", "state": updated.to_dict()})
        self._recompile()
        return updated

    def save_piece(self, name: str, *, transport: str = "internal") -> list[str]:
        """Copy the live session to a named piece (insert or overwrite).

        Returns:
            Saved piece names, most recent first.

        Raises:
            MalformedInputError: If ``name`` is empty or the reserved live name.
            PieceNotFoundError: If the live session was never written.
        """
        _require_piece_name(name)
        if self._store.get(LIVE_SESSION_NAME) is None:
            raise PieceNotFoundError(LIVE_SESSION_NAME)
        self._store.upsert(
            name, dict(self._cache.tracks), self._cache.state.to_dict(), self._clock()
        )
        record_mutation(operation="save_piece", transport=transport)
        logger.info("Piece %r saved via %s", name, transport)
        names = self._store.piece_names()
        self.publish({"type": "pieces:list", "pieces": names})
        return names

    def load_piece(self, name: str, *, transport: str = "internal") -> None:
        """Replace the live session with a saved piece, every track muted.

        Loaded pieces never start playing on their own; all subscribers get
        a fresh ``mixer:init`` since the whole session changed.

        Raises:
            PieceNotFoundError: If no piece has that name.
        """
        record = self._store.get(name) if name != LIVE_SESSION_NAME else None
        if record is None:
            raise PieceNotFoundError(name)
        state = MixState.from_dict(record.state)
        self._cache.tracks = dict(record.tracks)
        self._cache.state = state.merged(muted=tuple(record.tracks))
        self._persist_live()
        with LatencyTimer() as timer:
            code = self._cache.compile()
        changed = code != self._cache.last_compiled
        record_compile(changed=changed, latency_seconds=timer.elapsed)
        self._cache.last_compiled = code
        self._write_artifact(code)
        record_mutation(operation="load_piece", transport=transport)
        logger.info(
            "Piece %r loaded via %s (%d tracks, all muted)", name, transport, len(record.tracks)
        )
        self.publish(self.snapshot())

    def delete_piece(self, name: str, *, transport: str = "internal") -> tuple[bool, list[str]]:
        """Delete a saved piece. The live session is refused.

        Returns:
            (deleted, remaining piece names). ``deleted`` is False when the
            name is the live session or no such piece exists.
        """
        deleted = self._store.delete(name)
        names = self._store.piece_names()
        if not deleted:
            logger.info("Delete of piece %r via %s refused or not found", name, transport)
            return False, names
        record_mutation(operation="delete_piece", transport=transport)
        logger.info("Piece %r deleted via %s", name, transport)
        self.publish({"type": "pieces:list", "pieces": names})
        return True, names

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _persist_live(self) -> None:
        self._store.upsert(
            LIVE_SESSION_NAME,
            dict(self._cache.tracks),
            self._cache.state.to_dict(),
            self._clock(),
        )

    def _recompile(self) -> bool:
        """Compile; broadcast and write the artifact only if the output changed."""
        with LatencyTimer() as timer:
            code = self._cache.compile()
        changed = code != self._cache.last_compiled
        record_compile(changed=changed, latency_seconds=timer.elapsed)
        if not changed:
            return False
        self._cache.last_compiled = code
        self._write_artifact(code)
        self.publish(
            {
                "type": "mixer:compiled",
                "code": code,
                "tracks": self._cache.track_flags(),
                "state": self._cache.state.to_dict(),
            }
        )
        logger.info("Compiled %d tracks -> %d chars", len(self._cache.tracks), len(code))
        return True

    def _write_artifact(self, code: str) -> None:
        if self._artifact_path is None:
            return
        try:
            self._artifact_path.parent.mkdir(parents=True, exist_ok=True)
            self._artifact_path.write_text(code, encoding="utf-8")
        except OSError as exc:
            # Inspection aid only: the session is already persisted.
            logger.warning("Could not write compiled output to %s: %s", self._artifact_path, exc)


def _require_name(value: object, what: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise MalformedInputError(f"{what} must be a non-empty string")


def _require_piece_name(name: object) -> None:
    _require_name(name, "piece name")
    if name == LIVE_SESSION_NAME:
        raise MalformedInputError(f"{LIVE_SESSION_NAME!r} is reserved for the live session")
