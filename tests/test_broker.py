"""Tests for ingestion/broker.py and ingestion/live_cache.py"""

import sqlite3
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from core.session.errors import MalformedInputError, PieceNotFoundError, TrackNotFoundError
from core.session.types import LIVE_SESSION_NAME, MixState
from ingestion.broker import MixBroker, QueueSubscriber
from ingestion.live_cache import LiveCache
from ingestion.session_store import SessionStore

KICK = '$: s("bd")'
SNARE = '$: s("sd")'


def _disk_full() -> sqlite3.OperationalError:
    return sqlite3.OperationalError("disk full")


class FailingSubscriber:
    """Subscriber whose connection is gone."""

    def deliver(self, message: dict[str, Any]) -> None:
        raise ConnectionError("socket closed")


class TestBrokerStartup:
    def test_empty_store_starts_empty(self, broker: MixBroker, tmp_path: Path) -> None:
        assert broker.get_tracks() == {}
        assert broker.get_state() == MixState()
        assert broker.compiled == ""
        assert (tmp_path / "mix.strudel").read_text() == ""

    def test_reopen_restores_live_session(self, store: SessionStore, tmp_path: Path) -> None:
        first = MixBroker.open(store)
        first.put_track("kick", KICK)
        first.patch_state({"bpm": 120.0})
        second = MixBroker.open(store, artifact_path=tmp_path / "again.strudel")
        assert second.get_tracks() == {"kick": KICK}
        assert second.get_state().bpm == 120
        assert second.compiled == first.compiled
        assert (tmp_path / "again.strudel").read_text() == first.compiled

    def test_live_cache_from_missing_record(self) -> None:
        cache = LiveCache.from_record(None)
        assert cache.tracks == {}
        assert cache.last_compiled == ""


class TestBrokerTracks:
    def test_put_track_broadcasts_then_compiles(self, broker: MixBroker, recorder) -> None:
        broker.put_track("kick", KICK)
        assert recorder.types() == ["mixer:track", "mixer:compiled"]
        assert recorder.messages[0] == {"type": "mixer:track", "id": "kick", "code": KICK}

    def test_put_track_persists_live_session(
        self, broker: MixBroker, store: SessionStore
    ) -> None:
        broker.put_track("kick", KICK)
        record = store.get(LIVE_SESSION_NAME)
        assert record is not None
        assert record.tracks == {"kick": KICK}

    def test_put_track_writes_artifact(self, broker: MixBroker, tmp_path: Path) -> None:
        broker.put_track("kick", KICK)
        assert (tmp_path / "mix.strudel").read_text() == broker.compiled
        assert ".tag('kick').orbit(0)" in broker.compiled

    def test_identical_put_does_not_recompile(self, broker: MixBroker, recorder) -> None:
        broker.put_track("kick", KICK)
        broker.put_track("kick", KICK)
        assert len(recorder.of_type("mixer:track")) == 2
        assert len(recorder.of_type("mixer:compiled")) == 1

    def test_put_track_empty_id_rejected(self, broker: MixBroker) -> None:
        with pytest.raises(MalformedInputError):
            broker.put_track("  ", KICK)

    def test_get_track(self, broker: MixBroker) -> None:
        broker.put_track("kick", KICK)
        assert broker.get_track("kick") == KICK

    def test_get_unknown_track_raises(self, broker: MixBroker) -> None:
        with pytest.raises(TrackNotFoundError):
            broker.get_track("ghost")

    def test_tracks_listed_sorted(self, broker: MixBroker) -> None:
        broker.put_track("snare", SNARE)
        broker.put_track("kick", KICK)
        assert list(broker.get_tracks()) == ["kick", "snare"]

    def test_remove_unknown_track_is_noop(self, broker: MixBroker, recorder) -> None:
        assert broker.remove_track("ghost") is False
        assert recorder.messages == []

    def test_remove_track_cascades(self, broker: MixBroker, recorder) -> None:
        broker.put_track("kick", KICK)
        broker.put_track("snare", SNARE)
        broker.patch_state(
            {
                "muted": ("kick",),
                "solo": ("kick",),
                "groups": {"kick": 1, "snare": 2},
                "track_fx": {"kick": "glow"},
            }
        )
        recorder.messages.clear()

        assert broker.remove_track("kick") is True

        state = broker.get_state()
        assert "kick" not in state.muted
        assert "kick" not in state.solo
        assert "kick" not in state.groups
        assert "kick" not in state.track_fx
        assert state.groups == {"snare": 2}
        assert broker.get_tracks() == {"snare": SNARE}
        assert recorder.types() == ["mixer:track:removed", "mixer:compiled"]
        assert recorder.messages[0] == {"type": "mixer:track:removed", "id": "kick"}


class TestBrokerState:
    def test_patch_returns_and_broadcasts_state(self, broker: MixBroker, recorder) -> None:
        updated = broker.patch_state({"bpm": 120.0})
        assert updated.bpm == 120
        state_events = recorder.of_type("mixer:state")
        assert state_events == [{"type": "mixer:state", "state": updated.to_dict()}]

    def test_identical_patch_compiles_once(self, broker: MixBroker, recorder) -> None:
        broker.put_track("kick", KICK)
        recorder.messages.clear()
        broker.patch_state({"bpm": 120.0})
        broker.patch_state({"bpm": 120.0})
        assert len(recorder.of_type("mixer:state")) == 2
        assert len(recorder.of_type("mixer:compiled")) == 1

    def test_fx_only_patch_does_not_recompile(self, broker: MixBroker, recorder) -> None:
        broker.put_track("kick", KICK)
        recorder.messages.clear()
        broker.patch_state({"track_fx": {"kick": "sparkle"}})
        assert recorder.types() == ["mixer:state"]

    def test_unknown_field_rejected(self, broker: MixBroker, recorder) -> None:
        with pytest.raises(MalformedInputError, match="volume"):
            broker.patch_state({"volume": 11})
        assert recorder.messages == []

    def test_invalid_value_leaves_state_untouched(self, broker: MixBroker) -> None:
        broker.patch_state({"groups": {"kick": 1}})
        with pytest.raises(MalformedInputError):
            broker.patch_state({"groups": {"kick": 42}})
        assert broker.get_state().groups == {"kick": 1}

    def test_compiled_event_payload(self, broker: MixBroker, recorder) -> None:
        broker.put_track("kick", KICK)
        broker.put_track("snare", SNARE)
        recorder.messages.clear()
        broker.patch_state({"solo": ("snare",)})
        [event] = recorder.of_type("mixer:compiled")
        assert event["code"] == broker.compiled
        assert event["tracks"] == [
            {"id": "kick", "muted": False, "solo": False},
            {"id": "snare", "muted": False, "solo": True},
        ]
        assert event["state"]["solo"] == ["snare"]

    def test_kick_snare_solo_scenario(self, broker: MixBroker) -> None:
        broker.put_track("kick", KICK)
        broker.put_track("snare", SNARE)
        broker.patch_state({"muted": (), "solo": ("snare",)})
        assert broker.compiled == (
            "// == kick ==\n"
            "_$: s(\"bd\").tag('kick').orbit(0)\n\n"
            "// == snare ==\n"
            "$: s(\"sd\").tag('snare').orbit(1)\n\n"
        )


class TestBrokerPieces:
    def test_save_requires_live_session(self, broker: MixBroker) -> None:
        with pytest.raises(PieceNotFoundError):
            broker.save_piece("intro")

    @pytest.mark.parametrize("name", ["", "   ", LIVE_SESSION_NAME])
    def test_save_rejects_invalid_names(self, broker: MixBroker, name: str) -> None:
        broker.put_track("kick", KICK)
        with pytest.raises(MalformedInputError):
            broker.save_piece(name)

    def test_save_broadcasts_piece_list(self, broker: MixBroker, recorder) -> None:
        broker.put_track("kick", KICK)
        recorder.messages.clear()
        names = broker.save_piece("intro")
        assert names == ["intro"]
        assert recorder.messages == [{"type": "pieces:list", "pieces": ["intro"]}]

    def test_save_does_not_force_mute(self, broker: MixBroker, store: SessionStore) -> None:
        broker.put_track("kick", KICK)
        broker.save_piece("intro")
        record = store.get("intro")
        assert record is not None
        assert record.state["muted"] == []

    def test_save_then_load_roundtrip_all_muted(
        self, broker: MixBroker, recorder, tmp_path: Path
    ) -> None:
        broker.put_track("kick", KICK)
        broker.put_track("snare", SNARE)
        broker.patch_state({"bpm": 128.0, "groups": {"kick": 1}})
        broker.save_piece("verse")
        broker.put_track("hat", '$: s("hh")')
        broker.patch_state({"bpm": 90.0})
        recorder.messages.clear()

        broker.load_piece("verse")

        assert broker.get_tracks() == {"kick": KICK, "snare": SNARE}
        state = broker.get_state()
        assert state.muted == ("kick", "snare")
        assert state.bpm == 128
        assert state.groups == {"kick": 1}
        assert "$: s(" not in broker.compiled.replace("_$: s(", "")
        assert (tmp_path / "mix.strudel").read_text() == broker.compiled
        assert recorder.types() == ["mixer:init"]
        assert recorder.messages[0]["tracks"] == {"kick": KICK, "snare": SNARE}

    def test_load_persists_live_session(self, broker: MixBroker, store: SessionStore) -> None:
        broker.put_track("kick", KICK)
        broker.save_piece("intro")
        broker.remove_track("kick")
        broker.load_piece("intro")
        live = store.get(LIVE_SESSION_NAME)
        assert live is not None
        assert live.tracks == {"kick": KICK}
        assert live.state["muted"] == ["kick"]

    def test_load_missing_piece_raises(self, broker: MixBroker) -> None:
        with pytest.raises(PieceNotFoundError):
            broker.load_piece("nothing")

    def test_load_live_session_by_name_raises(self, broker: MixBroker) -> None:
        broker.put_track("kick", KICK)
        with pytest.raises(PieceNotFoundError):
            broker.load_piece(LIVE_SESSION_NAME)

    def test_delete_piece(self, broker: MixBroker, recorder) -> None:
        broker.put_track("kick", KICK)
        broker.save_piece("intro")
        broker.save_piece("outro")
        recorder.messages.clear()
        deleted, names = broker.delete_piece("intro")
        assert deleted is True
        assert names == ["outro"]
        assert recorder.messages == [{"type": "pieces:list", "pieces": ["outro"]}]

    def test_delete_live_session_refused(
        self, broker: MixBroker, recorder, store: SessionStore
    ) -> None:
        broker.put_track("kick", KICK)
        recorder.messages.clear()
        deleted, names = broker.delete_piece(LIVE_SESSION_NAME)
        assert deleted is False
        assert names == []
        assert recorder.messages == []
        assert broker.get_tracks() == {"kick": KICK}
        assert store.get(LIVE_SESSION_NAME) is not None

    def test_delete_missing_piece(self, broker: MixBroker, recorder) -> None:
        assert broker.delete_piece("nothing") == (False, [])
        assert recorder.messages == []


class TestBrokerFanOut:
    def test_subscribe_sends_snapshot(self, broker: MixBroker) -> None:
        received: list[dict[str, Any]] = []

        class Sink:
            def deliver(self, message: dict[str, Any]) -> None:
                received.append(message)

        broker.put_track("kick", KICK)
        broker.subscribe(Sink())
        [snapshot] = received
        assert snapshot["type"] == "mixer:init"
        assert snapshot["tracks"] == {"kick": KICK}
        assert snapshot["state"] == MixState().to_dict()
        assert snapshot["compiled"] == broker.compiled
        assert snapshot["pieces"] == []

    def test_failing_subscriber_dropped_others_served(
        self, broker: MixBroker, new_subscriber
    ) -> None:
        first = new_subscriber()
        broker.subscribe(FailingSubscriber())
        last = new_subscriber()
        # the failing one was already dropped while receiving its snapshot
        assert broker.subscriber_count == 2

        broker.put_track("kick", KICK)

        assert first.types() == ["mixer:track", "mixer:compiled"]
        assert last.types() == ["mixer:track", "mixer:compiled"]

    def test_full_queue_drops_subscriber(self, broker: MixBroker) -> None:
        slow = QueueSubscriber(maxsize=1, label="slow")
        broker.subscribe(slow)
        assert broker.subscriber_count == 1
        broker.put_track("kick", KICK)
        assert broker.subscriber_count == 0
        assert slow.queue.qsize() == 1

    def test_closed_queue_subscriber_dropped(self, broker: MixBroker) -> None:
        sub = QueueSubscriber(maxsize=10)
        broker.subscribe(sub)
        sub.close()
        assert broker.publish({"type": "play"}) == 0
        assert broker.subscriber_count == 0

    def test_unsubscribe(self, broker: MixBroker, recorder) -> None:
        broker.unsubscribe(recorder)
        broker.put_track("kick", KICK)
        assert recorder.messages == []

    def test_send_transport(self, broker: MixBroker, recorder) -> None:
        assert broker.send_transport("play") == 1
        assert recorder.messages == [{"type": "play"}]

    def test_send_unknown_transport_rejected(self, broker: MixBroker) -> None:
        with pytest.raises(MalformedInputError):
            broker.send_transport("rewind")


class TestBrokerFailures:
    def test_persistence_failure_propagates_without_broadcast(
        self, broker: MixBroker, recorder
    ) -> None:
        with (
            patch.object(broker.store, "upsert", side_effect=_disk_full()),
            pytest.raises(sqlite3.OperationalError),
        ):
            broker.put_track("kick", KICK)
        assert recorder.messages == []
        # cache keeps the mutation; the next successful write reconciles
        assert broker.get_tracks() == {"kick": KICK}

    def test_next_write_reconciles_store(self, broker: MixBroker, store: SessionStore) -> None:
        with (
            patch.object(broker.store, "upsert", side_effect=_disk_full()),
            pytest.raises(sqlite3.OperationalError),
        ):
            broker.put_track("kick", KICK)
        broker.put_track("snare", SNARE)
        live = store.get(LIVE_SESSION_NAME)
        assert live is not None
        assert live.tracks == {"kick": KICK, "snare": SNARE}

    def test_artifact_write_failure_is_not_fatal(
        self, store: SessionStore, tmp_path: Path
    ) -> None:
        blocked = tmp_path / "blocked"
        blocked.mkdir()
        broker = MixBroker.open(store, artifact_path=blocked)
        broker.put_track("kick", KICK)
        assert ".tag('kick')" in broker.compiled
