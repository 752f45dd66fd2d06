"""
Shared fixtures for the test suite.

Centralizes reusable test infrastructure so individual test files
don't need to repeat store/broker/app boilerplate.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.main import create_app
from core.config import SyncConfig
from ingestion.broker import MixBroker
from ingestion.session_store import SessionStore

FROZEN_NOW = datetime(2026, 2, 21, 12, 0, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Clock and subscriber doubles
# ---------------------------------------------------------------------------


class TickingClock:
    """Deterministic clock: each call is one second after the previous one."""

    def __init__(self, start: datetime = FROZEN_NOW) -> None:
        self._next = start

    def __call__(self) -> datetime:
        now = self._next
        self._next = now + timedelta(seconds=1)
        return now


class RecordingSubscriber:
    """Subscriber that keeps every delivered message in order."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    def deliver(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == message_type]

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]


# ---------------------------------------------------------------------------
# Store and broker
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(db_path=tmp_path / "test_mix.db")


@pytest.fixture()
def broker(store: SessionStore, tmp_path: Path) -> MixBroker:
    return MixBroker.open(store, artifact_path=tmp_path / "mix.strudel", clock=TickingClock())


@pytest.fixture()
def new_subscriber(broker: MixBroker) -> Callable[[], RecordingSubscriber]:
    """Factory attaching a fresh RecordingSubscriber to ``broker``.

    The connect snapshot is cleared so tests only see later events.
    """

    def _make() -> RecordingSubscriber:
        sub = RecordingSubscriber()
        broker.subscribe(sub)
        sub.messages.clear()
        return sub

    return _make


@pytest.fixture()
def recorder(new_subscriber: Callable[[], RecordingSubscriber]) -> RecordingSubscriber:
    return new_subscriber()


# ---------------------------------------------------------------------------
# FastAPI app and test client
# ---------------------------------------------------------------------------


@pytest.fixture()
def config(tmp_path: Path) -> SyncConfig:
    """Config rooted in ``tmp_path`` with the polling watchers disabled."""
    return SyncConfig(
        db_path=tmp_path / "data" / "mix.db",
        work_dir=tmp_path,
        watch_files=False,
    )


@pytest.fixture()
def app(config: SyncConfig) -> FastAPI:
    return create_app(config)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    """``TestClient`` with the lifespan running (store, broker, side channels)."""
    with TestClient(app) as c:
        yield c
