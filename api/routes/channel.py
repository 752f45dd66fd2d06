"""api/routes/channel.py — WebSocket channel for browsers (served at ``/``).

On connect a client receives, in order:
    1. ``{"type": "code", "content": ...}``  current editor mirror content
    2. ``{"type": "mixer:init", ...}``       full live session snapshot

Inbound message types:
    code                     editor content -> editor mirror file
    error | warn             latest problem -> errors file
    debug                    one line -> debug file
    mixer:track              replace a track's code
    mixer:track:add          create a track (default body if no code)
    mixer:track:remove       remove a track
    mixer:state              partial mixer state
    pieces:save | pieces:load | pieces:delete

A malformed or failing message is logged and skipped; the connection stays
open. Outbound events are queued per client and sent by a pump task.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from api.deps import get_broker, get_config, get_editor_mirror, get_session_log
from api.schemas.channel import (
    CodeMessage,
    DebugMessage,
    PieceMessage,
    ProblemMessage,
    StateMessage,
    TrackAddMessage,
    TrackMessage,
    TrackRemoveMessage,
)
from core.config import SyncConfig
from core.session.errors import SessionError
from ingestion.broker import DEFAULT_TRACK_CODE, MixBroker, QueueSubscriber
from ingestion.side_channels import EditorMirror, SessionLog

logger = logging.getLogger(__name__)
router = APIRouter(tags=["channel"])

TRANSPORT = "ws"


@dataclass(frozen=True)
class ChannelContext:
    """Collaborators an inbound message can act on."""

    broker: MixBroker
    mirror: EditorMirror
    session_log: SessionLog


# ---------------------------------------------------------------------------
# Inbound handlers
# ---------------------------------------------------------------------------


def _on_code(msg: dict[str, Any], ctx: ChannelContext) -> None:
    ctx.mirror.write_from_client(CodeMessage.model_validate(msg).content)


def _on_problem(msg: dict[str, Any], ctx: ChannelContext) -> None:
    problem = ProblemMessage.model_validate(msg)
    ctx.session_log.record_problem(msg["type"], problem.message)


def _on_debug(msg: dict[str, Any], ctx: ChannelContext) -> None:
    ctx.session_log.append_debug(DebugMessage.model_validate(msg).msg)


def _on_track(msg: dict[str, Any], ctx: ChannelContext) -> None:
    track = TrackMessage.model_validate(msg)
    ctx.broker.put_track(track.id, track.code, transport=TRANSPORT)


def _on_track_add(msg: dict[str, Any], ctx: ChannelContext) -> None:
    track = TrackAddMessage.model_validate(msg)
    ctx.broker.put_track(track.id, track.code or DEFAULT_TRACK_CODE, transport=TRANSPORT)


def _on_track_remove(msg: dict[str, Any], ctx: ChannelContext) -> None:
    ctx.broker.remove_track(TrackRemoveMessage.model_validate(msg).id, transport=TRANSPORT)


def _on_state(msg: dict[str, Any], ctx: ChannelContext) -> None:
    patch = StateMessage.model_validate(msg).state
    ctx.broker.patch_state(patch.changes(), transport=TRANSPORT)


def _on_piece_save(msg: dict[str, Any], ctx: ChannelContext) -> None:
    ctx.broker.save_piece(PieceMessage.model_validate(msg).name, transport=TRANSPORT)


def _on_piece_load(msg: dict[str, Any], ctx: ChannelContext) -> None:
    ctx.broker.load_piece(PieceMessage.model_validate(msg).name, transport=TRANSPORT)


def _on_piece_delete(msg: dict[str, Any], ctx: ChannelContext) -> None:
    ctx.broker.delete_piece(PieceMessage.model_validate(msg).name, transport=TRANSPORT)


HANDLERS: dict[str, Callable[[dict[str, Any], ChannelContext], None]] = {
    "code": _on_code,
    "error": _on_problem,
    "warn": _on_problem,
    "debug": _on_debug,
    "mixer:track": _on_track,
    "mixer:track:add": _on_track_add,
    "mixer:track:remove": _on_track_remove,
    "mixer:state": _on_state,
    "pieces:save": _on_piece_save,
    "pieces:load": _on_piece_load,
    "pieces:delete": _on_piece_delete,
}


def handle_message(raw: str, ctx: ChannelContext) -> bool:
    """Parse and apply one inbound message.

    Returns:
        True if the message was applied, False if it was skipped.
    """
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Channel message is not JSON: %s", exc)
        return False
    if not isinstance(msg, dict):
        logger.warning("Channel message is not an object: %r", type(msg).__name__)
        return False
    handler = HANDLERS.get(msg.get("type"))  # type: ignore[arg-type]
    if handler is None:
        logger.debug("Ignoring channel message of type %r", msg.get("type"))
        return False
    try:
        handler(msg, ctx)
    except ValidationError as exc:
        logger.warning(
            "Malformed %s message: %d validation error(s)", msg["type"], exc.error_count()
        )
        return False
    except SessionError as exc:
        logger.warning("%s rejected: %s", msg["type"], exc)
        return False
    except (OSError, sqlite3.Error) as exc:
        logger.error("%s failed: %s", msg["type"], exc)
        return False
    except Exception:
        logger.exception("%s failed unexpectedly", msg["type"])
        return False
    return True


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@router.websocket("/")
async def session_channel(
    websocket: WebSocket,
    broker: Annotated[MixBroker, Depends(get_broker)],
    mirror: Annotated[EditorMirror, Depends(get_editor_mirror)],
    session_log: Annotated[SessionLog, Depends(get_session_log)],
    config: Annotated[SyncConfig, Depends(get_config)],
) -> None:
    """Subscribe a browser to live session events and apply its messages."""
    await websocket.accept()
    client = websocket.client
    label = f"{client.host}:{client.port}" if client else "client"
    subscriber = QueueSubscriber(maxsize=config.subscriber_queue_size, label=label)
    subscriber.deliver({"type": "code", "content": mirror.content})
    broker.subscribe(subscriber)
    pump = asyncio.create_task(subscriber.pump(websocket.send_json))
    ctx = ChannelContext(broker=broker, mirror=mirror, session_log=session_log)
    try:
        while True:
            raw = await websocket.receive_text()
            handle_message(raw, ctx)
    except WebSocketDisconnect:
        pass
    finally:
        subscriber.close()
        broker.unsubscribe(subscriber)
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
