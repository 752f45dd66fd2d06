"""
FastAPI dependency providers.

The broker, editor mirror and session log are created once in the app
lifespan (``api.main``) and stored on ``app.state``. These providers hand
them to routes and to the WebSocket channel alike (``HTTPConnection`` covers
both request types), so tests can swap them via ``app.dependency_overrides``.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import HTTPException, Request
from starlette.requests import HTTPConnection

from core.config import SyncConfig
from ingestion.broker import MixBroker
from ingestion.side_channels import EditorMirror, SessionLog


def get_config(conn: HTTPConnection) -> SyncConfig:
    """Return the config the app was created with."""
    return conn.app.state.config


def get_broker(conn: HTTPConnection) -> MixBroker:
    """Return the process-wide broker that owns the live session."""
    return conn.app.state.broker


def get_editor_mirror(conn: HTTPConnection) -> EditorMirror:
    """Return the editor mirror (file <-> browser editor content)."""
    return conn.app.state.editor_mirror


def get_session_log(conn: HTTPConnection) -> SessionLog:
    """Return the appender for browser errors and debug lines."""
    return conn.app.state.session_log


async def get_json_body(request: Request) -> Any:
    """Parse the request body as JSON.

    Raises:
        HTTPException: 400 if the body is not valid JSON.
    """
    raw = await request.body()
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail=f"Body is not valid JSON: {exc}") from exc
