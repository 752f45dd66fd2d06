"""REST endpoints for live session tracks.

Endpoints
=========
    GET    /api/tracks          — all tracks, id -> code (sorted by id)
    GET    /api/tracks/{id}     — one track's code as text/plain
    PUT    /api/tracks/{id}     — create/replace a track (raw code body)
    DELETE /api/tracks/{id}     — remove a track and its mixer references

Handlers are ``async def`` so every mutation runs on the event-loop thread.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse

from api.deps import get_broker
from api.schemas.session import OkResponse
from core.session.errors import MalformedInputError, TrackNotFoundError
from ingestion.broker import MixBroker

router = APIRouter(prefix="/api/tracks", tags=["tracks"])

Broker = Annotated[MixBroker, Depends(get_broker)]


@router.get("")
async def list_tracks(broker: Broker) -> dict[str, str]:
    """Return every track in the live session."""
    return broker.get_tracks()


@router.get("/{track_id:path}", response_class=PlainTextResponse)
async def get_track(track_id: str, broker: Broker) -> PlainTextResponse:
    """Return one track's code."""
    try:
        code = broker.get_track(track_id)
    except TrackNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return PlainTextResponse(code)


@router.put("/{track_id:path}", response_model=OkResponse)
async def put_track(track_id: str, request: Request, broker: Broker) -> OkResponse:
    """Create or replace a track. The body is the raw track code."""
    raw = await request.body()
    try:
        code = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="Track code must be UTF-8 text") from exc
    try:
        broker.put_track(track_id, code, transport="http")
    except MalformedInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return OkResponse(ok=True)


@router.delete("/{track_id:path}", response_model=OkResponse)
async def delete_track(track_id: str, broker: Broker) -> OkResponse:
    """Remove a track along with its mute/solo/group/fx entries."""
    if not broker.remove_track(track_id, transport="http"):
        raise HTTPException(status_code=404, detail=f"Track not found: {track_id!r}")
    return OkResponse(ok=True)
