"""Transport commands and compiled-output inspection."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from api.deps import get_broker
from api.schemas.session import OkResponse
from ingestion.broker import MixBroker

router = APIRouter(prefix="/api", tags=["transport"])

Broker = Annotated[MixBroker, Depends(get_broker)]


@router.post("/play", response_model=OkResponse)
async def play(broker: Broker) -> OkResponse:
    """Tell every connected client to start playback."""
    broker.send_transport("play")
    return OkResponse(ok=True)


@router.post("/stop", response_model=OkResponse)
async def stop(broker: Broker) -> OkResponse:
    """Tell every connected client to stop playback."""
    broker.send_transport("stop")
    return OkResponse(ok=True)


@router.get("/compiled", response_class=PlainTextResponse)
async def compiled(broker: Broker) -> PlainTextResponse:
    """Return the last compiled script."""
    return PlainTextResponse(broker.compiled)
