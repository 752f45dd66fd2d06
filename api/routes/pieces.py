"""REST endpoints for saved pieces (named snapshots of the live session).

Endpoints
=========
    GET    /api/pieces          — saved pieces, most recently updated first
    POST   /api/pieces/save     — copy live session -> piece {name}
    POST   /api/pieces/load     — replace live session with piece {name}, all muted
    DELETE /api/pieces/{name}   — delete a piece (the live session is refused)
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from api.deps import get_broker, get_json_body
from api.schemas.session import OkResponse, PieceNameRequest, PiecesResponse, PieceSummaryResponse
from core.session.errors import MalformedInputError, PieceNotFoundError
from ingestion.broker import MixBroker

router = APIRouter(prefix="/api/pieces", tags=["pieces"])

Broker = Annotated[MixBroker, Depends(get_broker)]
JsonBody = Annotated[Any, Depends(get_json_body)]


def _parse_name(body: Any) -> str:
    try:
        return PieceNameRequest.model_validate(body).name
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="name required") from exc


@router.get("", response_model=list[PieceSummaryResponse])
async def list_pieces(broker: Broker) -> list[PieceSummaryResponse]:
    """List saved pieces (the live session is never listed)."""
    return [
        PieceSummaryResponse(name=p.name, created_at=p.created_at, updated_at=p.updated_at)
        for p in broker.list_pieces()
    ]


@router.post("/save", response_model=PiecesResponse)
async def save_piece(body: JsonBody, broker: Broker) -> PiecesResponse:
    """Save the live session under a name (overwrites an existing piece)."""
    name = _parse_name(body)
    try:
        pieces = broker.save_piece(name, transport="http")
    except MalformedInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PieceNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Live session is empty") from exc
    return PiecesResponse(ok=True, pieces=pieces)


@router.post("/load", response_model=OkResponse)
async def load_piece(body: JsonBody, broker: Broker) -> OkResponse:
    """Load a piece into the live session with every track muted."""
    name = _parse_name(body)
    try:
        broker.load_piece(name, transport="http")
    except PieceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"Piece not found: {name!r}") from exc
    return OkResponse(ok=True)


@router.delete("/{name:path}", response_model=PiecesResponse)
async def delete_piece(name: str, broker: Broker) -> PiecesResponse:
    """Delete a piece. ``ok`` is false if refused (live session) or missing."""
    deleted, pieces = broker.delete_piece(name, transport="http")
    return PiecesResponse(ok=deleted, pieces=pieces)
