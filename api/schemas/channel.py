"""Pydantic schemas for inbound WebSocket channel messages.

Every message is a JSON object with a ``type`` discriminator; the models
below validate the remaining fields for each type.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from api.schemas.session import MixStatePatch


class CodeMessage(BaseModel):
    """``code`` — editor content from the browser."""

    content: str


class ProblemMessage(BaseModel):
    """``error`` / ``warn`` — a problem reported by the browser."""

    message: str = ""


class DebugMessage(BaseModel):
    """``debug`` — one debug line from the browser."""

    msg: str = ""


class TrackMessage(BaseModel):
    """``mixer:track`` — replace a track's code."""

    id: str = Field(..., min_length=1)
    code: str


class TrackAddMessage(BaseModel):
    """``mixer:track:add`` — create a track, default body if no code."""

    id: str = Field(..., min_length=1)
    code: str | None = None


class TrackRemoveMessage(BaseModel):
    """``mixer:track:remove``."""

    id: str = Field(..., min_length=1)


class StateMessage(BaseModel):
    """``mixer:state`` — partial mixer state."""

    state: MixStatePatch


class PieceMessage(BaseModel):
    """``pieces:save`` / ``pieces:load`` / ``pieces:delete``."""

    name: str = Field(..., min_length=1)
