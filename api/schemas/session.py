"""Pydantic schemas for the /api session endpoints and channel messages.

Wire keys are camelCase (``globalFx``, ``trackFx``, ``createdAt``) to match
the browser mixer; Python attributes are snake_case via aliases.
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.session.types import MAX_GROUP, MIN_GROUP

GroupNumber = Annotated[int, Field(ge=MIN_GROUP, le=MAX_GROUP)]


class MixStatePatch(BaseModel):
    """Partial MixState for ``PUT /api/state`` and ``mixer:state``.

    Only the fields present in the payload change. ``groups`` and
    ``trackFx`` replace the current maps wholesale. A null collection means
    "empty"; a null ``bpm`` clears the tempo.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    muted: list[str] | None = None
    solo: list[str] | None = None
    bpm: float | None = Field(None, ge=0, allow_inf_nan=False)
    global_fx: str | None = Field(None, alias="globalFx")
    groups: dict[str, GroupNumber] | None = None
    track_fx: dict[str, str] | None = Field(None, alias="trackFx")

    def changes(self) -> dict[str, Any]:
        """Field name -> value for every field present in the payload."""
        empty: dict[str, Any] = {
            "muted": (),
            "solo": (),
            "global_fx": "",
            "groups": {},
            "track_fx": {},
        }
        out: dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name in empty:
                value = empty[name]
            elif isinstance(value, list):
                value = tuple(value)
            out[name] = value
        return out


class PieceNameRequest(BaseModel):
    """Body for ``POST /api/pieces/save`` and ``POST /api/pieces/load``."""

    name: str = Field(..., max_length=200)

    @field_validator("name")
    @classmethod
    def name_must_not_be_empty(cls, v: str) -> str:
        """Validate that name is not empty or whitespace-only."""
        if not v.strip():
            raise ValueError("name must be a non-empty string")
        return v


class PieceSummaryResponse(BaseModel):
    """One saved piece in ``GET /api/pieces``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")


class OkResponse(BaseModel):
    ok: bool


class PiecesResponse(BaseModel):
    ok: bool
    pieces: list[str]
