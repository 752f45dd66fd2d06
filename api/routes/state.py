"""REST endpoints for the live mixer state."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from api.deps import get_broker, get_json_body
from api.schemas.session import MixStatePatch
from core.session.errors import MalformedInputError
from ingestion.broker import MixBroker

router = APIRouter(prefix="/api/state", tags=["state"])

Broker = Annotated[MixBroker, Depends(get_broker)]
JsonBody = Annotated[Any, Depends(get_json_body)]


@router.get("")
async def get_state(broker: Broker) -> dict[str, Any]:
    """Return the current mixer state."""
    return broker.get_state().to_dict()


@router.put("")
async def put_state(body: JsonBody, broker: Broker) -> dict[str, Any]:
    """Shallow-merge a partial state and return the full updated state.

    ``groups`` and ``trackFx`` are replaced wholesale: send the whole map.
    """
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="State patch must be a JSON object")
    try:
        patch = MixStatePatch.model_validate(body)
        updated = broker.patch_state(patch.changes(), transport="http")
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=_describe(exc)) from exc
    except MalformedInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return updated.to_dict()


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
