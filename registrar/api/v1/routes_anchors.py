from __future__ import annotations

from typing import List

from fastapi import APIRouter, HTTPException, status

from registrar.api import deps
from registrar.ingest.errors import ValidationError

from . import schemas


router = APIRouter(prefix="/anchors", tags=["anchors"])


def _validate(pipeline: deps.PipelineDependency, agent: str, slot: int | None = None) -> None:
    try:
        pipeline.ledger.validate(agent, slot if slot is not None else 1)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message) from exc


@router.get("/{agent}", response_model=List[schemas.MediaAssetResponse])
async def list_anchors(agent: str, pipeline: deps.PipelineDependency, context: deps.AuthDependency) -> List[schemas.MediaAssetResponse]:
    _validate(pipeline, agent)
    anchors = await pipeline.ledger.anchors_for(agent)
    return [schemas.MediaAssetResponse(**asset.to_dict()) for asset in anchors]


@router.put("/{agent}/{slot}", response_model=schemas.AnchorResponse)
async def set_anchor(
    agent: str,
    slot: int,
    payload: schemas.AnchorRequest,
    pipeline: deps.PipelineDependency,
    context: deps.AuthDependency,
) -> schemas.AnchorResponse:
    _validate(pipeline, agent, slot)
    try:
        change = await pipeline.ledger.set_identity_anchor(agent, slot, payload.public_id)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found")
    return schemas.AnchorResponse(
        agent=change.agent,
        slot=change.slot,
        public_id=change.public_id,
        evicted_public_id=change.evicted_public_id,
    )


@router.delete("/{agent}/{slot}", response_model=schemas.AnchorClearedResponse)
async def clear_anchor(agent: str, slot: int, pipeline: deps.PipelineDependency, context: deps.AuthDependency) -> schemas.AnchorClearedResponse:
    _validate(pipeline, agent, slot)
    evicted = await pipeline.ledger.clear_anchor(agent, slot)
    return schemas.AnchorClearedResponse(agent=agent, slot=slot, evicted_public_id=evicted)


__all__ = ["router"]
