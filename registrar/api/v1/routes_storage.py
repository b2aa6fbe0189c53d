from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from registrar.api.deps import AuthDependency, PipelineDependency
from registrar.core.storage import StorageRequestError
from registrar.ingest.keys import PROVISIONAL_PREFIX

from .schemas import OrphanListResponse


router = APIRouter(prefix="/storage", tags=["storage"])


@router.get("/orphans", response_model=OrphanListResponse, summary="List provisional objects never reconciled")
async def list_orphans(context: AuthDependency, pipeline: PipelineDependency) -> OrphanListResponse:
    try:
        keys = await pipeline.store.list_keys(PROVISIONAL_PREFIX)
    except StorageRequestError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return OrphanListResponse(keys=sorted(keys))


__all__ = ["router"]
