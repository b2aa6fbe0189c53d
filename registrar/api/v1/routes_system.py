from __future__ import annotations

from fastapi import APIRouter

from registrar.api.deps import PipelineDependency

from .schemas import HealthResponse


router = APIRouter(tags=["system"])


@router.get("/health", response_model=HealthResponse, summary="Liveness probe with queue occupancy")
async def health(pipeline: PipelineDependency) -> HealthResponse:
    return HealthResponse(
        version=pipeline.settings.version,
        running_batches=len(pipeline.batches.running()),
    )


__all__ = ["router"]
