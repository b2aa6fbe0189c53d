from __future__ import annotations

import json
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, File, Form, HTTPException, Response, UploadFile, status
from fastapi.responses import StreamingResponse

from registrar.api import deps
from registrar.ingest.errors import ValidationError
from registrar.ingest.models import IngestItem, RawMedia
from registrar.services.queue import BatchHandle

from . import schemas


router = APIRouter(prefix="/ingest", tags=["ingest"])


def _get_batch(pipeline: deps.PipelineDependency, batch_id: str) -> BatchHandle:
    handle = pipeline.batches.get(batch_id)
    if handle is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="batch_not_found")
    return handle


@router.post("/batches", response_model=schemas.BatchAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_batch(
    pipeline: deps.PipelineDependency,
    context: deps.AuthDependency,
    response: Response,
    files: List[UploadFile] = File(...),
    override_agent: Optional[str] = Form(default=None),
    override_slot: Optional[int] = Form(default=None),
) -> schemas.BatchAcceptedResponse:
    if len(files) > pipeline.settings.max_batch_size:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="batch_too_large")

    items: list[IngestItem] = []
    for upload in files:
        data = await upload.read()
        await upload.close()
        item = IngestItem(
            payload=RawMedia(data=data, filename=upload.filename or "upload.bin", mime_type=upload.content_type),
            override_agent=override_agent or None,
            override_slot=override_slot,
        )
        try:
            item.validate(pipeline.settings.known_agents)
        except ValidationError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message) from exc
        items.append(item)

    try:
        handle = pipeline.batches.submit(items)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message) from exc

    location = f"/v1/ingest/batches/{handle.batch_id}"
    response.headers["Location"] = location
    return schemas.BatchAcceptedResponse(batch_id=handle.batch_id, location=location, items=[item.id for item in items])


@router.get("/batches/{batch_id}", response_model=schemas.BatchStateResponse)
async def get_batch(batch_id: str, pipeline: deps.PipelineDependency, context: deps.AuthDependency) -> schemas.BatchStateResponse:
    handle = _get_batch(pipeline, batch_id)
    return schemas.BatchStateResponse(**handle.state.snapshot())


@router.get("/batches/{batch_id}/events", summary="Stream item transitions as NDJSON")
async def stream_batch(batch_id: str, pipeline: deps.PipelineDependency, context: deps.AuthDependency) -> StreamingResponse:
    handle = _get_batch(pipeline, batch_id)

    async def _lines() -> AsyncIterator[str]:
        async for transition in handle.events():
            yield json.dumps(transition.to_dict()) + "\n"

    return StreamingResponse(_lines(), media_type="application/x-ndjson")


@router.delete("/batches/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_batch(batch_id: str, pipeline: deps.PipelineDependency, context: deps.AuthDependency) -> Response:
    handle = _get_batch(pipeline, batch_id)
    if not pipeline.batches.discard(handle.batch_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="batch_running")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


__all__ = ["router"]
