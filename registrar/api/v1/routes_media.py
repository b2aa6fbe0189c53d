from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from registrar.api import deps
from registrar.services.catalog import VISUAL_BIBLE_REFERENCE_LIMIT

from . import schemas


router = APIRouter(prefix="/media", tags=["media"])


@router.get("", response_model=List[schemas.MediaAssetResponse])
async def list_media(
    pipeline: deps.PipelineDependency,
    context: deps.AuthDependency,
    search: Optional[str] = Query(default=None, description="Substring of public id or folder."),
    visual_bible: bool = Query(default=False, description="Only assets flagged as generation references."),
) -> List[schemas.MediaAssetResponse]:
    assets = await pipeline.catalog.list_assets(search=search, visual_bible_only=visual_bible)
    return [schemas.MediaAssetResponse(**asset.to_dict()) for asset in assets]


@router.get("/visual-bible", response_model=schemas.VisualBibleResponse)
async def visual_bible(
    pipeline: deps.PipelineDependency,
    context: deps.AuthDependency,
    limit: int = Query(default=VISUAL_BIBLE_REFERENCE_LIMIT, ge=1, le=100),
) -> schemas.VisualBibleResponse:
    return schemas.VisualBibleResponse(urls=await pipeline.catalog.visual_bible_urls(limit))


@router.get("/{public_id:path}", response_model=schemas.MediaAssetResponse)
async def get_media(public_id: str, pipeline: deps.PipelineDependency, context: deps.AuthDependency) -> schemas.MediaAssetResponse:
    asset = await pipeline.catalog.get(public_id)
    if asset is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found")
    return schemas.MediaAssetResponse(**asset.to_dict())


@router.patch("/{public_id:path}", response_model=schemas.MediaAssetResponse)
async def update_media(
    public_id: str,
    payload: schemas.MediaUpdateRequest,
    pipeline: deps.PipelineDependency,
    context: deps.AuthDependency,
) -> schemas.MediaAssetResponse:
    try:
        asset = await pipeline.catalog.update_media(public_id, is_visual_bible=payload.is_visual_bible, tags=payload.tags)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found")
    return schemas.MediaAssetResponse(**asset.to_dict())


__all__ = ["router"]
