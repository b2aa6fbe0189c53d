from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field(default="ok", description="Health status indicator.")
    version: str
    running_batches: int = Field(default=0, description="Batches still dispatching or in flight.")
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EnvCheckResponse(BaseModel):
    ffmpeg: bool
    storage_configured: bool
    classifier_configured: bool
    storage_backend: str
    classifier_backend: str


class BatchAcceptedResponse(BaseModel):
    batch_id: str = Field(..., json_schema_extra={"example": "7c0a3e1d9b2f4e58a6c1d0f3b2a19e77"})
    location: str
    items: List[str] = Field(default_factory=list, description="Item ids in submission order.")


class ItemSnapshot(BaseModel):
    id: str
    filename: str
    kind: str
    state: str = Field(description="idle | analyzing | syncing | complete | error")
    progress: int = Field(ge=0, le=100)
    size_bytes: int
    bytes_transferred: int
    error: Optional[str] = None
    error_kind: Optional[str] = None
    public_id: Optional[str] = None
    agent: Optional[str] = None
    slot: Optional[int] = None


class BatchMetrics(BaseModel):
    bytes_expected: int
    bytes_transferred: int
    elapsed_s: float
    throughput_bps: float


class BatchStateResponse(BaseModel):
    batch_id: str
    finished: bool
    counts: dict[str, int]
    metrics: BatchMetrics
    items: List[ItemSnapshot]
    log: List[str]


class MediaAssetResponse(BaseModel):
    public_id: str
    url: str
    resource_kind: str
    folder: Optional[str] = None
    format: str
    byte_size: int
    width: Optional[int] = None
    height: Optional[int] = None
    is_visual_bible: bool
    identity_agent: Optional[str] = None
    identity_slot: Optional[int] = None
    tags: List[str] = Field(default_factory=list)


class MediaUpdateRequest(BaseModel):
    is_visual_bible: Optional[bool] = None
    tags: Optional[List[str]] = None


class VisualBibleResponse(BaseModel):
    urls: List[str]


class AnchorRequest(BaseModel):
    public_id: str = Field(..., json_schema_extra={"example": "Luminous Deep/Visual_Bible/julian/LD_BIBLE_JULIAN_01_PORTRAIT_1728000000000_a1b2c3"})


class AnchorResponse(BaseModel):
    agent: str
    slot: int
    public_id: str
    evicted_public_id: Optional[str] = None


class AnchorClearedResponse(BaseModel):
    agent: str
    slot: int
    evicted_public_id: Optional[str] = None


class OrphanListResponse(BaseModel):
    keys: List[str]


__all__ = [
    "HealthResponse",
    "EnvCheckResponse",
    "BatchAcceptedResponse",
    "BatchStateResponse",
    "ItemSnapshot",
    "MediaAssetResponse",
    "MediaUpdateRequest",
    "VisualBibleResponse",
    "AnchorRequest",
    "AnchorResponse",
    "AnchorClearedResponse",
    "OrphanListResponse",
]
