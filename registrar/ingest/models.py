from __future__ import annotations

import enum
import mimetypes
from dataclasses import dataclass, field
from typing import List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError

MIN_SLOT = 1
MAX_SLOT = 14
UNKNOWN_AGENT = "unknown"

MediaKind = Literal["image", "video"]


class ItemState(str, enum.Enum):
    """Per-item lifecycle. Values are the names shown to queue observers."""

    queued = "idle"
    classifying_uploading = "analyzing"
    reconciling = "syncing"
    complete = "complete"
    failed = "error"

    @property
    def terminal(self) -> bool:
        return self in (ItemState.complete, ItemState.failed)


_STATE_ORDER = {
    ItemState.queued: 0,
    ItemState.classifying_uploading: 1,
    ItemState.reconciling: 2,
    ItemState.complete: 3,
    ItemState.failed: 3,
}

_STATE_PROGRESS = {
    ItemState.queued: 0,
    ItemState.classifying_uploading: 40,
    ItemState.reconciling: 80,
    ItemState.complete: 100,
}


class ClassificationResult(BaseModel):
    """Normalised answer from the vision-analysis service."""

    model_config = ConfigDict(frozen=True)

    agent: str = UNKNOWN_AGENT
    slot: int = Field(default=3, ge=MIN_SLOT, le=MAX_SLOT)
    role: str = "unknown"
    suggested_name: str = ""
    tags: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = "No reasoning provided"


@dataclass(slots=True)
class RawMedia:
    """Bytes as submitted by a caller, before they become an ingest item."""

    data: bytes
    filename: str = "upload.bin"
    mime_type: Optional[str] = None

    @property
    def resolved_mime(self) -> str:
        if self.mime_type:
            return self.mime_type
        guessed, _ = mimetypes.guess_type(self.filename)
        return guessed or "application/octet-stream"

    @property
    def kind(self) -> MediaKind:
        return "video" if self.resolved_mime.startswith("video/") else "image"

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(slots=True)
class IngestItem:
    """One unit of work. The worker that processes it owns it exclusively."""

    payload: RawMedia
    id: str = field(default_factory=lambda: uuid4().hex)
    thumbnail: Optional[RawMedia] = None
    override_agent: Optional[str] = None
    override_slot: Optional[int] = None
    state: ItemState = ItemState.queued
    progress: int = 0
    bytes_transferred: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    public_id: Optional[str] = None
    agent: Optional[str] = None
    slot: Optional[int] = None

    @property
    def kind(self) -> MediaKind:
        return self.payload.kind

    @property
    def size_bytes(self) -> int:
        return self.payload.size_bytes

    @property
    def classification_source(self) -> RawMedia:
        return self.thumbnail if self.thumbnail is not None else self.payload

    def advance(self, state: ItemState) -> bool:
        """Move forward to ``state``; returns False and changes nothing if the move is not allowed."""
        if self.state.terminal:
            return False
        if _STATE_ORDER[state] <= _STATE_ORDER[self.state]:
            return False
        self.state = state
        if state in _STATE_PROGRESS:
            self.progress = _STATE_PROGRESS[state]
        return True

    def validate(self, known_agents: tuple[str, ...]) -> None:
        if self.override_slot is not None and not (MIN_SLOT <= self.override_slot <= MAX_SLOT):
            raise ValidationError(f"slot {self.override_slot} outside {MIN_SLOT}-{MAX_SLOT}")
        if self.override_agent is not None and self.override_agent not in known_agents:
            raise ValidationError(f"unknown agent {self.override_agent!r}")
        if not self.payload.data:
            raise ValidationError(f"item {self.id} has an empty payload")

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "filename": self.payload.filename,
            "kind": self.kind,
            "state": self.state.value,
            "progress": self.progress,
            "size_bytes": self.size_bytes,
            "bytes_transferred": self.bytes_transferred,
            "error": self.error,
            "error_kind": self.error_kind,
            "public_id": self.public_id,
            "agent": self.agent,
            "slot": self.slot,
        }


__all__ = [
    "ClassificationResult",
    "IngestItem",
    "ItemState",
    "MediaKind",
    "RawMedia",
    "MIN_SLOT",
    "MAX_SLOT",
    "UNKNOWN_AGENT",
]
