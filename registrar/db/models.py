from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import BIGINT
from sqlalchemy.orm import Mapped, mapped_column

from registrar.core.db import Base


class ResourceKind(str, enum.Enum):
    image = "image"
    video = "video"
    raw = "raw"


class MediaAsset(Base):
    """Durable catalog row for one stored object, keyed by its final public id."""

    __tablename__ = "media_assets"
    __table_args__ = (
        UniqueConstraint("identity_agent", "identity_slot", name="uq_media_assets_identity_anchor"),
        Index("ix_media_assets_visual_bible", "is_visual_bible"),
        Index("ix_media_assets_identity_agent", "identity_agent"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    resource_kind: Mapped[ResourceKind] = mapped_column(Enum(ResourceKind), nullable=False)
    folder: Mapped[str | None] = mapped_column(String(512), nullable=True)
    format: Mapped[str] = mapped_column(String(32), nullable=False)
    byte_size: Mapped[int] = mapped_column(BIGINT().with_variant(Integer, "sqlite"), nullable=False)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_visual_bible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    identity_agent: Mapped[str | None] = mapped_column(String(32), nullable=True)
    identity_slot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_anchored(self) -> bool:
        return self.identity_agent is not None and self.identity_slot is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "public_id": self.public_id,
            "url": self.url,
            "resource_kind": self.resource_kind.value,
            "folder": self.folder,
            "format": self.format,
            "byte_size": self.byte_size,
            "width": self.width,
            "height": self.height,
            "is_visual_bible": self.is_visual_bible,
            "identity_agent": self.identity_agent,
            "identity_slot": self.identity_slot,
            "tags": list(self.tags or []),
        }


__all__ = ["MediaAsset", "ResourceKind"]
