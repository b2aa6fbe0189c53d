from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from registrar.core.db import session_scope
from registrar.core.logging import get_logger
from registrar.db.models import MediaAsset, ResourceKind

VISUAL_BIBLE_REFERENCE_LIMIT = 14


@dataclass(slots=True)
class AssetRecord:
    """Catalog fields written by reconciliation; slot fields are owned by the ledger."""

    public_id: str
    url: str
    resource_kind: str
    format: str
    byte_size: int
    folder: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    is_visual_bible: bool = True
    tags: list[str] = field(default_factory=list)


class MediaCatalog:
    """Durable media catalog keyed by public id.

    Every call opens its own session so concurrent workers never share one.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = get_logger(component="media_catalog")

    async def upsert_asset(self, record: AssetRecord) -> MediaAsset:
        """Insert or patch the row for ``record.public_id``; never creates a duplicate."""
        try:
            return await self._upsert_once(record)
        except IntegrityError:
            # A concurrent insert won the unique public_id; patch the row it created.
            self.logger.info("catalog_upsert_retry", public_id=record.public_id)
            return await self._upsert_once(record)

    async def _upsert_once(self, record: AssetRecord) -> MediaAsset:
        async with session_scope(self.session_factory) as session:
            asset = await _by_public_id(session, record.public_id)
            created = asset is None
            if asset is None:
                asset = MediaAsset(public_id=record.public_id)
                session.add(asset)
            asset.url = record.url
            asset.resource_kind = ResourceKind(record.resource_kind)
            asset.folder = record.folder
            asset.format = record.format
            asset.byte_size = record.byte_size
            asset.width = record.width
            asset.height = record.height
            asset.is_visual_bible = record.is_visual_bible
            asset.tags = list(record.tags)
            await session.commit()
            await session.refresh(asset)
            self.logger.info("catalog_upserted", public_id=record.public_id, created=created)
            return asset

    async def get(self, public_id: str) -> MediaAsset | None:
        async with session_scope(self.session_factory) as session:
            return await _by_public_id(session, public_id)

    async def list_assets(self, *, search: str | None = None, visual_bible_only: bool = False) -> Sequence[MediaAsset]:
        stmt = select(MediaAsset).order_by(MediaAsset.id.desc())
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(
                or_(
                    MediaAsset.public_id.ilike(pattern),
                    MediaAsset.folder.ilike(pattern),
                )
            )
        if visual_bible_only:
            stmt = stmt.where(MediaAsset.is_visual_bible.is_(True))
        async with session_scope(self.session_factory) as session:
            return (await session.execute(stmt)).scalars().all()

    async def visual_bible_urls(self, limit: int = VISUAL_BIBLE_REFERENCE_LIMIT) -> list[str]:
        stmt = (
            select(MediaAsset.url)
            .where(MediaAsset.is_visual_bible.is_(True))
            .order_by(MediaAsset.id)
            .limit(limit)
        )
        async with session_scope(self.session_factory) as session:
            return list((await session.execute(stmt)).scalars().all())

    async def update_media(
        self,
        public_id: str,
        *,
        is_visual_bible: bool | None = None,
        tags: list[str] | None = None,
    ) -> MediaAsset:
        async with session_scope(self.session_factory) as session:
            asset = await _by_public_id(session, public_id)
            if asset is None:
                raise LookupError(public_id)
            if is_visual_bible is not None:
                asset.is_visual_bible = is_visual_bible
            if tags is not None:
                asset.tags = list(tags)
            await session.commit()
            await session.refresh(asset)
            return asset

    async def count(self) -> int:
        async with session_scope(self.session_factory) as session:
            return (await session.execute(select(func.count(MediaAsset.id)))).scalar_one()


async def _by_public_id(session: AsyncSession, public_id: str) -> MediaAsset | None:
    stmt = select(MediaAsset).where(MediaAsset.public_id == public_id)
    return (await session.execute(stmt)).scalar_one_or_none()


__all__ = ["AssetRecord", "MediaCatalog", "VISUAL_BIBLE_REFERENCE_LIMIT"]
