from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from registrar.core.config import Settings
from registrar.core.logging import get_logger
from registrar.core.storage import ObjectStore, StorageRequestError, UploadReceipt
from registrar.db.models import MediaAsset
from registrar.ingest import keys
from registrar.ingest.classifier import VisionClassifier
from registrar.ingest.errors import ClassificationError, IngestError, ReconciliationError, UploadError
from registrar.ingest.models import UNKNOWN_AGENT, ClassificationResult, IngestItem, ItemState, RawMedia
from registrar.ingest.thumbnails import derive_video_thumbnail
from registrar.ingest.uploader import ProvisionalUploader

from .catalog import AssetRecord, MediaCatalog
from .ledger import IdentitySlotLedger

BASE_TAGS = ("ai-ingested",)

StateCallback = Callable[[IngestItem, ItemState, str], None]


@dataclass(slots=True)
class Identity:
    agent: str
    slot: Optional[int]
    role: str


def resolve_identity(item: IngestItem, classification: ClassificationResult, default_agent: str) -> Identity:
    """Overrides win; an ``unknown`` classification falls back to ``default_agent``."""
    if item.override_agent:
        agent = item.override_agent
    elif classification.agent != UNKNOWN_AGENT:
        agent = classification.agent
    else:
        agent = default_agent
    slot = item.override_slot if item.override_slot is not None else classification.slot
    return Identity(agent=agent, slot=slot, role=classification.role)


def build_tags(identity: Identity, classification: ClassificationResult, max_classifier_tags: int) -> list[str]:
    ordered = [identity.agent, identity.role, *BASE_TAGS, *classification.tags[:max_classifier_tags]]
    seen: set[str] = set()
    tags = []
    for tag in ordered:
        if tag and tag not in seen:
            seen.add(tag)
            tags.append(tag)
    return tags


class ReconciliationCoordinator:
    """Turns one ingest item into one final, tagged, cataloged asset.

    Classification and the provisional upload run concurrently and are both
    awaited before anything else happens; rename, retag, catalog upsert and
    slot anchoring then run strictly in that order.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        classifier: VisionClassifier,
        store: ObjectStore,
        catalog: MediaCatalog,
        ledger: IdentitySlotLedger,
        derive_thumbnails: bool = True,
    ):
        self.settings = settings
        self.classifier = classifier
        self.store = store
        self.catalog = catalog
        self.ledger = ledger
        self.uploader = ProvisionalUploader(store, timeout_s=settings.upload_timeout_s)
        self.derive_thumbnails = derive_thumbnails
        self.logger = get_logger(component="reconciliation")

    async def _classification_source(self, item: IngestItem) -> RawMedia:
        if item.thumbnail is None and item.kind == "video" and self.derive_thumbnails:
            poster = await asyncio.to_thread(
                derive_video_thumbnail,
                item.payload,
                timeout_s=self.settings.classify_timeout_s,
            )
            if poster is not None:
                return poster
        return item.classification_source

    async def _analyse(self, item: IngestItem) -> ClassificationResult:
        source = await self._classification_source(item)
        return await self.classifier.classify(source.data, source.resolved_mime)

    async def _classify(self, item: IngestItem) -> ClassificationResult:
        try:
            return await asyncio.wait_for(self._analyse(item), timeout=self.settings.classify_timeout_s)
        except asyncio.TimeoutError as exc:
            raise ClassificationError(
                f"Vision analysis timed out after {self.settings.classify_timeout_s:.0f}s",
                timed_out=True,
            ) from exc
        except ClassificationError:
            raise
        except Exception as exc:
            raise ClassificationError(f"Asset analysis failed: {exc}") from exc

    async def _upload(self, item: IngestItem, provisional_key: str, on_state: StateCallback | None) -> UploadReceipt:
        if on_state:
            on_state(item, ItemState.classifying_uploading, f"Uploading {item.payload.filename} ({item.size_bytes} bytes)...")
        receipt = await self.uploader.upload_provisional(item.payload.data, item.payload.resolved_mime, provisional_key)
        item.bytes_transferred = receipt.byte_size or item.size_bytes
        return receipt

    async def reconcile(self, item: IngestItem, on_state: StateCallback | None = None) -> MediaAsset:
        """Process ``item`` end to end and return its catalog row.

        Raises:
            ReconciliationError: either concurrent sub-call failed, or a step
                after both succeeded failed (the provisional object is then orphaned).
        """
        log = self.logger.bind(item_id=item.id)
        provisional_key = keys.provisional_key()

        if on_state:
            on_state(item, ItemState.classifying_uploading, f"Scanning {item.payload.filename}...")
        classified, uploaded = await asyncio.gather(
            self._classify(item),
            self._upload(item, provisional_key, on_state),
            return_exceptions=True,
        )
        for outcome in (classified, uploaded):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
        if isinstance(uploaded, Exception):
            log.warning("provisional_upload_failed", error=str(uploaded))
            raise ReconciliationError(_describe(uploaded), cause=uploaded)
        if isinstance(classified, Exception):
            log.warning("classification_failed", error=str(classified), orphaned_key=provisional_key)
            raise ReconciliationError(_describe(classified), cause=classified, orphaned_key=provisional_key)
        assert isinstance(classified, ClassificationResult) and isinstance(uploaded, UploadReceipt)

        identity = resolve_identity(item, classified, self.settings.default_agent)
        folder = self.settings.agent_folder(identity.agent)
        destination = keys.final_key(
            folder,
            classified.suggested_name,
            agent=identity.agent,
            slot=identity.slot,
            role=identity.role,
        )
        item.agent, item.slot = identity.agent, identity.slot

        if on_state:
            slot_text = f"Slot {identity.slot}" if identity.slot is not None else "no slot"
            on_state(
                item,
                ItemState.reconciling,
                f"Identity confirmed ({round(classified.confidence * 100)}%). Mapping to {slot_text}.",
            )

        try:
            final = await self.store.rename(
                provisional_key,
                destination.public_id,
                resource_kind=uploaded.resource_kind,
                overwrite=True,
            )
            await self.store.update_metadata(
                final.provider_id,
                resource_kind=final.resource_kind,
                tags=build_tags(identity, classified, self.settings.max_classifier_tags),
                context={
                    "agent": identity.agent,
                    "slot": identity.slot if identity.slot is not None else "",
                    "role": identity.role,
                    "confidence": classified.confidence,
                },
            )
        except (StorageRequestError, OSError) as exc:
            log.error("finalise_failed", error=str(exc), orphaned_key=provisional_key)
            raise ReconciliationError(
                f"Finalising {provisional_key} failed: {exc}",
                cause=_as_upload_error(exc),
                orphaned_key=provisional_key,
            ) from exc

        try:
            asset = await self.catalog.upsert_asset(
                AssetRecord(
                    public_id=final.provider_id,
                    url=final.url,
                    resource_kind=final.resource_kind,
                    format=final.format or uploaded.format,
                    byte_size=final.byte_size or uploaded.byte_size,
                    folder=final.folder or folder,
                    width=final.width if final.width is not None else uploaded.width,
                    height=final.height if final.height is not None else uploaded.height,
                    is_visual_bible=True,
                    tags=list(classified.tags),
                )
            )
            if identity.slot is not None:
                change = await self.ledger.set_identity_anchor(identity.agent, identity.slot, asset.public_id)
                if change.evicted_public_id:
                    log.info("slot_occupant_evicted", evicted=change.evicted_public_id, slot=identity.slot)
                refreshed = await self.catalog.get(asset.public_id)
                asset = refreshed or asset
        except Exception as exc:
            log.error("catalog_write_failed", error=str(exc), public_id=final.provider_id)
            raise ReconciliationError(
                f"Catalog write failed for {final.provider_id}: {exc}",
                cause=exc if isinstance(exc, IngestError) else None,
            ) from exc

        item.public_id = asset.public_id
        log.info(
            "item_reconciled",
            public_id=asset.public_id,
            agent=identity.agent,
            slot=identity.slot,
            confidence=classified.confidence,
        )
        return asset


def _describe(exc: Exception) -> str:
    if isinstance(exc, IngestError):
        return exc.describe()
    return str(exc)


def _as_upload_error(exc: Exception) -> UploadError:
    if isinstance(exc, StorageRequestError):
        return UploadError(
            str(exc),
            status_code=exc.status_code,
            provider_message=exc.provider_message,
            timed_out=exc.timed_out,
        )
    return UploadError(str(exc))


__all__ = ["ReconciliationCoordinator", "Identity", "resolve_identity", "build_tags"]
