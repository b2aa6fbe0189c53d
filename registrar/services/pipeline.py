from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from registrar.core.config import Settings
from registrar.core.storage import ObjectStore, get_object_store
from registrar.ingest.classifier import VisionClassifier, get_classifier

from .batches import BatchRegistry
from .catalog import MediaCatalog
from .ledger import IdentitySlotLedger
from .queue import QueueManager
from .reconcile import ReconciliationCoordinator


@dataclass
class Pipeline:
    """All collaborators of one running ingest service, built from settings."""

    settings: Settings
    store: ObjectStore
    classifier: VisionClassifier
    catalog: MediaCatalog
    ledger: IdentitySlotLedger
    coordinator: ReconciliationCoordinator
    manager: QueueManager
    batches: BatchRegistry

    async def aclose(self) -> None:
        await self.batches.drain()
        await self.classifier.aclose()
        await self.store.aclose()


def build_pipeline(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    store: Optional[ObjectStore] = None,
    classifier: Optional[VisionClassifier] = None,
    derive_thumbnails: bool = True,
) -> Pipeline:
    store = store or get_object_store(settings)
    classifier = classifier or get_classifier(settings)
    catalog = MediaCatalog(session_factory)
    ledger = IdentitySlotLedger(session_factory, settings.known_agents)
    coordinator = ReconciliationCoordinator(
        settings=settings,
        classifier=classifier,
        store=store,
        catalog=catalog,
        ledger=ledger,
        derive_thumbnails=derive_thumbnails,
    )
    manager = QueueManager(settings, coordinator)
    return Pipeline(
        settings=settings,
        store=store,
        classifier=classifier,
        catalog=catalog,
        ledger=ledger,
        coordinator=coordinator,
        manager=manager,
        batches=BatchRegistry(manager),
    )


__all__ = ["Pipeline", "build_pipeline"]
