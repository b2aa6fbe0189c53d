from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Iterable, Optional

from registrar.core.config import Settings, get_settings
from registrar.core.db import create_engine, create_schema, create_session_factory
from registrar.db.models import MediaAsset
from registrar.ingest.keys import PROVISIONAL_PREFIX
from registrar.ingest.models import IngestItem, RawMedia
from registrar.services.pipeline import Pipeline, build_pipeline
from registrar.services.queue import ItemTransition, QueueState

TransitionCallback = Callable[[ItemTransition], None]


def load_items(
    paths: Iterable[Path],
    *,
    override_agent: Optional[str] = None,
    override_slot: Optional[int] = None,
) -> list[IngestItem]:
    """Read files from disk into ingest items carrying the same overrides."""
    items = []
    for path in paths:
        media = RawMedia(data=path.read_bytes(), filename=path.name)
        items.append(IngestItem(payload=media, override_agent=override_agent, override_slot=override_slot))
    return items


async def _with_pipeline(settings: Settings, work: Callable[[Pipeline], object]):
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    pipeline: Optional[Pipeline] = None
    try:
        if settings.auto_create_schema:
            await create_schema(engine)
        pipeline = build_pipeline(settings, session_factory)
        return await work(pipeline)
    finally:
        if pipeline is not None:
            await pipeline.aclose()
        await engine.dispose()


def run_local_batch(
    items: list[IngestItem],
    *,
    settings: Optional[Settings] = None,
    on_transition: Optional[TransitionCallback] = None,
) -> QueueState:
    """Run one batch to completion in-process, reporting each transition as it happens."""
    settings = settings or get_settings()

    async def _work(pipeline: Pipeline) -> QueueState:
        handle = pipeline.manager.start(items)
        async for transition in handle.events():
            if on_transition is not None:
                on_transition(transition)
        return await handle.wait()

    return asyncio.run(_with_pipeline(settings, _work))


def list_anchors(agent: str, *, settings: Optional[Settings] = None) -> list[MediaAsset]:
    settings = settings or get_settings()

    async def _work(pipeline: Pipeline) -> list[MediaAsset]:
        pipeline.ledger.validate(agent, 1)
        return await pipeline.ledger.anchors_for(agent)

    return asyncio.run(_with_pipeline(settings, _work))


def list_orphans(*, settings: Optional[Settings] = None) -> list[str]:
    settings = settings or get_settings()

    async def _work(pipeline: Pipeline) -> list[str]:
        return await pipeline.store.list_keys(PROVISIONAL_PREFIX)

    return asyncio.run(_with_pipeline(settings, _work))


__all__ = ["load_items", "run_local_batch", "list_anchors", "list_orphans", "TransitionCallback"]
