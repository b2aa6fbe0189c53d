from __future__ import annotations

import asyncio

import pytest

from registrar.core.db import create_engine, create_session_factory
from registrar.db.models import MediaAsset
from registrar.ingest.classifier import StaticClassifier
from registrar.ingest.errors import ClassificationError, UploadError, ValidationError
from registrar.ingest.keys import PROVISIONAL_PREFIX
from registrar.ingest.models import ClassificationResult, IngestItem, ItemState, RawMedia
from registrar.services.batches import BatchRegistry
from registrar.services.pipeline import build_pipeline
from registrar.services.queue import QueueManager
from tests.conftest import encode_png


class FakeCoordinator:
    """Stands in for reconciliation; tracks how many items overlap."""

    def __init__(self, *, delay_s: float = 0.02, failures: dict[str, Exception] | None = None):
        self.delay_s = delay_s
        self.failures = failures or {}
        self.active = 0
        self.peak = 0
        self.seen: list[str] = []

    async def reconcile(self, item, on_state=None):
        self.seen.append(item.payload.filename)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if on_state:
                on_state(item, ItemState.classifying_uploading, f"Scanning {item.payload.filename}...")
            await asyncio.sleep(self.delay_s)
            failure = self.failures.get(item.payload.filename)
            if failure is not None:
                raise failure
            item.bytes_transferred = item.size_bytes
            item.agent, item.slot = "julian", 2
            if on_state:
                on_state(item, ItemState.reconciling, "Identity confirmed (90%). Mapping to Slot 2.")
            item.public_id = f"VB/julian/{item.payload.filename}"
            return MediaAsset(public_id=item.public_id, identity_agent="julian", identity_slot=2)
        finally:
            self.active -= 1


def _items(count: int, *, size: int = 10, prefix: str = "item") -> list[IngestItem]:
    return [
        IngestItem(payload=RawMedia(data=b"x" * size, filename=f"{prefix}-{index}.png", mime_type="image/png"))
        for index in range(count)
    ]


def _manager(settings, coordinator, **overrides) -> QueueManager:
    values = {"pool_size": 3, "dispatch_cooldown_s": 0.0, "rate_limit_backoff_s": 0.0, "metrics_tick_s": 0.01}
    values.update(overrides)
    return QueueManager(settings.model_copy(update=values), coordinator)


def test_pool_bounds_in_flight_items(settings):
    coordinator = FakeCoordinator(delay_s=0.03)
    manager = _manager(settings, coordinator, pool_size=3)

    state = asyncio.run(manager.run(_items(8)))

    assert coordinator.peak == 3
    assert state.peak_in_flight == 3
    assert all(item.state is ItemState.complete for item in state.items.values())
    assert state.in_flight == 0
    assert state.finished


def test_every_item_reaches_exactly_one_terminal_state(settings):
    failures = {"item-1.png": UploadError("Initial upload failed: bad request", status_code=400)}
    manager = _manager(settings, FakeCoordinator(failures=failures))

    state = asyncio.run(manager.run(_items(4)))

    terminal = [t for t in state.transitions if t.state.terminal]
    assert sorted(t.item_id for t in terminal) == sorted(state.items)
    assert state.counts() == {"idle": 0, "analyzing": 0, "syncing": 0, "complete": 3, "error": 1}
    failed = next(item for item in state.items.values() if item.state is ItemState.failed)
    assert failed.error_kind == "upload"
    assert failed.error.startswith("Initial upload failed")


def test_transitions_move_forward_per_item(settings):
    manager = _manager(settings, FakeCoordinator())

    async def collect():
        return [transition async for transition in manager.submit_batch(_items(3))]

    transitions = asyncio.run(collect())
    by_item: dict[str, list[str]] = {}
    for transition in transitions:
        by_item.setdefault(transition.item_id, []).append(transition.state.value)
    assert list(by_item.values()) == [["analyzing", "syncing", "complete"]] * 3
    assert all(t.progress == 100 for t in transitions if t.state is ItemState.complete)


def test_cooldown_spaces_every_dispatch_after_the_first(settings):
    manager = _manager(settings, FakeCoordinator(delay_s=0.0), pool_size=5, dispatch_cooldown_s=0.05)

    state = asyncio.run(manager.run(_items(4)))

    times = state.dispatch_times
    assert len(times) == 4
    assert times[0] < 0.05
    gaps = [later - earlier for earlier, later in zip(times, times[1:])]
    assert all(gap >= 0.05 for gap in gaps)


def test_rate_limited_failure_pauses_next_dispatch(settings):
    failures = {"item-0.png": UploadError("Initial upload failed", status_code=429)}
    manager = _manager(settings, FakeCoordinator(failures=failures), pool_size=1, rate_limit_backoff_s=0.2)

    state = asyncio.run(manager.run(_items(2)))

    first, second = state.items.values()
    assert first.state is ItemState.failed
    assert second.state is ItemState.complete
    failed_at = next(t.at_s for t in state.transitions if t.state is ItemState.failed)
    assert state.dispatch_times[1] >= failed_at + 0.2 - 0.01
    assert any("Rate limit detected. Pausing dispatch" in line for line in state.log)


def test_non_rate_limited_failure_does_not_pause(settings):
    failures = {"item-0.png": ClassificationError("Invalid analysis response format")}
    manager = _manager(settings, FakeCoordinator(failures=failures), pool_size=1, rate_limit_backoff_s=5)

    state = asyncio.run(manager.run(_items(2)))

    assert state.backoff_until == 0.0
    assert state.dispatch_times[1] < 1


def test_invalid_items_fail_without_dispatch(settings):
    coordinator = FakeCoordinator()
    items = _items(2)
    items[0].override_slot = 20
    items[1].override_agent = "julian"

    state = asyncio.run(_manager(settings, coordinator).run(items))

    assert coordinator.seen == ["item-1.png"]
    assert items[0].state is ItemState.failed
    assert items[0].error_kind == "validation"
    assert items[1].state is ItemState.complete


def test_batch_level_validation(settings):
    manager = _manager(settings, FakeCoordinator(), max_batch_size=2)
    with pytest.raises(ValidationError):
        manager.prepare([])
    with pytest.raises(ValidationError):
        manager.prepare(_items(3))
    twin = _items(1)[0]
    with pytest.raises(ValidationError):
        manager.prepare([twin, twin])


def test_metrics_exclude_failed_items_and_log_outcomes(settings):
    failures = {"item-1.png": UploadError("Initial upload failed: bad request", status_code=400)}
    manager = _manager(settings, FakeCoordinator(failures=failures))

    state = asyncio.run(manager.run(_items(3, size=100)))
    snapshot = state.snapshot()

    assert snapshot["metrics"]["bytes_expected"] == 300
    assert snapshot["metrics"]["bytes_transferred"] == 200
    assert snapshot["finished"] is True
    assert state.log[0] == "> SYSTEM: Queued 3 item(s), 300 bytes."
    assert any(line.startswith("> JULIAN: ✓ Archived VB/julian/item-0.png to slot 2.") for line in state.log)
    assert any(line.startswith("> SYSTEM: ✗ item-1.png failed:") for line in state.log)


def test_log_is_bounded(settings):
    manager = _manager(settings, FakeCoordinator(delay_s=0), max_log_lines=5)
    state = asyncio.run(manager.run(_items(6)))
    assert len(state.log) == 5
    assert state.log[-1].startswith("> SYSTEM: Batch finished: 6 complete")


def test_completed_items_are_pruned_from_view(settings):
    manager = _manager(settings, FakeCoordinator(delay_s=0), completed_prune_delay_s=0.01)

    async def scenario():
        state = await manager.run(_items(2))
        await asyncio.sleep(0.05)
        return state

    state = asyncio.run(scenario())
    assert state.visible == []
    assert len(state.items) == 2


def test_events_replay_after_batch_finished(settings):
    manager = _manager(settings, FakeCoordinator(delay_s=0))

    async def scenario():
        handle = manager.start(_items(2))
        await handle.wait()
        return [transition async for transition in handle.events()], handle.state

    replayed, state = asyncio.run(scenario())
    assert [t.to_dict() for t in replayed] == [t.to_dict() for t in state.transitions]


def test_batch_registry_retains_running_and_evicts_oldest_finished(settings):
    manager = _manager(settings, FakeCoordinator(delay_s=0))
    registry = BatchRegistry(manager, max_retained=2)

    async def scenario():
        first = registry.submit(_items(1))
        assert not registry.discard(first.batch_id)
        await first.wait()
        second = registry.submit(_items(1))
        await second.wait()
        third = registry.submit(_items(1))
        await registry.drain()
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert registry.get(first.batch_id) is None
    assert registry.get(second.batch_id) is second
    assert registry.discard(third.batch_id)
    assert registry.running() == []


def _run_pipeline(settings, items, *, classifier=None, **overrides):
    async def scenario():
        engine = create_engine(settings)
        try:
            pipeline = build_pipeline(
                settings.model_copy(update={"dispatch_cooldown_s": 0.0, **overrides}),
                create_session_factory(engine),
                classifier=classifier or StaticClassifier(),
                derive_thumbnails=False,
            )
            try:
                state = await pipeline.manager.run(items)
                anchors = await pipeline.ledger.anchors_for("julian")
                leftovers = await pipeline.store.list_keys(PROVISIONAL_PREFIX)
                return state, anchors, await pipeline.catalog.count(), leftovers
            finally:
                await pipeline.aclose()
        finally:
            await engine.dispose()

    return asyncio.run(scenario())


def test_unclassifiable_batch_lands_on_default_agent_slot(settings):
    items = [
        IngestItem(payload=RawMedia(data=encode_png(colour=(index * 40, 0, 0)), filename=f"still-{index}.png"))
        for index in range(3)
    ]

    state, anchors, count, leftovers = _run_pipeline(settings, items)

    assert state.counts()["complete"] == 3
    assert count == 3
    assert leftovers == []
    assert [asset.identity_slot for asset in anchors] == [3]
    assert all(item.agent == "julian" and item.slot == 3 for item in items)
    assert len({item.public_id for item in items}) == 3


def test_same_slot_overrides_race_to_single_occupant(settings):
    items = [
        IngestItem(
            payload=RawMedia(data=encode_png(colour=(0, index * 30, 0)), filename=f"rival-{index}.png"),
            override_agent="julian",
            override_slot=7,
        )
        for index in range(4)
    ]

    state, anchors, count, _ = _run_pipeline(settings, items, pool_size=4)

    assert state.counts()["complete"] == 4
    assert count == 4
    assert len(anchors) == 1
    assert anchors[0].identity_slot == 7
    assert anchors[0].public_id in {item.public_id for item in items}


class ByPayloadClassifier(StaticClassifier):
    """Answers per payload, falling back to the static result."""

    def __init__(self, answers: dict[bytes, ClassificationResult]):
        super().__init__()
        self.answers = answers

    async def classify(self, image_bytes, mime_hint=None):
        return self.answers.get(image_bytes, self.result)


def test_low_confidence_unknown_agent_completes_with_default_agent(settings):
    payloads = [encode_png(colour=(0, 0, index * 50 + 10)) for index in range(3)]
    classifier = ByPayloadClassifier(
        {
            payloads[0]: ClassificationResult(agent="eleanor", slot=1, role="portrait", confidence=0.9),
            payloads[1]: ClassificationResult(agent="unknown", slot=5, role="contextual", confidence=0.1),
            payloads[2]: ClassificationResult(agent="cassie", slot=2, role="portrait", confidence=0.8),
        }
    )
    items = [IngestItem(payload=RawMedia(data=data, filename=f"mixed-{index}.png")) for index, data in enumerate(payloads)]

    state, anchors, count, _ = _run_pipeline(settings, items, classifier=classifier)

    assert state.counts()["complete"] == 3
    assert count == 3
    assert (items[1].agent, items[1].slot) == ("julian", 5)
    assert [(asset.identity_slot, asset.public_id) for asset in anchors] == [(5, items[1].public_id)]
