from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Iterable, Optional, Protocol
from uuid import uuid4

from registrar.core.config import Settings
from registrar.core.logging import get_logger
from registrar.db.models import MediaAsset
from registrar.ingest.errors import IngestError, ValidationError, is_rate_limit_failure
from registrar.ingest.models import IngestItem, ItemState

SYSTEM = "SYSTEM"


class Reconciler(Protocol):
    async def reconcile(self, item: IngestItem, on_state: Any = None) -> MediaAsset: ...


@dataclass(slots=True)
class ItemTransition:
    """One observable step of one item, in the order it happened."""

    batch_id: str
    item_id: str
    state: ItemState
    progress: int
    at_s: float
    message: str
    error: Optional[str] = None
    error_kind: Optional[str] = None
    public_id: Optional[str] = None
    agent: Optional[str] = None
    slot: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "item_id": self.item_id,
            "state": self.state.value,
            "progress": self.progress,
            "at_s": round(self.at_s, 4),
            "message": self.message,
            "error": self.error,
            "error_kind": self.error_kind,
            "public_id": self.public_id,
            "agent": self.agent,
            "slot": self.slot,
        }


@dataclass(slots=True)
class QueueMetrics:
    bytes_expected: int = 0
    bytes_transferred: int = 0
    elapsed_s: float = 0.0

    @property
    def throughput_bps(self) -> float:
        if self.elapsed_s <= 0:
            return 0.0
        return self.bytes_transferred / self.elapsed_s

    def to_dict(self) -> dict[str, Any]:
        return {
            "bytes_expected": self.bytes_expected,
            "bytes_transferred": self.bytes_transferred,
            "elapsed_s": round(self.elapsed_s, 3),
            "throughput_bps": round(self.throughput_bps, 1),
        }


@dataclass
class QueueState:
    """Everything a caller polls to render one batch: items, metrics and the log."""

    batch_id: str
    items: dict[str, IngestItem]
    max_log_lines: int
    started_at: float = field(default_factory=time.monotonic)
    metrics: QueueMetrics = field(default_factory=QueueMetrics)
    visible: list[str] = field(default_factory=list)
    log: Deque[str] = field(default_factory=deque)
    transitions: list[ItemTransition] = field(default_factory=list)
    dispatch_times: list[float] = field(default_factory=list)
    pending: Deque[IngestItem] = field(default_factory=deque)
    in_flight: int = 0
    peak_in_flight: int = 0
    last_dispatch_at: Optional[float] = None
    backoff_until: float = 0.0
    finished: bool = False
    finished_at: Optional[float] = None
    dispatch_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    subscribers: list[asyncio.Queue] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.log = deque(maxlen=self.max_log_lines)
        self.visible = list(self.items)

    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def append_log(self, agent: str, message: str) -> str:
        entry = f"> {agent.upper()}: {message}"
        self.log.append(entry)
        return entry

    def refresh_metrics(self) -> None:
        self.metrics.bytes_transferred = sum(
            item.bytes_transferred for item in self.items.values() if item.state is not ItemState.failed
        )
        self.metrics.elapsed_s = self.elapsed()

    def prune(self, item_id: str) -> None:
        if item_id in self.visible:
            self.visible.remove(item_id)

    def counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in ItemState}
        for item in self.items.values():
            counts[item.state.value] += 1
        return counts

    def snapshot(self) -> dict[str, Any]:
        self.refresh_metrics()
        return {
            "batch_id": self.batch_id,
            "finished": self.finished,
            "counts": self.counts(),
            "metrics": self.metrics.to_dict(),
            "items": [self.items[item_id].snapshot() for item_id in self.visible],
            "log": list(self.log),
        }


class BatchHandle:
    """A running batch: its observable state, its driver task and its event stream."""

    def __init__(self, state: QueueState, task: asyncio.Task):
        self.state = state
        self.task = task

    @property
    def batch_id(self) -> str:
        return self.state.batch_id

    async def wait(self) -> QueueState:
        await self.task
        return self.state

    async def events(self) -> AsyncIterator[ItemTransition]:
        """Yield every transition of the batch, replaying those already emitted."""
        queue: asyncio.Queue = asyncio.Queue()
        for transition in self.state.transitions:
            queue.put_nowait(transition)
        if self.state.finished:
            queue.put_nowait(None)
        else:
            self.state.subscribers.append(queue)
        try:
            while True:
                transition = await queue.get()
                if transition is None:
                    return
                yield transition
        finally:
            if queue in self.state.subscribers:
                self.state.subscribers.remove(queue)


class QueueManager:
    """Drives batches of ingest items through a fixed-size worker pool.

    Two independent throttles apply. ``pool_size`` bounds how many items are in
    flight; ``dispatch_cooldown_s`` bounds how often a new item may start, with
    every dispatch after the first waiting out the cooldown. A rate-limited
    failure additionally holds back the next dispatch for
    ``rate_limit_backoff_s``. Failed items are never retried.
    """

    def __init__(self, settings: Settings, coordinator: Reconciler):
        self.settings = settings
        self.coordinator = coordinator
        self.logger = get_logger(component="queue_manager")

    def prepare(self, items: Iterable[IngestItem]) -> QueueState:
        batch = list(items)
        if not batch:
            raise ValidationError("batch is empty")
        if len(batch) > self.settings.max_batch_size:
            raise ValidationError(f"batch of {len(batch)} exceeds limit of {self.settings.max_batch_size}")
        ids = [item.id for item in batch]
        if len(set(ids)) != len(ids):
            raise ValidationError("item ids must be unique within a batch")

        state = QueueState(
            batch_id=uuid4().hex,
            items={item.id: item for item in batch},
            max_log_lines=self.settings.max_log_lines,
        )
        state.metrics.bytes_expected = sum(item.size_bytes for item in batch)
        state.append_log(SYSTEM, f"Queued {len(batch)} item(s), {state.metrics.bytes_expected} bytes.")

        for item in batch:
            try:
                item.validate(self.settings.known_agents)
            except ValidationError as exc:
                self._fail(state, item, exc)
                continue
            state.pending.append(item)
        return state

    def start(self, items: Iterable[IngestItem]) -> BatchHandle:
        state = self.prepare(items)
        task = asyncio.create_task(self._drive(state), name=f"batch-{state.batch_id}")
        return BatchHandle(state, task)

    async def submit_batch(self, items: Iterable[IngestItem]) -> AsyncIterator[ItemTransition]:
        """Start a batch and yield its per-item transitions as they happen.

        Breaking out of the iteration does not stop the batch; already
        dispatched and still-pending items run to completion.
        """
        handle = self.start(items)
        async for transition in handle.events():
            yield transition
        await handle.wait()

    async def run(self, items: Iterable[IngestItem]) -> QueueState:
        return await self.start(items).wait()

    async def _drive(self, state: QueueState) -> None:
        log = self.logger.bind(batch_id=state.batch_id)
        log.info("batch_started", items=len(state.items), bytes_expected=state.metrics.bytes_expected)
        workers = min(self.settings.pool_size, len(state.pending))
        ticker = asyncio.create_task(self._tick(state))
        try:
            await asyncio.gather(*(self._worker(state) for _ in range(workers)))
        finally:
            state.finished = True
            state.finished_at = time.monotonic()
            ticker.cancel()
            state.refresh_metrics()
            counts = state.counts()
            state.append_log(
                SYSTEM,
                f"Batch finished: {counts[ItemState.complete.value]} complete, {counts[ItemState.failed.value]} failed.",
            )
            for queue in list(state.subscribers):
                queue.put_nowait(None)
            state.subscribers.clear()
            log.info("batch_finished", **counts, **state.metrics.to_dict())

    async def _tick(self, state: QueueState) -> None:
        while not state.finished:
            state.refresh_metrics()
            await asyncio.sleep(self.settings.metrics_tick_s)

    async def _worker(self, state: QueueState) -> None:
        while True:
            item = await self._next_dispatch(state)
            if item is None:
                return
            try:
                asset = await self.coordinator.reconcile(item, on_state=lambda i, s, m: self._on_state(state, i, s, m))
            except Exception as exc:
                self._fail(state, item, exc)
            else:
                self._complete(state, item, asset)
            finally:
                state.in_flight -= 1

    async def _next_dispatch(self, state: QueueState) -> Optional[IngestItem]:
        async with state.dispatch_lock:
            if not state.pending:
                return None
            announced_backoff = False
            while True:
                now = time.monotonic()
                ready_at = 0.0
                if state.last_dispatch_at is not None:
                    ready_at = state.last_dispatch_at + self.settings.dispatch_cooldown_s
                if state.backoff_until > ready_at:
                    ready_at = state.backoff_until
                    if not announced_backoff and ready_at > now:
                        announced_backoff = True
                        state.append_log(SYSTEM, f"Rate limit detected. Pausing dispatch for {ready_at - now:.1f}s.")
                        self.logger.warning("dispatch_paused", batch_id=state.batch_id, pause_s=round(ready_at - now, 3))
                delay = ready_at - now
                if delay <= 0:
                    break
                # Re-check after sleeping: a failure may have extended the backoff meanwhile.
                await asyncio.sleep(delay)

            item = state.pending.popleft()
            state.last_dispatch_at = time.monotonic()
            state.dispatch_times.append(state.last_dispatch_at - state.started_at)
            state.in_flight += 1
            state.peak_in_flight = max(state.peak_in_flight, state.in_flight)
            self._transition(state, item, ItemState.classifying_uploading, "Dispatched to worker.")
            return item

    def _on_state(self, state: QueueState, item: IngestItem, new_state: ItemState, message: str) -> None:
        state.append_log(item.agent or SYSTEM, message)
        if new_state is not item.state:
            self._transition(state, item, new_state, message)
        state.refresh_metrics()

    def _transition(self, state: QueueState, item: IngestItem, new_state: ItemState, message: str) -> None:
        if not item.advance(new_state):
            return
        transition = ItemTransition(
            batch_id=state.batch_id,
            item_id=item.id,
            state=item.state,
            progress=item.progress,
            at_s=time.monotonic() - state.started_at,
            message=message,
            error=item.error,
            error_kind=item.error_kind,
            public_id=item.public_id,
            agent=item.agent,
            slot=item.slot,
        )
        state.transitions.append(transition)
        for queue in state.subscribers:
            queue.put_nowait(transition)
        self.logger.info(
            "item_transition",
            batch_id=state.batch_id,
            item_id=item.id,
            state=item.state.value,
            progress=item.progress,
        )

    def _complete(self, state: QueueState, item: IngestItem, asset: MediaAsset) -> None:
        slot_text = f"slot {asset.identity_slot}" if asset.identity_slot is not None else "the library"
        message = f"✓ Archived {asset.public_id} to {slot_text}."
        state.append_log(item.agent or SYSTEM, message)
        self._transition(state, item, ItemState.complete, message)
        state.refresh_metrics()
        loop = asyncio.get_running_loop()
        loop.call_later(self.settings.completed_prune_delay_s, state.prune, item.id)

    def _fail(self, state: QueueState, item: IngestItem, exc: BaseException) -> None:
        reason = exc.describe() if isinstance(exc, IngestError) else str(exc) or type(exc).__name__
        item.error = reason
        item.error_kind = getattr(exc, "kind", "internal")
        rate_limited = is_rate_limit_failure(exc)
        if rate_limited:
            state.backoff_until = max(state.backoff_until, time.monotonic() + self.settings.rate_limit_backoff_s)
        state.append_log(SYSTEM, f"✗ {item.payload.filename} failed: {reason}")
        self._transition(state, item, ItemState.failed, reason)
        state.refresh_metrics()
        self.logger.warning(
            "item_failed",
            batch_id=state.batch_id,
            item_id=item.id,
            error_kind=item.error_kind,
            rate_limited=rate_limited,
            error=reason,
        )


__all__ = [
    "BatchHandle",
    "ItemTransition",
    "QueueManager",
    "QueueMetrics",
    "QueueState",
]
