from __future__ import annotations

from collections import OrderedDict
from typing import Iterable, Optional

from registrar.core.logging import get_logger
from registrar.ingest.models import IngestItem

from .queue import BatchHandle, QueueManager

MAX_RETAINED_BATCHES = 20


class BatchRegistry:
    """Keeps recent batches addressable by id for polling and streaming.

    Finished batches are evicted oldest-first once more than ``max_retained``
    are held; running batches are never evicted.
    """

    def __init__(self, manager: QueueManager, *, max_retained: int = MAX_RETAINED_BATCHES):
        self.manager = manager
        self.max_retained = max_retained
        self._batches: "OrderedDict[str, BatchHandle]" = OrderedDict()
        self.logger = get_logger(component="batch_registry")

    def submit(self, items: Iterable[IngestItem]) -> BatchHandle:
        handle = self.manager.start(items)
        self._batches[handle.batch_id] = handle
        self._evict()
        return handle

    def get(self, batch_id: str) -> Optional[BatchHandle]:
        return self._batches.get(batch_id)

    def discard(self, batch_id: str) -> bool:
        handle = self._batches.get(batch_id)
        if handle is None or not handle.state.finished:
            return False
        del self._batches[batch_id]
        return True

    def running(self) -> list[BatchHandle]:
        return [handle for handle in self._batches.values() if not handle.state.finished]

    async def drain(self) -> None:
        for handle in self.running():
            await handle.wait()

    def _evict(self) -> None:
        overflow = len(self._batches) - self.max_retained
        if overflow <= 0:
            return
        for batch_id in [key for key, handle in self._batches.items() if handle.state.finished][:overflow]:
            del self._batches[batch_id]
            self.logger.info("batch_evicted", batch_id=batch_id)


__all__ = ["BatchRegistry", "MAX_RETAINED_BATCHES"]
