"""Deduplicating, per-key exclusive work queue.

Guarantees:
- A key is handed to at most one worker at a time. Enqueuing a key that is
  being processed records the request; it is dispatched only after done().
- Requests for the same key coalesce. Of several pending requests, the one
  that becomes ready first wins.
- A failure requeue (override=True) replaces whatever is pending for the
  key, so a shorter request absorbed during processing cannot cut the
  retry delay short.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

from .models import ObjectKey

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class QueueShutDown(Exception):
    """Raised by dequeue() once the queue has been shut down."""

    pass


@dataclass(frozen=True, order=True)
class ReconcileRequest:
    """Unit of work: reconcile one resource of one kind."""

    kind: str
    key: ObjectKey

    def __str__(self) -> str:
        return f"{self.kind}:{self.key}"


class ResourceQueue(Generic[K]):
    """Work queue with delayed requeue and per-key exclusivity."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # key -> ready time of its pending request
        self._pending: dict[K, float] = {}
        # Heap entries are (ready_at, seq, key); stale entries are skipped
        self._heap: list[tuple[float, int, K]] = []
        self._seq = itertools.count()
        # Requests recorded while the key is processing
        self._deferred: dict[K, float] = {}
        self._processing: set[K] = set()
        self._wakeup = asyncio.Event()
        self._shutdown = False

    def __len__(self) -> int:
        return len(self._pending) + len(self._deferred)

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def is_processing(self, key: K) -> bool:
        return key in self._processing

    def enqueue(self, key: K, delay: float = 0, *, override: bool = False) -> None:
        """Request processing of ``key`` after ``delay`` seconds.

        Args:
            key: Item to process.
            delay: Seconds until the request becomes ready.
            override: Replace any pending request for the key instead of
                keeping the earliest one.
        """
        if self._shutdown:
            return

        ready_at = self._clock() + max(delay, 0)

        if key in self._processing:
            current = self._deferred.get(key)
            if override or current is None or ready_at < current:
                self._deferred[key] = ready_at
            return

        current = self._pending.get(key)
        if not override and current is not None and current <= ready_at:
            return
        self._push(key, ready_at)

    async def dequeue(self) -> K:
        """Wait for the next ready key and mark it as processing.

        Raises:
            QueueShutDown: Once shutdown() has been called.
        """
        while True:
            if self._shutdown:
                raise QueueShutDown()

            now = self._clock()
            wait: float | None = None
            while self._heap:
                ready_at, _, key = self._heap[0]
                if self._pending.get(key) != ready_at:
                    heapq.heappop(self._heap)
                    continue
                if ready_at > now:
                    wait = ready_at - now
                    break
                heapq.heappop(self._heap)
                del self._pending[key]
                self._processing.add(key)
                return key

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait)
            except TimeoutError:
                pass

    def done(self, key: K) -> None:
        """Release ``key``. A request recorded meanwhile becomes pending."""
        self._processing.discard(key)
        deferred = self._deferred.pop(key, None)
        if deferred is not None and not self._shutdown:
            self._push(key, deferred)

    def shutdown(self) -> None:
        """Stop handing out work; blocked dequeue() calls raise QueueShutDown."""
        self._shutdown = True
        self._wakeup.set()
        logger.debug(
            "Work queue shut down",
            extra={"pending": len(self._pending), "processing": len(self._processing)},
        )

    def _push(self, key: K, ready_at: float) -> None:
        self._pending[key] = ready_at
        heapq.heappush(self._heap, (ready_at, next(self._seq), key))
        self._wakeup.set()
