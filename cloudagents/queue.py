"""Priority-ordered, concurrency- and rate-limited request queue.

A single dispatcher task pulls work off a heap keyed by ``(priority, seq)``,
so lower priority values run first and equal priorities run in insertion
order. Dispatch is gated by:

- ``max_concurrent`` operations in flight,
- ``min_interval_s`` between two dispatches,
- an extra ``burst_delay_s`` once ``burst_threshold`` dispatches happened
  inside the trailing ``burst_window_s``.

Work that waited longer than ``max_queue_age_s`` is failed with
:class:`~cloudagents.errors.QueueTimeoutError` without ever running.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, TypeVar

from .config import QueuePolicy
from .errors import QueueClearedError, QueueClosedError, QueueTimeoutError

logger = logging.getLogger("cloudagents.queue")

T = TypeVar("T")


class Priority(IntEnum):
    USER_ACTION = 1
    CRITICAL = 5
    NORMAL = 10
    PREFETCH = 20


@dataclass(slots=True)
class QueueItem:
    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    priority: int
    enqueued_at: float
    seq: int
    label: str | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class QueueStats:
    queued: int
    in_flight: int
    recent_dispatches: int
    peak_in_flight: int
    dispatched: int
    evicted: int


class PriorityRequestQueue:
    def __init__(
        self,
        policy: QueuePolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._policy = policy or QueuePolicy()
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._heap: list[tuple[int, int, QueueItem]] = []
        self._seq = itertools.count()
        self._in_flight = 0
        self._peak_in_flight = 0
        self._dispatched = 0
        self._evicted = 0
        self._last_dispatch_at: float | None = None
        self._recent: deque[float] = deque()
        self._wakeup = asyncio.Event()
        self._dispatcher: asyncio.Task[None] | None = None
        self._running: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def policy(self) -> QueuePolicy:
        return self._policy

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def submit(
        self,
        factory: Callable[[], Awaitable[T]],
        priority: int = Priority.NORMAL,
        *,
        label: str | None = None,
    ) -> T:
        """Queue ``factory`` and wait for its result.

        ``factory`` is only called once the item is dispatched. Cancelling the
        caller drops a queued item, or cancels it if it is already running.
        """
        if self._closed:
            raise QueueClosedError()
        loop = asyncio.get_running_loop()
        item = QueueItem(
            factory=factory,
            future=loop.create_future(),
            priority=int(priority),
            enqueued_at=self._clock(),
            seq=next(self._seq),
            label=label,
        )
        heapq.heappush(self._heap, (item.priority, item.seq, item))
        self._ensure_dispatcher()
        self._wakeup.set()
        try:
            return await item.future
        except asyncio.CancelledError:
            if item.task is not None and not item.task.done():
                item.task.cancel()
            raise

    def stats(self) -> QueueStats:
        self._trim_recent(self._clock())
        return QueueStats(
            queued=sum(1 for _, _, item in self._heap if not item.future.done()),
            in_flight=self._in_flight,
            recent_dispatches=len(self._recent),
            peak_in_flight=self._peak_in_flight,
            dispatched=self._dispatched,
            evicted=self._evicted,
        )

    def clear_low_priority(self, threshold: int = Priority.NORMAL) -> int:
        """Drop queued items with ``priority >= threshold``; returns how many."""
        kept: list[tuple[int, int, QueueItem]] = []
        dropped = 0
        for entry in self._heap:
            item = entry[2]
            if item.priority >= threshold and not item.future.done():
                item.future.set_exception(QueueClearedError())
                dropped += 1
            elif not item.future.done():
                kept.append(entry)
        heapq.heapify(kept)
        self._heap = kept
        if dropped:
            logger.debug("queue_cleared", extra={"dropped": dropped, "threshold": threshold})
        return dropped

    async def aclose(self, *, cancel_running: bool = False) -> None:
        """Stop dispatching and fail every queued item with ``QueueClosedError``."""
        if self._closed:
            return
        self._closed = True
        for _, _, item in self._heap:
            if not item.future.done():
                item.future.set_exception(QueueClosedError())
        self._heap.clear()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        if cancel_running:
            for task in self._running:
                task.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="cloudagents:queue")

    def _trim_recent(self, now: float) -> None:
        window = self._policy.burst_window_s
        while self._recent and now - self._recent[0] >= window:
            self._recent.popleft()

    def _dispatch_delay(self) -> float:
        now = self._clock()
        delay = 0.0
        if self._last_dispatch_at is not None:
            elapsed = now - self._last_dispatch_at
            if elapsed < self._policy.min_interval_s:
                delay = self._policy.min_interval_s - elapsed
        self._trim_recent(now)
        if len(self._recent) >= self._policy.burst_threshold:
            delay = max(delay, self._policy.burst_delay_s)
        return delay

    def _prune(self) -> None:
        """Remove abandoned items and evict the ones that outlived ``max_queue_age_s``."""
        max_age = self._policy.max_queue_age_s
        now = self._clock()
        kept: list[tuple[int, int, QueueItem]] = []
        changed = False
        for entry in self._heap:
            item = entry[2]
            if item.future.done():
                changed = True
                continue
            waited = now - item.enqueued_at
            if max_age is not None and waited > max_age:
                item.future.set_exception(
                    QueueTimeoutError(extra={"waited_s": round(waited, 3), "label": item.label})
                )
                self._evicted += 1
                changed = True
                logger.warning(
                    "queue_item_evicted",
                    extra={"label": item.label, "priority": item.priority, "waited_s": round(waited, 3)},
                )
                continue
            kept.append(entry)
        if changed:
            heapq.heapify(kept)
            self._heap = kept

    def _next_expiry_in(self) -> float | None:
        max_age = self._policy.max_queue_age_s
        if max_age is None or not self._heap:
            return None
        oldest = min(item.enqueued_at for _, _, item in self._heap)
        return max(0.0, oldest + max_age - self._clock()) + 0.001

    def _has_capacity(self) -> bool:
        return bool(self._heap) and self._in_flight < self._policy.max_concurrent

    async def _dispatch_loop(self) -> None:
        while not self._closed:
            self._prune()
            if not self._has_capacity():
                self._wakeup.clear()
                timeout = self._next_expiry_in()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                except TimeoutError:
                    pass
                continue

            delay = self._dispatch_delay()
            if delay > 0:
                await self._sleep(delay)
                self._prune()
                if not self._has_capacity():
                    continue

            _, _, item = heapq.heappop(self._heap)
            self._dispatch(item)

    def _dispatch(self, item: QueueItem) -> None:
        # Counters move together, before the first await of the new task.
        now = self._clock()
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        self._dispatched += 1
        self._last_dispatch_at = now
        self._recent.append(now)
        task = asyncio.create_task(self._run(item), name=f"cloudagents:request:{item.label or item.seq}")
        item.task = task
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, item: QueueItem) -> None:
        try:
            result = await item.factory()
        except Exception as exc:
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            if not item.future.done():
                item.future.cancel()
            self._in_flight -= 1
            self._wakeup.set()


__all__ = ["Priority", "PriorityRequestQueue", "QueueItem", "QueueStats"]
