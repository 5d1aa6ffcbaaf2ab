from __future__ import annotations

import asyncio
import time

import pytest

from cloudagents.config import QueuePolicy
from cloudagents.errors import QueueClearedError, QueueClosedError, QueueTimeoutError
from cloudagents.queue import Priority, PriorityRequestQueue


def _policy(**overrides) -> QueuePolicy:
    values = {"max_concurrent": 2, "min_interval_s": 0.0, "burst_delay_s": 0.0}
    values.update(overrides)
    return QueuePolicy(**values)


async def _hold(queue: PriorityRequestQueue, release: asyncio.Event) -> asyncio.Task:
    started = asyncio.Event()

    async def blocker() -> str:
        started.set()
        await release.wait()
        return "blocker"

    task = asyncio.create_task(queue.submit(blocker, Priority.USER_ACTION, label="blocker"))
    await started.wait()
    return task


@pytest.mark.asyncio
async def test_never_exceeds_max_concurrent() -> None:
    queue = PriorityRequestQueue(_policy(max_concurrent=2))
    active = 0
    peak = 0

    async def work(n: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return n

    results = await asyncio.gather(*(queue.submit(lambda n=n: work(n)) for n in range(8)))

    assert results == list(range(8))
    assert peak == 2
    stats = queue.stats()
    assert stats.peak_in_flight == 2
    assert stats.in_flight == 0
    assert stats.dispatched == 8
    await queue.aclose()


@pytest.mark.asyncio
async def test_priority_order_with_fifo_tie_break() -> None:
    queue = PriorityRequestQueue(_policy(max_concurrent=1))
    release = asyncio.Event()
    blocker = await _hold(queue, release)
    order: list[str] = []

    def job(name: str):
        async def run() -> str:
            order.append(name)
            return name

        return run

    submissions = [
        ("normal-1", Priority.NORMAL),
        ("prefetch", Priority.PREFETCH),
        ("user", Priority.USER_ACTION),
        ("normal-2", Priority.NORMAL),
        ("critical", Priority.CRITICAL),
    ]
    tasks = [asyncio.create_task(queue.submit(job(name), priority)) for name, priority in submissions]
    await asyncio.sleep(0)
    release.set()

    await asyncio.gather(blocker, *tasks)
    assert order == ["user", "critical", "normal-1", "normal-2", "prefetch"]
    await queue.aclose()


@pytest.mark.asyncio
async def test_dispatches_are_spaced_by_min_interval() -> None:
    queue = PriorityRequestQueue(_policy(max_concurrent=4, min_interval_s=0.05))
    started: list[float] = []

    async def work() -> None:
        started.append(time.monotonic())

    await asyncio.gather(*(queue.submit(work) for _ in range(3)))

    gaps = [later - earlier for earlier, later in zip(started, started[1:])]
    assert all(gap >= 0.045 for gap in gaps)
    await queue.aclose()


@pytest.mark.asyncio
async def test_burst_adds_extra_delay() -> None:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    queue = PriorityRequestQueue(
        _policy(max_concurrent=4, burst_threshold=2, burst_window_s=10.0, burst_delay_s=0.5),
        sleep=fake_sleep,
    )

    async def work() -> None:
        return None

    await asyncio.gather(*(queue.submit(work) for _ in range(3)))

    assert 0.5 in delays
    await queue.aclose()


@pytest.mark.asyncio
async def test_stale_items_are_evicted_without_running() -> None:
    queue = PriorityRequestQueue(_policy(max_concurrent=1, max_queue_age_s=0.05))
    release = asyncio.Event()
    blocker = await _hold(queue, release)
    ran = False

    async def stale() -> None:
        nonlocal ran
        ran = True

    with pytest.raises(QueueTimeoutError):
        await queue.submit(stale)

    release.set()
    assert await blocker == "blocker"
    assert ran is False
    assert queue.stats().evicted == 1
    await queue.aclose()


@pytest.mark.asyncio
async def test_clear_low_priority_keeps_urgent_work() -> None:
    queue = PriorityRequestQueue(_policy(max_concurrent=1))
    release = asyncio.Event()
    blocker = await _hold(queue, release)

    async def value(name: str) -> str:
        return name

    normal = asyncio.create_task(queue.submit(lambda: value("normal"), Priority.NORMAL))
    prefetch = asyncio.create_task(queue.submit(lambda: value("prefetch"), Priority.PREFETCH))
    urgent = asyncio.create_task(queue.submit(lambda: value("urgent"), Priority.CRITICAL))
    await asyncio.sleep(0)

    assert queue.clear_low_priority() == 2
    release.set()

    assert await urgent == "urgent"
    with pytest.raises(QueueClearedError):
        await normal
    with pytest.raises(QueueClearedError):
        await prefetch
    await blocker
    await queue.aclose()


@pytest.mark.asyncio
async def test_cancelled_caller_drops_queued_item() -> None:
    queue = PriorityRequestQueue(_policy(max_concurrent=1))
    release = asyncio.Event()
    blocker = await _hold(queue, release)
    ran = False

    async def work() -> None:
        nonlocal ran
        ran = True

    waiter = asyncio.create_task(queue.submit(work))
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    release.set()
    await blocker
    await asyncio.sleep(0.01)
    assert ran is False
    assert queue.stats().queued == 0
    await queue.aclose()


@pytest.mark.asyncio
async def test_aclose_fails_queued_work() -> None:
    queue = PriorityRequestQueue(_policy(max_concurrent=1))
    release = asyncio.Event()
    blocker = await _hold(queue, release)

    async def work() -> None:
        return None

    pending = asyncio.create_task(queue.submit(work))
    await asyncio.sleep(0)
    release.set()
    await queue.aclose()

    with pytest.raises(QueueClosedError):
        await pending
    assert await blocker == "blocker"
    with pytest.raises(QueueClosedError):
        await queue.submit(work)


@pytest.mark.asyncio
async def test_failures_propagate_to_the_caller() -> None:
    queue = PriorityRequestQueue(_policy())

    async def boom() -> None:
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        await queue.submit(boom)
    assert queue.in_flight == 0
    await queue.aclose()
