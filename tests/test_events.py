from __future__ import annotations

import asyncio

import pytest

from cloudagents.events import EventBroker, SyncEvent, SyncEventKind
from cloudagents.models import AgentStatus


def _event(kind: SyncEventKind, **fields) -> SyncEvent:
    return SyncEvent(kind=kind, agent_id="bc-1", **fields)


@pytest.mark.asyncio
async def test_broker_filters_and_evicts_for_critical_events() -> None:
    broker = EventBroker(max_queue_size=1)
    everything = broker.subscribe()
    statuses = broker.subscribe([SyncEventKind.STATUS_CHANGED])

    broker.publish(_event(SyncEventKind.PHASE_CHANGED, phase="polling"))
    assert statuses.get_nowait() is None

    # Non-critical events are dropped when the queue is full.
    broker.publish(_event(SyncEventKind.PHASE_CHANGED, phase="terminal_settling"))
    first = everything.get_nowait()
    assert first is not None and first.phase == "polling"

    broker.publish(_event(SyncEventKind.PHASE_CHANGED, phase="stopped"))
    broker.publish(_event(SyncEventKind.STATUS_CHANGED, status=AgentStatus.FINISHED))

    # Critical events evict the oldest entry.
    latest = everything.get_nowait()
    assert latest is not None and latest.kind is SyncEventKind.STATUS_CHANGED
    filtered = statuses.get_nowait()
    assert filtered is not None and filtered.status is AgentStatus.FINISHED


@pytest.mark.asyncio
async def test_subscription_iterates_until_broker_closes() -> None:
    broker = EventBroker()
    subscription = broker.subscribe()

    async def consume() -> list[SyncEventKind]:
        return [event.kind async for event in subscription]

    consumer = asyncio.create_task(consume())
    broker.publish(_event(SyncEventKind.STATUS_CHANGED, status=AgentStatus.RUNNING))
    broker.publish(_event(SyncEventKind.STOPPED, reason="terminal"))
    broker.close()

    assert await consumer == [SyncEventKind.STATUS_CHANGED, SyncEventKind.STOPPED]


@pytest.mark.asyncio
async def test_closed_subscription_receives_nothing() -> None:
    broker = EventBroker()
    async with broker.subscribe() as subscription:
        pass
    broker.publish(_event(SyncEventKind.RECOVERED))
    assert subscription.get_nowait() is None


def test_event_serializes_error_payload() -> None:
    event = _event(SyncEventKind.ERROR, error={"type": "TransientError", "message": "boom"})
    data = event.model_dump(mode="json", exclude_none=True)
    assert data["kind"] == "error"
    assert data["error"]["type"] == "TransientError"
    assert data["event_id"]
