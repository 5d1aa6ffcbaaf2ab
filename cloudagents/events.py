"""Sync events and a fan-out broker for subscribers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .continuity import ContinuitySnapshot
from .models import AgentStatus, Message

logger = logging.getLogger("cloudagents.events")


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SyncEventKind(str, Enum):
    PHASE_CHANGED = "phase_changed"
    STATUS_CHANGED = "status_changed"
    MESSAGES_APPENDED = "messages_appended"
    SNAPSHOT_CAPTURED = "snapshot_captured"
    ERROR = "error"
    RECOVERED = "recovered"
    AUTH_FAILED = "auth_failed"
    STOPPED = "stopped"


# Dropped first when a subscriber falls behind.
NON_CRITICAL_KINDS = frozenset({SyncEventKind.PHASE_CHANGED, SyncEventKind.RECOVERED})


class SyncEvent(BaseModel):
    kind: SyncEventKind
    agent_id: str
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = Field(default_factory=_utc_now)
    phase: str | None = None
    status: AgentStatus | None = None
    summary: str | None = None
    messages: list[Message] = Field(default_factory=list)
    snapshot: ContinuitySnapshot | None = None
    error: dict[str, Any] | None = None
    reason: str | None = None


class EventSubscription:
    """Async iterator over the events of one subscriber."""

    def __init__(self, broker: EventBroker, queue: asyncio.Queue[SyncEvent | None], kinds: frozenset[SyncEventKind] | None) -> None:
        self._broker = broker
        self.queue = queue
        self.kinds = kinds
        self._closed = False

    def accepts(self, event: SyncEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> SyncEvent:
        if self._closed and self.queue.empty():
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is None:
            self._closed = True
            raise StopAsyncIteration
        return event

    def get_nowait(self) -> SyncEvent | None:
        try:
            event = self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if event is None:
            self._closed = True
        return event

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._broker.unsubscribe(self)

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBroker:
    def __init__(self, *, max_queue_size: int = 500) -> None:
        self._max_queue_size = max_queue_size
        self._subs: list[EventSubscription] = []

    def subscribe(self, kinds: Iterable[SyncEventKind] | None = None) -> EventSubscription:
        queue: asyncio.Queue[SyncEvent | None] = asyncio.Queue(maxsize=self._max_queue_size)
        subscription = EventSubscription(self, queue, frozenset(kinds) if kinds is not None else None)
        self._subs.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subs:
            self._subs.remove(subscription)

    def publish(self, event: SyncEvent) -> None:
        for sub in list(self._subs):
            if not sub.accepts(event):
                continue
            if sub.queue.full():
                if event.kind in NON_CRITICAL_KINDS:
                    logger.debug("event_dropped", extra={"kind": event.kind.value, "agent_id": event.agent_id})
                    continue
                try:
                    sub.queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("event_dropped", extra={"kind": event.kind.value, "agent_id": event.agent_id})

    def close(self) -> None:
        """End every subscription after its queued events are drained."""
        for sub in list(self._subs):
            if sub.queue.full():
                try:
                    sub.queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            sub.queue.put_nowait(None)
        self._subs.clear()


__all__ = [
    "EventBroker",
    "EventSubscription",
    "NON_CRITICAL_KINDS",
    "SyncEvent",
    "SyncEventKind",
]
