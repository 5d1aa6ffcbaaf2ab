"""Per-task synchronization session.

``AgentSession`` owns the poller for the selected task, the continuity tracker
and the event broker that subscribers listen on. Switching to another task
drops everything that belonged to the previous identity.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterable

from .client import CloudAgentsClient
from .config import PollingPolicy
from .continuity import ContinuitySnapshot, ContinuityTracker, TimelineEntry
from .events import EventBroker, EventSubscription, SyncEvent, SyncEventKind
from .merge import MessageLog
from .models import Agent, IdResponse, Message
from .poller import PollPhase, TaskPoller

logger = logging.getLogger("cloudagents.session")


class AgentSession:
    def __init__(
        self,
        client: CloudAgentsClient,
        *,
        policy: PollingPolicy | None = None,
        broker: EventBroker | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._policy = policy or client.settings.polling
        self._broker = broker or EventBroker()
        self._clock = clock
        self._rng = rng
        self._tracker = ContinuityTracker()
        self._poller: TaskPoller | None = None

    @property
    def agent_id(self) -> str | None:
        return self._poller.agent_id if self._poller is not None else None

    @property
    def poller(self) -> TaskPoller | None:
        return self._poller

    @property
    def agent(self) -> Agent | None:
        return self._poller.agent if self._poller is not None else None

    @property
    def messages(self) -> list[Message]:
        return self._poller.messages if self._poller is not None else []

    @property
    def phase(self) -> PollPhase:
        return self._poller.phase if self._poller is not None else PollPhase.IDLE

    @property
    def snapshots(self) -> tuple[ContinuitySnapshot, ...]:
        self._sync_continuity()
        return self._tracker.snapshots

    def events(self, kinds: Iterable[SyncEventKind] | None = None) -> EventSubscription:
        return self._broker.subscribe(kinds)

    async def select(self, agent_id: str) -> TaskPoller:
        """Start tracking ``agent_id``; a no-op when it is already tracked."""
        current = self._poller
        if current is not None and current.agent_id == agent_id and current.phase is not PollPhase.STOPPED:
            return current
        if current is not None:
            await current.stop()
        if self._tracker.reset(agent_id):
            logger.debug("session_identity_changed", extra={"agent_id": agent_id})
        poller = TaskPoller(
            self._client,
            agent_id,
            policy=self._policy,
            broker=self._broker,
            log=MessageLog(),
            clock=self._clock,
            rng=self._rng,
        )
        self._poller = poller
        poller.start()
        return poller

    def _require_poller(self) -> TaskPoller:
        if self._poller is None:
            raise RuntimeError("no agent selected; call select() first")
        return self._poller

    def _sync_continuity(self) -> None:
        if self._poller is not None and self._tracker.pending is not None:
            self._tracker.confirm(self._poller.messages)

    async def submit_follow_up(self, prompt: str) -> IdResponse:
        """Post a follow-up and put the poller back into active polling.

        If the task had already finished with a summary, that summary is frozen
        into a continuity snapshot positioned at the end of the current log.
        """
        poller = self._require_poller()
        self._sync_continuity()
        agent_before = poller.agent
        position = len(poller.messages)
        pending_before = self._tracker.pending

        response = await self._client.add_follow_up(poller.agent_id, prompt)

        snapshot = self._tracker.capture(agent_before, position=position, prompt=prompt)
        if snapshot is not None and snapshot is not pending_before:
            self._broker.publish(
                SyncEvent(
                    kind=SyncEventKind.SNAPSHOT_CAPTURED,
                    agent_id=poller.agent_id,
                    snapshot=snapshot,
                    summary=snapshot.summary,
                )
            )
        logger.info(
            "follow_up_submitted",
            extra={"agent_id": poller.agent_id, "snapshot": snapshot is not None},
        )
        poller.reopen()
        return response

    async def stop_agent(self) -> IdResponse:
        """Ask the server to stop the task; polling picks up the terminal status."""
        poller = self._require_poller()
        response = await self._client.stop_agent(poller.agent_id)
        poller.retry_now()
        return response

    def retry_now(self) -> None:
        self._require_poller().retry_now()

    def timeline(self) -> list[TimelineEntry]:
        self._sync_continuity()
        return self._tracker.timeline(self.messages)

    async def wait(self) -> None:
        await self._require_poller().wait()

    async def close(self) -> None:
        if self._poller is not None:
            await self._poller.stop()
        self._broker.close()

    async def __aenter__(self) -> AgentSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


__all__ = ["AgentSession"]
