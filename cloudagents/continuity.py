"""Continuity snapshots for multi-turn conversations.

The remote ``summary`` field describes only the latest run of a task and is
overwritten once a follow-up starts a new run. When a follow-up is submitted
to a finished task, the tracker freezes the summary that was visible at that
moment and pins it to the log position right before the follow-up's first
message.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from .models import Agent, Message, MessageType

logger = logging.getLogger("cloudagents.continuity")


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ContinuitySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_id: str
    summary: str
    position: int = Field(ge=0)
    prompt: str | None = None
    captured_at: datetime = Field(default_factory=_utc_now)
    confirmed: bool = False


TimelineEntry = Message | ContinuitySnapshot


class ContinuityTracker:
    def __init__(self) -> None:
        self._agent_id: str | None = None
        self._snapshots: list[ContinuitySnapshot] = []
        self._pending: ContinuitySnapshot | None = None

    @property
    def agent_id(self) -> str | None:
        return self._agent_id

    @property
    def snapshots(self) -> tuple[ContinuitySnapshot, ...]:
        return tuple(self._snapshots)

    @property
    def pending(self) -> ContinuitySnapshot | None:
        return self._pending

    def reset(self, agent_id: str | None) -> bool:
        """Switch to ``agent_id``; snapshots of any other identity are dropped."""
        if agent_id == self._agent_id:
            return False
        self._agent_id = agent_id
        self._snapshots.clear()
        self._pending = None
        return True

    def capture(self, agent: Agent | None, *, position: int, prompt: str | None = None) -> ContinuitySnapshot | None:
        """Freeze ``agent.summary`` for the follow-up being submitted.

        Only terminal tasks with a non-empty summary produce a snapshot, and
        only one snapshot is taken per follow-up cycle: capturing the same
        prompt at the same position again returns the open snapshot. A
        different follow-up over a new summary closes the open cycle, leaving
        its snapshot anchored where it was captured.
        """
        if agent is None:
            return None
        self.reset(agent.id)
        prompt = prompt.strip() if prompt else None
        summary = (agent.summary or "").strip()
        pending = self._pending
        if pending is not None:
            if pending.prompt == prompt and pending.position == max(0, position):
                return pending
            if pending.summary == summary:
                # Still the run the open snapshot was taken from.
                return None
            self.close_cycle()
        if not agent.is_terminal or not summary:
            return None
        snapshot = ContinuitySnapshot(
            agent_id=agent.id,
            summary=summary,
            position=max(0, position),
            prompt=prompt,
        )
        self._pending = snapshot
        self._snapshots.append(snapshot)
        logger.debug(
            "continuity_snapshot_captured",
            extra={"agent_id": agent.id, "position": snapshot.position},
        )
        return snapshot

    def confirm(self, messages: Sequence[Message]) -> ContinuitySnapshot | None:
        """Anchor the open snapshot to the follow-up message once it shows up."""
        pending = self._pending
        if pending is None:
            return None
        for index in range(pending.position, len(messages)):
            message = messages[index]
            if message.type != MessageType.USER:
                continue
            if pending.prompt is not None and message.text.strip() != pending.prompt:
                continue
            confirmed = pending.model_copy(update={"position": index, "confirmed": True})
            self._replace(pending, confirmed)
            self._pending = None
            return confirmed
        return None

    def close_cycle(self) -> None:
        """End the open follow-up cycle without re-anchoring its snapshot."""
        if self._pending is not None:
            logger.debug(
                "continuity_cycle_abandoned",
                extra={"agent_id": self._agent_id, "position": self._pending.position},
            )
        self._pending = None

    def _replace(self, old: ContinuitySnapshot, new: ContinuitySnapshot) -> None:
        for index, snapshot in enumerate(self._snapshots):
            if snapshot is old:
                self._snapshots[index] = new
                return

    def timeline(self, messages: Sequence[Message]) -> list[TimelineEntry]:
        """Interleave ``messages`` and snapshots in display order."""
        by_position: dict[int, list[ContinuitySnapshot]] = {}
        for snapshot in self._snapshots:
            by_position.setdefault(min(snapshot.position, len(messages)), []).append(snapshot)
        entries: list[TimelineEntry] = []
        for index, message in enumerate(messages):
            entries.extend(by_position.get(index, ()))
            entries.append(message)
        entries.extend(by_position.get(len(messages), ()))
        return entries


__all__ = ["ContinuitySnapshot", "ContinuityTracker", "TimelineEntry"]
