"""Adaptive polling state machine for one remote task.

Phases::

    idle -> initial_fetch -> polling -> terminal_settling -> stopped
                                ^              |
                                +-- reopen() --+

A single runner task drives the phases; :meth:`TaskPoller.next_delay` is the
only place that decides when the next cycle wakes up. A separate watchdog
task restarts the runner when no cycle has succeeded for
``watchdog_timeout_s`` while the task is still active.

Every runner belongs to a generation. Stopping, reopening or a watchdog
restart bumps the generation, so results of a cycle that was still in flight
are discarded instead of scheduling more work.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .client import CloudAgentsClient
from .config import PollingPolicy
from .errors import AuthError, CloudAgentsError, RateLimitError
from .events import EventBroker, EventSubscription, SyncEvent, SyncEventKind
from .merge import MessageLog
from .models import Agent, Message

logger = logging.getLogger("cloudagents.poller")


class PollPhase(str, Enum):
    IDLE = "idle"
    INITIAL_FETCH = "initial_fetch"
    POLLING = "polling"
    TERMINAL_SETTLING = "terminal_settling"
    STOPPED = "stopped"


_WATCHED_PHASES = frozenset({PollPhase.INITIAL_FETCH, PollPhase.POLLING})


class IntervalClass(str, Enum):
    INITIAL = "initial"
    NORMAL = "normal"
    BACKOFF = "backoff"


@dataclass(slots=True)
class PollState:
    agent_id: str
    started_at: float
    poll_count: int = 0
    interval_class: IntervalClass = IntervalClass.INITIAL
    rate_limited: bool = False
    last_success_at: float | None = None
    last_restart_at: float | None = None
    consecutive_failures: int = 0
    error_surfaced: bool = False
    conversation_backoff_until: float = 0.0
    force_conversation: bool = False
    grace_until: float = 0.0
    terminal_latched: bool = False
    cycles: int = 0
    restarts: int = 0


@dataclass(frozen=True, slots=True)
class CycleOutcome:
    ran: bool
    status_ok: bool = False
    conversation_fetched: bool = False
    appended: int = 0
    error: CloudAgentsError | None = None

    @property
    def ok(self) -> bool:
        return self.status_ok or self.conversation_fetched


class TaskPoller:
    def __init__(
        self,
        client: CloudAgentsClient,
        agent_id: str,
        *,
        policy: PollingPolicy | None = None,
        broker: EventBroker | None = None,
        log: MessageLog | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._agent_id = agent_id
        self._policy = policy or client.settings.polling
        self._broker = broker or EventBroker()
        self._log = log if log is not None else MessageLog()
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self._phase = PollPhase.IDLE
        self._state = PollState(agent_id=agent_id, started_at=clock())
        self._agent: Agent | None = None
        self._error: CloudAgentsError | None = None
        self._generation = 0
        self._in_flight = False
        self._runner: asyncio.Task[None] | None = None
        self._watchdog: asyncio.Task[None] | None = None
        self._done = asyncio.Event()

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def phase(self) -> PollPhase:
        return self._phase

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def agent(self) -> Agent | None:
        return self._agent

    @property
    def messages(self) -> list[Message]:
        return self._log.messages

    @property
    def log(self) -> MessageLog:
        return self._log

    @property
    def error(self) -> CloudAgentsError | None:
        return self._error

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def policy(self) -> PollingPolicy:
        return self._policy

    def events(self, kinds: Iterable[SyncEventKind] | None = None) -> EventSubscription:
        return self._broker.subscribe(kinds)

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Begin tracking: ``idle -> initial_fetch``."""
        if self._phase is not PollPhase.IDLE:
            raise RuntimeError(f"TaskPoller already started (phase={self._phase.value})")
        self._state = PollState(agent_id=self._agent_id, started_at=self._clock())
        self._spawn_runner(initial=True)
        self._ensure_watchdog()

    def reopen(self) -> None:
        """Return to active polling after a follow-up was accepted."""
        now = self._clock()
        state = self._state
        state.poll_count = 0
        state.rate_limited = False
        state.terminal_latched = False
        state.force_conversation = True
        state.conversation_backoff_until = 0.0
        state.grace_until = now + self._policy.follow_up_grace_s
        state.started_at = now
        self._error = None
        self._done.clear()
        logger.info("poll_reopened", extra={"agent_id": self._agent_id, "phase": self._phase.value})
        self._set_phase(PollPhase.POLLING)
        self._restart(reason="reopen")
        self._ensure_watchdog()

    def retry_now(self) -> None:
        """Run a cycle immediately instead of waiting for the next interval."""
        if self._phase in (PollPhase.POLLING, PollPhase.INITIAL_FETCH):
            self._restart(reason="retry")

    async def stop(self) -> None:
        """Stop from any phase; an in-flight cycle no longer schedules anything."""
        self._generation += 1
        self._in_flight = False
        tasks = [task for task in (self._runner, self._watchdog) if task is not None]
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        await asyncio.gather(*(task for task in tasks if task is not current), return_exceptions=True)
        self._runner = None
        self._watchdog = None
        self._finish("stopped")

    async def wait(self) -> None:
        """Wait until the poller is stopped; re-raises an ``AuthError`` that halted it."""
        await self._done.wait()
        if self._error is not None:
            raise self._error

    # -- scheduling ----------------------------------------------------------

    def next_delay(self) -> float:
        """Compute the wait before the next cycle and record its interval class."""
        policy = self._policy
        state = self._state
        if state.rate_limited:
            state.interval_class = IntervalClass.BACKOFF
            base = policy.backoff_interval_s
        elif state.poll_count < policy.initial_cycles:
            state.interval_class = IntervalClass.INITIAL
            base = policy.initial_interval_s
        else:
            state.interval_class = IntervalClass.NORMAL
            base = policy.normal_interval_s
        jitter = self._rng.uniform(-policy.jitter_s, policy.jitter_s) if policy.jitter_s else 0.0
        return max(policy.min_interval_s, base + jitter)

    def _spawn_runner(self, *, initial: bool = False) -> None:
        generation = self._generation
        self._runner = asyncio.create_task(
            self._run(generation, initial=initial),
            name=f"cloudagents:poll:{self._agent_id}",
        )

    def _restart(self, *, reason: str) -> None:
        self._generation += 1
        self._in_flight = False
        self._state.restarts += 1
        self._state.last_restart_at = self._clock()
        old = self._runner
        if old is not None and old is not asyncio.current_task():
            old.cancel()
        logger.debug("poll_restart", extra={"agent_id": self._agent_id, "reason": reason})
        self._spawn_runner()

    def _ensure_watchdog(self) -> None:
        if self._watchdog is None or self._watchdog.done():
            self._watchdog = asyncio.create_task(
                self._watch(),
                name=f"cloudagents:watchdog:{self._agent_id}",
            )

    def _set_phase(self, phase: PollPhase) -> None:
        if phase is self._phase:
            return
        previous = self._phase
        self._phase = phase
        logger.debug(
            "poll_phase_changed",
            extra={"agent_id": self._agent_id, "from_phase": previous.value, "to_phase": phase.value},
        )
        self._emit(SyncEventKind.PHASE_CHANGED, phase=phase.value)

    def _finish(self, reason: str) -> None:
        if self._phase is PollPhase.STOPPED and self._done.is_set():
            return
        self._set_phase(PollPhase.STOPPED)
        self._emit(SyncEventKind.STOPPED, phase=PollPhase.STOPPED.value, reason=reason)
        logger.info("poll_stopped", extra={"agent_id": self._agent_id, "reason": reason})
        self._done.set()

    def _emit(self, kind: SyncEventKind, **fields: Any) -> None:
        self._broker.publish(SyncEvent(kind=kind, agent_id=self._agent_id, **fields))

    def _terminal_ready(self) -> bool:
        return self._agent is not None and self._agent.is_terminal and self._state.terminal_latched

    def _duration_exceeded(self) -> bool:
        limit = self._policy.max_poll_duration_s
        return limit is not None and self._clock() - self._state.started_at >= limit

    async def _run(self, generation: int, *, initial: bool) -> None:
        try:
            if initial:
                self._set_phase(PollPhase.INITIAL_FETCH)
                await self._cycle(initial=True)
            else:
                await self._cycle(force_conversation=True)
            if generation != self._generation or self._phase is PollPhase.STOPPED:
                return
            if self._terminal_ready():
                await self._settle(generation)
                return
            self._set_phase(PollPhase.POLLING)

            while generation == self._generation and self._phase is PollPhase.POLLING:
                if self._duration_exceeded():
                    self._finish("max_duration")
                    return
                await self._sleep(self.next_delay())
                if generation != self._generation:
                    return
                self._state.poll_count += 1
                await self._cycle()
                if generation != self._generation or self._phase is PollPhase.STOPPED:
                    return
                if self._terminal_ready():
                    await self._settle(generation)
                    return
        except asyncio.CancelledError:
            raise
        except Exception:
            # Left for the watchdog to recover.
            logger.exception("poll_loop_crashed", extra={"agent_id": self._agent_id})

    async def _settle(self, generation: int) -> None:
        """Trailing catch-up fetches after a terminal status, then ``stopped``."""
        self._set_phase(PollPhase.TERMINAL_SETTLING)
        for delay in self._policy.settle_delays_s:
            await self._sleep(delay)
            if generation != self._generation:
                return
            await self._cycle(force_conversation=True)
            if generation != self._generation or self._phase is PollPhase.STOPPED:
                return
        for _ in range(self._policy.summary_retry_attempts):
            if self._agent is not None and self._agent.summary:
                break
            await self._sleep(self._policy.summary_retry_interval_s)
            if generation != self._generation:
                return
            await self._cycle(force_conversation=True)
            if generation != self._generation or self._phase is PollPhase.STOPPED:
                return
        self._finish("terminal")

    async def _watch(self) -> None:
        policy = self._policy
        while self._phase is not PollPhase.STOPPED:
            await self._sleep(policy.watchdog_period_s)
            if self._phase not in _WATCHED_PHASES or self._terminal_ready():
                continue
            state = self._state
            marks = [state.started_at, state.last_success_at, state.last_restart_at]
            last_activity = max(mark for mark in marks if mark is not None)
            idle_for = self._clock() - last_activity
            if idle_for > policy.watchdog_timeout_s:
                logger.warning(
                    "poll_watchdog_restart",
                    extra={
                        "agent_id": self._agent_id,
                        "idle_s": round(idle_for, 3),
                        "in_flight": self._in_flight,
                    },
                )
                self._restart(reason="watchdog")

    # -- one cycle -----------------------------------------------------------

    async def _cycle(self, *, initial: bool = False, force_conversation: bool = False) -> CycleOutcome:
        if self._in_flight:
            logger.debug("poll_cycle_skipped", extra={"agent_id": self._agent_id})
            return CycleOutcome(ran=False)
        self._in_flight = True
        generation = self._generation
        try:
            return await self._fetch_all(generation, initial=initial, force_conversation=force_conversation)
        finally:
            if generation == self._generation:
                self._in_flight = False

    def _should_fetch_conversation(self, *, initial: bool, force: bool) -> bool:
        state = self._state
        if force or state.force_conversation:
            return True
        if self._clock() < state.conversation_backoff_until:
            return False
        if initial:
            return True
        if self._agent is not None and self._agent.is_terminal:
            return True
        return state.poll_count % self._policy.conversation_every == 0

    async def _fetch_all(self, generation: int, *, initial: bool, force_conversation: bool) -> CycleOutcome:
        state = self._state
        status_ok = False
        conversation_fetched = False
        appended = 0
        last_error: CloudAgentsError | None = None

        try:
            agent = await self._client.get_agent(self._agent_id)
        except AuthError as exc:
            self._halt_on_auth(exc, generation)
            return CycleOutcome(ran=True, error=exc)
        except RateLimitError as exc:
            if generation == self._generation:
                state.rate_limited = True
            last_error = exc
        except CloudAgentsError as exc:
            last_error = exc
        else:
            if generation != self._generation:
                return CycleOutcome(ran=True)
            self._apply_agent(agent)
            state.rate_limited = False
            status_ok = True

        if generation != self._generation:
            return CycleOutcome(ran=True)

        if self._should_fetch_conversation(initial=initial, force=force_conversation):
            try:
                messages = await self._client.get_conversation(self._agent_id)
            except AuthError as exc:
                self._halt_on_auth(exc, generation)
                return CycleOutcome(ran=True, status_ok=status_ok, error=exc)
            except RateLimitError as exc:
                if generation == self._generation:
                    state.conversation_backoff_until = self._clock() + self._policy.conversation_backoff_s
                last_error = exc
            except CloudAgentsError as exc:
                last_error = exc
            else:
                if generation != self._generation:
                    return CycleOutcome(ran=True)
                conversation_fetched = True
                state.force_conversation = False
                state.conversation_backoff_until = 0.0
                new_messages = self._log.merge(messages)
                appended = len(new_messages)
                if new_messages:
                    self._emit(SyncEventKind.MESSAGES_APPENDED, messages=new_messages)

        outcome = CycleOutcome(
            ran=True,
            status_ok=status_ok,
            conversation_fetched=conversation_fetched,
            appended=appended,
            error=last_error,
        )
        self._record(outcome)
        return outcome

    def _apply_agent(self, agent: Agent) -> None:
        state = self._state
        previous = self._agent
        if state.terminal_latched and previous is not None and not agent.is_terminal:
            logger.debug(
                "stale_status_ignored",
                extra={"agent_id": self._agent_id, "status": agent.status.value, "kept": previous.status.value},
            )
            return
        self._agent = agent
        if agent.is_terminal and self._clock() >= state.grace_until:
            state.terminal_latched = True
        if previous is None or previous.status != agent.status or previous.summary != agent.summary:
            self._emit(SyncEventKind.STATUS_CHANGED, status=agent.status, summary=agent.summary)

    def _record(self, outcome: CycleOutcome) -> None:
        state = self._state
        state.cycles += 1
        if outcome.ok:
            state.last_success_at = self._clock()
            if state.error_surfaced:
                self._emit(SyncEventKind.RECOVERED)
            state.consecutive_failures = 0
            state.error_surfaced = False
            return
        state.consecutive_failures += 1
        error = outcome.error
        logger.info(
            "poll_cycle_failed",
            extra={
                "agent_id": self._agent_id,
                "failures": state.consecutive_failures,
                "error_type": type(error).__name__ if error is not None else None,
            },
        )
        if state.consecutive_failures >= self._policy.error_threshold and not state.error_surfaced:
            state.error_surfaced = True
            self._emit(
                SyncEventKind.ERROR,
                error=error.to_dict() if error is not None else None,
                reason="repeated_failures",
            )

    def _halt_on_auth(self, exc: AuthError, generation: int) -> None:
        if generation != self._generation:
            return
        self._generation += 1
        self._in_flight = False
        self._error = exc
        logger.warning("poll_auth_failed", extra={"agent_id": self._agent_id})
        self._emit(SyncEventKind.AUTH_FAILED, error=exc.to_dict())
        self._finish("auth_failed")
        if self._watchdog is not None and self._watchdog is not asyncio.current_task():
            self._watchdog.cancel()


__all__ = ["CycleOutcome", "IntervalClass", "PollPhase", "PollState", "TaskPoller"]
