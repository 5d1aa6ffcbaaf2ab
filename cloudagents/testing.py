"""In-memory stand-in for the cloud agents API.

``MockCloudAgentsApi`` serves every endpoint through :class:`httpx.MockTransport`,
so the real executor, queue and poller run unchanged against it::

    api = MockCloudAgentsApi(latency_s=0)
    async with api.client() as client:
        agent = await client.launch_agent("fix it", repository="github.com/acme/app")

Failure modes reproduce what the real service does under stress: ``rate_limit``
(429 with ``Retry-After``), ``network`` (connection error), ``slow``, ``auth``
(401) and ``malformed`` (non-JSON body). With ``once=True`` the mode resets
after the next request.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import re
import uuid
from collections import deque
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from .client import CloudAgentsClient
from .config import DEFAULT_BASE_URL, ClientSettings
from .models import (
    Agent,
    AgentSource,
    AgentStatus,
    AgentTarget,
    ApiKeyInfo,
    FollowUpRequest,
    LaunchAgentRequest,
    Message,
    MessageType,
    Repository,
)

logger = logging.getLogger("cloudagents.testing")

DEFAULT_MODELS = ("composer-1", "opus-4.5", "gpt-5.2", "claude-4.5-sonnet")


class FailureMode(str, Enum):
    NONE = "none"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SLOW = "slow"
    AUTH = "auth"
    MALFORMED = "malformed"


@dataclass(slots=True)
class MockConfig:
    mode: FailureMode = FailureMode.NONE
    latency_s: float = 0.25
    slow_latency_s: float = 2.0
    retry_after_s: float = 1.2
    once: bool = False


@dataclass(slots=True)
class ScriptStep:
    """State applied to an agent on one status fetch."""

    status: AgentStatus
    messages: list[Message] | None = None
    summary: str | None = None


@dataclass(slots=True)
class _AgentRecord:
    agent: Agent
    messages: list[Message] | None = field(default_factory=list)
    script: deque[ScriptStep] = field(default_factory=deque)


def _now() -> datetime:
    return datetime.now(UTC)


def user_message(message_id: str, text: str) -> Message:
    return Message(id=message_id, type=MessageType.USER, text=text)


def assistant_message(message_id: str, text: str) -> Message:
    return Message(id=message_id, type=MessageType.ASSISTANT, text=text)


class MockCloudAgentsApi:
    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        latency_s: float = 0.25,
        complete_after_s: float | None = 0.8,
        seed: bool = True,
    ) -> None:
        self.config = MockConfig(latency_s=latency_s)
        self.complete_after_s = complete_after_s
        self.requests: list[tuple[str, str]] = []
        self.models: list[str] = list(DEFAULT_MODELS)
        self.user = ApiKeyInfo(api_key_name="mock-key", created_at=_now(), user_email="mock@example.dev")
        self.repositories: list[Repository] = [
            Repository(owner="acme", name="web", repository="github.com/acme/web"),
            Repository(owner="acme", name="server", repository="github.com/acme/server"),
            Repository(owner="acme", name="design-system", repository="github.com/acme/design-system"),
        ]
        self._prefix = httpx.URL(base_url).path.rstrip("/")
        self._records: dict[str, _AgentRecord] = {}
        self._ids = itertools.count(1)
        self._routes = [
            ("GET", re.compile(r"^/me$"), self._get_me),
            ("GET", re.compile(r"^/repositories$"), self._list_repositories),
            ("GET", re.compile(r"^/models$"), self._list_models),
            ("GET", re.compile(r"^/agents$"), self._list_agents),
            ("POST", re.compile(r"^/agents$"), self._launch),
            ("GET", re.compile(r"^/agents/(?P<agent_id>[^/]+)$"), self._get_agent),
            ("DELETE", re.compile(r"^/agents/(?P<agent_id>[^/]+)$"), self._delete),
            ("GET", re.compile(r"^/agents/(?P<agent_id>[^/]+)/conversation$"), self._get_conversation),
            ("POST", re.compile(r"^/agents/(?P<agent_id>[^/]+)/followup$"), self._follow_up),
            ("POST", re.compile(r"^/agents/(?P<agent_id>[^/]+)/stop$"), self._stop),
        ]
        if seed:
            self._seed()

    # -- control surface -----------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, settings: ClientSettings | None = None, **overrides: Any) -> CloudAgentsClient:
        """A real client wired to this mock."""
        if settings is None:
            settings = ClientSettings(api_key="mock-key", **overrides)
        return CloudAgentsClient(settings, transport=self.transport())

    def set_mode(
        self,
        mode: FailureMode | str,
        *,
        once: bool = False,
        retry_after_s: float | None = None,
    ) -> None:
        self.config.mode = FailureMode(mode)
        self.config.once = once
        if retry_after_s is not None:
            self.config.retry_after_s = retry_after_s

    def reset_mode(self) -> None:
        self.config.mode = FailureMode.NONE
        self.config.once = False

    @contextmanager
    def failure(self, mode: FailureMode | str, *, once: bool = True) -> Iterator[MockConfig]:
        previous = (self.config.mode, self.config.once)
        self.set_mode(mode, once=once)
        try:
            yield self.config
        finally:
            self.config.mode, self.config.once = previous

    def add_agent(
        self,
        agent_id: str | None = None,
        *,
        status: AgentStatus = AgentStatus.RUNNING,
        name: str = "Mock agent task",
        summary: str | None = None,
        repository: str = "github.com/acme/web",
        messages: Iterable[Message] | None = (),
    ) -> Agent:
        """Register an agent; ``messages=None`` means its conversation does not exist yet."""
        agent_id = agent_id or f"bc-{uuid.uuid4().hex[:8]}"
        agent = Agent(
            id=agent_id,
            name=name,
            status=status,
            summary=summary,
            created_at=_now(),
            source=AgentSource(repository=repository, ref="main"),
            target=AgentTarget(
                branch_name=f"{agent_id}-branch",
                url=f"https://cursor.com/agents/{agent_id}",
                auto_create_pr=True,
            ),
        )
        self._records[agent_id] = _AgentRecord(
            agent=agent,
            messages=None if messages is None else list(messages),
        )
        return agent

    def agent(self, agent_id: str) -> Agent:
        return self._records[agent_id].agent

    def messages(self, agent_id: str) -> list[Message]:
        return list(self._records[agent_id].messages or [])

    def set_status(self, agent_id: str, status: AgentStatus, *, summary: str | None = None) -> Agent:
        record = self._records[agent_id]
        update: dict[str, Any] = {"status": status}
        if summary is not None:
            update["summary"] = summary
        record.agent = record.agent.model_copy(update=update)
        return record.agent

    def set_summary(self, agent_id: str, summary: str | None) -> Agent:
        record = self._records[agent_id]
        record.agent = record.agent.model_copy(update={"summary": summary})
        return record.agent

    def append_messages(self, agent_id: str, *messages: Message) -> None:
        record = self._records[agent_id]
        if record.messages is None:
            record.messages = []
        record.messages.extend(messages)

    def replace_messages(self, agent_id: str, messages: Iterable[Message]) -> None:
        self._records[agent_id].messages = list(messages)

    def script(self, agent_id: str, steps: Iterable[ScriptStep]) -> None:
        """Queue states applied one per status fetch; the last one sticks."""
        self._records[agent_id].script.extend(steps)

    def count(self, method: str, path: str) -> int:
        return sum(1 for entry in self.requests if entry == (method, path))

    # -- transport -----------------------------------------------------------

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if self._prefix and path.startswith(self._prefix):
            path = path[len(self._prefix) :] or "/"
        self.requests.append((request.method, path))

        failure = await self._apply_failure(path)
        if failure is not None:
            return failure

        for method, pattern, handler in self._routes:
            if method != request.method:
                continue
            match = pattern.match(path)
            if match is not None:
                return handler(request, **match.groupdict())
        return self._error(404, f"No route for {request.method} {path}")

    async def _apply_failure(self, path: str) -> httpx.Response | None:
        config = self.config
        mode = config.mode
        if config.once:
            self.reset_mode()
        delay = config.slow_latency_s if mode is FailureMode.SLOW else config.latency_s
        if delay > 0:
            await asyncio.sleep(delay)
        if mode is FailureMode.RATE_LIMIT:
            return httpx.Response(
                429,
                headers={"Retry-After": f"{config.retry_after_s:g}"},
                json={"error": f"Mock rate limit on {path}"},
            )
        if mode is FailureMode.NETWORK:
            raise httpx.ConnectError(f"Mock network error on {path}")
        if mode is FailureMode.AUTH:
            return self._error(401, "Mock auth failure")
        if mode is FailureMode.MALFORMED:
            return httpx.Response(200, content=b"{not json", headers={"Content-Type": "application/json"})
        return None

    @staticmethod
    def _error(status_code: int, message: str) -> httpx.Response:
        return httpx.Response(status_code, json={"error": message})

    def _record(self, agent_id: str) -> _AgentRecord | None:
        return self._records.get(agent_id)

    # -- routes --------------------------------------------------------------

    def _get_me(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=self.user.to_wire())

    def _list_repositories(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"repositories": [repo.to_wire() for repo in self.repositories]})

    def _list_models(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"models": self.models})

    def _list_agents(self, request: httpx.Request) -> httpx.Response:
        limit = int(request.url.params.get("limit", 20))
        agents = [record.agent for record in reversed(self._records.values())][:limit]
        return httpx.Response(200, json={"agents": [agent.to_wire() for agent in agents]})

    def _get_agent(self, request: httpx.Request, agent_id: str) -> httpx.Response:
        record = self._record(agent_id)
        if record is None:
            return self._error(404, f"Agent not found: {agent_id}")
        if record.script:
            step = record.script.popleft() if len(record.script) > 1 else record.script[0]
            update: dict[str, Any] = {"status": step.status}
            if step.summary is not None:
                update["summary"] = step.summary
            record.agent = record.agent.model_copy(update=update)
            if step.messages is not None:
                record.messages = list(step.messages)
        return httpx.Response(200, json=record.agent.to_wire())

    def _get_conversation(self, request: httpx.Request, agent_id: str) -> httpx.Response:
        record = self._record(agent_id)
        if record is None or record.messages is None:
            return self._error(404, f"Conversation not found: {agent_id}")
        return httpx.Response(
            200,
            json={"id": agent_id, "messages": [message.to_wire() for message in record.messages]},
        )

    def _launch(self, request: httpx.Request) -> httpx.Response:
        try:
            params = LaunchAgentRequest.model_validate_json(request.content)
        except ValidationError as exc:
            return self._error(400, str(exc))
        agent = self.add_agent(
            name=params.prompt.text[:80],
            repository=params.source.repository,
            messages=(),
        )
        target = AgentTarget(
            branch_name=(params.target.branch_name if params.target else None) or f"{agent.id}-branch",
            url=f"https://cursor.com/agents/{agent.id}",
            auto_create_pr=(params.target.auto_create_pr if params.target else None) is not False,
        )
        record = self._records[agent.id]
        record.agent = agent.model_copy(
            update={
                "source": AgentSource(repository=params.source.repository, ref=params.source.ref or "main"),
                "target": target,
            }
        )
        record.messages = [
            user_message(f"{agent.id}-u", params.prompt.text),
            assistant_message(f"{agent.id}-a", "Starting work in mock environment..."),
        ]
        self._schedule_completion(agent.id)
        return httpx.Response(200, json=record.agent.to_wire())

    def _follow_up(self, request: httpx.Request, agent_id: str) -> httpx.Response:
        record = self._record(agent_id)
        if record is None:
            return self._error(404, f"Agent not found: {agent_id}")
        try:
            params = FollowUpRequest.model_validate_json(request.content)
        except ValidationError as exc:
            return self._error(400, str(exc))
        follow_id = f"{agent_id}-follow-{next(self._ids)}"
        self.append_messages(
            agent_id,
            user_message(f"{follow_id}-u", params.prompt.text),
            assistant_message(f"{follow_id}-a", "Acknowledged follow-up (mock)."),
        )
        record.agent = record.agent.model_copy(update={"status": AgentStatus.RUNNING})
        self._schedule_completion(agent_id)
        return httpx.Response(200, json={"id": follow_id})

    def _stop(self, request: httpx.Request, agent_id: str) -> httpx.Response:
        record = self._record(agent_id)
        if record is None:
            return self._error(404, f"Agent not found: {agent_id}")
        record.agent = record.agent.model_copy(update={"status": AgentStatus.STOPPED})
        return httpx.Response(200, json={"id": agent_id})

    def _delete(self, request: httpx.Request, agent_id: str) -> httpx.Response:
        if self._records.pop(agent_id, None) is None:
            return self._error(404, f"Agent not found: {agent_id}")
        return httpx.Response(200, json={"id": agent_id})

    def _schedule_completion(self, agent_id: str) -> None:
        if self.complete_after_s is None:
            return
        asyncio.get_running_loop().call_later(self.complete_after_s, self._complete, agent_id)

    def _complete(self, agent_id: str) -> None:
        record = self._record(agent_id)
        if record is None or record.agent.status is not AgentStatus.RUNNING:
            return
        repository = record.agent.source.repository if record.agent.source else ""
        slug = repository.removeprefix("github.com/")
        target = record.agent.target or AgentTarget()
        record.agent = record.agent.model_copy(
            update={
                "status": AgentStatus.FINISHED,
                "summary": "Completed mock task successfully.",
                "target": target.model_copy(update={"pr_url": f"https://github.com/{slug}/pull/1"}),
            }
        )
        self.append_messages(
            agent_id,
            assistant_message(f"{agent_id}-done-{next(self._ids)}", "All done! Check the mock PR for details."),
        )
        logger.debug("mock_agent_completed", extra={"agent_id": agent_id})

    def _seed(self) -> None:
        self.add_agent(
            "mock-1",
            name="Fix flaky tests in web",
            status=AgentStatus.FINISHED,
            summary="Stabilized flaky e2e by waiting for websocket ready signal.",
            messages=[
                user_message("u-1", "Please fix flaky tests in e2e suite."),
                assistant_message("a-1", "Identified race in websocket init; adding readiness check."),
                assistant_message("a-2", "Pushed changes to mock-fix-tests and opened PR #123."),
            ],
        )
        self.add_agent(
            "mock-2",
            name="Implement onboarding improvements",
            status=AgentStatus.RUNNING,
            messages=[
                user_message("u-2", "Improve onboarding copy and reduce steps."),
                assistant_message("a-3", "Reviewing current onboarding flows and metrics."),
            ],
        )


__all__ = [
    "DEFAULT_MODELS",
    "FailureMode",
    "MockCloudAgentsApi",
    "MockConfig",
    "ScriptStep",
    "assistant_message",
    "user_message",
]
