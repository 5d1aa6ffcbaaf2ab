"""Public REST client for the cloud agents API.

Every call goes through the client's own :class:`PriorityRequestQueue` and
then the :class:`RequestExecutor`; there is no process-wide queue.
"""

from __future__ import annotations

import logging
import random
from typing import Any, TypeVar

import httpx

from .config import ClientSettings
from .executor import Operation, RequestExecutor, SleepFn
from .models import (
    Agent,
    AgentList,
    ApiKeyInfo,
    Conversation,
    FollowUpRequest,
    IdResponse,
    LaunchAgentRequest,
    LaunchSource,
    LaunchTarget,
    Message,
    ModelList,
    Prompt,
    Repository,
    RepositoryList,
)
from .queue import Priority, PriorityRequestQueue
from .result import Empty, Result

logger = logging.getLogger("cloudagents.client")

T = TypeVar("T")


class CloudAgentsClient:
    """Async client; use as ``async with CloudAgentsClient(...) as client``."""

    def __init__(
        self,
        settings: ClientSettings | None = None,
        *,
        executor: RequestExecutor | None = None,
        queue: PriorityRequestQueue | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or ClientSettings.from_env()
        self.executor = executor or RequestExecutor(
            api_key=self.settings.api_key,
            base_url=self.settings.base_url,
            policy=self.settings.retry,
            proxy_mode=self.settings.proxy_mode,
            client=http_client,
            transport=transport,
            sleep=sleep,
            rng=rng,
        )
        self.queue = queue or PriorityRequestQueue(self.settings.queue)

    async def _call(self, operation: Operation, priority: int) -> Result[Any]:
        return await self.queue.submit(
            lambda: self.executor.execute(operation),
            priority,
            label=operation.label,
        )

    async def _request(self, operation: Operation, priority: int) -> Any:
        result = await self._call(operation, priority)
        return result.unwrap()

    async def validate_api_key(self) -> ApiKeyInfo:
        return await self._request(Operation("GET", "/me", schema=ApiKeyInfo), Priority.CRITICAL)

    async def list_repositories(self) -> list[Repository]:
        data: RepositoryList = await self._request(
            Operation("GET", "/repositories", schema=RepositoryList), Priority.NORMAL
        )
        return list(data.repositories)

    async def list_agents(self, limit: int = 20, *, cursor: str | None = None) -> list[Agent]:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        data: AgentList = await self._request(
            Operation("GET", "/agents", params=params, schema=AgentList), Priority.NORMAL
        )
        return list(data.agents)

    async def list_models(self) -> list[str]:
        data: ModelList = await self._request(Operation("GET", "/models", schema=ModelList), Priority.NORMAL)
        return list(data.models)

    async def get_agent(self, agent_id: str, *, priority: int = Priority.NORMAL) -> Agent:
        return await self._request(Operation("GET", f"/agents/{agent_id}", schema=Agent), priority)

    async def fetch_conversation(self, agent_id: str, *, priority: int = Priority.NORMAL) -> Result[Conversation]:
        """Tagged variant: ``Empty`` while the conversation does not exist yet."""
        return await self._call(
            Operation("GET", f"/agents/{agent_id}/conversation", schema=Conversation),
            priority,
        )

    async def get_conversation(self, agent_id: str, *, priority: int = Priority.NORMAL) -> list[Message]:
        result = await self.fetch_conversation(agent_id, priority=priority)
        if isinstance(result, Empty):
            return []
        conversation: Conversation = result.unwrap()
        return list(conversation.messages)

    async def prefetch_conversation(self, agent_id: str) -> list[Message]:
        return await self.get_conversation(agent_id, priority=Priority.PREFETCH)

    async def launch_agent(
        self,
        prompt: str | LaunchAgentRequest,
        *,
        repository: str | None = None,
        ref: str | None = None,
        model: str | None = None,
        branch_name: str | None = None,
        auto_create_pr: bool | None = True,
    ) -> Agent:
        if isinstance(prompt, LaunchAgentRequest):
            request = prompt
        else:
            if not repository:
                raise ValueError("repository is required to launch an agent")
            target = None
            if auto_create_pr is not None or branch_name:
                target = LaunchTarget(auto_create_pr=auto_create_pr, branch_name=branch_name)
            request = LaunchAgentRequest(
                prompt=Prompt(text=prompt),
                source=LaunchSource(repository=repository, ref=ref),
                target=target,
                model=model,
            )
        agent: Agent = await self._request(
            Operation("POST", "/agents", body=request, schema=Agent), Priority.USER_ACTION
        )
        logger.info("agent_launched", extra={"agent_id": agent.id, "status": agent.status.value})
        return agent

    async def add_follow_up(self, agent_id: str, prompt: str | FollowUpRequest) -> IdResponse:
        request = prompt if isinstance(prompt, FollowUpRequest) else FollowUpRequest(prompt=Prompt(text=prompt))
        return await self._request(
            Operation("POST", f"/agents/{agent_id}/followup", body=request, schema=IdResponse),
            Priority.USER_ACTION,
        )

    async def stop_agent(self, agent_id: str) -> IdResponse:
        return await self._request(
            Operation("POST", f"/agents/{agent_id}/stop", schema=IdResponse), Priority.USER_ACTION
        )

    async def delete_agent(self, agent_id: str) -> IdResponse:
        return await self._request(
            Operation("DELETE", f"/agents/{agent_id}", schema=IdResponse), Priority.USER_ACTION
        )

    async def aclose(self) -> None:
        await self.queue.aclose()
        await self.executor.aclose()

    async def __aenter__(self) -> CloudAgentsClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = ["CloudAgentsClient"]
