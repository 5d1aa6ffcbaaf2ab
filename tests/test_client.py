from __future__ import annotations

import json

import httpx
import pytest

from conftest import BASE_URL, make_settings

from cloudagents.client import CloudAgentsClient
from cloudagents.errors import AuthError, NotFoundError
from cloudagents.models import AgentStatus
from cloudagents.queue import Priority, PriorityRequestQueue
from cloudagents.testing import MockCloudAgentsApi


class RecordingQueue(PriorityRequestQueue):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.priorities: list[tuple[str | None, int]] = []

    async def submit(self, factory, priority=Priority.NORMAL, *, label=None):
        self.priorities.append((label, int(priority)))
        return await super().submit(factory, priority, label=label)


def _client(mock_api: MockCloudAgentsApi) -> tuple[CloudAgentsClient, RecordingQueue]:
    settings = make_settings()
    queue = RecordingQueue(settings.queue)
    return CloudAgentsClient(settings, queue=queue, transport=mock_api.transport()), queue


@pytest.mark.asyncio
async def test_endpoints_use_expected_priorities(mock_api: MockCloudAgentsApi) -> None:
    mock_api.add_agent("bc-1", messages=[])
    client, queue = _client(mock_api)

    async with client:
        await client.validate_api_key()
        await client.list_agents(5)
        await client.get_agent("bc-1")
        await client.get_conversation("bc-1")
        await client.prefetch_conversation("bc-1")
        await client.add_follow_up("bc-1", "more")
        await client.stop_agent("bc-1")
        await client.delete_agent("bc-1")

    assert queue.priorities == [
        ("GET /me", Priority.CRITICAL),
        ("GET /agents", Priority.NORMAL),
        ("GET /agents/bc-1", Priority.NORMAL),
        ("GET /agents/bc-1/conversation", Priority.NORMAL),
        ("GET /agents/bc-1/conversation", Priority.PREFETCH),
        ("POST /agents/bc-1/followup", Priority.USER_ACTION),
        ("POST /agents/bc-1/stop", Priority.USER_ACTION),
        ("DELETE /agents/bc-1", Priority.USER_ACTION),
    ]


@pytest.mark.asyncio
async def test_launch_sends_camel_case_request() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "bc-9", "name": "Add tests", "status": "CREATING"})

    async with CloudAgentsClient(make_settings(), transport=httpx.MockTransport(handler)) as client:
        agent = await client.launch_agent(
            "Add tests",
            repository="github.com/acme/app",
            ref="develop",
            model="composer-1",
            branch_name="agent/tests",
            auto_create_pr=False,
        )

    assert agent.id == "bc-9"
    assert agent.status is AgentStatus.CREATING
    assert seen == [
        {
            "prompt": {"text": "Add tests"},
            "source": {"repository": "github.com/acme/app", "ref": "develop"},
            "target": {"autoCreatePr": False, "branchName": "agent/tests"},
            "model": "composer-1",
        }
    ]


@pytest.mark.asyncio
async def test_launch_requires_repository(mock_api: MockCloudAgentsApi) -> None:
    async with mock_api.client(make_settings()) as client:
        with pytest.raises(ValueError):
            await client.launch_agent("Do it")


@pytest.mark.asyncio
async def test_missing_conversation_is_empty_but_missing_agent_raises(mock_api: MockCloudAgentsApi) -> None:
    mock_api.add_agent("bc-1", messages=None)

    async with mock_api.client(make_settings()) as client:
        assert await client.get_conversation("bc-1") == []
        with pytest.raises(NotFoundError):
            await client.get_agent("bc-404")


@pytest.mark.asyncio
async def test_auth_error_raised_from_client(mock_api: MockCloudAgentsApi) -> None:
    mock_api.set_mode("auth")
    async with mock_api.client(make_settings()) as client:
        with pytest.raises(AuthError):
            await client.validate_api_key()


@pytest.mark.asyncio
async def test_listing_endpoints(mock_api: MockCloudAgentsApi) -> None:
    mock_api.add_agent("bc-1")
    mock_api.add_agent("bc-2")

    async with mock_api.client(make_settings()) as client:
        repositories = await client.list_repositories()
        models = await client.list_models()
        agents = await client.list_agents(1)

    assert [repo.repository for repo in repositories][0] == "github.com/acme/web"
    assert "composer-1" in models
    assert [agent.id for agent in agents] == ["bc-2"]
    assert mock_api.requests[-1] == ("GET", "/agents")


def test_settings_base_url_is_used(mock_api: MockCloudAgentsApi) -> None:
    client = mock_api.client(make_settings())
    assert client.settings.base_url == BASE_URL
    assert client.queue.policy.max_concurrent == 2
