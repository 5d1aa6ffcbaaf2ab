from __future__ import annotations

import asyncio

import pytest

from conftest import BASE_URL, make_settings

from cloudagents.errors import MalformedResponseError, RateLimitError, TransientError
from cloudagents.models import AgentStatus
from cloudagents.testing import FailureMode, MockCloudAgentsApi


@pytest.mark.asyncio
async def test_seeded_agents_and_conversations() -> None:
    api = MockCloudAgentsApi(base_url=BASE_URL, latency_s=0.0)
    async with api.client(make_settings()) as client:
        agents = await client.list_agents()
        messages = await client.get_conversation("mock-1")

    assert {agent.id for agent in agents} == {"mock-1", "mock-2"}
    assert [message.id for message in messages] == ["u-1", "a-1", "a-2"]


@pytest.mark.asyncio
async def test_launched_agent_finishes_after_delay() -> None:
    api = MockCloudAgentsApi(base_url=BASE_URL, latency_s=0.0, complete_after_s=0.01, seed=False)
    async with api.client(make_settings()) as client:
        agent = await client.launch_agent("Ship it", repository="github.com/acme/web")
        assert agent.status is AgentStatus.RUNNING
        await asyncio.sleep(0.05)
        finished = await client.get_agent(agent.id)
        messages = await client.get_conversation(agent.id)

    assert finished.status is AgentStatus.FINISHED
    assert finished.summary == "Completed mock task successfully."
    assert finished.target is not None
    assert finished.target.pr_url == "https://github.com/acme/web/pull/1"
    assert messages[0].text == "Ship it"
    assert messages[-1].text.startswith("All done")


@pytest.mark.asyncio
async def test_failure_modes(mock_api: MockCloudAgentsApi) -> None:
    mock_api.add_agent("bc-1")
    async with mock_api.client(make_settings()) as client:
        mock_api.set_mode(FailureMode.RATE_LIMIT, retry_after_s=3.0)
        with pytest.raises(RateLimitError) as rate_limited:
            await client.get_agent("bc-1")
        assert rate_limited.value.retry_after_s == 3.0

        mock_api.set_mode("malformed")
        with pytest.raises(MalformedResponseError):
            await client.get_agent("bc-1")

        mock_api.set_mode("network", once=True)
        with pytest.raises(TransientError):
            await client.get_agent("bc-1")
        assert mock_api.config.mode is FailureMode.NONE

        with mock_api.failure("malformed"):
            with pytest.raises(MalformedResponseError):
                await client.get_agent("bc-1")
        assert (await client.get_agent("bc-1")).id == "bc-1"


@pytest.mark.asyncio
async def test_delete_and_stop(mock_api: MockCloudAgentsApi) -> None:
    mock_api.add_agent("bc-1")
    async with mock_api.client(make_settings()) as client:
        await client.stop_agent("bc-1")
        assert mock_api.agent("bc-1").status is AgentStatus.STOPPED
        await client.delete_agent("bc-1")
        assert await client.list_agents() == []
