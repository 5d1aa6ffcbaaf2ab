"""cloudagents command-line interface."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import click
from pydantic import SecretStr

from . import __version__
from .client import CloudAgentsClient
from .config import ClientSettings, PollingPolicy
from .errors import CloudAgentsError
from .events import SyncEvent, SyncEventKind
from .logging_setup import configure_logging
from .models import Agent, MessageType
from .session import AgentSession
from .testing import FailureMode, MockCloudAgentsApi

T = TypeVar("T")

# The in-memory API finishes tasks within a second; poll it accordingly.
MOCK_POLLING = PollingPolicy(
    initial_interval_s=0.2,
    normal_interval_s=0.4,
    backoff_interval_s=1.0,
    jitter_s=0.0,
    min_interval_s=0.05,
    settle_delays_s=(0.1, 0.1, 0.1, 0.2),
    summary_retry_interval_s=0.2,
    follow_up_grace_s=1.0,
    watchdog_period_s=1.0,
    watchdog_timeout_s=5.0,
)


@dataclass(slots=True)
class CliContext:
    api_key: str | None
    base_url: str | None
    mock: bool
    mock_mode: str | None = None

    def settings(self) -> ClientSettings:
        settings = ClientSettings.from_env(api_key=self.api_key, base_url=self.base_url)
        if self.mock:
            return settings.model_copy(update={"api_key": SecretStr("mock-key"), "polling": MOCK_POLLING})
        return settings

    def build_client(self) -> CloudAgentsClient:
        settings = self.settings()
        if self.mock:
            api = MockCloudAgentsApi(base_url=settings.base_url, latency_s=0.0)
            if self.mock_mode:
                api.set_mode(self.mock_mode, retry_after_s=0.0)
            return api.client(settings)
        if settings.api_key is None:
            raise click.UsageError("Missing API key: pass --api-key or set CLOUDAGENTS_API_KEY.")
        return CloudAgentsClient(settings)


def _run(ctx: CliContext, action: Callable[[CloudAgentsClient], Awaitable[T]]) -> T:
    async def runner() -> T:
        async with ctx.build_client() as client:
            return await action(client)

    try:
        return asyncio.run(runner())
    except CloudAgentsError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


def _echo_agent(agent: Agent) -> None:
    click.echo(f"{agent.id}  {agent.status.value:<9} {agent.name}")
    if agent.target and agent.target.url:
        click.echo(f"  url: {agent.target.url}")
    if agent.target and agent.target.pr_url:
        click.echo(f"  pr:  {agent.target.pr_url}")


def _render_event(event: SyncEvent, as_json: bool) -> None:
    if as_json:
        click.echo(event.model_dump_json(exclude_none=True))
        return
    kind = event.kind
    if kind is SyncEventKind.STATUS_CHANGED and event.status is not None:
        click.echo(f"● {event.status.value}")
        if event.summary:
            click.echo(f"  summary: {event.summary}")
    elif kind is SyncEventKind.MESSAGES_APPENDED:
        for message in event.messages:
            who = "you" if message.type is MessageType.USER else "agent"
            click.echo(f"[{who}] {message.text}")
    elif kind is SyncEventKind.ERROR:
        message = (event.error or {}).get("message", "unknown error")
        click.echo(f"! polling degraded: {message}", err=True)
    elif kind is SyncEventKind.RECOVERED:
        click.echo("✓ polling recovered", err=True)
    elif kind is SyncEventKind.STOPPED:
        click.echo(f"■ stopped ({event.reason})")


async def _watch(
    client: CloudAgentsClient,
    agent_id: str,
    *,
    max_duration: float | None,
    as_json: bool,
) -> None:
    policy = client.settings.polling
    if max_duration is not None:
        policy = policy.model_copy(update={"max_poll_duration_s": max_duration})
    async with AgentSession(client, policy=policy) as session:
        events = session.events()
        await session.select(agent_id)
        async for event in events:
            _render_event(event, as_json)
            if event.kind is SyncEventKind.STOPPED:
                break
        await session.wait()


@click.group()
@click.version_option(version=__version__, prog_name="cloudagents")
@click.option("--api-key", envvar="CLOUDAGENTS_API_KEY", default=None, help="API key (defaults to $CLOUDAGENTS_API_KEY).")
@click.option("--base-url", default=None, help="Override the API base URL.")
@click.option("--mock", is_flag=True, help="Run against the in-memory mock API.")
@click.option(
    "--mock-mode",
    type=click.Choice([mode.value for mode in FailureMode]),
    default=None,
    help="Failure mode of the mock API (implies --mock).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log to stderr at this level (defaults to $CLOUDAGENTS_LOG_LEVEL).",
)
@click.pass_context
def app(
    ctx: click.Context,
    api_key: str | None,
    base_url: str | None,
    mock: bool,
    mock_mode: str | None,
    log_level: str | None,
) -> None:
    """Launch and follow cloud coding agents."""
    ctx.obj = CliContext(api_key=api_key, base_url=base_url, mock=mock or mock_mode is not None, mock_mode=mock_mode)
    level = log_level or ctx.obj.settings().log_level
    if level:
        configure_logging(level)


@app.command()
@click.pass_obj
def me(obj: CliContext) -> None:
    """Show the identity behind the API key."""
    info = _run(obj, lambda client: client.validate_api_key())
    click.echo(f"{info.api_key_name} ({info.user_email or 'unknown user'})")


@app.command()
@click.pass_obj
def repos(obj: CliContext) -> None:
    """List repositories agents can work on."""
    repositories = _run(obj, lambda client: client.list_repositories())
    for repo in repositories:
        click.echo(repo.repository)


@app.command()
@click.pass_obj
def models(obj: CliContext) -> None:
    """List models available for new agents."""
    for name in _run(obj, lambda client: client.list_models()):
        click.echo(name)


@app.command()
@click.option("--limit", default=20, show_default=True, type=click.IntRange(1, 100))
@click.pass_obj
def agents(obj: CliContext, limit: int) -> None:
    """List recent agents."""
    for agent in _run(obj, lambda client: client.list_agents(limit)):
        _echo_agent(agent)


@app.command()
@click.option("--repo", "repository", required=True, help="Repository, e.g. github.com/acme/app.")
@click.option("--prompt", required=True, help="Task description.")
@click.option("--ref", default=None, help="Base branch or commit.")
@click.option("--model", default=None, help="Model name (see `models`).")
@click.option("--branch", "branch_name", default=None, help="Branch the agent should push to.")
@click.option("--no-pr", is_flag=True, help="Do not open a pull request automatically.")
@click.option("--watch", "follow", is_flag=True, help="Follow the agent until it stops.")
@click.option("--json", "as_json", is_flag=True, help="Print watch events as JSON lines.")
@click.pass_obj
def launch(
    obj: CliContext,
    repository: str,
    prompt: str,
    ref: str | None,
    model: str | None,
    branch_name: str | None,
    no_pr: bool,
    follow: bool,
    as_json: bool,
) -> None:
    """Launch a new agent."""

    async def action(client: CloudAgentsClient) -> None:
        agent = await client.launch_agent(
            prompt,
            repository=repository,
            ref=ref,
            model=model,
            branch_name=branch_name,
            auto_create_pr=not no_pr,
        )
        _echo_agent(agent)
        if follow:
            await _watch(client, agent.id, max_duration=None, as_json=as_json)

    _run(obj, action)


@app.command()
@click.argument("agent_id")
@click.option("--max-duration", type=float, default=None, help="Give up after this many seconds.")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON lines.")
@click.pass_obj
def watch(obj: CliContext, agent_id: str, max_duration: float | None, as_json: bool) -> None:
    """Follow an agent's status and conversation until it stops."""
    _run(obj, lambda client: _watch(client, agent_id, max_duration=max_duration, as_json=as_json))


@app.command()
@click.argument("agent_id")
@click.argument("prompt")
@click.pass_obj
def followup(obj: CliContext, agent_id: str, prompt: str) -> None:
    """Send a follow-up instruction to an agent."""
    response = _run(obj, lambda client: client.add_follow_up(agent_id, prompt))
    click.echo(f"✓ follow-up {response.id}")


@app.command()
@click.argument("agent_id")
@click.pass_obj
def stop(obj: CliContext, agent_id: str) -> None:
    """Stop a running agent."""
    _run(obj, lambda client: client.stop_agent(agent_id))
    click.echo(f"✓ stopped {agent_id}")


@app.command()
@click.argument("agent_id")
@click.confirmation_option(prompt="Delete this agent?")
@click.pass_obj
def delete(obj: CliContext, agent_id: str) -> None:
    """Delete an agent."""
    _run(obj, lambda client: client.delete_agent(agent_id))
    click.echo(f"✓ deleted {agent_id}")


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


@app.command()
@click.pass_obj
def config(obj: CliContext) -> None:
    """Print the effective settings (API key redacted)."""
    click.echo(_dump(obj.settings().model_dump(mode="json")))


if __name__ == "__main__":
    app()
