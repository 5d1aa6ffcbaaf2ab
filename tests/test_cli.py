from __future__ import annotations

import logging

from click.testing import CliRunner

from cloudagents import __version__
from cloudagents.cli import app
from cloudagents.logging_setup import ROOT_LOGGER

ENV = {"CLOUDAGENTS_API_KEY": "", "CLOUDAGENTS_BASE_URL": "", "CLOUDAGENTS_LOG_LEVEL": ""}


def _invoke(*args: str):
    runner = CliRunner()
    return runner.invoke(app, list(args), env=ENV)


def test_version() -> None:
    result = _invoke("--version")
    assert result.exit_code == 0
    assert __version__ in result.output


def test_me_against_mock() -> None:
    result = _invoke("--mock", "me")
    assert result.exit_code == 0, result.output
    assert "mock-key" in result.output


def test_listing_commands_against_mock() -> None:
    repos = _invoke("--mock", "repos")
    models = _invoke("--mock", "models")
    agents = _invoke("--mock", "agents", "--limit", "1")

    assert "github.com/acme/web" in repos.output
    assert "composer-1" in models.output
    assert agents.exit_code == 0
    assert agents.output.count("\n  url:") == 1


def test_watch_finished_agent_prints_conversation() -> None:
    result = _invoke("--mock", "watch", "mock-1")

    assert result.exit_code == 0, result.output
    assert "● FINISHED" in result.output
    assert "Stabilized flaky e2e" in result.output
    assert "[you] Please fix flaky tests in e2e suite." in result.output
    assert "■ stopped (terminal)" in result.output


def test_launch_and_watch_until_finished() -> None:
    result = _invoke(
        "--mock",
        "launch",
        "--repo",
        "github.com/acme/web",
        "--prompt",
        "Add a health check",
        "--no-pr",
        "--watch",
    )

    assert result.exit_code == 0, result.output
    assert "RUNNING" in result.output
    assert "[agent] All done! Check the mock PR for details." in result.output
    assert "■ stopped (terminal)" in result.output


def test_followup_stop_and_delete() -> None:
    followup = _invoke("--mock", "followup", "mock-1", "Also update the docs")
    stop = _invoke("--mock", "stop", "mock-2")
    delete = _invoke("--mock", "delete", "mock-1", "--yes")

    assert followup.exit_code == 0 and "✓ follow-up mock-1-follow-" in followup.output
    assert stop.exit_code == 0 and "✓ stopped mock-2" in stop.output
    assert delete.exit_code == 0 and "✓ deleted mock-1" in delete.output


def test_unknown_agent_reports_error() -> None:
    result = _invoke("--mock", "stop", "does-not-exist")
    assert result.exit_code == 1
    assert "✗" in result.output


def test_auth_failure_exits_with_error() -> None:
    result = _invoke("--mock-mode", "auth", "me")
    assert result.exit_code == 1
    assert "✗ Invalid API key (401)" in result.output


def test_missing_api_key_is_a_usage_error() -> None:
    result = _invoke("me")
    assert result.exit_code == 2
    assert "Missing API key" in result.output


def test_config_redacts_api_key() -> None:
    runner = CliRunner()
    result = runner.invoke(app, ["--api-key", "key_secret", "config"], env={"CLOUDAGENTS_BASE_URL": "", "CLOUDAGENTS_LOG_LEVEL": ""})
    assert result.exit_code == 0, result.output
    assert "key_secret" not in result.output
    assert '"max_concurrent": 2' in result.output


def test_log_level_falls_back_to_environment() -> None:
    logger = logging.getLogger(ROOT_LOGGER)
    runner = CliRunner()
    try:
        result = runner.invoke(app, ["--mock", "stop", "mock-2"], env={**ENV, "CLOUDAGENTS_LOG_LEVEL": "debug"})
        assert result.exit_code == 0, result.output
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.propagate = True
        logger.setLevel(logging.NOTSET)
