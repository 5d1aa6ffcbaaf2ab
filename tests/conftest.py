import asyncio
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure repository root is on sys.path for test imports.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cloudagents.config import ClientSettings, PollingPolicy, QueuePolicy, RetryPolicy  # noqa: E402
from cloudagents.testing import MockCloudAgentsApi  # noqa: E402

BASE_URL = "https://api.test/v0"


def fast_polling(**overrides: Any) -> PollingPolicy:
    values: dict[str, Any] = {
        "initial_interval_s": 0.01,
        "normal_interval_s": 0.01,
        "backoff_interval_s": 0.02,
        "jitter_s": 0.0,
        "min_interval_s": 0.0,
        "settle_delays_s": (0.01, 0.01, 0.01, 0.01),
        "summary_retry_attempts": 2,
        "summary_retry_interval_s": 0.01,
        "follow_up_grace_s": 0.0,
        "watchdog_period_s": 1.0,
        "watchdog_timeout_s": 5.0,
    }
    values.update(overrides)
    return PollingPolicy(**values)


def make_settings(*, polling: PollingPolicy | None = None, max_retries: int = 0) -> ClientSettings:
    return ClientSettings(
        api_key="test-key",
        base_url=BASE_URL,
        retry=RetryPolicy(timeout_s=5.0, max_retries=max_retries, base_delay_s=0.0, max_delay_s=0.0, jitter_s=0.0),
        queue=QueuePolicy(min_interval_s=0.0, burst_delay_s=0.0),
        polling=polling or fast_polling(),
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def mock_api() -> MockCloudAgentsApi:
    return MockCloudAgentsApi(base_url=BASE_URL, latency_s=0.0, complete_after_s=None, seed=False)
