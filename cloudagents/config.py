"""Configuration models for the client, queue and poller."""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field, SecretStr, model_validator

DEFAULT_BASE_URL = "https://api.cursor.com/v0"
ENV_PREFIX = "CLOUDAGENTS"


class RetryPolicy(BaseModel):
    """Per-request timeout and retry schedule used by the executor."""

    timeout_s: float = Field(default=30.0, gt=0.0, le=300.0)
    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay_s: float = Field(default=0.4, ge=0.0)
    max_delay_s: float = Field(default=4.0, ge=0.0)
    jitter_s: float = Field(default=0.12, ge=0.0)
    retry_on_status: list[int] = Field(
        default_factory=lambda: [408, 500, 502, 503, 504],
    )

    def backoff_s(self, attempt: int, jitter: float = 0.0) -> float:
        """Delay before retry number ``attempt + 1`` (zero based)."""
        return min(self.max_delay_s, self.base_delay_s * (2**attempt)) + jitter


class QueuePolicy(BaseModel):
    max_concurrent: int = Field(default=2, ge=1, le=64)
    min_interval_s: float = Field(default=0.15, ge=0.0)
    burst_threshold: int = Field(default=5, ge=1)
    burst_window_s: float = Field(default=3.0, gt=0.0)
    burst_delay_s: float = Field(default=0.5, ge=0.0)
    max_queue_age_s: float | None = Field(default=60.0, gt=0.0)


class PollingPolicy(BaseModel):
    """Cadence, settling and watchdog knobs for :class:`TaskPoller`."""

    initial_interval_s: float = Field(default=1.0, gt=0.0)
    normal_interval_s: float = Field(default=2.0, gt=0.0)
    backoff_interval_s: float = Field(default=5.0, gt=0.0)
    initial_cycles: int = Field(default=20, ge=0)
    jitter_s: float = Field(default=0.1, ge=0.0)
    min_interval_s: float = Field(default=0.5, ge=0.0)

    conversation_every: int = Field(default=3, ge=1)
    conversation_backoff_s: float = Field(default=5.0, ge=0.0)

    settle_delays_s: tuple[float, ...] = (0.8, 1.2, 1.0, 2.5)
    summary_retry_attempts: int = Field(default=5, ge=0)
    summary_retry_interval_s: float = Field(default=2.0, ge=0.0)

    follow_up_grace_s: float = Field(default=8.0, ge=0.0)

    watchdog_period_s: float = Field(default=10.0, gt=0.0)
    watchdog_timeout_s: float = Field(default=30.0, gt=0.0)

    error_threshold: int = Field(default=3, ge=1)
    max_poll_duration_s: float | None = Field(default=None, gt=0.0)

    @model_validator(mode="after")
    def validate_policy(self) -> PollingPolicy:
        if any(delay < 0 for delay in self.settle_delays_s):
            raise ValueError("settle_delays_s must be non-negative")
        if self.watchdog_timeout_s < self.watchdog_period_s:
            raise ValueError("watchdog_timeout_s must be >= watchdog_period_s")
        return self


class ClientSettings(BaseModel):
    api_key: SecretStr | None = None
    base_url: str = DEFAULT_BASE_URL
    proxy_mode: bool = Field(
        default=False,
        description="Send the key as X-Cursor-Api-Key to a same-origin proxy instead of Basic auth.",
    )
    log_level: str | None = Field(default=None, description="Level for the CLI log handler; unset leaves logging unconfigured.")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    queue: QueuePolicy = Field(default_factory=QueuePolicy)
    polling: PollingPolicy = Field(default_factory=PollingPolicy)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: object) -> ClientSettings:
        """Build settings from ``CLOUDAGENTS_*`` variables; explicit overrides win."""
        env = os.environ if environ is None else environ

        def _get(suffix: str) -> str | None:
            raw = env.get(f"{ENV_PREFIX}_{suffix}")
            if raw is None or not raw.strip():
                return None
            return raw.strip()

        data: dict[str, object] = {}
        if (api_key := _get("API_KEY")) is not None:
            data["api_key"] = api_key
        if (base_url := _get("BASE_URL")) is not None:
            data["base_url"] = base_url
        if (proxy := _get("PROXY_MODE")) is not None:
            data["proxy_mode"] = proxy.lower() in {"1", "true", "yes", "on"}
        if (level := _get("LOG_LEVEL")) is not None:
            data["log_level"] = level.upper()

        retry: dict[str, object] = {}
        if (timeout := _get("TIMEOUT_S")) is not None:
            retry["timeout_s"] = timeout
        if (retries := _get("MAX_RETRIES")) is not None:
            retry["max_retries"] = retries
        if retry:
            data["retry"] = retry
        if (concurrent := _get("MAX_CONCURRENT")) is not None:
            data["queue"] = {"max_concurrent": concurrent}

        data.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(data)


__all__ = [
    "ClientSettings",
    "DEFAULT_BASE_URL",
    "PollingPolicy",
    "QueuePolicy",
    "RetryPolicy",
]
