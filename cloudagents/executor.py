"""Resilient single-request executor.

Issues one logical HTTP operation with a hard timeout, retries transient
failures with jittered exponential backoff and classifies every outcome into
a tagged :data:`~cloudagents.result.Result`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Literal

import httpx
from pydantic import BaseModel, SecretStr, TypeAdapter, ValidationError

from .config import DEFAULT_BASE_URL, RetryPolicy
from .errors import (
    ApiStatusError,
    AuthError,
    CloudAgentsError,
    MalformedResponseError,
    RateLimitError,
    TransientError,
)
from .result import Empty, Err, Ok, Result

logger = logging.getLogger("cloudagents.executor")

HttpMethod = Literal["GET", "POST", "DELETE"]
SleepFn = Callable[[float], Awaitable[None]]

AUTH_STATUSES = frozenset({401, 403})
NOT_READY_STATUSES = frozenset({404, 409})
RATE_LIMIT_STATUS = 429


@dataclass(frozen=True, slots=True)
class Operation:
    """Descriptor for one logical API call."""

    method: HttpMethod
    path: str
    params: Mapping[str, Any] | None = None
    body: Any | None = None
    expect_json: bool = True
    schema: Any | None = None

    @property
    def label(self) -> str:
        return f"{self.method} {self.path}"


def _normalize_base_url(url: str) -> str:
    return url.rstrip("/")


def parse_retry_after(raw: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - (now or datetime.now(UTC))).total_seconds()
    return max(0.0, seconds)


def _error_detail(response: httpx.Response) -> str | None:
    body = response.text
    if not body:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body[:200]
    if isinstance(payload, Mapping):
        for key in ("detail", "message", "error", "title"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def _encode_body(body: Any) -> Any:
    if isinstance(body, BaseModel):
        return body.model_dump(mode="json", by_alias=True, exclude_none=True)
    return body


class RequestExecutor:
    """Runs :class:`Operation` instances against the remote API."""

    def __init__(
        self,
        *,
        api_key: str | SecretStr | None,
        base_url: str = DEFAULT_BASE_URL,
        policy: RetryPolicy | None = None,
        proxy_mode: bool = False,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if isinstance(api_key, SecretStr):
            api_key = api_key.get_secret_value()
        self._api_key = api_key
        self._base_url = _normalize_base_url(base_url)
        self._policy = policy or RetryPolicy()
        self._proxy_mode = proxy_mode
        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._adapters: dict[Any, TypeAdapter[Any]] = {}

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._policy.timeout_s,
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._proxy_mode and self._api_key:
            headers["X-Cursor-Api-Key"] = self._api_key
        return headers

    def _auth(self) -> httpx.Auth | None:
        if self._proxy_mode or not self._api_key:
            return None
        return httpx.BasicAuth(self._api_key, "")

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _send(self, operation: Operation) -> httpx.Response:
        client = self._get_client()
        kwargs: dict[str, Any] = {"headers": self._headers()}
        if operation.params:
            kwargs["params"] = dict(operation.params)
        if operation.body is not None:
            kwargs["json"] = _encode_body(operation.body)
        auth = self._auth()
        if auth is not None:
            kwargs["auth"] = auth
        return await client.request(operation.method, self._url(operation.path), **kwargs)

    def _backoff(self, attempt: int) -> float:
        jitter = self._rng.uniform(0.0, self._policy.jitter_s) if self._policy.jitter_s else 0.0
        return self._policy.backoff_s(attempt, jitter)

    def _adapter(self, schema: Any) -> TypeAdapter[Any]:
        adapter = self._adapters.get(schema)
        if adapter is None:
            adapter = TypeAdapter(schema)
            self._adapters[schema] = adapter
        return adapter

    def _parse(self, operation: Operation, response: httpx.Response) -> Result[Any]:
        if not operation.expect_json:
            return Ok(None)
        try:
            payload = response.json()
        except ValueError as exc:
            return Err(
                MalformedResponseError(
                    f"Malformed response from {operation.label}",
                    status_code=response.status_code,
                    detail=str(exc),
                )
            )
        if operation.schema is None:
            return Ok(payload)
        try:
            return Ok(self._adapter(operation.schema).validate_python(payload))
        except ValidationError as exc:
            return Err(
                MalformedResponseError(
                    f"Unexpected response shape from {operation.label}",
                    status_code=response.status_code,
                    detail=str(exc.errors(include_url=False)[:3]),
                )
            )

    async def execute(self, operation: Operation) -> Result[Any]:
        """Run ``operation`` to completion and return its classified outcome."""
        policy = self._policy
        last_error: CloudAgentsError | None = None

        for attempt in range(policy.max_retries + 1):
            can_retry = attempt < policy.max_retries
            delay: float | None = None
            try:
                response = await asyncio.wait_for(self._send(operation), timeout=policy.timeout_s)
            except (TimeoutError, httpx.TimeoutException) as exc:
                last_error = TransientError("Request timed out", detail=str(exc) or None)
            except httpx.TransportError as exc:
                last_error = TransientError("Network error", detail=str(exc) or type(exc).__name__)
            else:
                status = response.status_code
                if 200 <= status < 300:
                    return self._parse(operation, response)
                if status in AUTH_STATUSES:
                    logger.warning("request_unauthorized", extra={"operation": operation.label, "status": status})
                    return Err(AuthError(f"Invalid API key ({status})", status_code=status))
                if status in NOT_READY_STATUSES:
                    return Empty(status_code=status, detail=_error_detail(response))
                if status == RATE_LIMIT_STATUS:
                    retry_after = parse_retry_after(response.headers.get("retry-after"))
                    last_error = RateLimitError(retry_after_s=retry_after, detail=_error_detail(response))
                    if retry_after is not None:
                        delay = retry_after
                elif status in policy.retry_on_status or status >= 500:
                    last_error = TransientError(
                        f"Request failed ({status})",
                        status_code=status,
                        detail=_error_detail(response),
                    )
                else:
                    detail = _error_detail(response)
                    return Err(
                        ApiStatusError(
                            f"Request failed ({status}): {detail or response.reason_phrase}",
                            status_code=status,
                            detail=detail,
                        )
                    )

            if not can_retry:
                break
            if delay is None:
                delay = self._backoff(attempt)
            logger.info(
                "request_retry",
                extra={
                    "operation": operation.label,
                    "attempt": attempt + 1,
                    "max_retries": policy.max_retries,
                    "delay_s": round(delay, 3),
                    "error_type": type(last_error).__name__,
                },
            )
            await self._sleep(delay)

        if last_error is None:
            raise RuntimeError(f"{operation.label} finished without a response")
        logger.warning(
            "request_failed",
            extra={"operation": operation.label, "error_type": type(last_error).__name__},
        )
        return Err(last_error)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RequestExecutor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = ["HttpMethod", "Operation", "RequestExecutor", "parse_retry_after"]
