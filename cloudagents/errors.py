"""Error taxonomy for the cloud agents client."""

from __future__ import annotations

from typing import Any


class CloudAgentsError(Exception):
    """Base class for every failure surfaced by this package."""

    retryable: bool = False
    default_message = "Cloud agents request failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        detail: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message or detail or self.default_message)
        self.status_code = status_code
        self.detail = detail
        self.extra = extra or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": type(self).__name__,
            "message": str(self),
            "retryable": self.retryable,
        }
        if self.status_code is not None:
            payload["status"] = self.status_code
        if self.detail:
            payload["detail"] = self.detail
        if self.extra:
            payload.update(self.extra)
        return payload


class AuthError(CloudAgentsError):
    """Credential rejected (401/403). Fatal, never retried."""

    default_message = "Invalid or expired API key"


class NotFoundError(CloudAgentsError):
    """Resource does not exist yet (404/409)."""

    default_message = "Resource not found"


class RateLimitError(CloudAgentsError):
    retryable = True
    default_message = "Rate limited - please wait"

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after_s: float | None = None,
        status_code: int | None = 429,
        detail: str | None = None,
    ) -> None:
        extra = {"retry_after_s": retry_after_s} if retry_after_s is not None else None
        super().__init__(message, status_code=status_code, detail=detail, extra=extra)
        self.retry_after_s = retry_after_s


class MalformedResponseError(CloudAgentsError):
    """Response body could not be parsed into the expected shape."""

    default_message = "Malformed response from server"


class TransientError(CloudAgentsError):
    """Network, timeout or 5xx failure that outlived the retry budget."""

    retryable = True
    default_message = "Request failed after retries"


class ApiStatusError(CloudAgentsError):
    """Any other non-success status (for example 400 or 422)."""


class QueueTimeoutError(CloudAgentsError):
    """Queued request was evicted before it was dispatched."""

    retryable = True
    default_message = "Request waited too long in the queue"


class QueueClearedError(CloudAgentsError):
    default_message = "Queued request was cleared"


class QueueClosedError(CloudAgentsError):
    default_message = "Request queue is closed"


__all__ = [
    "ApiStatusError",
    "AuthError",
    "CloudAgentsError",
    "MalformedResponseError",
    "NotFoundError",
    "QueueClearedError",
    "QueueClosedError",
    "QueueTimeoutError",
    "RateLimitError",
    "TransientError",
]
