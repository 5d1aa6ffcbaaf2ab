"""Tagged outcome of a single request: ``Ok(data) | Empty | Err(error)``.

``Empty`` models the routine "resource not available yet" answer (404/409)
without raising; callers decide whether that means an empty value or a
failure. ``unwrap_or`` substitutes the default for ``Empty`` only; an
``Err`` always raises its error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .errors import CloudAgentsError, NotFoundError

T = TypeVar("T")
D = TypeVar("D")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: D) -> T | D:
        return self.value


@dataclass(frozen=True, slots=True)
class Empty:
    status_code: int | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> None:
        raise NotFoundError(
            f"Resource not found ({self.status_code})" if self.status_code else None,
            status_code=self.status_code,
            detail=self.detail,
        )

    def unwrap_or(self, default: D) -> D:
        return default


@dataclass(frozen=True, slots=True)
class Err:
    error: CloudAgentsError

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> None:
        raise self.error

    def unwrap_or(self, default: D) -> D:
        raise self.error


Result = Union[Ok[T], Empty, Err]


__all__ = ["Empty", "Err", "Ok", "Result"]
