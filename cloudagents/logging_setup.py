"""Logging helpers.

Modules log through ``logging.getLogger("cloudagents.<module>")`` with a short
snake_case event name as the message and structured fields in ``extra``.
Library code never configures handlers; entry points call
:func:`configure_logging` once.
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

ROOT_LOGGER = "cloudagents"

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "asctime"}
)


class ExtraFieldsFormatter(logging.Formatter):
    """Append ``extra={...}`` fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if not fields:
            return base
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(fields.items()))
        return f"{base} {rendered}"


def configure_logging(level: int | str = logging.INFO, *, stream: TextIO | None = None) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, "_cloudagents", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        ExtraFieldsFormatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    handler._cloudagents = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.propagate = False
    return logger


__all__ = ["ExtraFieldsFormatter", "ROOT_LOGGER", "configure_logging"]
