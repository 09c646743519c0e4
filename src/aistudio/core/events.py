"""Structured event logging.

Events are ordinary :mod:`logging` records.  The event name and its fields
travel on the record as the ``event`` and ``fields`` attributes, so handlers
(and tests, via ``caplog``) can inspect outcomes without parsing text, while
the rendered message stays readable::

    generation.succeeded request_id=4f1c... user_id=3 latency_ms=1412 outcome=succeeded
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def new_request_id() -> str:
    """Return a fresh request identifier."""
    return uuid.uuid4().hex


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Emit a structured event.

    Args:
        logger: Logger to emit on.
        level: Standard logging level (``logging.INFO`` etc.).
        event: Dotted event name, e.g. ``"generation.cleanup"``.
        **fields: Event attributes.  ``None`` values are omitted from the
            rendered message but kept on the record.
    """
    if not logger.isEnabledFor(level):
        return
    rendered = " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
    message = f"{event} {rendered}" if rendered else event
    logger.log(level, message, extra={"event": event, "fields": fields})


class Stopwatch:
    """Measure elapsed wall time in milliseconds."""

    def __init__(self) -> None:
        self._start = time.perf_counter()

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the CLI entry point."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
