"""Structured logging with structlog, routed through stdlib logging to stderr."""

from __future__ import annotations

import logging
import sys
import time
from functools import lru_cache
from typing import Any

import structlog

_HANDLER_NAME = "xlmirror"


def configure_logging(level: str = "WARNING", json_format: bool | None = None) -> None:
    """Configure structlog once per process (or again, to re-bind stderr).

    stdout is reserved for JSON envelopes, so log lines always go to stderr.
    ``json_format=None`` picks the console renderer on a TTY and JSON otherwise.
    """
    if json_format is None:
        json_format = not sys.stderr.isatty()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.WARNING))


@lru_cache(maxsize=100)
def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)


def bind_context(**kwargs: object) -> None:
    """Bind context variables (e.g. ``command``, ``file``) for every following event."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class Timer:
    """Context-manager timer; logs ``event`` with ``duration_ms`` on exit when given a logger."""

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None, event: str = "", **fields: Any) -> None:
        self.logger = logger
        self.event = event
        self.fields = fields
        self.start: float = 0
        self.elapsed_ms: int = 0

    def __enter__(self) -> "Timer":
        self.start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, *args: Any) -> None:
        self.elapsed_ms = int((time.perf_counter() - self.start) * 1000)
        if self.logger is not None and self.event:
            self.logger.debug(self.event, duration_ms=self.elapsed_ms, failed=exc_type is not None, **self.fields)
