"""structlog configuration plus helpers for plan-scoped log context."""

from __future__ import annotations

import logging
import re
import sys
from contextlib import contextmanager
from typing import Iterator

import structlog

REDACTED = "***REDACTED***"

# Keyword arguments whose values are never rendered.
_SECRET_FIELDS = frozenset({"api_key", "secret", "token", "password", "authorization"})

_SECRET_PATTERNS = [
    re.compile(r"(api[_-]?key|token|secret|password)([\"']?\s*[:=]\s*[\"']?)[\w\-\.]+", re.IGNORECASE),
    re.compile(r"(bearer)(\s+)[\w\-\.]+", re.IGNORECASE),
]

# Request bodies and step arguments only show up from these at DEBUG.
_NOISY_LOGGERS = ("aiohttp.access", "httpx", "httpcore", "anthropic", "aiosqlite")


def redact(text: str) -> str:
    """Mask credentials embedded in free text such as tool errors."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(rf"\1\2{REDACTED}", text)
    return text


def _redact_secrets(
    _logger: structlog.types.WrappedLogger,
    _method: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key, value in list(event_dict.items()):
        if key.lower() in _SECRET_FIELDS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, str):
            event_dict[key] = redact(value)
    return event_dict


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _redact_secrets,
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


@contextmanager
def bind_plan(plan_id: str) -> Iterator[None]:
    """Attach ``plan_id`` to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(plan_id=plan_id):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
