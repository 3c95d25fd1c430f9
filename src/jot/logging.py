"""Structured logging setup.

All modules log through structlog with dotted event names
(``poll.activity.dispatched``) and keyword fields. Every event passes through
a redaction processor so Telegram bot tokens and remote API keys never reach
the output, even when they appear inside URLs or error bodies.

Environment:
- JOT_LOG_LEVEL: debug, info, warning, error (default info, debug with --debug)
- JOT_LOG_FORMAT: "json" for one JSON object per line, anything else for console
"""

from __future__ import annotations

import logging
import os
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

# bot123456:AAH-abc_def as it appears in Bot API URLs
_BOT_TOKEN_RE = re.compile(r"bot\d+:[A-Za-z0-9_-]+")
# 123456:AAH-abc_def without the bot prefix
_BARE_TOKEN_RE = re.compile(r"\b\d{5,}:[A-Za-z0-9_-]{30,}")
# Google-style API keys used by the remote assistant
_API_KEY_RE = re.compile(r"AIza[0-9A-Za-z_-]{20,}")

_configured_level = logging.INFO


def _truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _level_value(value: str | None, *, default: str = "info") -> int:
    if not value:
        return _LEVELS[default]
    return _LEVELS.get(value.strip().lower(), _LEVELS[default])


def _redact_text(text: str) -> str:
    text = _BOT_TOKEN_RE.sub("bot[REDACTED]", text)
    text = _BARE_TOKEN_RE.sub("[REDACTED_TOKEN]", text)
    return _API_KEY_RE.sub("[REDACTED_KEY]", text)


def _redact_value(value: Any, memo: dict[int, Any]) -> Any:
    if isinstance(value, str):
        return _redact_text(value)
    if isinstance(value, bytes):
        return _redact_text(value.decode("utf-8", errors="replace"))
    if isinstance(value, (dict, list, tuple, set)):
        key = id(value)
        if key in memo:
            return memo[key]
        if isinstance(value, dict):
            redacted: Any = {}
            memo[key] = redacted
            for k, v in value.items():
                redacted[k] = _redact_value(v, memo)
            return redacted
        items = [_redact_value(item, memo) for item in value]
        redacted = type(value)(items)
        memo[key] = redacted
        return redacted
    return value


def _redact_processor(
    _logger: Any, _method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    return _redact_value(event_dict, {})


class SafeWriter:
    """Stream wrapper that tolerates a closed stream at interpreter shutdown."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._closed = False

    def write(self, data: str) -> int:
        if self._closed:
            return 0
        try:
            return self._stream.write(data)
        except ValueError:
            # stream closed underneath us
            self._closed = True
            return 0

    def flush(self) -> None:
        if self._closed:
            return
        try:
            self._stream.flush()
        except ValueError:
            self._closed = True

    def isatty(self) -> bool:
        isatty = getattr(self._stream, "isatty", None)
        return bool(isatty and isatty())


def _build_processors(*, json_output: bool) -> list[Any]:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        _redact_processor,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    return processors


def setup_logging(*, debug: bool = False, stream: TextIO | None = None) -> None:
    """Configure structlog for the current process."""
    global _configured_level

    default = "debug" if debug else "info"
    level = _level_value(os.environ.get("JOT_LOG_LEVEL"), default=default)
    if debug:
        level = min(level, logging.DEBUG)
    json_output = os.environ.get("JOT_LOG_FORMAT", "").strip().lower() == "json"

    _configured_level = level
    structlog.configure(
        processors=_build_processors(json_output=json_output),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(
            file=SafeWriter(stream or sys.stdout)
        ),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)


def bind_run_context(**fields: Any) -> None:
    """Bind fields (tenant_id, thread_id, session_id) to every later event."""
    structlog.contextvars.bind_contextvars(
        **{k: v for k, v in fields.items() if v is not None}
    )


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def suppress_logs(level: str = "warning") -> Iterator[None]:
    """Raise the log threshold for the duration of the block."""
    previous = _configured_level
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(_level_value(level))
    )
    try:
        yield
    finally:
        structlog.configure(
            wrapper_class=structlog.make_filtering_bound_logger(previous)
        )
