"""Logging configuration and structured context helpers.

stdout carries the control protocol, so diagnostics go to stderr and an
optional rotating log file. Nothing here may ever write to stdout.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Iterator, TextIO

from agent_sidecar.settings import LogSettings, log_dir

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("sidecar_log_context", default={})


def configure_logging(settings: LogSettings, *, log_file: str | None = None, stream: TextIO | None = None) -> None:
    """Configure root logging for the sidecar process.

    Existing root handlers are removed first so repeated calls (tests, reloads)
    do not duplicate output.
    """

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(settings.level)

    formatter: logging.Formatter
    if settings.json:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter()

    def attach(handler: logging.Handler) -> None:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root_logger.addHandler(handler)

    if settings.stderr:
        attach(logging.StreamHandler(stream or sys.stderr))

    target = log_file
    if target is None and settings.directory is not None:
        settings.directory.mkdir(parents=True, exist_ok=True)
        target = str(settings.directory / settings.file_name)
    if target is None and not settings.stderr:
        target = str(log_dir() / settings.file_name)
    if target is not None:
        attach(
            RotatingFileHandler(
                target,
                maxBytes=settings.max_bytes,
                backupCount=settings.backup_count,
                encoding="utf-8",
            )
        )


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach structured context fields (request/session ids) to log records within a block.

    The context lives in a contextvar, so each asyncio task spawned inside the
    block keeps its own copy.
    """

    current = _LOG_CONTEXT.get()
    merged = {**current, **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a short, stable event name with key/value fields."""

    logger.log(level, event, extra={"event_fields": fields})


def _render(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    text = str(value)
    if text == "" or any(ch.isspace() or ch in '="' for ch in text):
        return json.dumps(text)
    return text


def _pairs(fields: Dict[str, Any]) -> str:
    return " ".join(f"{key}={_render(value)}" for key, value in sorted(fields.items()) if value is not None)


class ContextFilter(logging.Filter):
    """Attach the active log context and any `log_event` fields to each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_LOG_CONTEXT.get())
        if not hasattr(record, "event_fields"):
            record.event_fields = {}
        return True


class ContextFormatter(logging.Formatter):
    """`<time> <level> <logger> [<context>] <event> <fields>` lines for stderr and the log file."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(context)s%(message)s")

    def format(self, record: logging.LogRecord) -> str:
        context = _pairs(getattr(record, "context_fields", {}))
        record.context = f"[{context}] " if context else ""
        line = super().format(record)
        fields = _pairs(getattr(record, "event_fields", {}))
        return f"{line} {fields}" if fields else line


class JsonFormatter(logging.Formatter):
    """One JSON object per record; context ids are flattened into the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(getattr(record, "context_fields", {}))
        fields = getattr(record, "event_fields", {})
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)
