from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from types import TracebackType
from typing import Any, Dict, Iterator, Mapping, Optional, TextIO

ROOT_LOGGER = "trento_fleet"

_LEVEL_SYMBOLS: Dict[int, str] = {
    logging.DEBUG: "(?)",
    logging.INFO: "(*)",
    logging.WARNING: "(!)",
    logging.ERROR: "(x)",
    logging.CRITICAL: "(X)",
}

# leading fields render before the rest, in this order
_LEADING_FIELDS = ("host", "operation")

_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def _render_fields(fields: Mapping[str, Any]) -> list[str]:
    remaining = dict(fields)
    rendered = [f"{key}: {remaining.pop(key)}" for key in _LEADING_FIELDS if key in remaining]
    rendered.extend(f"{key}: {value}" for key, value in remaining.items())
    return rendered


class _FleetFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        stamp = created.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        symbol = getattr(record, "symbol", _LEVEL_SYMBOLS.get(record.levelno, "(?)"))
        category = getattr(record, "category", record.name)
        event = getattr(record, "event", "")
        fields = dict(getattr(record, "fields", {}))

        if event == "operation.step":
            event = f">> {fields.pop('step', 'step')}"

        parts = [stamp, f"{record.levelname:<8}", str(category)]
        parts.append(f"{symbol} {event}" if event else symbol)
        message = record.getMessage()
        if message:
            parts.append(message)
        parts.extend(_render_fields(fields))

        formatted = " | ".join(parts)
        if record.exc_info:
            return f"{formatted}\n{self.formatException(record.exc_info)}"
        return formatted


@dataclass
class Operation:
    """Timed block of work; logs start, each step, and completion or failure."""

    logger: "BoundLogger"
    name: str
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)
    started: float = 0.0

    @property
    def elapsed_ms(self) -> float:
        return round((perf_counter() - self.started) * 1000, 1)

    def __enter__(self) -> "Operation":
        self.started = perf_counter()
        self.logger.info("operation.start", self.message, operation=self.name, **self.fields)
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is None:
            self.logger.info("operation.complete", "Completed", operation=self.name, duration_ms=self.elapsed_ms)
            return
        self.logger.error(
            "operation.error",
            "Failed",
            operation=self.name,
            duration_ms=self.elapsed_ms,
            error_type=exc_type.__name__,
            error=str(exc),
        )

    def step(self, name: str, message: str, *, level: int = logging.INFO, **fields: Any) -> None:
        self.logger.log(level, "operation.step", message, operation=self.name, step=name, **fields)


class BoundLogger:
    def __init__(self, category: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self._category = category
        self._fields: Dict[str, Any] = dict(fields or {})

    @contextmanager
    def context(self, **fields: Any) -> Iterator[None]:
        """Attach fields to every record logged in this thread until the block exits."""
        current = dict(_LOG_CONTEXT.get())
        current.update(fields)
        token = _LOG_CONTEXT.set(current)
        try:
            yield
        finally:
            _LOG_CONTEXT.reset(token)

    def operation(self, name: str, message: str, **fields: Any) -> Operation:
        return Operation(self, name=name, message=message, fields=fields)

    def debug(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, event, message, **fields)

    def info(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.INFO, event, message, **fields)

    def warning(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, event, message, **fields)

    def error(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, message, **fields)

    def log(self, severity: int, event: str, message: str, **fields: Any) -> None:
        merged: Dict[str, Any] = {**_LOG_CONTEXT.get(), **self._fields, **fields}
        logging.getLogger(ROOT_LOGGER).log(
            severity,
            message,
            extra={
                "category": self._category,
                "event": event,
                "symbol": _LEVEL_SYMBOLS.get(severity, "(?)"),
                "fields": merged,
            },
        )


def configure_logging(log_level: str, log_file: Optional[str], *, stream: Optional[TextIO] = None) -> None:
    """Send tool logs to stderr (and ``log_file``), keeping stdout for check output."""
    formatter = _FleetFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level.upper())
    logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False


def get_logger(category: str) -> BoundLogger:
    return BoundLogger(category)
