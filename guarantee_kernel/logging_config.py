"""
Structured JSON logging for the guarantee kernel.

Every kernel module logs through ``get_logger(<area>)`` with a snake_case
event name as the message and structured fields in ``extra``.  Fields
that describe the action in progress (request id, actor, role, action,
operation key, trace id) are bound once with ``LogContext.bind`` and
stamped on every line emitted inside the block.

Kernel exceptions carry their diagnosis as attributes; when a record has
``exc_info`` those attributes are flattened into ``exc_<name>`` fields
next to ``exc_code``.
"""

__all__ = [
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from enum import Enum
from typing import IO, Any

_LOGGER_PREFIX = "guarantee_kernel"

_CONTEXT_FIELDS = frozenset(
    {"request_id", "actor", "role", "action", "operation_key", "trace_id"}
)

_bound: ContextVar[Mapping[str, str]] = ContextVar("guarantee_log_context", default={})


class LogContext:
    """Action-scoped fields stamped on every record; safe across threads."""

    @staticmethod
    @contextmanager
    def bind(**fields: str | None) -> Iterator[None]:
        """
        Layer ``fields`` over the current context for the ``with`` block.

        None values leave the outer binding in place.  The previous
        context is restored on exit, including when the block raises.

        Raises:
            TypeError: a field the formatter does not know.
        """
        unknown = set(fields) - _CONTEXT_FIELDS
        if unknown:
            raise TypeError(f"Unknown log context fields: {sorted(unknown)}")
        layered = dict(_bound.get())
        layered.update((k, v) for k, v in fields.items() if v is not None)
        token = _bound.set(layered)
        try:
            yield
        finally:
            _bound.reset(token)


_RESERVED = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: envelope, bound context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_bound.get(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED:
                line.setdefault(key, value)

        exc = record.exc_info[1] if record.exc_info else None
        if exc is not None:
            line["exc_type"] = type(exc).__name__
            line["exc_message"] = str(exc)
            code = getattr(exc, "code", None)
            if code is not None:
                line["exc_code"] = code
            for attr, value in vars(exc).items():
                if attr != "code" and not attr.startswith("_"):
                    line[f"exc_{attr}"] = value
            line["traceback"] = self.formatException(record.exc_info)

        return json.dumps(line, default=_encode)


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name`` under the guarantee_kernel namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_installed: logging.Handler | None = None
_install_lock = threading.Lock()


def configure_logging(
    *, level: int = logging.INFO, stream: IO[str] | None = None
) -> logging.Handler:
    """
    Attach the JSON handler to the guarantee_kernel logger.

    Only the first call configures; later calls return the installed
    handler untouched so an embedding application keeps its level.
    """
    global _installed
    with _install_lock:
        if _installed is None:
            handler = logging.StreamHandler(stream or sys.stderr)
            handler.setFormatter(StructuredFormatter())
            kernel_logger = logging.getLogger(_LOGGER_PREFIX)
            kernel_logger.setLevel(level)
            kernel_logger.propagate = False
            kernel_logger.addHandler(handler)
            _installed = handler
        return _installed
