"""
Structured logging for the document ledger.

Every record leaves as one JSON object.  Request-scoped fields (which
company, which job, who is acting) ride along in a ContextVar so that the
pipeline, approval workflow and period close never have to pass them into
each ``logger.info`` call by hand.

Document payloads are never written verbatim: ``bytes`` values render as
their length and content hash.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import hashlib
import json
import logging
import sys
import threading
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID

LOGGER_NAMESPACE = "docledger"

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "company_id",
    "job_id",
    "actor_id",
    "request_id",
)

_EMPTY: Mapping[str, str] = MappingProxyType({})
_context: ContextVar[Mapping[str, str]] = ContextVar("docledger_log_context", default=_EMPTY)


def _known(fields: Mapping[str, Any]) -> dict[str, str]:
    return {k: str(v) for k, v in fields.items() if k in CONTEXT_FIELDS and v is not None}


class LogContext:
    """
    Request-scoped fields merged into every log line.

    The current context is an immutable mapping; ``set`` and ``bind`` swap
    in a new one, so a worker thread or task only ever sees what it was
    started with plus what it bound itself.
    """

    @classmethod
    def set(cls, **fields: str | None) -> None:
        """Merge non-None known fields into the current context."""
        merged = {**_context.get(), **_known(fields)}
        _context.set(MappingProxyType(merged))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    def clear(cls) -> None:
        _context.set(_EMPTY)

    @classmethod
    def bind(cls, **fields: Any) -> "_BoundContext":
        """Scope fields to a ``with`` block; unknown names are ignored."""
        return _BoundContext(_known(fields))


class _BoundContext:
    def __init__(self, fields: dict[str, str]):
        self._fields = fields
        self._token = None

    def __enter__(self) -> type[LogContext]:
        merged = {**_context.get(), **self._fields}
        self._token = _context.set(MappingProxyType(merged))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        _context.reset(self._token)


_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return {"bytes": len(value), "sha256": hashlib.sha256(value).hexdigest()}
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # Ledger errors carry their context as public attributes
    for name, value in vars(exc).items():
        if name != "code" and not name.startswith("_"):
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: fixed header, context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        for name, value in vars(record).items():
            if name not in _RECORD_ATTRS:
                line.setdefault(name, value)

        if record.exc_info and record.exc_info[1] is not None:
            line.update(_exception_fields(record.exc_info[1]))
            line["traceback"] = self.formatException(record.exc_info)

        return json.dumps(line, default=_to_json, ensure_ascii=False)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


_state_lock = threading.Lock()
_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``docledger`` logger.

    Only the first call has an effect; later calls (for instance from each
    ``create_engine_from_url``) leave the existing handler in place.
    """
    global _handler
    with _state_lock:
        if _handler is not None:
            return
        _handler = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
        _handler.setFormatter(StructuredFormatter())

        namespace = logging.getLogger(LOGGER_NAMESPACE)
        namespace.setLevel(level)
        namespace.propagate = False
        namespace.addHandler(_handler)


def reset_logging() -> None:
    """Detach the handler installed by configure_logging. Test helper."""
    global _handler
    with _state_lock:
        namespace = logging.getLogger(LOGGER_NAMESPACE)
        if _handler is not None:
            namespace.removeHandler(_handler)
        _handler = None
        namespace.setLevel(logging.WARNING)
