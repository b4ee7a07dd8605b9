"""
ENGINE_TRACE records for the decision engines.

``@traced_engine`` wraps an engine entry point and logs, at DEBUG, which
engine ran, at which rule version, how long it took and a short hash of
the keyword inputs that drove the decision.  Two runs with the same
fingerprint and version must have reached the same outcome, which is what
makes an approval tier or a validation verdict reproducible after the fact.

An engine that raises is logged as ``ENGINE_FAILED`` and the exception
propagates unchanged.
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

_logger = logging.getLogger("docledger.engines.tracer")


def _stable(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, Decimal):
        # 100, 100.0 and 100.00 are the same amount
        return format(value.normalize(), "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _stable({f.name: getattr(value, f.name) for f in dataclasses.fields(value)})
    if isinstance(value, Mapping):
        return "{" + ",".join(f"{k}={_stable(value[k])}" for k in sorted(value, key=str)) + "}"
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return "[" + ",".join(_stable(v) for v in items) + "]"
    return str(value)


def input_fingerprint(fields: tuple[str, ...], kwargs: Mapping[str, Any]) -> str:
    """First 16 hex chars of SHA-256 over the named keyword inputs."""
    canonical = ";".join(f"{name}:{_stable(kwargs.get(name))}" for name in fields)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            trace = {
                "engine_name": engine_name,
                "engine_version": engine_version,
                "input_fingerprint": input_fingerprint(fingerprint_fields, kwargs) if fingerprint_fields else "",
                "function": func.__qualname__,
            }
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                _logger.warning(
                    "ENGINE_FAILED",
                    extra={**trace, "trace_type": "ENGINE_FAILED", "error": type(exc).__name__},
                )
                raise
            trace["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            _logger.debug("ENGINE_TRACE", extra={**trace, "trace_type": "ENGINE_TRACE"})
            return result

        return wrapper

    return decorator
