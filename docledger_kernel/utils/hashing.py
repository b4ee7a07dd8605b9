"""
Content hashes for uploads and audit payloads.

``hash_file`` is the exact-duplicate key for an uploaded document.
``hash_payload`` seals an audit log entry; it hashes a canonical JSON
rendering so the same logical payload always yields the same digest.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        # 100 and 100.00 are the same amount
        return format(value.normalize(), "f")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    raise TypeError(f"cannot canonicalize {type(value).__name__}")


def canonicalize_json(data: Any) -> str:
    """Sorted keys, no whitespace, Decimal/Enum/datetime/UUID rendered as strings."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_encode)


def hash_payload(payload: Any) -> str:
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()


def hash_file(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()
