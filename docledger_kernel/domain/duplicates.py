"""
Duplicate detection domain types (``docledger_kernel.domain.duplicates``).

Pure value objects shared by the duplicate service and the pipeline: the
fingerprint a document is checked with, the check verdict, and the override
record that lets a flagged duplicate proceed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

OVERRIDE_REASON_MIN_LENGTH = 10
CHECK_CACHE_TTL_HOURS = 24
FUZZY_AMOUNT_TOLERANCE = Decimal("0.01")  # 1 %
FUZZY_DATE_WINDOW_DAYS = 7
LIKELY_AMOUNT_DELTA = Decimal("0.01")

_NON_KEY_CHARS = re.compile(r"[^a-z0-9åäö]")
_COMPANY_SUFFIX = re.compile(r"(ab|inc\.?|ltd\.?|gmbh)$")


def normalize_supplier(name: str | None) -> str:
    """Lowercase, drop a trailing company form and keep only letters and digits."""
    if not name:
        return ""
    key = re.sub(r"\s+", "", name.lower())
    key = _COMPANY_SUFFIX.sub("", key)
    return _NON_KEY_CHARS.sub("", key)


def normalize_invoice_number(number: str | None) -> str | None:
    if not number:
        return None
    cleaned = re.sub(r"\s+", "", number).upper()
    return cleaned or None


class DuplicateConfidence(str, Enum):
    EXACT = "exact"
    LIKELY = "likely"
    POSSIBLE = "possible"
    NONE = "none"


class MatchType(str, Enum):
    INVOICE_NUMBER = "invoice_number"
    FILE_HASH = "file_hash"
    AMOUNT_DATE = "amount_date"


@dataclass(frozen=True)
class Fingerprint:
    """
    What a document is checked with.

    ``job_id`` is the job the fingerprint belongs to; matches pointing back
    at the same job are ignored so a re-run never flags itself.
    """

    company_id: str
    file_hash: str | None = None
    supplier: str | None = None
    invoice_number: str | None = None
    amount: Decimal | None = None
    invoice_date: date | None = None
    job_id: UUID | None = None

    @property
    def supplier_key(self) -> str:
        return normalize_supplier(self.supplier)

    @property
    def invoice_key(self) -> str | None:
        return normalize_invoice_number(self.invoice_number)


@dataclass(frozen=True)
class DuplicateCheckResult:
    is_duplicate: bool
    confidence: DuplicateConfidence
    can_override: bool
    check_id: str
    match_type: MatchType | None = None
    matched_job_id: UUID | None = None
    reason: str | None = None
    checked_at: datetime | None = None

    @property
    def is_blocking(self) -> bool:
        """Exact or likely matches stop processing until overridden."""
        return self.is_duplicate and self.confidence in (
            DuplicateConfidence.EXACT,
            DuplicateConfidence.LIKELY,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_duplicate": self.is_duplicate,
            "confidence": self.confidence.value,
            "can_override": self.can_override,
            "check_id": self.check_id,
            "match_type": self.match_type.value if self.match_type else None,
            "matched_job_id": str(self.matched_job_id) if self.matched_job_id else None,
            "reason": self.reason,
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DuplicateCheckResult:
        return cls(
            is_duplicate=bool(data["is_duplicate"]),
            confidence=DuplicateConfidence(data["confidence"]),
            can_override=bool(data["can_override"]),
            check_id=data["check_id"],
            match_type=MatchType(data["match_type"]) if data.get("match_type") else None,
            matched_job_id=UUID(data["matched_job_id"]) if data.get("matched_job_id") else None,
            reason=data.get("reason"),
            checked_at=datetime.fromisoformat(data["checked_at"]) if data.get("checked_at") else None,
        )


@dataclass(frozen=True)
class DuplicateOverride:
    id: UUID
    original_job_id: UUID
    new_job_id: UUID
    reason: str
    approved_by: str
    created_at: datetime
    match_type: MatchType | None = None
    new_file_hash: str | None = None

    def covers(self, file_hash: str | None) -> bool:
        """A hash-bound override only applies to that exact file."""
        return self.new_file_hash is None or self.new_file_hash == file_hash
