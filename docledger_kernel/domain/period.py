"""
Period domain types.

Responsibility:
    Period lifecycle state machine, pre-close check records, the closing
    summary and result DTOs.

Invariants enforced:
    - Only OPEN accepts postings (``is_writable``).
    - CLOSED may return to OPEN (reopen); LOCKED has no outgoing edges.
    - CLOSING is transient and only entered while ``close`` holds the
      period row lock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class PeriodStatus(str, Enum):
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    LOCKED = "LOCKED"


PERIOD_TRANSITIONS: dict[PeriodStatus, frozenset[PeriodStatus]] = {
    PeriodStatus.OPEN: frozenset({PeriodStatus.CLOSING}),
    PeriodStatus.CLOSING: frozenset({PeriodStatus.CLOSED, PeriodStatus.OPEN}),
    PeriodStatus.CLOSED: frozenset({PeriodStatus.LOCKED, PeriodStatus.OPEN}),
    PeriodStatus.LOCKED: frozenset(),
}


class PeriodAction(str, Enum):
    PERIOD_CREATED = "PERIOD_CREATED"
    CLOSING_STARTED = "CLOSING_STARTED"
    CLOSE_BLOCKED = "CLOSE_BLOCKED"
    PERIOD_CLOSED = "PERIOD_CLOSED"
    PERIOD_LOCKED = "PERIOD_LOCKED"
    PERIOD_REOPENED = "PERIOD_REOPENED"


class CheckStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    WARNING = "WARNING"


def period_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_bounds(year: int, month: int) -> tuple[date, date]:
    """First day of the month and first day of the next month."""
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


@dataclass(frozen=True)
class PreCloseCheck:
    name: str
    status: CheckStatus
    blocking: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_blocker(self) -> bool:
        return self.blocking and self.status == CheckStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "blocking": self.blocking,
            "message": self.message,
            "details": self.details,
        }


@dataclass(frozen=True)
class CheckRun:
    checks: tuple[PreCloseCheck, ...]

    @property
    def all_passed(self) -> bool:
        return all(c.status == CheckStatus.PASSED for c in self.checks)

    @property
    def blockers(self) -> tuple[PreCloseCheck, ...]:
        return tuple(c for c in self.checks if c.is_blocker)

    @property
    def warnings(self) -> tuple[PreCloseCheck, ...]:
        return tuple(c for c in self.checks if c.status == CheckStatus.WARNING)

    @property
    def can_close(self) -> bool:
        return not self.blockers


@dataclass(frozen=True)
class PeriodHistoryEntry:
    action: PeriodAction
    actor: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Period:
    company_id: str
    year: int
    month: int
    status: PeriodStatus
    closed_at: datetime | None = None
    closed_by: str | None = None
    locked_at: datetime | None = None
    locked_by: str | None = None
    summary: dict[str, Any] | None = None

    @property
    def key(self) -> str:
        return period_key(self.year, self.month)

    @property
    def is_writable(self) -> bool:
        return self.status == PeriodStatus.OPEN


@dataclass(frozen=True)
class PeriodSummary:
    total_documents: int
    approved_documents: int
    pending_documents: int
    posted_documents: int
    total_invoice_amount: Decimal
    total_receipt_amount: Decimal
    vat_input: Decimal
    vat_output: Decimal
    account_totals: dict[str, Decimal]
    voucher_series: dict[str, dict[str, Any]]
    bank_matched_count: int
    bank_unmatched_count: int
    bank_matched_amount: Decimal
    bank_unmatched_amount: Decimal
    generated_at: datetime

    @property
    def vat_to_pay(self) -> Decimal:
        return self.vat_output - self.vat_input

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_documents": self.total_documents,
            "approved_documents": self.approved_documents,
            "pending_documents": self.pending_documents,
            "posted_documents": self.posted_documents,
            "total_invoice_amount": str(self.total_invoice_amount),
            "total_receipt_amount": str(self.total_receipt_amount),
            "vat": {
                "input": str(self.vat_input),
                "output": str(self.vat_output),
                "to_pay": str(self.vat_to_pay),
            },
            "account_totals": {k: str(v) for k, v in sorted(self.account_totals.items())},
            "voucher_series": self.voucher_series,
            "bank_reconciliation": {
                "matched_count": self.bank_matched_count,
                "unmatched_count": self.bank_unmatched_count,
                "matched_amount": str(self.bank_matched_amount),
                "unmatched_amount": str(self.bank_unmatched_amount),
            },
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass(frozen=True)
class ClosingResult:
    success: bool
    period: Period
    message: str
    checks: tuple[PreCloseCheck, ...] = ()
    blockers: tuple[PreCloseCheck, ...] = ()
    warnings: tuple[PreCloseCheck, ...] = ()
    summary: dict[str, Any] | None = None
    forced: bool = False
