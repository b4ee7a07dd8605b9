"""
Document job domain types (``docledger_kernel.domain.documents``).

Responsibility
--------------
Pure value objects for one uploaded file's processing lifecycle: the job
status state machine, document types, the extracted classification with
its ordered line items, and the submission result returned to callers.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  No imports from ``db/``,
``models/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* Job lifecycle -- ``JOB_TRANSITIONS`` is the only source of valid status
  changes.  The pipeline moves forward only; ``ready -> approved`` is the
  single late transition, and ``error -> queued`` exists for an explicit
  operator retry.
* Balanced classification -- ``Classification.line_sum_difference`` is the
  quantity the validation engine keeps within one minor unit.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =========================================================================
# Job status lifecycle
# =========================================================================


class JobStatus(str, Enum):
    """Document job lifecycle states."""

    QUEUED = "queued"
    UPLOADING = "uploading"
    SCANNING = "scanning"
    OCR = "ocr"
    ANALYZING = "analyzing"
    READY = "ready"
    APPROVED = "approved"
    ERROR = "error"
    SPLIT = "split"


JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.UPLOADING, JobStatus.ERROR}),
    JobStatus.UPLOADING: frozenset({JobStatus.SCANNING, JobStatus.ERROR}),
    JobStatus.SCANNING: frozenset({JobStatus.OCR, JobStatus.SPLIT, JobStatus.ERROR}),
    JobStatus.OCR: frozenset({JobStatus.ANALYZING, JobStatus.ERROR}),
    JobStatus.ANALYZING: frozenset({
        JobStatus.READY,
        JobStatus.APPROVED,
        JobStatus.ERROR,
    }),
    JobStatus.READY: frozenset({JobStatus.APPROVED}),
    JobStatus.APPROVED: frozenset(),
    JobStatus.ERROR: frozenset({JobStatus.QUEUED}),
    JobStatus.SPLIT: frozenset(),
}

# Statuses the runner never picks up again on its own.
TERMINAL_JOB_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.READY,
    JobStatus.APPROVED,
    JobStatus.ERROR,
    JobStatus.SPLIT,
})

# Processing stages in order.  A job resumes at the stage matching its status.
PIPELINE_STAGES: tuple[JobStatus, ...] = (
    JobStatus.QUEUED,
    JobStatus.UPLOADING,
    JobStatus.SCANNING,
    JobStatus.OCR,
    JobStatus.ANALYZING,
)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in JOB_TRANSITIONS[current]


class DocumentType(str, Enum):
    INVOICE = "INVOICE"
    RECEIPT = "RECEIPT"
    CREDIT_NOTE = "CREDIT_NOTE"
    BANK_STATEMENT = "BANK_STATEMENT"
    SALARY = "SALARY"
    SALES_INVOICE = "SALES_INVOICE"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: str | None) -> DocumentType:
        if not value:
            return cls.OTHER
        try:
            return cls(value.upper())
        except ValueError:
            return cls.OTHER


class SubmitStatus(str, Enum):
    """Outcome of a submission as seen by the caller."""

    QUEUED = "queued"
    DUPLICATE_WARNING = "duplicate_warning"
    DUPLICATE_BLOCKED = "duplicate_blocked"


UNKNOWN_SUPPLIER = "Okänd"


# =========================================================================
# Classification
# =========================================================================


@dataclass(frozen=True)
class LineItem:
    """One extracted line of a document."""

    description: str
    net_amount: Decimal
    vat_amount: Decimal = Decimal("0")
    account: str | None = None
    confidence: float = 1.0

    @property
    def gross_amount(self) -> Decimal:
        return self.net_amount + self.vat_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "net_amount": str(self.net_amount),
            "vat_amount": str(self.vat_amount),
            "account": self.account,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineItem:
        return cls(
            description=data.get("description") or "",
            net_amount=Decimal(str(data.get("net_amount", "0"))),
            vat_amount=Decimal(str(data.get("vat_amount", "0"))),
            account=data.get("account"),
            confidence=float(data.get("confidence", 1.0)),
        )


@dataclass(frozen=True)
class Classification:
    """
    Extracted financial facts for one document.

    Replaced wholesale (``dataclasses.replace``) on re-classification or
    currency conversion, never mutated in place.
    """

    doc_type: DocumentType
    supplier: str
    total_amount: Decimal
    vat_amount: Decimal = Decimal("0")
    currency: str = "SEK"
    invoice_number: str | None = None
    invoice_date: date | None = None
    due_date: date | None = None
    confidence: float = 1.0
    account: str | None = None
    cost_center: str | None = None
    description: str | None = None
    line_items: tuple[LineItem, ...] = ()
    original_currency: str | None = None
    original_amount: Decimal | None = None
    exchange_rate: Decimal | None = None
    exchange_rate_source: str | None = None
    periodization: dict[str, Any] | None = None

    @property
    def net_amount(self) -> Decimal:
        return self.total_amount - self.vat_amount

    @property
    def line_total(self) -> Decimal:
        return sum((line.gross_amount for line in self.line_items), Decimal("0"))

    @property
    def line_sum_difference(self) -> Decimal:
        """Total minus the sum of line gross amounts (zero when no lines)."""
        if not self.line_items:
            return Decimal("0")
        return self.total_amount - self.line_total

    @property
    def primary_account(self) -> str | None:
        if self.account:
            return self.account
        for line in self.line_items:
            if line.account:
                return line.account
        return None

    def with_changes(self, **changes: Any) -> Classification:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_type": self.doc_type.value,
            "supplier": self.supplier,
            "total_amount": str(self.total_amount),
            "vat_amount": str(self.vat_amount),
            "currency": self.currency,
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date.isoformat() if self.invoice_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "confidence": self.confidence,
            "account": self.account,
            "cost_center": self.cost_center,
            "description": self.description,
            "line_items": [line.to_dict() for line in self.line_items],
            "original_currency": self.original_currency,
            "original_amount": str(self.original_amount) if self.original_amount is not None else None,
            "exchange_rate": str(self.exchange_rate) if self.exchange_rate is not None else None,
            "exchange_rate_source": self.exchange_rate_source,
            "periodization": self.periodization,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Classification:
        def _date(value: str | None) -> date | None:
            return date.fromisoformat(value) if value else None

        def _decimal(value: Any) -> Decimal | None:
            return Decimal(str(value)) if value is not None else None

        return cls(
            doc_type=DocumentType.parse(data.get("doc_type")),
            supplier=data.get("supplier") or "",
            total_amount=Decimal(str(data.get("total_amount", "0"))),
            vat_amount=Decimal(str(data.get("vat_amount", "0"))),
            currency=data.get("currency") or "SEK",
            invoice_number=data.get("invoice_number"),
            invoice_date=_date(data.get("invoice_date")),
            due_date=_date(data.get("due_date")),
            confidence=float(data.get("confidence", 1.0)),
            account=data.get("account"),
            cost_center=data.get("cost_center"),
            description=data.get("description"),
            line_items=tuple(LineItem.from_dict(line) for line in data.get("line_items") or ()),
            original_currency=data.get("original_currency"),
            original_amount=_decimal(data.get("original_amount")),
            exchange_rate=_decimal(data.get("exchange_rate")),
            exchange_rate_source=data.get("exchange_rate_source"),
            periodization=data.get("periodization"),
        )


# =========================================================================
# Job DTO and submission result
# =========================================================================


@dataclass(frozen=True)
class DocumentJob:
    """Read-only snapshot of a document job."""

    id: UUID
    company_id: str
    status: JobStatus
    file_name: str
    file_hash: str
    created_at: datetime
    updated_at: datetime
    mime_type: str | None = None
    file_ref: str | None = None
    classification: Classification | None = None
    error: str | None = None
    warnings: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    split_info: dict[str, Any] | None = None
    requires_approval: bool = False
    approval_request_id: UUID | None = None
    voucher_number: str | None = None
    posted_at: datetime | None = None

    @property
    def is_posted(self) -> bool:
        return self.voucher_number is not None

    @property
    def document_date(self) -> date:
        """Invoice date when known, otherwise the day the job was created."""
        if self.classification is not None and self.classification.invoice_date is not None:
            return self.classification.invoice_date
        return self.created_at.date()


@dataclass(frozen=True)
class SubmitResult:
    job_id: UUID | None
    status: SubmitStatus
    duplicate: Any = None
    message: str | None = None
