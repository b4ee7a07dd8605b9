"""
Anomaly domain types.

Severity weights and recommendation thresholds live here so that the pure
scorer in ``docledger_engines.anomaly`` and the approval engine read the same
numbers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class AnomalyType(str, Enum):
    HIGH_AMOUNT = "HIGH_AMOUNT"
    LOW_AMOUNT = "LOW_AMOUNT"
    NEW_SUPPLIER = "NEW_SUPPLIER"
    UNUSUAL_ACCOUNT = "UNUSUAL_ACCOUNT"
    UNUSUAL_VAT = "UNUSUAL_VAT"
    WEEKEND_INVOICE = "WEEKEND_INVOICE"
    FUTURE_DATE = "FUTURE_DATE"
    OLD_INVOICE = "OLD_INVOICE"
    ROUND_AMOUNT = "ROUND_AMOUNT"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    MISSING_DATA = "MISSING_DATA"
    RAPID_INVOICING = "RAPID_INVOICING"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def weight(self) -> int:
        return SEVERITY_WEIGHTS[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.LOW: 5,
    Severity.MEDIUM: 15,
    Severity.HIGH: 30,
    Severity.CRITICAL: 50,
}

MAX_RISK_SCORE = 100
ESCALATE_SCORE = 60
REVIEW_SCORE = 10
BLOCK_AUTO_APPROVE_SCORE = 30


class Recommendation(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    ESCALATE = "ESCALATE"


@dataclass(frozen=True)
class Anomaly:
    type: AnomalyType
    severity: Severity
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass(frozen=True)
class AnomalyReport:
    anomalies: tuple[Anomaly, ...]
    risk_score: int
    recommendation: Recommendation
    blocks_auto_approve: bool
    highest_severity: Severity | None = None
    created_at: datetime | None = None

    @property
    def has_anomalies(self) -> bool:
        return bool(self.anomalies)

    def to_dict(self) -> dict[str, Any]:
        return {
            "anomalies": [a.to_dict() for a in self.anomalies],
            "risk_score": self.risk_score,
            "recommendation": self.recommendation.value,
            "blocks_auto_approve": self.blocks_auto_approve,
            "highest_severity": self.highest_severity.value if self.highest_severity else None,
        }


EMPTY_REPORT = AnomalyReport(
    anomalies=(),
    risk_score=0,
    recommendation=Recommendation.AUTO_APPROVE,
    blocks_auto_approve=False,
)


@dataclass(frozen=True)
class SupplierHistory:
    """Aggregates the scorer compares a new document against."""

    total_invoices: int = 0
    average_amount: Decimal = Decimal("0")
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    std_deviation: Decimal = Decimal("0")
    typical_accounts: tuple[str, ...] = ()
    invoice_dates: tuple[str, ...] = ()
    approved_count: int = 0

    @property
    def is_new(self) -> bool:
        return self.total_invoices == 0
