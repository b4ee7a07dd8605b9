"""
docledger_engines.anomaly -- Pure anomaly scoring for classified documents.

Responsibility:
    Run a fixed list of detectors over a document's extracted facts and
    the supplier's history, then fold the hits into a risk score, a
    recommendation and the ``blocks_auto_approve`` flag.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  ``today`` is passed in;
    the scorer never reads a clock.

Invariants enforced:
    - Deterministic: identical inputs give identical reports.
    - Anomalies are ordered by severity (highest first), then by detector
      order.
    - Risk score is the sum of severity weights, capped at 100.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from decimal import Decimal

from docledger_engines.tracer import traced_engine
from docledger_kernel.domain.anomaly import (
    BLOCK_AUTO_APPROVE_SCORE,
    ESCALATE_SCORE,
    MAX_RISK_SCORE,
    REVIEW_SCORE,
    Anomaly,
    AnomalyReport,
    AnomalyType,
    Recommendation,
    Severity,
    SupplierHistory,
)
from docledger_kernel.domain.documents import UNKNOWN_SUPPLIER, Classification, DocumentType

STANDARD_VAT_RATES: tuple[Decimal, ...] = (
    Decimal("0"), Decimal("6"), Decimal("12"), Decimal("25"),
)
VAT_RATE_TOLERANCE = Decimal("0.5")
MIN_HISTORY = 3
HIGH_AMOUNT_FACTOR = Decimal("2")
LOW_AMOUNT_FACTOR = Decimal("0.3")
NEW_SUPPLIER_MEDIUM_AMOUNT = Decimal("10000")
ROUND_AMOUNT_MIN = Decimal("5000")
LOW_CONFIDENCE = 0.7
VERY_LOW_CONFIDENCE = 0.5
OLD_INVOICE_DAYS = 60
VERY_OLD_INVOICE_DAYS = 180
FAR_FUTURE_DAYS = 7
RAPID_INVOICING_DAYS = 3


class _Context:
    """Facts the detectors read, bundled once per scoring run."""

    def __init__(
        self,
        classification: Classification,
        history: SupplierHistory,
        today: date,
        is_new_supplier: bool,
    ):
        self.c = classification
        self.history = history
        self.today = today
        self.is_new_supplier = is_new_supplier
        self.amount = abs(classification.total_amount)


def vat_rate_percent(total: Decimal, vat: Decimal) -> Decimal:
    """VAT as a percentage of the net amount; zero when undefined."""
    net = total - vat
    if total <= 0 or net == 0:
        return Decimal("0")
    return vat / net * 100


# =========================================================================
# Detectors
# =========================================================================


def _high_amount(ctx: _Context) -> Anomaly | None:
    h = ctx.history
    if h.total_invoices < MIN_HISTORY or h.average_amount <= 0:
        return None
    if ctx.amount <= h.average_amount * HIGH_AMOUNT_FACTOR:
        return None
    over = (ctx.amount - h.average_amount) / h.average_amount * 100
    return Anomaly(
        AnomalyType.HIGH_AMOUNT,
        Severity.HIGH if over > 200 else Severity.MEDIUM,
        f"Amount {ctx.amount} is {over:.0f}% above the supplier average {h.average_amount}",
        {
            "amount": str(ctx.amount),
            "average_amount": str(h.average_amount),
            "percentage_over": round(float(over), 1),
            "historical_max": str(h.max_amount) if h.max_amount is not None else None,
        },
    )


def _low_amount(ctx: _Context) -> Anomaly | None:
    h = ctx.history
    if h.total_invoices < MIN_HISTORY or h.average_amount <= 0:
        return None
    if not (0 < ctx.amount < h.average_amount * LOW_AMOUNT_FACTOR):
        return None
    under = (h.average_amount - ctx.amount) / h.average_amount * 100
    return Anomaly(
        AnomalyType.LOW_AMOUNT,
        Severity.LOW,
        f"Amount {ctx.amount} is {under:.0f}% below the supplier average {h.average_amount}",
        {"amount": str(ctx.amount), "average_amount": str(h.average_amount)},
    )


def _new_supplier(ctx: _Context) -> Anomaly | None:
    if not ctx.is_new_supplier:
        return None
    return Anomaly(
        AnomalyType.NEW_SUPPLIER,
        Severity.MEDIUM if ctx.amount > NEW_SUPPLIER_MEDIUM_AMOUNT else Severity.LOW,
        f"First document from {ctx.c.supplier!r}",
        {"supplier": ctx.c.supplier, "amount": str(ctx.amount)},
    )


def _unusual_account(ctx: _Context) -> Anomaly | None:
    account = ctx.c.primary_account
    typical = ctx.history.typical_accounts
    if not typical or not account or account in typical:
        return None
    return Anomaly(
        AnomalyType.UNUSUAL_ACCOUNT,
        Severity.LOW,
        f"Account {account} is not normally used for {ctx.c.supplier}",
        {"account": account, "typical_accounts": list(typical)},
    )


def _unusual_vat(ctx: _Context) -> Anomaly | None:
    rate = vat_rate_percent(ctx.c.total_amount, ctx.c.vat_amount)
    if rate <= 0:
        return None
    if any(abs(rate - standard) <= VAT_RATE_TOLERANCE for standard in STANDARD_VAT_RATES):
        return None
    return Anomaly(
        AnomalyType.UNUSUAL_VAT,
        Severity.MEDIUM,
        f"VAT rate {rate:.1f}% is not a standard rate",
        {
            "vat_rate": round(float(rate), 2),
            "vat_amount": str(ctx.c.vat_amount),
            "valid_rates": [int(r) for r in STANDARD_VAT_RATES],
        },
    )


def _weekend_invoice(ctx: _Context) -> Anomaly | None:
    d = ctx.c.invoice_date
    if d is None or d.weekday() < 5:
        return None
    return Anomaly(
        AnomalyType.WEEKEND_INVOICE,
        Severity.LOW,
        f"Invoice is dated on a {d.strftime('%A')} ({d.isoformat()})",
        {"invoice_date": d.isoformat(), "weekday": d.strftime("%A")},
    )


def _future_date(ctx: _Context) -> Anomaly | None:
    d = ctx.c.invoice_date
    if d is None or d <= ctx.today:
        return None
    days = (d - ctx.today).days
    return Anomaly(
        AnomalyType.FUTURE_DATE,
        Severity.HIGH if days > FAR_FUTURE_DAYS else Severity.MEDIUM,
        f"Invoice date {d.isoformat()} is {days} days in the future",
        {"invoice_date": d.isoformat(), "days_in_future": days},
    )


def _old_invoice(ctx: _Context) -> Anomaly | None:
    d = ctx.c.invoice_date
    if d is None:
        return None
    days = (ctx.today - d).days
    if days <= OLD_INVOICE_DAYS:
        return None
    return Anomaly(
        AnomalyType.OLD_INVOICE,
        Severity.HIGH if days > VERY_OLD_INVOICE_DAYS else Severity.MEDIUM,
        f"Invoice is {days} days old",
        {"invoice_date": d.isoformat(), "days_since_invoice": days},
    )


def _round_amount(ctx: _Context) -> Anomaly | None:
    if ctx.amount < ROUND_AMOUNT_MIN or ctx.amount % 1000 != 0:
        return None
    return Anomaly(
        AnomalyType.ROUND_AMOUNT,
        Severity.LOW,
        f"Amount {ctx.amount} is an even thousand",
        {"amount": str(ctx.amount)},
    )


def _low_confidence(ctx: _Context) -> Anomaly | None:
    confidence = ctx.c.confidence
    if confidence >= LOW_CONFIDENCE:
        return None
    return Anomaly(
        AnomalyType.LOW_CONFIDENCE,
        Severity.HIGH if confidence < VERY_LOW_CONFIDENCE else Severity.MEDIUM,
        f"Extraction confidence is only {confidence:.0%}",
        {"confidence": confidence},
    )


def _missing_data(ctx: _Context) -> Anomaly | None:
    c = ctx.c
    missing: list[str] = []
    if not c.supplier or c.supplier == UNKNOWN_SUPPLIER:
        missing.append("supplier")
    if not c.total_amount:
        missing.append("amount")
    if c.invoice_date is None:
        missing.append("invoice_date")
    if c.doc_type == DocumentType.INVOICE and not c.invoice_number:
        missing.append("invoice_number")
    if not missing:
        return None
    return Anomaly(
        AnomalyType.MISSING_DATA,
        Severity.HIGH if len(missing) > 2 else Severity.MEDIUM,
        f"Missing fields: {', '.join(missing)}",
        {"missing_fields": missing},
    )


def _rapid_invoicing(ctx: _Context) -> Anomaly | None:
    dates = sorted(
        (date.fromisoformat(d) for d in ctx.history.invoice_dates[-5:]),
        reverse=True,
    )
    if len(dates) < 2:
        return None
    days_between = (dates[0] - dates[1]).days
    if days_between >= RAPID_INVOICING_DAYS:
        return None
    return Anomaly(
        AnomalyType.RAPID_INVOICING,
        Severity.LOW,
        f"Several documents from {ctx.c.supplier} within {days_between} days",
        {"days_between": days_between, "recent_invoice_count": len(dates)},
    )


DETECTORS: tuple[Callable[[_Context], Anomaly | None], ...] = (
    _high_amount,
    _low_amount,
    _new_supplier,
    _unusual_account,
    _unusual_vat,
    _weekend_invoice,
    _future_date,
    _old_invoice,
    _round_amount,
    _low_confidence,
    _missing_data,
    _rapid_invoicing,
)


# =========================================================================
# Scoring
# =========================================================================


def risk_score(anomalies: tuple[Anomaly, ...]) -> int:
    return min(MAX_RISK_SCORE, sum(a.severity.weight for a in anomalies))


def recommend(score: int, highest: Severity | None) -> Recommendation:
    if score >= ESCALATE_SCORE:
        return Recommendation.ESCALATE
    if score >= REVIEW_SCORE or highest in (Severity.HIGH, Severity.CRITICAL):
        return Recommendation.MANUAL_REVIEW
    return Recommendation.AUTO_APPROVE


def build_report(anomalies: list[Anomaly]) -> AnomalyReport:
    # sorted() is stable, so detector order survives within a severity
    ordered = tuple(sorted(anomalies, key=lambda a: -a.severity.rank))
    score = risk_score(ordered)
    highest = ordered[0].severity if ordered else None
    return AnomalyReport(
        anomalies=ordered,
        risk_score=score,
        recommendation=recommend(score, highest),
        blocks_auto_approve=(
            score >= BLOCK_AUTO_APPROVE_SCORE
            or highest in (Severity.HIGH, Severity.CRITICAL)
        ),
        highest_severity=highest,
    )


@traced_engine("anomaly", "1.0", fingerprint_fields=("today", "is_new_supplier"))
def detect_anomalies(
    classification: Classification,
    history: SupplierHistory | None = None,
    *,
    today: date,
    is_new_supplier: bool | None = None,
) -> AnomalyReport:
    """
    Score one document.

    Args:
        classification: Extracted facts for the document.
        history: Aggregates of the supplier's earlier postings; an empty
            history means the supplier is new.
        today: Reference date for the date-based detectors.
        is_new_supplier: Overrides ``history.is_new`` when given.
    """
    history = history or SupplierHistory()
    new = history.is_new if is_new_supplier is None else is_new_supplier
    ctx = _Context(classification, history, today, new)
    found = [a for a in (detector(ctx) for detector in DETECTORS) if a is not None]
    return build_report(found)
