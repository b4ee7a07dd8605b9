"""
docledger_engines.validation -- Structural validation and line correction.

Responsibility:
    ``validate_classification`` checks a document's extracted facts
    (supplier, amount sign, VAT rate, dates, line items) and reports
    issues by code.  ``correct_line_items`` repairs the line items so that
    their gross sum equals the document total.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  ``today`` is passed in.

Invariants enforced:
    - After ``correct_line_items`` a document with lines within the
      correction window has sum(net + VAT) == total exactly; the residual
      from rounding lands on the last line.
    - Critical issues make ``is_valid`` False; error-level issues make
      ``passed`` False.  Warnings never fail validation.

Codes:
    SUPPLIER_MISSING, INVALID_AMOUNT, CREDIT_NOTE_POSITIVE_AMOUNT,
    VAT_MISMATCH, LINE_VAT_MISMATCH, INVALID_INVOICE_DATE, FUTURE_DATE,
    OLD_DATE, OUTSIDE_FISCAL_YEAR, DUE_BEFORE_INVOICE, NO_LINE_ITEMS,
    INVALID_LINE_ACCOUNT, INVALID_LINE_AMOUNT, NEGATIVE_LINE_AMOUNT,
    LINE_SUM_MISMATCH, FOREIGN_CURRENCY.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from docledger_engines.tracer import traced_engine
from docledger_kernel.domain.documents import (
    UNKNOWN_SUPPLIER,
    Classification,
    DocumentType,
    LineItem,
)

VALID_VAT_RATES: tuple[Decimal, ...] = (
    Decimal("0"), Decimal("6"), Decimal("12"), Decimal("25"),
)
VAT_TOLERANCE = Decimal("1")
OLD_DATE_YEARS = 2
LINE_SUM_MIN_TOLERANCE = Decimal("1")
LINE_SUM_RELATIVE_TOLERANCE = Decimal("0.01")
CORRECTION_WINDOW = Decimal("100")
DEFAULT_EXPENSE_ACCOUNT = "4010"
BASE_CURRENCY = "SEK"

_ACCOUNT_RE = re.compile(r"^\d{4}$")
CENT = Decimal("0.01")

CRITICAL = "critical"
ERROR = "error"
WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    field: str
    message: str
    severity: str = ERROR
    suggestion: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "code": self.code,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True)
class ValidationResult:
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not any(e.severity == CRITICAL for e in self.errors)

    @property
    def passed(self) -> bool:
        return not self.errors

    @property
    def codes(self) -> tuple[str, ...]:
        return tuple(i.code for i in (*self.errors, *self.warnings))

    def messages(self) -> list[str]:
        return [f"{i.code}: {i.message}" for i in (*self.errors, *self.warnings)]


@dataclass(frozen=True)
class LineCorrection:
    classification: Classification
    adjustments: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.adjustments)


# =========================================================================
# Validation
# =========================================================================


@traced_engine("validation", "1.0")
def validate_classification(
    classification: Classification,
    *,
    today: date,
    fiscal_year: tuple[date, date] | None = None,
    base_currency: str = BASE_CURRENCY,
) -> ValidationResult:
    c = classification
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    is_credit_note = c.doc_type == DocumentType.CREDIT_NOTE

    if not c.supplier or len(c.supplier.strip()) < 2 or c.supplier == UNKNOWN_SUPPLIER:
        errors.append(ValidationIssue(
            "SUPPLIER_MISSING", "supplier", "Supplier name is missing or too short", CRITICAL,
        ))

    if not c.total_amount:
        errors.append(ValidationIssue(
            "INVALID_AMOUNT", "total_amount", "Total amount must not be zero", CRITICAL,
        ))
    elif not is_credit_note and c.total_amount < 0:
        errors.append(ValidationIssue(
            "INVALID_AMOUNT", "total_amount", "Total amount must be positive", CRITICAL,
        ))
    elif is_credit_note and c.total_amount > 0:
        warnings.append(ValidationIssue(
            "CREDIT_NOTE_POSITIVE_AMOUNT", "total_amount",
            "Credit note has a positive total amount", WARNING,
            "Credit note amounts are normally negative",
        ))

    _validate_vat(c, warnings)
    _validate_dates(c, today, fiscal_year, errors, warnings)
    _validate_lines(c, is_credit_note, errors, warnings)

    if c.currency and c.currency != base_currency:
        warnings.append(ValidationIssue(
            "FOREIGN_CURRENCY", "currency",
            f"Foreign currency ({c.currency}) requires conversion", WARNING,
        ))

    return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))


def _closest_rate(percentage: Decimal) -> Decimal:
    return min(VALID_VAT_RATES, key=lambda rate: abs(rate - percentage))


def _validate_vat(c: Classification, warnings: list[ValidationIssue]) -> None:
    net = abs(c.total_amount - c.vat_amount)
    vat = abs(c.vat_amount)
    if net > 0:
        rate = _closest_rate(vat / net * 100)
        expected = net * rate / 100
        if abs(vat - expected) > VAT_TOLERANCE:
            warnings.append(ValidationIssue(
                "VAT_MISMATCH", "vat_amount",
                f"VAT {c.vat_amount} does not match {rate}% of the net amount "
                f"({expected.quantize(CENT)})",
                WARNING,
            ))

    if c.line_items:
        line_vat = sum((line.vat_amount for line in c.line_items), Decimal("0"))
        if abs(line_vat - c.vat_amount) > VAT_TOLERANCE:
            warnings.append(ValidationIssue(
                "LINE_VAT_MISMATCH", "line_items",
                f"Line VAT {line_vat} does not match total VAT {c.vat_amount}",
                WARNING,
            ))


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 29 February
        return day.replace(year=day.year - years, day=28)


def _validate_dates(
    c: Classification,
    today: date,
    fiscal_year: tuple[date, date] | None,
    errors: list[ValidationIssue],
    warnings: list[ValidationIssue],
) -> None:
    if c.invoice_date is None:
        errors.append(ValidationIssue(
            "INVALID_INVOICE_DATE", "invoice_date", "Invoice date is missing or invalid", CRITICAL,
        ))
        return

    if c.invoice_date > today:
        errors.append(ValidationIssue(
            "FUTURE_DATE", "invoice_date", "Invoice date is in the future", ERROR,
        ))
    if c.invoice_date < _years_before(today, OLD_DATE_YEARS):
        warnings.append(ValidationIssue(
            "OLD_DATE", "invoice_date", "Invoice date is more than two years old", WARNING,
        ))
    if fiscal_year is not None and not (fiscal_year[0] <= c.invoice_date <= fiscal_year[1]):
        warnings.append(ValidationIssue(
            "OUTSIDE_FISCAL_YEAR", "invoice_date",
            f"Invoice date is outside the fiscal year {fiscal_year[0]} - {fiscal_year[1]}",
            WARNING,
        ))
    if c.due_date is not None and c.due_date < c.invoice_date:
        warnings.append(ValidationIssue(
            "DUE_BEFORE_INVOICE", "due_date", "Due date is before the invoice date", WARNING,
        ))


def line_sum_tolerance(total: Decimal) -> Decimal:
    return max(LINE_SUM_MIN_TOLERANCE, abs(total) * LINE_SUM_RELATIVE_TOLERANCE)


def _validate_lines(
    c: Classification,
    allow_negative: bool,
    errors: list[ValidationIssue],
    warnings: list[ValidationIssue],
) -> None:
    if not c.line_items:
        warnings.append(ValidationIssue(
            "NO_LINE_ITEMS", "line_items", "Document has no line items", WARNING,
            "A single default line will be created",
        ))
        return

    for index, line in enumerate(c.line_items):
        if not line.account or not _ACCOUNT_RE.match(line.account):
            errors.append(ValidationIssue(
                "INVALID_LINE_ACCOUNT", f"line_items[{index}].account",
                f"Invalid account on line {index + 1}: {line.account}", ERROR,
            ))
        if not line.net_amount:
            errors.append(ValidationIssue(
                "INVALID_LINE_AMOUNT", f"line_items[{index}].net_amount",
                f"Invalid amount on line {index + 1}", ERROR,
            ))
        elif not allow_negative and line.net_amount < 0:
            errors.append(ValidationIssue(
                "NEGATIVE_LINE_AMOUNT", f"line_items[{index}].net_amount",
                f"Negative amount on line {index + 1}", ERROR,
            ))

    line_sum = c.line_total
    if allow_negative:
        diff = abs(abs(line_sum) - abs(c.total_amount))
    else:
        diff = abs(line_sum - c.total_amount)
    if diff > line_sum_tolerance(c.total_amount):
        warnings.append(ValidationIssue(
            "LINE_SUM_MISMATCH", "line_items",
            f"Line sum {line_sum} does not match total {c.total_amount}", WARNING,
        ))


# =========================================================================
# Line correction
# =========================================================================


def _q(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@traced_engine("line_correction", "1.0")
def correct_line_items(
    classification: Classification,
    default_account: str = DEFAULT_EXPENSE_ACCOUNT,
) -> LineCorrection:
    """
    Make the line items add up to the document total.

    - No lines: one line carrying the whole net and VAT amount.
    - Negative net amounts on anything but a credit note are flipped.
    - A difference smaller than ``CORRECTION_WINDOW`` is spread over the
      lines in proportion to their gross amount; the rounding residual
      goes to the last line.  Larger differences are left for review.
    """
    c = classification
    adjustments: list[str] = []

    if not c.line_items:
        line = LineItem(
            description=c.description or c.supplier or "Document total",
            net_amount=c.net_amount,
            vat_amount=c.vat_amount,
            account=c.account or default_account,
        )
        return LineCorrection(
            c.with_changes(line_items=(line,)),
            ("Created a default line for the document total",),
        )

    lines = list(c.line_items)
    if c.doc_type != DocumentType.CREDIT_NOTE:
        for index, line in enumerate(lines):
            if line.net_amount < 0:
                lines[index] = _with_net(line, abs(line.net_amount))
                adjustments.append(f"Line {index + 1}: negative net amount flipped")

    current = sum((line.gross_amount for line in lines), Decimal("0"))
    diff = c.total_amount - current
    if diff != 0 and abs(diff) < CORRECTION_WINDOW:
        if current != 0:
            proportion = diff / current
            lines = [
                _with_net(line, _q(line.net_amount + line.gross_amount * proportion))
                for line in lines
            ]
        residual = c.total_amount - sum((line.gross_amount for line in lines), Decimal("0"))
        if residual:
            last = lines[-1]
            lines[-1] = _with_net(last, last.net_amount + residual)
        adjustments.append(f"Lines adjusted to match the total ({_q(diff)})")

    if not adjustments:
        return LineCorrection(c)
    return LineCorrection(c.with_changes(line_items=tuple(lines)), tuple(adjustments))


def _with_net(line: LineItem, net: Decimal) -> LineItem:
    return replace(line, net_amount=net)
