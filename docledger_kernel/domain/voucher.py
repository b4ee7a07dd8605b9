"""
Voucher numbering domain types.

A voucher number is ``<series><year>-<sequence>`` with the sequence
zero-padded to four digits, e.g. ``A2024-0001``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from docledger_kernel.domain.documents import DocumentType
from docledger_kernel.exceptions import InvalidVoucherNumberError, InvalidVoucherSeriesError

SEQUENCE_PADDING = 4

SERIES_NAMES: dict[str, str] = {
    "A": "Supplier invoices",
    "K": "Receipts and expenses",
    "L": "Salaries",
    "B": "Bank",
    "M": "Manual entries",
    "S": "Sales",
}

VOUCHER_SERIES: tuple[str, ...] = tuple(SERIES_NAMES)

DOC_TYPE_SERIES: dict[DocumentType, str] = {
    DocumentType.INVOICE: "A",
    DocumentType.CREDIT_NOTE: "A",
    DocumentType.RECEIPT: "K",
    DocumentType.SALARY: "L",
    DocumentType.BANK_STATEMENT: "B",
    DocumentType.SALES_INVOICE: "S",
    DocumentType.OTHER: "M",
}

_NUMBER_PATTERN = re.compile(r"^([A-Z])(\d{4})-(\d+)$")


def validate_series(series: str) -> str:
    if series not in SERIES_NAMES:
        raise InvalidVoucherSeriesError(series)
    return series


def series_for(doc_type: DocumentType) -> str:
    return DOC_TYPE_SERIES.get(doc_type, "M")


def format_voucher_number(series: str, year: int, sequence: int) -> str:
    return f"{series}{year}-{sequence:0{SEQUENCE_PADDING}d}"


@dataclass(frozen=True)
class VoucherNumber:
    number: str
    series: str
    year: int
    sequence: int
    company_id: str | None = None

    @classmethod
    def parse(cls, number: str) -> VoucherNumber:
        match = _NUMBER_PATTERN.match(number or "")
        if match is None:
            raise InvalidVoucherNumberError(number)
        series, year, sequence = match.groups()
        return cls(number=number, series=series, year=int(year), sequence=int(sequence))


@dataclass(frozen=True)
class SequenceValidation:
    series: str
    year: int
    count: int
    gaps: tuple[int, ...] = ()
    duplicates: tuple[int, ...] = ()
    first: int | None = None
    last: int | None = None

    @property
    def is_valid(self) -> bool:
        return not self.gaps and not self.duplicates
