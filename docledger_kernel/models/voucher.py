"""
Module: docledger_kernel.models.voucher
Responsibility: ORM persistence for voucher counters and minted voucher
    numbers.

Invariants enforced:
    - One counter row per (company, series, year); ``current_value`` is only
      ever changed by an atomic ``UPDATE ... SET current_value =
      current_value + n`` in SequenceService.
    - Minted numbers are unique per (company, series, year, sequence) and
      per (company, job_id), and are append-only.  The counter increment
      and the minted row share one transaction.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from docledger_kernel.db.base import Base, UUIDString
from docledger_kernel.domain.voucher import VoucherNumber


class VoucherCounterModel(Base):
    """Durable counter for one (company, series, year)."""

    __tablename__ = "voucher_counters"

    __table_args__ = (
        UniqueConstraint("company_id", "series", "year", name="uq_voucher_counters_scope"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    series: Mapped[str] = mapped_column(String(1), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<VoucherCounter {self.company_id}#{self.series}#{self.year}={self.current_value}>"


class VoucherNumberModel(Base):
    """A minted voucher number. Append-only."""

    __tablename__ = "voucher_numbers"

    __table_args__ = (
        UniqueConstraint(
            "company_id", "series", "year", "sequence",
            name="uq_voucher_numbers_sequence",
        ),
        UniqueConstraint("company_id", "job_id", name="uq_voucher_numbers_job"),
        Index("ix_voucher_numbers_number", "company_id", "number"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    series: Mapped[str] = mapped_column(String(1), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    number: Mapped[str] = mapped_column(String(20), nullable=False)
    job_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> VoucherNumber:
        return VoucherNumber(
            number=self.number,
            series=self.series,
            year=self.year,
            sequence=self.sequence,
            company_id=self.company_id,
        )
