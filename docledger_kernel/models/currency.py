"""
Module: docledger_kernel.models.currency
Responsibility: Cache of exchange rates fetched from external providers.

One row per (from, to, rate_date).  A quote always comes from a single
provider; the row records which.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from docledger_kernel.db.base import Base


class ExchangeRateModel(Base):
    __tablename__ = "exchange_rates"

    __table_args__ = (
        UniqueConstraint("from_currency", "to_currency", "rate_date", name="uq_exchange_rates_pair_date"),
    )

    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(nullable=False)
