"""
Module: docledger_kernel.models.bank
Responsibility: Imported bank transactions, read by the bank reconciliation
    pre-close check and the period summary.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, Date, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from docledger_kernel.db.base import Base, UUIDString


class BankTransactionModel(Base):
    __tablename__ = "bank_transactions"

    __table_args__ = (
        Index("ix_bank_transactions_company_date", "company_id", "booking_date"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SEK")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_matched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    matched_job_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
