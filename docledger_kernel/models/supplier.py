"""
Module: docledger_kernel.models.supplier
Responsibility: Running per-supplier aggregates used by anomaly scoring and
    auto-approval rules.

Rows are read-then-written without a cross-job transaction; a lost update
only skews a statistic, never a posting.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from docledger_kernel.db.base import Base


class SupplierStatsModel(Base):
    __tablename__ = "supplier_stats"

    __table_args__ = (
        UniqueConstraint("company_id", "supplier_key", name="uq_supplier_stats_supplier"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    supplier_key: Mapped[str] = mapped_column(String(200), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    invoice_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    approved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_sum: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    amount_sq_sum: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    min_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    max_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    account_counts: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)
    invoice_dates: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    erp_supplier_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_invoice_at: Mapped[datetime | None] = mapped_column(nullable=True)
