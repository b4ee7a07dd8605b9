"""
Module: docledger_kernel.models.period
Responsibility: ORM persistence for accounting periods, their append-only
    history, and the most recent pre-close check results.

Invariants enforced:
    - One period per (company, year, month).
    - History entries are append-only and ordered per period.
    - Status values are limited to the PeriodStatus enum by a check
      constraint.

Audit relevance:
    A forced close records the failing blocking checks in the
    PERIOD_CLOSED history entry; that entry can never be removed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docledger_kernel.db.base import TrackedBase, Base, UUIDString
from docledger_kernel.domain.period import (
    CheckStatus,
    Period,
    PeriodAction,
    PeriodHistoryEntry,
    PeriodStatus,
    PreCloseCheck,
    period_key,
)


class AccountingPeriodModel(TrackedBase):
    """One calendar month of one company."""

    __tablename__ = "accounting_periods"

    __table_args__ = (
        UniqueConstraint("company_id", "year", "month", name="uq_accounting_periods_month"),
        CheckConstraint(
            "status IN ('OPEN', 'CLOSING', 'CLOSED', 'LOCKED')",
            name="ck_accounting_periods_status",
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_accounting_periods_month"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PeriodStatus.OPEN.value)
    summary: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    closed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    history: Mapped[list["PeriodHistoryModel"]] = relationship(
        "PeriodHistoryModel",
        order_by="PeriodHistoryModel.sequence",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<AccountingPeriod {self.company_id} {self.key} {self.status}>"

    @property
    def key(self) -> str:
        return period_key(self.year, self.month)

    @property
    def period_status(self) -> PeriodStatus:
        return PeriodStatus(self.status)

    def to_dto(self) -> Period:
        return Period(
            company_id=self.company_id,
            year=self.year,
            month=self.month,
            status=PeriodStatus(self.status),
            closed_at=self.closed_at,
            closed_by=self.closed_by,
            locked_at=self.locked_at,
            locked_by=self.locked_by,
            summary=self.summary,
        )


class PeriodHistoryModel(Base):
    """Lifecycle event of a period. Append-only."""

    __tablename__ = "period_history"

    __table_args__ = (
        UniqueConstraint("period_id", "sequence", name="uq_period_history_sequence"),
    )

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("accounting_periods.id"), nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> PeriodHistoryEntry:
        return PeriodHistoryEntry(
            action=PeriodAction(self.action),
            actor=self.actor,
            created_at=self.created_at,
            details=dict(self.details or {}),
        )


class PeriodCheckModel(Base):
    """Result of one pre-close check from one run."""

    __tablename__ = "period_checks"

    __table_args__ = (
        Index("ix_period_checks_period_run", "period_id", "run_id"),
    )

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("accounting_periods.id"), nullable=False,
    )
    run_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    blocking: Mapped[bool] = mapped_column(Boolean, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> PreCloseCheck:
        return PreCloseCheck(
            name=self.name,
            status=CheckStatus(self.status),
            blocking=self.blocking,
            message=self.message,
            details=dict(self.details or {}),
        )
