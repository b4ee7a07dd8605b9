"""
Module: docledger_kernel.models.duplicate
Responsibility: ORM persistence for fingerprints, duplicate overrides and
    the idempotent check cache.

Invariants enforced:
    - One fingerprint row per job (unique job_id) and per file hash within a
      company: the second writer of the same bytes fails the insert and is
      reported as a duplicate (first writer wins).
    - Overrides are append-only and unique per (original, new) job pair.
    - Cached check results are unique per (company, request_id).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Date, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from docledger_kernel.db.base import Base, UUIDString
from docledger_kernel.domain.duplicates import DuplicateOverride, MatchType


class FingerprintModel(Base):
    """Lookup keys for a registered document."""

    __tablename__ = "document_fingerprints"

    __table_args__ = (
        UniqueConstraint("job_id", name="uq_fingerprints_job"),
        UniqueConstraint("company_id", "file_hash", name="uq_fingerprints_file_hash"),
        Index("ix_fingerprints_invoice", "company_id", "supplier_key", "invoice_key"),
        Index("ix_fingerprints_supplier_date", "company_id", "supplier_key", "invoice_date"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    job_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    supplier_key: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    invoice_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    invoice_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)


class DuplicateOverrideModel(Base):
    """Auditable permission for a flagged duplicate to proceed. Append-only."""

    __tablename__ = "duplicate_overrides"

    __table_args__ = (
        UniqueConstraint("original_job_id", "new_job_id", name="uq_duplicate_overrides_pair"),
        Index("ix_duplicate_overrides_new", "new_job_id"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    original_job_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    new_job_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    new_file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    match_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    approved_by: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> DuplicateOverride:
        return DuplicateOverride(
            id=self.id,
            original_job_id=self.original_job_id,
            new_job_id=self.new_job_id,
            reason=self.reason,
            approved_by=self.approved_by,
            created_at=self.created_at,
            match_type=MatchType(self.match_type) if self.match_type else None,
            new_file_hash=self.new_file_hash,
        )


class DuplicateCheckCacheModel(Base):
    """Stored verdict for a caller-supplied request id."""

    __tablename__ = "duplicate_check_cache"

    __table_args__ = (
        UniqueConstraint("company_id", "request_id", name="uq_duplicate_check_request"),
        Index("ix_duplicate_check_expires", "expires_at"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    request_id: Mapped[str] = mapped_column(String(200), nullable=False)
    result: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
