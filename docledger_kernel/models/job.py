"""
Module: docledger_kernel.models.job
Responsibility: ORM persistence for document jobs.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - One voucher per job: ``voucher_number`` is unique and write-once
      (enforced by the posting path and the minted-number table).
    - Checkpoints: each pipeline stage writes its output column
      (file_ref, ocr_text, classification, ...) before status advances.

Audit relevance:
    A posted job (voucher_number set) is evidence and is never deleted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from docledger_kernel.db.base import Base, UUIDString
from docledger_kernel.domain.documents import Classification, DocumentJob, JobStatus


class DocumentJobModel(Base):
    """Persistent document job."""

    __tablename__ = "document_jobs"

    __table_args__ = (
        Index("ix_document_jobs_company_status", "company_id", "status"),
        Index("ix_document_jobs_company_hash", "company_id", "file_hash"),
        Index("ix_document_jobs_company_created", "company_id", "created_at"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.QUEUED.value)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    file_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ocr_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    classification: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    anomaly_report: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    warnings: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    job_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    split_info: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    parent_job_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True, index=True)
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approval_request_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    voucher_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    erp_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<DocumentJob {self.id} {self.company_id} status={self.status}>"

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def get_classification(self) -> Classification | None:
        if self.classification is None:
            return None
        return Classification.from_dict(self.classification)

    def set_classification(self, classification: Classification | None) -> None:
        self.classification = classification.to_dict() if classification is not None else None

    def add_warning(self, message: str) -> None:
        # Reassign so the JSON column is flagged dirty
        self.warnings = [*(self.warnings or []), message]

    def to_dto(self) -> DocumentJob:
        return DocumentJob(
            id=self.id,
            company_id=self.company_id,
            status=JobStatus(self.status),
            file_name=self.file_name,
            file_hash=self.file_hash,
            created_at=self.created_at,
            updated_at=self.updated_at,
            mime_type=self.mime_type,
            file_ref=self.file_ref,
            classification=self.get_classification(),
            error=self.error,
            warnings=tuple(self.warnings or ()),
            metadata=dict(self.job_metadata or {}),
            split_info=self.split_info,
            requires_approval=self.requires_approval,
            approval_request_id=self.approval_request_id,
            voucher_number=self.voucher_number,
            posted_at=self.posted_at,
        )
