"""
Module: docledger_kernel.models.approval
Responsibility: ORM persistence for approval requests and their append-only
    action log.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - Actions are append-only (see db/immutability.py) and ordered by a
      per-request sequence, unique per (request_id, sequence).
    - The request row is the owner of its log: appenders lock the request
      row (FOR UPDATE) before computing the next sequence.

Audit relevance:
    Escalation and delegation never delete history; they append actions and
    move the request's level / assignee.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docledger_kernel.db.base import Base, UUIDString
from docledger_kernel.domain.approval import (
    ApprovalActionRecord,
    ApprovalActionType,
    ApprovalLevel,
    ApprovalRequest,
    ApprovalStatus,
)


class ApprovalRequestModel(Base):
    """Persistent approval request."""

    __tablename__ = "approval_requests"

    __table_args__ = (
        Index("ix_approval_requests_job", "job_id"),
        Index("ix_approval_requests_company_status", "company_id", "status"),
        Index("ix_approval_requests_due", "status", "due_at"),
    )

    job_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SEK")
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    required_role: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ApprovalStatus.PENDING.value)
    assigned_to: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    delegated_to: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    matched_rules: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    requires_dual_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    request_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    actions: Mapped[list["ApprovalActionModel"]] = relationship(
        "ApprovalActionModel",
        back_populates="request",
        order_by="ApprovalActionModel.sequence",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ApprovalRequest {self.id} job={self.job_id} level={self.level} status={self.status}>"

    def to_dto(self) -> ApprovalRequest:
        """Convert ORM model to frozen domain DTO."""
        return ApprovalRequest(
            id=self.id,
            job_id=self.job_id,
            company_id=self.company_id,
            amount=self.amount,
            currency=self.currency,
            level=ApprovalLevel(self.level),
            required_role=self.required_role,
            status=ApprovalStatus(self.status),
            created_at=self.created_at,
            due_at=self.due_at,
            assigned_to=tuple(self.assigned_to or ()),
            delegated_to=self.delegated_to,
            reason=self.reason,
            matched_rules=tuple(self.matched_rules or ()),
            requires_dual_approval=self.requires_dual_approval,
            escalation_count=self.escalation_count,
            resolved_at=self.resolved_at,
            resolved_by=self.resolved_by,
            actions=tuple(a.to_dto() for a in self.actions),
            metadata=dict(self.request_metadata or {}),
        )


class ApprovalActionModel(Base):
    """One entry of a request's action log. Append-only."""

    __tablename__ = "approval_actions"

    __table_args__ = (
        UniqueConstraint("request_id", "sequence", name="uq_approval_actions_sequence"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_requests.id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    request: Mapped[ApprovalRequestModel] = relationship(
        "ApprovalRequestModel",
        back_populates="actions",
    )

    def to_dto(self) -> ApprovalActionRecord:
        return ApprovalActionRecord(
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            action=ApprovalActionType(self.action),
            created_at=self.created_at,
            sequence=self.sequence,
            comment=self.comment,
            level=ApprovalLevel(self.level) if self.level else None,
        )
