"""
ApprovalService -- lifecycle of threshold-based approval requests.

Responsibility:
    Creates approval requests from a pure ``ApprovalEvaluation`` and records
    approve / reject / escalate / delegate actions against them.  Also
    reports pending work, statistics and overdue requests for the
    escalation sweep.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.  Rule
    evaluation lives in ``docledger_engines.approval``; this service only
    persists its outcome.

Invariants enforced:
    - Lifecycle: ``APPROVAL_TRANSITIONS`` is checked before any status
      change.  APPROVED and REJECTED are terminal.
    - Authority: the actor's role must rank at least the tier's required
      role.  A violation raises before anything is written.
    - One open request per job: ``create_request`` returns the existing
      PENDING / ESCALATED / DELEGATED request instead of creating another.
    - Serialized appends: the request row is loaded FOR UPDATE before the
      next action sequence is computed, so concurrent decisions on the same
      request are applied one after the other.
    - Dual approval: at or above the dual threshold, two distinct APPROVE
      actions are needed; the first leaves the request open.

Failure modes:
    - ApprovalNotFoundError for an unknown request id.
    - ApprovalStateError for an action on a closed request.
    - ApprovalAuthorityError when the actor's role is too junior.
    - DuplicateApproverError when an actor approves twice.
    - ApprovalEscalationError when escalating past the top tier.

Audit relevance:
    Actions are append-only rows; every decision is also written to the
    audit log and logged as ``approval_decision_recorded``.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from docledger_kernel.domain.approval import (
    APPROVAL_TRANSITIONS,
    OPEN_APPROVAL_STATUSES,
    ApprovalActionType,
    ApprovalConfig,
    ApprovalEvaluation,
    ApprovalLevel,
    ApprovalRequest,
    ApprovalStats,
    ApprovalStatus,
    ApproverRole,
    role_has_authority,
)
from docledger_kernel.domain.clock import Clock
from docledger_kernel.exceptions import (
    ApprovalAuthorityError,
    ApprovalEscalationError,
    ApprovalNotFoundError,
    ApprovalStateError,
    DuplicateApproverError,
)
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.approval import ApprovalActionModel, ApprovalRequestModel
from docledger_kernel.services.audit_service import AuditService
from docledger_kernel.services.base import BaseService

logger = get_logger("services.approval")

_OPEN_VALUES = tuple(s.value for s in OPEN_APPROVAL_STATUSES)
_DECIDABLE = frozenset({ApprovalStatus.PENDING, ApprovalStatus.DELEGATED})


class ApprovalService(BaseService):
    """
    Approval request persistence and decisions.

    Does NOT call ``session.commit()``; the caller owns the transaction.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: ApprovalConfig | None = None,
    ):
        super().__init__(session, clock)
        self.config = config or ApprovalConfig()
        self._audit = AuditService(session, self.clock)

    # =====================================================================
    # Creation
    # =====================================================================

    def create_request(
        self,
        job_id: UUID,
        company_id: str,
        amount: Decimal,
        evaluation: ApprovalEvaluation,
        actor: str = "system",
        currency: str = "SEK",
    ) -> ApprovalRequest:
        """
        Create the approval request for a job.

        Returns the job's existing open request when there is one.  A
        request that qualifies for auto-approval is created APPROVED with a
        single system APPROVE action.
        """
        existing = self.session.execute(
            select(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.job_id == job_id,
                ApprovalRequestModel.status.in_(_OPEN_VALUES),
            )
            .order_by(ApprovalRequestModel.created_at.desc())
        ).scalars().first()
        if existing is not None:
            logger.info(
                "approval_request_exists",
                extra={"job_id": str(job_id), "request_id": str(existing.id)},
            )
            return existing.to_dto()

        now = self.clock.now()
        threshold = self.config.threshold_for(evaluation.required_level)
        auto = self.config.can_auto_approve(evaluation, amount)

        model = ApprovalRequestModel(
            job_id=job_id,
            company_id=company_id,
            amount=amount,
            currency=currency,
            level=evaluation.required_level.value,
            required_role=threshold.required_role,
            status=ApprovalStatus.PENDING.value,
            assigned_to=list(evaluation.suggested_approvers or threshold.approvers),
            reason=evaluation.reason,
            matched_rules=list(evaluation.matched_rules),
            requires_dual_approval=self.config.requires_dual_approval(amount),
            escalation_count=0,
            request_metadata={"requested_by": actor},
            created_at=now,
            due_at=None if auto else now + timedelta(hours=self.config.escalation_timeout_hours),
        )
        self.session.add(model)
        self.session.flush()

        if auto:
            self._append_action(
                model,
                actor_id=ApproverRole.SYSTEM.value,
                actor_role=ApproverRole.SYSTEM.value,
                action=ApprovalActionType.APPROVE,
                comment="Auto-approved",
            )
            model.status = ApprovalStatus.APPROVED.value
            model.resolved_at = now
            model.resolved_by = ApproverRole.SYSTEM.value
            self.session.flush()

        self._audit.record(
            company_id, "approval_request", model.id, "APPROVAL_REQUESTED", actor,
            {
                "job_id": str(job_id),
                "amount": amount,
                "level": model.level,
                "matched_rules": list(evaluation.matched_rules),
                "auto_approved": auto,
            },
        )
        logger.info(
            "approval_request_created",
            extra={
                "request_id": str(model.id),
                "job_id": str(job_id),
                "level": model.level,
                "status": model.status,
                "dual": model.requires_dual_approval,
            },
        )
        return model.to_dto()

    # =====================================================================
    # Decisions
    # =====================================================================

    def approve(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str,
        comment: str | None = None,
    ) -> ApprovalRequest:
        model = self._load_for_update(request_id)
        status = self._require_decidable(model, "approve")
        self._require_authority(model, actor_id, actor_role)

        already = any(
            a.actor_id == actor_id and a.action == ApprovalActionType.APPROVE.value
            for a in model.actions
        )
        if already:
            raise DuplicateApproverError(str(request_id), actor_id)

        self._append_action(model, actor_id, actor_role, ApprovalActionType.APPROVE, comment)
        approvals = {
            a.actor_id for a in model.actions if a.action == ApprovalActionType.APPROVE.value
        }
        needed = 2 if model.requires_dual_approval else 1

        if len(approvals) >= needed:
            self._transition(model, status, ApprovalStatus.APPROVED)
            model.resolved_at = self.clock.now()
            model.resolved_by = actor_id
        self.session.flush()

        self._record_decision(model, actor_id, actor_role, ApprovalActionType.APPROVE, comment)
        return model.to_dto()

    def reject(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str,
        reason: str | None = None,
    ) -> ApprovalRequest:
        model = self._load_for_update(request_id)
        status = self._require_decidable(model, "reject")
        self._require_authority(model, actor_id, actor_role)

        self._append_action(model, actor_id, actor_role, ApprovalActionType.REJECT, reason)
        self._transition(model, status, ApprovalStatus.REJECTED)
        model.resolved_at = self.clock.now()
        model.resolved_by = actor_id
        self.session.flush()

        self._record_decision(model, actor_id, actor_role, ApprovalActionType.REJECT, reason)
        return model.to_dto()

    def escalate(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str,
        reason: str | None = None,
        escalate_to: str | None = None,
    ) -> ApprovalRequest:
        """Move the request to the next tier and return it to PENDING."""
        model = self._load_for_update(request_id)
        self._require_decidable(model, "escalate")
        self._require_authority(model, actor_id, actor_role)
        self._escalate(model, actor_id, actor_role, reason, escalate_to)
        return model.to_dto()

    def delegate(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str,
        delegate_to: str,
        comment: str | None = None,
    ) -> ApprovalRequest:
        model = self._load_for_update(request_id)
        status = self._require_decidable(model, "delegate")
        self._require_authority(model, actor_id, actor_role)

        self._append_action(
            model, actor_id, actor_role, ApprovalActionType.DELEGATE,
            comment or f"Delegated to {delegate_to}",
        )
        self._transition(model, status, ApprovalStatus.DELEGATED)
        model.delegated_to = delegate_to
        model.assigned_to = [delegate_to]
        self.session.flush()

        self._record_decision(model, actor_id, actor_role, ApprovalActionType.DELEGATE, comment)
        return model.to_dto()

    # =====================================================================
    # Queries
    # =====================================================================

    def get_request(self, request_id: UUID) -> ApprovalRequest:
        model = self.session.get(ApprovalRequestModel, request_id)
        if model is None:
            raise ApprovalNotFoundError(str(request_id))
        return model.to_dto()

    def get_request_for_job(self, job_id: UUID) -> ApprovalRequest | None:
        """Most recent request for ``job_id``, open or not."""
        model = self.session.execute(
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.job_id == job_id)
            .order_by(ApprovalRequestModel.created_at.desc())
        ).scalars().first()
        return model.to_dto() if model is not None else None

    def pending_requests(
        self,
        company_id: str,
        role: str | None = None,
    ) -> list[ApprovalRequest]:
        """
        Open requests for a company, oldest first.  With ``role`` only the
        requests that role has authority to decide are returned.
        """
        models = self.session.execute(
            select(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.company_id == company_id,
                ApprovalRequestModel.status.in_(_OPEN_VALUES),
            )
            .order_by(ApprovalRequestModel.created_at)
        ).scalars()
        return [
            m.to_dto() for m in models
            if role is None or role_has_authority(role, m.required_role)
        ]

    def stats(self, company_id: str) -> ApprovalStats:
        models = list(
            self.session.execute(
                select(ApprovalRequestModel).where(ApprovalRequestModel.company_id == company_id)
            ).scalars()
        )
        today = self.clock.today()
        pending = [m for m in models if m.status in _OPEN_VALUES]
        resolved = [m for m in models if m.resolved_at is not None]

        def resolved_today(status: ApprovalStatus) -> int:
            return sum(
                1 for m in resolved
                if m.status == status.value and m.resolved_at.date() == today
            )

        hours = [
            (m.resolved_at - m.created_at).total_seconds() / 3600
            for m in resolved
        ]
        return ApprovalStats(
            pending=len(pending),
            approved_today=resolved_today(ApprovalStatus.APPROVED),
            rejected_today=resolved_today(ApprovalStatus.REJECTED),
            average_resolution_hours=round(sum(hours) / len(hours), 2) if hours else 0.0,
            pending_by_level=dict(Counter(m.level for m in pending)),
        )

    def overdue_requests(
        self, as_of: datetime | None = None, company_id: str | None = None,
    ) -> list[ApprovalRequest]:
        return [m.to_dto() for m in self._overdue_models(as_of, company_id)]

    def escalate_overdue(
        self, as_of: datetime | None = None, company_id: str | None = None,
    ) -> list[ApprovalRequest]:
        """
        Escalate every open request whose ``due_at`` has passed.

        Actions are authored by the system.  Requests already at the top
        tier stay where they are; each is logged once per timeout window,
        its ``due_at`` pushed one timeout ahead.
        """
        escalated: list[ApprovalRequest] = []
        for candidate in self._overdue_models(as_of, company_id):
            model = self._load_for_update(candidate.id)
            # Re-check under the lock; another sweep may have got here first
            if model.status not in _OPEN_VALUES or not self._is_overdue(model, as_of):
                continue
            if self.config.next_threshold(ApprovalLevel(model.level)) is None:
                logger.warning(
                    "approval_overdue_at_top_level",
                    extra={"request_id": str(model.id), "level": model.level},
                )
                model.due_at = (as_of or self.clock.now()) + timedelta(
                    hours=self.config.escalation_timeout_hours
                )
                continue
            hours = self.config.escalation_timeout_hours
            self._escalate(
                model,
                ApproverRole.SYSTEM.value,
                ApproverRole.SYSTEM.value,
                f"Automatically escalated after {hours} hours without a decision",
                None,
            )
            escalated.append(model.to_dto())
        return escalated

    # =====================================================================
    # Internals
    # =====================================================================

    def _load_for_update(self, request_id: UUID) -> ApprovalRequestModel:
        model = self.session.execute(
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise ApprovalNotFoundError(str(request_id))
        return model

    def _overdue_models(
        self, as_of: datetime | None, company_id: str | None = None,
    ) -> list[ApprovalRequestModel]:
        cutoff = as_of or self.clock.now()
        query = select(ApprovalRequestModel).where(
            ApprovalRequestModel.status.in_(_OPEN_VALUES),
            ApprovalRequestModel.due_at.is_not(None),
            ApprovalRequestModel.due_at < cutoff,
        )
        if company_id is not None:
            query = query.where(ApprovalRequestModel.company_id == company_id)
        return list(self.session.execute(query.order_by(ApprovalRequestModel.due_at)).scalars())

    def _is_overdue(self, model: ApprovalRequestModel, as_of: datetime | None) -> bool:
        return model.due_at is not None and model.due_at < (as_of or self.clock.now())

    def _require_decidable(self, model: ApprovalRequestModel, action: str) -> ApprovalStatus:
        status = ApprovalStatus(model.status)
        if status not in _DECIDABLE:
            raise ApprovalStateError(str(model.id), status.value, action)
        return status

    def _require_authority(self, model: ApprovalRequestModel, actor_id: str, actor_role: str) -> None:
        if not role_has_authority(actor_role, model.required_role):
            logger.warning(
                "approval_authority_denied",
                extra={
                    "request_id": str(model.id),
                    "actor_id": actor_id,
                    "actor_role": actor_role,
                    "required_role": model.required_role,
                },
            )
            raise ApprovalAuthorityError(str(model.id), actor_id, actor_role, model.required_role)

    def _transition(
        self,
        model: ApprovalRequestModel,
        current: ApprovalStatus,
        target: ApprovalStatus,
    ) -> None:
        if target not in APPROVAL_TRANSITIONS.get(current, frozenset()):
            raise ApprovalStateError(str(model.id), current.value, target.value.lower())
        model.status = target.value

    def _escalate(
        self,
        model: ApprovalRequestModel,
        actor_id: str,
        actor_role: str,
        reason: str | None,
        escalate_to: str | None,
    ) -> None:
        current_level = ApprovalLevel(model.level)
        target = self.config.next_threshold(current_level)
        if target is None:
            raise ApprovalEscalationError(str(model.id), current_level.value)

        status = ApprovalStatus(model.status)
        self._transition(model, status, ApprovalStatus.ESCALATED)
        self._append_action(
            model, actor_id, actor_role, ApprovalActionType.ESCALATE, reason,
            level=target.level,
        )
        # ESCALATED is transient: the request waits again on the new tier
        self._transition(model, ApprovalStatus.ESCALATED, ApprovalStatus.PENDING)
        model.level = target.level.value
        model.required_role = target.required_role
        model.assigned_to = [escalate_to] if escalate_to else list(target.approvers)
        model.delegated_to = None
        model.escalation_count += 1
        model.due_at = self.clock.now() + timedelta(hours=self.config.escalation_timeout_hours)
        self.session.flush()

        logger.info(
            "approval_escalated",
            extra={
                "request_id": str(model.id),
                "from_level": current_level.value,
                "to_level": target.level.value,
                "actor_id": actor_id,
            },
        )
        self._record_decision(model, actor_id, actor_role, ApprovalActionType.ESCALATE, reason)

    def _append_action(
        self,
        model: ApprovalRequestModel,
        actor_id: str,
        actor_role: str,
        action: ApprovalActionType,
        comment: str | None = None,
        level: ApprovalLevel | None = None,
    ) -> ApprovalActionModel:
        sequence = max((a.sequence for a in model.actions), default=0) + 1
        record = ApprovalActionModel(
            request_id=model.id,
            sequence=sequence,
            actor_id=actor_id,
            actor_role=actor_role,
            action=action.value,
            level=(level or ApprovalLevel(model.level)).value,
            comment=comment,
            created_at=self.clock.now(),
        )
        model.actions.append(record)
        self.session.flush()
        return record

    def _record_decision(
        self,
        model: ApprovalRequestModel,
        actor_id: str,
        actor_role: str,
        action: ApprovalActionType,
        comment: str | None,
    ) -> None:
        self._audit.record(
            model.company_id, "approval_request", model.id, f"APPROVAL_{action.value}", actor_id,
            {"actor_role": actor_role, "comment": comment, "status": model.status, "level": model.level},
        )
        logger.info(
            "approval_decision_recorded",
            extra={
                "request_id": str(model.id),
                "actor_id": actor_id,
                "action": action.value,
                "new_status": model.status,
            },
        )
