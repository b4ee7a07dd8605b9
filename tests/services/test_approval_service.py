"""
Approval request lifecycle against the default threshold table.

Default tiers: AUTO < 5 000, STANDARD < 50 000, MANAGER < 200 000,
EXECUTIVE above.  Dual approval from 100 000.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from docledger_kernel.domain.approval import (
    ApprovalActionType,
    ApprovalConfig,
    ApprovalEvaluation,
    ApprovalLevel,
    ApprovalStatus,
)
from docledger_kernel.exceptions import (
    ApprovalAuthorityError,
    ApprovalEscalationError,
    ApprovalNotFoundError,
    ApprovalStateError,
    DuplicateApproverError,
)
from docledger_kernel.services.approval_service import ApprovalService
from docledger_kernel.services.audit_service import AuditService

COMPANY = "acme"


@pytest.fixture
def approvals(session, deterministic_clock):
    return ApprovalService(session, deterministic_clock, ApprovalConfig())


def _evaluation(level, rules=("amount_threshold",), requires=True):
    return ApprovalEvaluation(
        requires_approval=requires,
        required_level=level,
        matched_rules=tuple(rules),
        reason=", ".join(rules) or "No approval rules matched",
    )


def _request(approvals, amount="12000", level=ApprovalLevel.STANDARD, **kwargs):
    return approvals.create_request(
        uuid4(), COMPANY, Decimal(amount), _evaluation(level, **kwargs),
    )


class TestCreateRequest:
    def test_pending_request_on_tier(self, approvals, deterministic_clock):
        request = _request(approvals)

        assert request.status == ApprovalStatus.PENDING
        assert request.level == ApprovalLevel.STANDARD
        assert request.required_role == "accountant"
        assert request.assigned_to == ("accountant-1",)
        assert request.due_at == deterministic_clock.now() + timedelta(hours=48)
        assert request.requires_dual_approval is False
        assert request.is_open

    def test_auto_approved_request(self, approvals):
        request = _request(approvals, amount="800", level=ApprovalLevel.AUTO, rules=(), requires=False)

        assert request.status == ApprovalStatus.APPROVED
        assert request.due_at is None
        assert request.resolved_by == "system"
        assert [a.action for a in request.actions] == [ApprovalActionType.APPROVE]

    def test_auto_approval_capped_by_amount(self, approvals):
        request = _request(approvals, amount="6000", level=ApprovalLevel.AUTO, rules=(), requires=False)
        assert request.status == ApprovalStatus.PENDING

    def test_one_open_request_per_job(self, approvals):
        job_id = uuid4()
        first = approvals.create_request(job_id, COMPANY, Decimal("12000"), _evaluation(ApprovalLevel.STANDARD))
        second = approvals.create_request(job_id, COMPANY, Decimal("99000"), _evaluation(ApprovalLevel.MANAGER))

        assert second.id == first.id
        assert second.level == ApprovalLevel.STANDARD

    def test_dual_approval_flag(self, approvals):
        assert _request(approvals, amount="150000", level=ApprovalLevel.MANAGER).requires_dual_approval

    def test_request_is_audited(self, session, approvals, deterministic_clock):
        request = _request(approvals)

        (entry,) = AuditService(session, deterministic_clock).entries_for("approval_request", request.id)
        assert entry.action == "APPROVAL_REQUESTED"
        assert entry.payload["level"] == "STANDARD"
        assert AuditService.verify(entry)


class TestDecisions:
    def test_approve(self, approvals):
        request = _request(approvals)
        approved = approvals.approve(request.id, "anna", "accountant", "ok")

        assert approved.status == ApprovalStatus.APPROVED
        assert approved.resolved_by == "anna"
        assert approved.approval_count == 1
        assert not approved.is_open

    def test_senior_role_may_approve(self, approvals):
        request = _request(approvals)
        assert approvals.approve(request.id, "maria", "manager").status == ApprovalStatus.APPROVED

    def test_junior_role_rejected_before_any_write(self, approvals, captured_logs):
        request = _request(approvals, amount="75000", level=ApprovalLevel.MANAGER)

        with pytest.raises(ApprovalAuthorityError) as exc_info:
            approvals.approve(request.id, "anna", "accountant")

        assert exc_info.value.required_role == "manager"
        assert approvals.get_request(request.id).actions == ()
        assert any(r["message"] == "approval_authority_denied" for r in captured_logs())

    def test_dual_approval_needs_two_distinct_approvers(self, approvals):
        request = _request(approvals, amount="150000", level=ApprovalLevel.MANAGER)

        first = approvals.approve(request.id, "maria", "manager")
        assert first.status == ApprovalStatus.PENDING
        assert first.approval_count == 1

        with pytest.raises(DuplicateApproverError):
            approvals.approve(request.id, "maria", "manager")

        second = approvals.approve(request.id, "erik", "executive")
        assert second.status == ApprovalStatus.APPROVED
        assert [a.sequence for a in second.actions] == [1, 2]

    def test_reject_is_terminal(self, approvals):
        request = _request(approvals)
        rejected = approvals.reject(request.id, "anna", "accountant", "wrong supplier")

        assert rejected.status == ApprovalStatus.REJECTED
        with pytest.raises(ApprovalStateError) as exc_info:
            approvals.approve(request.id, "anna", "accountant")
        assert exc_info.value.status == "REJECTED"

    def test_delegate_then_approve(self, approvals):
        request = _request(approvals)
        delegated = approvals.delegate(request.id, "anna", "accountant", "bob")

        assert delegated.status == ApprovalStatus.DELEGATED
        assert delegated.assigned_to == ("bob",)
        assert delegated.delegated_to == "bob"
        assert delegated.is_open

        assert approvals.approve(request.id, "bob", "accountant").status == ApprovalStatus.APPROVED

    def test_unknown_request(self, approvals):
        with pytest.raises(ApprovalNotFoundError):
            approvals.approve(uuid4(), "anna", "accountant")

    def test_decisions_are_audited(self, session, approvals, deterministic_clock):
        request = _request(approvals)
        approvals.approve(request.id, "anna", "accountant")

        entries = AuditService(session, deterministic_clock).entries_for("approval_request", request.id)
        assert {e.action for e in entries} == {"APPROVAL_REQUESTED", "APPROVAL_APPROVE"}


class TestEscalation:
    def test_escalate_moves_to_next_tier(self, approvals, deterministic_clock):
        request = _request(approvals)
        deterministic_clock.advance_hours(2)

        escalated = approvals.escalate(request.id, "anna", "accountant", "too large for me")

        assert escalated.status == ApprovalStatus.PENDING
        assert escalated.level == ApprovalLevel.MANAGER
        assert escalated.required_role == "manager"
        assert escalated.assigned_to == ("manager-1",)
        assert escalated.escalation_count == 1
        assert escalated.due_at == deterministic_clock.now() + timedelta(hours=48)
        assert escalated.actions[-1].action == ApprovalActionType.ESCALATE
        assert escalated.actions[-1].level == ApprovalLevel.MANAGER

    def test_escalate_to_named_person(self, approvals):
        request = _request(approvals)
        escalated = approvals.escalate(request.id, "anna", "accountant", escalate_to="maria")
        assert escalated.assigned_to == ("maria",)

    def test_top_tier_cannot_escalate(self, approvals):
        request = _request(approvals, amount="300000", level=ApprovalLevel.EXECUTIVE)

        with pytest.raises(ApprovalEscalationError):
            approvals.escalate(request.id, "cfo-1", "executive")

    def test_escalate_overdue(self, approvals, deterministic_clock):
        overdue = _request(approvals)
        deterministic_clock.advance_hours(24)
        fresh = _request(approvals)
        deterministic_clock.advance_hours(25)

        assert [r.id for r in approvals.overdue_requests()] == [overdue.id]

        (escalated,) = approvals.escalate_overdue()
        assert escalated.id == overdue.id
        assert escalated.level == ApprovalLevel.MANAGER
        assert escalated.actions[-1].actor_id == "system"
        assert approvals.get_request(fresh.id).level == ApprovalLevel.STANDARD
        assert approvals.overdue_requests() == []

    def test_overdue_at_top_tier_is_left_alone(self, approvals, deterministic_clock, captured_logs):
        request = _request(approvals, amount="300000", level=ApprovalLevel.EXECUTIVE)
        deterministic_clock.advance_hours(49)

        assert approvals.escalate_overdue() == []
        assert approvals.get_request(request.id).level == ApprovalLevel.EXECUTIVE
        assert any(r["message"] == "approval_overdue_at_top_level" for r in captured_logs())

    def test_top_tier_warning_repeats_once_per_timeout(self, approvals, deterministic_clock, captured_logs):
        request = _request(approvals, amount="300000", level=ApprovalLevel.EXECUTIVE)

        def warnings():
            return sum(1 for r in captured_logs() if r["message"] == "approval_overdue_at_top_level")

        deterministic_clock.advance_hours(49)
        approvals.escalate_overdue()
        approvals.escalate_overdue()
        assert warnings() == 1
        assert approvals.overdue_requests() == []

        deterministic_clock.advance_hours(49)
        approvals.escalate_overdue()
        assert warnings() == 2
        assert approvals.get_request(request.id).status == ApprovalStatus.PENDING

    def test_sweep_scoped_to_company(self, approvals, deterministic_clock):
        _request(approvals)
        deterministic_clock.advance_hours(49)
        assert approvals.escalate_overdue(company_id="beta") == []


class TestQueries:
    def test_pending_filtered_by_role(self, approvals, deterministic_clock):
        standard = _request(approvals)
        deterministic_clock.advance(60)
        manager = _request(approvals, amount="75000", level=ApprovalLevel.MANAGER)

        assert [r.id for r in approvals.pending_requests(COMPANY)] == [standard.id, manager.id]
        assert [r.id for r in approvals.pending_requests(COMPANY, role="accountant")] == [standard.id]
        assert approvals.pending_requests("beta") == []

    def test_request_for_job(self, approvals):
        job_id = uuid4()
        assert approvals.get_request_for_job(job_id) is None

        created = approvals.create_request(job_id, COMPANY, Decimal("12000"), _evaluation(ApprovalLevel.STANDARD))
        assert approvals.get_request_for_job(job_id).id == created.id

    def test_stats(self, approvals, deterministic_clock):
        first = _request(approvals)
        _request(approvals, amount="75000", level=ApprovalLevel.MANAGER)
        deterministic_clock.advance_hours(3)
        approvals.approve(first.id, "anna", "accountant")

        stats = approvals.stats(COMPANY)

        assert stats.pending == 1
        assert stats.approved_today == 1
        assert stats.rejected_today == 0
        assert stats.average_resolution_hours == 3.0
        assert stats.pending_by_level == {"MANAGER": 1}
