"""
Approval domain types (``docledger_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the threshold-based approval workflow: levels,
roles and their authority hierarchy, the request lifecycle state machine,
per-company threshold configuration, and evaluation / request records.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  Consumed by the pure evaluator in
``docledger_engines.approval`` and the stateful ``ApprovalService``.

Invariants enforced
-------------------
* Lifecycle -- ``APPROVAL_TRANSITIONS`` defines the only valid status
  changes.  ESCALATED is transient: an escalation lands back in PENDING on
  the next tier within the same operation.
* Authority -- ``role_rank`` orders system < accountant < manager <
  executive < admin; unknown roles rank as system.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =========================================================================
# Levels and roles
# =========================================================================


class ApprovalLevel(str, Enum):
    AUTO = "AUTO"
    STANDARD = "STANDARD"
    MANAGER = "MANAGER"
    EXECUTIVE = "EXECUTIVE"


LEVEL_ORDER: tuple[ApprovalLevel, ...] = (
    ApprovalLevel.AUTO,
    ApprovalLevel.STANDARD,
    ApprovalLevel.MANAGER,
    ApprovalLevel.EXECUTIVE,
)


class ApproverRole(str, Enum):
    SYSTEM = "system"
    ACCOUNTANT = "accountant"
    MANAGER = "manager"
    EXECUTIVE = "executive"
    ADMIN = "admin"


ROLE_HIERARCHY: dict[str, int] = {
    ApproverRole.SYSTEM.value: 0,
    ApproverRole.ACCOUNTANT.value: 1,
    ApproverRole.MANAGER.value: 2,
    ApproverRole.EXECUTIVE.value: 3,
    ApproverRole.ADMIN.value: 4,
}


def role_rank(role: str | ApproverRole | None) -> int:
    if role is None:
        return 0
    key = role.value if isinstance(role, ApproverRole) else str(role).lower()
    return ROLE_HIERARCHY.get(key, 0)


def role_has_authority(role: str | ApproverRole | None, required: str | ApproverRole) -> bool:
    """Check if ``role`` is at least as senior as ``required``."""
    return role_rank(role) >= role_rank(required)


# =========================================================================
# Request lifecycle
# =========================================================================


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"
    DELEGATED = "DELEGATED"


APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.ESCALATED,
        ApprovalStatus.DELEGATED,
    }),
    ApprovalStatus.DELEGATED: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.ESCALATED,
        ApprovalStatus.DELEGATED,
    }),
    ApprovalStatus.ESCALATED: frozenset({ApprovalStatus.PENDING}),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
})

# Statuses in which a request is still awaiting a decision.
OPEN_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.PENDING,
    ApprovalStatus.DELEGATED,
    ApprovalStatus.ESCALATED,
})


class ApprovalActionType(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    ESCALATE = "ESCALATE"
    DELEGATE = "DELEGATE"
    COMMENT = "COMMENT"


# =========================================================================
# Threshold configuration
# =========================================================================


@dataclass(frozen=True)
class ApprovalThreshold:
    """
    One tier of the threshold table.

    Matches ``min_amount <= amount < max_amount``; ``max_amount`` None means
    unbounded.
    """

    level: ApprovalLevel
    min_amount: Decimal
    max_amount: Decimal | None
    required_role: str
    approvers: tuple[str, ...] = ()

    def contains(self, amount: Decimal) -> bool:
        if amount < self.min_amount:
            return False
        return self.max_amount is None or amount < self.max_amount


DEFAULT_THRESHOLDS: tuple[ApprovalThreshold, ...] = (
    ApprovalThreshold(ApprovalLevel.AUTO, Decimal("0"), Decimal("5000"), "system"),
    ApprovalThreshold(
        ApprovalLevel.STANDARD, Decimal("5000"), Decimal("50000"), "accountant",
        ("accountant-1",),
    ),
    ApprovalThreshold(
        ApprovalLevel.MANAGER, Decimal("50000"), Decimal("200000"), "manager",
        ("manager-1",),
    ),
    ApprovalThreshold(
        ApprovalLevel.EXECUTIVE, Decimal("200000"), None, "executive",
        ("cfo-1", "ceo-1"),
    ),
)


@dataclass(frozen=True)
class ApprovalConfig:
    """Per-company approval settings."""

    thresholds: tuple[ApprovalThreshold, ...] = DEFAULT_THRESHOLDS
    escalation_timeout_hours: int = 48
    enable_auto_approval: bool = True
    auto_approval_max_amount: Decimal = Decimal("5000")
    require_dual_approval: bool = True
    dual_approval_threshold: Decimal = Decimal("100000")
    new_supplier_amount: Decimal = Decimal("1000")
    high_risk_score: int = 50
    min_confidence: float = 0.7

    def threshold_for(self, level: ApprovalLevel) -> ApprovalThreshold:
        for threshold in self.thresholds:
            if threshold.level == level:
                return threshold
        return self.thresholds[-1]

    def tier_for_amount(self, amount: Decimal) -> ApprovalThreshold:
        """First tier containing ``amount``; the top tier otherwise."""
        for threshold in self.thresholds:
            if threshold.contains(amount):
                return threshold
        return self.thresholds[-1]

    def next_threshold(self, level: ApprovalLevel) -> ApprovalThreshold | None:
        """The tier above ``level``, or None at the top."""
        levels = [t.level for t in self.thresholds]
        index = levels.index(level) if level in levels else len(levels) - 1
        if index + 1 >= len(self.thresholds):
            return None
        return self.thresholds[index + 1]

    def requires_dual_approval(self, amount: Decimal) -> bool:
        return self.require_dual_approval and amount >= self.dual_approval_threshold

    def can_auto_approve(self, evaluation: "ApprovalEvaluation", amount: Decimal) -> bool:
        """Auto-approval needs no matched rule and an amount within the cap."""
        return (
            self.enable_auto_approval
            and not evaluation.requires_approval
            and amount <= self.auto_approval_max_amount
        )


# =========================================================================
# Evaluation and request records
# =========================================================================


@dataclass(frozen=True)
class ApprovalEvaluation:
    requires_approval: bool
    required_level: ApprovalLevel
    matched_rules: tuple[str, ...]
    reason: str
    required_role: str = "system"
    suggested_approvers: tuple[str, ...] = ()


@dataclass(frozen=True)
class ApprovalActionRecord:
    actor_id: str
    actor_role: str
    action: ApprovalActionType
    created_at: datetime
    sequence: int
    comment: str | None = None
    level: ApprovalLevel | None = None


@dataclass(frozen=True)
class ApprovalRequest:
    id: UUID
    job_id: UUID
    company_id: str
    amount: Decimal
    currency: str
    level: ApprovalLevel
    required_role: str
    status: ApprovalStatus
    created_at: datetime
    due_at: datetime | None = None
    assigned_to: tuple[str, ...] = ()
    delegated_to: str | None = None
    reason: str | None = None
    matched_rules: tuple[str, ...] = ()
    requires_dual_approval: bool = False
    escalation_count: int = 0
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    actions: tuple[ApprovalActionRecord, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_APPROVAL_STATUSES

    @property
    def approval_count(self) -> int:
        return sum(1 for a in self.actions if a.action == ApprovalActionType.APPROVE)


@dataclass(frozen=True)
class ApprovalStats:
    pending: int
    approved_today: int
    rejected_today: int
    average_resolution_hours: float
    pending_by_level: dict[str, int]
