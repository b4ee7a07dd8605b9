"""
docledger_engines.status_policy -- Final status decision for an analyzed job.

The decision is a single ordered table of ``(name, predicate, outcome)``
rows evaluated top-down; the first matching row wins.  Keeping it as data
means the precedence is visible in one place and testable row by row.

    policy_rejected              -> ready, requires approval
    policy_requires_approval     -> ready, approval request
    validation_failed            -> ready, requires approval
    anomaly_blocks_auto_approve  -> ready, requires approval
    workflow_requires_approval   -> ready, approval request
    rule_auto_approve            -> approved
    default                      -> ready
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from docledger_kernel.domain.documents import JobStatus


@dataclass(frozen=True)
class DecisionFacts:
    policy_rejected: bool = False
    policy_requires_approval: bool = False
    validation_failed: bool = False
    anomaly_blocks_auto_approve: bool = False
    workflow_requires_approval: bool = False
    rule_auto_approve: bool = False
    duplicate_warning: bool = False
    has_warnings: bool = False


@dataclass(frozen=True)
class StatusOutcome:
    status: JobStatus
    requires_approval: bool
    create_request: bool


@dataclass(frozen=True)
class StatusRule:
    name: str
    predicate: Callable[[DecisionFacts], bool]
    outcome: StatusOutcome


_READY_REVIEW = StatusOutcome(JobStatus.READY, requires_approval=True, create_request=False)
_READY_REQUEST = StatusOutcome(JobStatus.READY, requires_approval=True, create_request=True)
_APPROVED = StatusOutcome(JobStatus.APPROVED, requires_approval=False, create_request=False)
_READY = StatusOutcome(JobStatus.READY, requires_approval=False, create_request=False)


def _auto_approvable(f: DecisionFacts) -> bool:
    return f.rule_auto_approve and not f.has_warnings and not f.duplicate_warning


STATUS_TABLE: tuple[StatusRule, ...] = (
    StatusRule("policy_rejected", lambda f: f.policy_rejected, _READY_REVIEW),
    StatusRule("policy_requires_approval", lambda f: f.policy_requires_approval, _READY_REQUEST),
    StatusRule("validation_failed", lambda f: f.validation_failed, _READY_REVIEW),
    StatusRule("anomaly_blocks_auto_approve", lambda f: f.anomaly_blocks_auto_approve, _READY_REVIEW),
    StatusRule("workflow_requires_approval", lambda f: f.workflow_requires_approval, _READY_REQUEST),
    StatusRule("rule_auto_approve", _auto_approvable, _APPROVED),
)

DEFAULT_RULE = StatusRule("default", lambda f: True, _READY)


def decide_status(facts: DecisionFacts) -> tuple[str, StatusOutcome]:
    """Name of the first matching row and its outcome."""
    for rule in STATUS_TABLE:
        if rule.predicate(facts):
            return rule.name, rule.outcome
    return DEFAULT_RULE.name, DEFAULT_RULE.outcome
