"""
docledger_engines.accounting_policy -- Per-company accounting policy.

Responsibility:
    Apply a company's accounting policy to a classified document:
    supplier overrides (forced account / cost center, forced approval),
    account and cost-center allow / deny lists with an optional fallback
    account, and prioritized approval rules (REJECT / REQUIRE_APPROVAL /
    AUTO_APPROVE).

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Policies are built from
    YAML by ``docledger_config.loader``, which also compiles every regex
    so a malformed pattern fails at load time rather than here.

Invariants enforced:
    - The input classification is never mutated; a corrected copy is
      returned.
    - Strict mode never rewrites an account: a disallowed account blocks.
      Lenient mode rewrites it to the fallback when there is one.
    - Approval rules are evaluated in ascending priority; the first match
      decides.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any

from docledger_engines.tracer import traced_engine
from docledger_kernel.domain.documents import Classification, DocumentType


class ListMode(str, Enum):
    ALLOW_ALL = "allow_all"
    ALLOW_LIST = "allow_list"
    DENY_LIST = "deny_list"


class PolicyAction(str, Enum):
    REJECT = "REJECT"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
    AUTO_APPROVE = "AUTO_APPROVE"


@dataclass(frozen=True)
class ListPolicy:
    mode: ListMode = ListMode.ALLOW_ALL
    values: tuple[str, ...] = ()

    def allows(self, value: str | None) -> bool:
        if self.mode == ListMode.ALLOW_ALL:
            return True
        if self.mode == ListMode.ALLOW_LIST:
            return value in self.values
        return value not in self.values


@dataclass(frozen=True)
class SupplierOverride:
    supplier_pattern: str
    force_account: str | None = None
    force_cost_center: str | None = None
    require_approval: bool = False
    note: str | None = None
    enabled: bool = True


@dataclass(frozen=True)
class PolicyRule:
    name: str
    action: PolicyAction
    priority: int = 100
    supplier_pattern: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    doc_types: tuple[DocumentType, ...] = ()
    description_pattern: str | None = None
    reason: str | None = None
    enabled: bool = True

    def matches(self, c: Classification) -> bool:
        if self.supplier_pattern and not _matches(self.supplier_pattern, normalize_name(c.supplier)):
            return False
        if self.min_amount is not None and c.total_amount < self.min_amount:
            return False
        if self.max_amount is not None and c.total_amount > self.max_amount:
            return False
        if self.doc_types and c.doc_type not in self.doc_types:
            return False
        if self.description_pattern and not any(
            _matches(self.description_pattern, line.description) for line in c.line_items
        ):
            return False
        return True


@dataclass(frozen=True)
class AccountingPolicy:
    accounts: ListPolicy = field(default_factory=ListPolicy)
    cost_centers: ListPolicy = field(default_factory=ListPolicy)
    fallback_account: str | None = None
    strict: bool = False
    supplier_overrides: tuple[SupplierOverride, ...] = ()
    rules: tuple[PolicyRule, ...] = ()

    def pick_fallback_account(self) -> str | None:
        if self.fallback_account:
            return self.fallback_account
        if self.accounts.mode == ListMode.ALLOW_LIST and self.accounts.values:
            return self.accounts.values[0]
        return None


@dataclass(frozen=True)
class PolicyViolation:
    code: str
    field: str
    message: str
    severity: str

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
        }


@dataclass(frozen=True)
class PolicyEvaluation:
    classification: Classification
    violations: tuple[PolicyViolation, ...]
    requires_approval: bool
    reject: bool
    blocked: bool
    auto_approve: bool
    summary: str
    matched_rule: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "violations": [v.to_dict() for v in self.violations],
            "requires_approval": self.requires_approval,
            "reject": self.reject,
            "blocked": self.blocked,
            "auto_approve": self.auto_approve,
            "summary": self.summary,
            "matched_rule": self.matched_rule,
        }


def normalize_name(name: str | None) -> str:
    return " ".join((name or "").lower().split())


def _matches(pattern: str, value: str | None) -> bool:
    return re.search(pattern, value or "", re.IGNORECASE) is not None


def _apply_overrides(
    policy: AccountingPolicy,
    c: Classification,
    violations: list[PolicyViolation],
    summary: list[str],
) -> tuple[Classification, bool]:
    supplier = normalize_name(c.supplier)
    forced = False
    requires_approval = False

    for override in policy.supplier_overrides:
        if not override.enabled or not _matches(override.supplier_pattern, supplier):
            continue
        if override.force_account:
            c = c.with_changes(
                account=override.force_account,
                line_items=tuple(
                    replace(line, account=override.force_account) for line in c.line_items
                ),
            )
            forced = True
            summary.append(f"forced account {override.force_account}")
        if override.force_cost_center is not None:
            c = c.with_changes(cost_center=override.force_cost_center or None)
            forced = True
            summary.append(f"forced cost center {override.force_cost_center or '(none)'}")
        if override.require_approval:
            requires_approval = True
            summary.append("approval required")
        if override.note:
            summary.append(override.note)

    if forced:
        violations.append(PolicyViolation(
            "POLICY_OVERRIDE_APPLIED", "supplier",
            f"Policy override applied for supplier {c.supplier!r}", "warning",
        ))
    return c, requires_approval


def _enforce_lists(
    policy: AccountingPolicy,
    c: Classification,
    violations: list[PolicyViolation],
    summary: list[str],
) -> tuple[Classification, bool]:
    blocked = False
    fallback = policy.pick_fallback_account()
    lines = list(c.line_items)

    for index, line in enumerate(lines):
        if policy.accounts.allows(line.account):
            continue
        message = f"Account {line.account} is not allowed by the company policy"
        if not policy.strict and fallback:
            violations.append(PolicyViolation(
                "ACCOUNT_AUTO_CORRECTED", f"line_items[{index}].account",
                f"{message}; replaced with {fallback}", "warning",
            ))
            lines[index] = replace(line, account=fallback)
            summary.append(f"account->{fallback}")
        else:
            blocked = True
            violations.append(PolicyViolation(
                "ACCOUNT_NOT_ALLOWED", f"line_items[{index}].account", message, "error",
            ))

    if c.cost_center and not policy.cost_centers.allows(c.cost_center):
        message = f"Cost center {c.cost_center} is not allowed by the company policy"
        violations.append(PolicyViolation(
            "COSTCENTER_NOT_ALLOWED", "cost_center", message,
            "error" if policy.strict else "warning",
        ))
        if policy.strict:
            blocked = True
        else:
            c = c.with_changes(cost_center=None)
            summary.append("cost center->(none)")

    if c.account and not policy.accounts.allows(c.account):
        message = f"Account {c.account} is not allowed by the company policy"
        if not policy.strict and fallback:
            violations.append(PolicyViolation(
                "ACCOUNT_AUTO_CORRECTED", "account",
                f"{message}; replaced with {fallback}", "warning",
            ))
            c = c.with_changes(account=fallback)
        else:
            blocked = True
            violations.append(PolicyViolation("ACCOUNT_NOT_ALLOWED", "account", message, "error"))

    return c.with_changes(line_items=tuple(lines)), blocked


@traced_engine("accounting_policy", "1.0")
def evaluate_policy(
    policy: AccountingPolicy | None,
    classification: Classification,
) -> PolicyEvaluation:
    """Apply ``policy`` to ``classification``; None means allow everything."""
    if policy is None:
        return PolicyEvaluation(
            classification, (), False, False, False, False, "Policy: ok",
        )

    violations: list[PolicyViolation] = []
    summary: list[str] = []

    c, override_approval = _apply_overrides(policy, classification, violations, summary)
    c, blocked = _enforce_lists(policy, c, violations, summary)

    matched: PolicyRule | None = None
    for rule in sorted((r for r in policy.rules if r.enabled), key=lambda r: r.priority):
        if rule.matches(c):
            matched = rule
            break

    reject = matched is not None and matched.action == PolicyAction.REJECT
    rule_approval = matched is not None and matched.action == PolicyAction.REQUIRE_APPROVAL
    auto_approve = matched is not None and matched.action == PolicyAction.AUTO_APPROVE
    requires_approval = override_approval or rule_approval or blocked
    if matched is not None and matched.reason:
        summary.append(f"rule: {matched.reason}")

    if reject:
        text = "Policy: rejected"
    elif blocked:
        text = "Policy: blocked (outside policy)"
    elif requires_approval:
        text = "Policy: approval required"
    elif summary:
        text = "Policy: " + ", ".join(summary)
    else:
        text = "Policy: ok"

    return PolicyEvaluation(
        classification=c,
        violations=tuple(violations),
        requires_approval=requires_approval,
        reject=reject,
        blocked=blocked,
        auto_approve=auto_approve and not requires_approval,
        summary=text,
        matched_rule=matched.name if matched is not None else None,
    )
