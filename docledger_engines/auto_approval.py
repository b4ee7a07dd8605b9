"""
docledger_engines.auto_approval -- Condition-based auto-approval rules.

Responsibility:
    Decide whether a document may be approved without a human, from
    declarative rules over confidence, supplier track record, amount,
    amount variance against the supplier average, document type and the
    duplicate warning flag.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The supplier track record
    is passed in as a ``SupplierHistory``.

Invariants enforced:
    - Rules are tried in descending priority; the first rule whose
      conditions all pass decides.
    - No rule matching means NEEDS_REVIEW.
    - A FLAG_FOR_REVIEW rule never auto-approves.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from docledger_engines.tracer import traced_engine
from docledger_kernel.domain.anomaly import SupplierHistory
from docledger_kernel.domain.documents import DocumentType


class ConditionField(str, Enum):
    CONFIDENCE = "confidence"
    SUPPLIER_KNOWN = "supplier_known"
    SUPPLIER_APPROVAL_COUNT = "supplier_approval_count"
    AMOUNT = "amount"
    AMOUNT_VARIANCE = "amount_variance"
    DOC_TYPE = "doc_type"
    HAS_DUPLICATE_WARNING = "has_duplicate_warning"


class Operator(str, Enum):
    GTE = "gte"
    LTE = "lte"
    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    BETWEEN = "between"


class RuleAction(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    AUTO_APPROVE_AND_SEND = "AUTO_APPROVE_AND_SEND"
    FLAG_FOR_REVIEW = "FLAG_FOR_REVIEW"


NEEDS_REVIEW = "NEEDS_REVIEW"

# Variance is only meaningful once a supplier has this many approvals
MIN_VARIANCE_HISTORY = 2


@dataclass(frozen=True)
class RuleCondition:
    field: ConditionField
    operator: Operator
    value: Any

    def describe(self) -> str:
        return f"{self.field.value} {self.operator.value} {self.value!r}"


@dataclass(frozen=True)
class AutoApprovalRule:
    id: str
    name: str
    conditions: tuple[RuleCondition, ...]
    action: RuleAction = RuleAction.AUTO_APPROVE
    priority: int = 0
    enabled: bool = True
    description: str = ""


@dataclass(frozen=True)
class AutoApprovalContext:
    confidence: float
    amount: Decimal
    doc_type: DocumentType
    has_duplicate_warning: bool
    history: SupplierHistory


@dataclass(frozen=True)
class RuleCheck:
    rule: str
    passed: bool
    details: str


@dataclass(frozen=True)
class AutoApprovalDecision:
    should_auto_approve: bool
    action: str
    reason: str
    matched_rule: str | None = None
    checks: tuple[RuleCheck, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_auto_approve": self.should_auto_approve,
            "action": self.action,
            "reason": self.reason,
            "matched_rule": self.matched_rule,
            "checks": [
                {"rule": c.rule, "passed": c.passed, "details": c.details} for c in self.checks
            ],
        }


def _c(field: ConditionField, operator: Operator, value: Any) -> RuleCondition:
    return RuleCondition(field, operator, value)


DEFAULT_RULES: tuple[AutoApprovalRule, ...] = (
    AutoApprovalRule(
        id="rule-auto-very-high-confidence",
        name="Very high confidence",
        description="Confidence >= 98%, at least 5 earlier approvals and amount <= 5000",
        priority=110,
        action=RuleAction.AUTO_APPROVE_AND_SEND,
        conditions=(
            _c(ConditionField.CONFIDENCE, Operator.GTE, 0.98),
            _c(ConditionField.SUPPLIER_APPROVAL_COUNT, Operator.GTE, 5),
            _c(ConditionField.AMOUNT, Operator.LTE, Decimal("5000")),
            _c(ConditionField.AMOUNT_VARIANCE, Operator.LTE, 0.3),
            _c(ConditionField.HAS_DUPLICATE_WARNING, Operator.EQ, False),
        ),
    ),
    AutoApprovalRule(
        id="rule-auto-high-confidence",
        name="High confidence and known supplier",
        description="Confidence >= 95% and at least 3 earlier approvals",
        priority=100,
        conditions=(
            _c(ConditionField.CONFIDENCE, Operator.GTE, 0.95),
            _c(ConditionField.SUPPLIER_APPROVAL_COUNT, Operator.GTE, 3),
            _c(ConditionField.AMOUNT_VARIANCE, Operator.LTE, 0.5),
            _c(ConditionField.HAS_DUPLICATE_WARNING, Operator.EQ, False),
        ),
    ),
    AutoApprovalRule(
        id="rule-recurring-supplier",
        name="Recurring supplier",
        description="At least 10 earlier approvals with a normal amount",
        priority=90,
        conditions=(
            _c(ConditionField.CONFIDENCE, Operator.GTE, 0.85),
            _c(ConditionField.SUPPLIER_APPROVAL_COUNT, Operator.GTE, 10),
            _c(ConditionField.AMOUNT_VARIANCE, Operator.LTE, 0.2),
            _c(ConditionField.HAS_DUPLICATE_WARNING, Operator.EQ, False),
        ),
    ),
    AutoApprovalRule(
        id="rule-small-receipt",
        name="Small receipt",
        description="Receipts up to 500 with confidence >= 90%",
        priority=80,
        conditions=(
            _c(ConditionField.CONFIDENCE, Operator.GTE, 0.90),
            _c(ConditionField.DOC_TYPE, Operator.EQ, DocumentType.RECEIPT.value),
            _c(ConditionField.AMOUNT, Operator.LTE, Decimal("500")),
            _c(ConditionField.HAS_DUPLICATE_WARNING, Operator.EQ, False),
        ),
    ),
)


def _compare(actual: Any, operator: Operator, expected: Any) -> bool:
    if operator == Operator.GTE:
        return actual >= expected
    if operator == Operator.LTE:
        return actual <= expected
    if operator == Operator.EQ:
        return actual == expected
    if operator == Operator.NEQ:
        return actual != expected
    if operator == Operator.IN:
        return actual in expected
    if operator == Operator.BETWEEN:
        low, high = expected
        return low <= actual <= high
    raise ValueError(f"Unsupported operator: {operator}")


def amount_variance(amount: Decimal, history: SupplierHistory) -> float | None:
    """Relative distance from the supplier average; None without enough history."""
    if history.approved_count < MIN_VARIANCE_HISTORY or history.average_amount <= 0:
        return None
    return float(abs(amount - history.average_amount) / history.average_amount)


def evaluate_condition(condition: RuleCondition, ctx: AutoApprovalContext) -> RuleCheck:
    field = condition.field
    if field == ConditionField.CONFIDENCE:
        actual: Any = ctx.confidence
        details = f"confidence {ctx.confidence:.0%}"
    elif field == ConditionField.SUPPLIER_KNOWN:
        actual = ctx.history.approved_count > 0
        details = "supplier is known" if actual else "supplier is new"
    elif field == ConditionField.SUPPLIER_APPROVAL_COUNT:
        actual = ctx.history.approved_count
        details = f"supplier has {actual} earlier approvals"
    elif field == ConditionField.AMOUNT:
        actual = ctx.amount
        expected = condition.value
        if condition.operator == Operator.BETWEEN:
            expected = tuple(Decimal(str(v)) for v in expected)
        else:
            expected = Decimal(str(expected))
        passed = _compare(actual, condition.operator, expected)
        return RuleCheck(condition.describe(), passed, f"amount {ctx.amount}")
    elif field == ConditionField.AMOUNT_VARIANCE:
        variance = amount_variance(ctx.amount, ctx.history)
        if variance is None:
            return RuleCheck(condition.describe(), True, "no history to compare the amount against")
        actual = variance
        details = f"amount variance {variance:.0%} (average {ctx.history.average_amount})"
    elif field == ConditionField.DOC_TYPE:
        actual = ctx.doc_type.value
        details = f"document type {actual}"
    elif field == ConditionField.HAS_DUPLICATE_WARNING:
        actual = ctx.has_duplicate_warning
        details = "duplicate warning present" if actual else "no duplicate warning"
    else:
        return RuleCheck(condition.describe(), False, "unknown condition")

    return RuleCheck(condition.describe(), _compare(actual, condition.operator, condition.value), details)


@traced_engine("auto_approval", "1.0")
def evaluate_rules(
    ctx: AutoApprovalContext,
    rules: tuple[AutoApprovalRule, ...] = DEFAULT_RULES,
) -> AutoApprovalDecision:
    ordered = sorted((r for r in rules if r.enabled), key=lambda r: -r.priority)
    for rule in ordered:
        checks = tuple(evaluate_condition(c, ctx) for c in rule.conditions)
        if all(check.passed for check in checks):
            auto = rule.action != RuleAction.FLAG_FOR_REVIEW
            return AutoApprovalDecision(
                should_auto_approve=auto,
                action=rule.action.value if auto else NEEDS_REVIEW,
                reason=f"Matched rule {rule.name!r}",
                matched_rule=rule.id,
                checks=checks,
            )
    return AutoApprovalDecision(
        should_auto_approve=False,
        action=NEEDS_REVIEW,
        reason="No auto-approval rule matched",
        checks=(RuleCheck("all rules", False, f"none of {len(ordered)} rules matched"),),
    )
