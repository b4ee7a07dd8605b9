"""
Module: docledger_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines.  This is the canonical import surface for
    ``docledger_services``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import docledger_kernel.domain (and sibling engine modules).
    MUST NOT import docledger_services or docledger_kernel.services.

Invariants enforced:
    - Purity: engines never read a clock; ``today`` is always a parameter.
    - Decimal-only arithmetic for money.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from docledger_engines import detect_anomalies, evaluate_approval
    from docledger_engines import validate_classification, correct_line_items
    from docledger_engines import evaluate_policy, evaluate_rules, decide_status
"""

from docledger_engines.accounting_policy import (
    AccountingPolicy,
    ListMode,
    ListPolicy,
    PolicyAction,
    PolicyEvaluation,
    PolicyRule,
    PolicyViolation,
    SupplierOverride,
    evaluate_policy,
)
from docledger_engines.anomaly import detect_anomalies
from docledger_engines.approval import (
    can_auto_approve,
    next_level,
    requires_dual_approval,
    role_has_authority,
    tier_for_amount,
)
from docledger_engines.approval import evaluate as evaluate_approval
from docledger_engines.auto_approval import (
    DEFAULT_RULES,
    AutoApprovalContext,
    AutoApprovalDecision,
    AutoApprovalRule,
    ConditionField,
    Operator,
    RuleAction,
    RuleCondition,
    evaluate_rules,
)
from docledger_engines.status_policy import (
    STATUS_TABLE,
    DecisionFacts,
    StatusOutcome,
    decide_status,
)
from docledger_engines.validation import (
    LineCorrection,
    ValidationIssue,
    ValidationResult,
    correct_line_items,
    validate_classification,
)

__all__ = [
    "AccountingPolicy",
    "AutoApprovalContext",
    "AutoApprovalDecision",
    "AutoApprovalRule",
    "ConditionField",
    "DEFAULT_RULES",
    "DecisionFacts",
    "LineCorrection",
    "ListMode",
    "ListPolicy",
    "Operator",
    "PolicyAction",
    "PolicyEvaluation",
    "PolicyRule",
    "PolicyViolation",
    "RuleAction",
    "RuleCondition",
    "STATUS_TABLE",
    "StatusOutcome",
    "SupplierOverride",
    "ValidationIssue",
    "ValidationResult",
    "can_auto_approve",
    "correct_line_items",
    "decide_status",
    "detect_anomalies",
    "evaluate_approval",
    "evaluate_policy",
    "evaluate_rules",
    "next_level",
    "requires_dual_approval",
    "role_has_authority",
    "tier_for_amount",
    "validate_classification",
]
