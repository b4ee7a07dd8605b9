"""
docledger_engines.approval -- Pure approval rule evaluation.

Responsibility:
    Decide whether a document needs a human approval, at which tier, and
    why.  Every rule is evaluated and all matches are reported; the tier is
    driven by the amount.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The stateful request
    lifecycle lives in ``docledger_kernel.services.approval_service``.

Rules (all evaluated, names accumulated in order):
    amount_threshold_<LEVEL>  amount falls in a tier above AUTO
    new_supplier              first document from the supplier, amount > 1000
    high_risk                 anomaly risk score >= 50
    anomaly_severity          highest anomaly severity HIGH or CRITICAL
    low_confidence            extraction confidence < 0.7

A non-amount rule on an AUTO-tier amount raises the level to STANDARD so the
request always has a human tier to land on.
"""

from __future__ import annotations

from decimal import Decimal

from docledger_engines.tracer import traced_engine
from docledger_kernel.domain.anomaly import AnomalyReport, Severity
from docledger_kernel.domain.approval import (
    LEVEL_ORDER,
    ApprovalConfig,
    ApprovalEvaluation,
    ApprovalLevel,
    ApprovalThreshold,
    role_has_authority,
)

__all__ = [
    "can_auto_approve",
    "evaluate",
    "next_level",
    "requires_dual_approval",
    "role_has_authority",
    "tier_for_amount",
]


def tier_for_amount(
    amount: Decimal,
    thresholds: tuple[ApprovalThreshold, ...],
) -> ApprovalThreshold:
    """First tier with ``min <= amount < max``; the top tier otherwise."""
    for threshold in thresholds:
        if threshold.contains(amount):
            return threshold
    return thresholds[-1]


def next_level(level: ApprovalLevel) -> ApprovalLevel | None:
    index = LEVEL_ORDER.index(level)
    return LEVEL_ORDER[index + 1] if index + 1 < len(LEVEL_ORDER) else None


def requires_dual_approval(amount: Decimal, config: ApprovalConfig | None = None) -> bool:
    return (config or ApprovalConfig()).requires_dual_approval(amount)


@traced_engine("approval", "1.0", fingerprint_fields=("amount", "is_new_supplier", "confidence"))
def evaluate(
    amount: Decimal,
    is_new_supplier: bool,
    anomaly: AnomalyReport | None,
    confidence: float,
    config: ApprovalConfig | None = None,
    supplier: str | None = None,
) -> ApprovalEvaluation:
    config = config or ApprovalConfig()
    tier = tier_for_amount(amount, config.thresholds)
    level = tier.level

    matched: list[str] = []
    reason = ""

    if level != ApprovalLevel.AUTO:
        matched.append(f"amount_threshold_{level.value}")
        reason = f"Amount {amount} requires {level.value} approval"

    if is_new_supplier and amount > config.new_supplier_amount:
        matched.append("new_supplier")
        reason = reason or f"New supplier {supplier or 'unknown'} requires review"

    if anomaly is not None and anomaly.risk_score >= config.high_risk_score:
        matched.append("high_risk")
        reason = reason or f"High risk score ({anomaly.risk_score}) requires review"

    if anomaly is not None and anomaly.highest_severity in (Severity.HIGH, Severity.CRITICAL):
        matched.append("anomaly_severity")
        reason = reason or f"{anomaly.highest_severity.value} anomaly detected"

    if confidence < config.min_confidence:
        matched.append("low_confidence")
        reason = reason or f"Low extraction confidence ({confidence:.0%})"

    requires = bool(matched)
    if requires and level == ApprovalLevel.AUTO:
        level = ApprovalLevel.STANDARD
        tier = config.threshold_for(level)

    return ApprovalEvaluation(
        requires_approval=requires,
        required_level=level,
        matched_rules=tuple(matched),
        reason=reason or "Eligible for auto-approval",
        required_role=tier.required_role,
        suggested_approvers=tier.approvers,
    )


def can_auto_approve(
    evaluation: ApprovalEvaluation,
    amount: Decimal,
    config: ApprovalConfig | None = None,
) -> bool:
    return (config or ApprovalConfig()).can_auto_approve(evaluation, amount)
