"""
Configuration Loader (``docledger_config.loader``).

Responsibility
--------------
Loads company configuration YAML and parses it into the frozen
dataclasses of ``docledger_config.schema``.

File layout::

    defaults:            # applied to every company
      approval: {...}
      close: {...}
    companies:
      acme:
        name: Acme AB
        approval: {...}  # merged over defaults key by key

Invariants enforced
-------------------
* Unknown keys are ignored; malformed values raise ``ConfigurationError``
  naming the offending key.
* Every regex in the accounting policy is compiled here, so a bad
  pattern fails at load time and never inside a pipeline run.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  merged company section.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Bad values  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
import re
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from docledger_config.schema import (
    ApprovalTier,
    CloseConfig,
    CompanyConfig,
    CurrencyConfig,
    PipelineConfig,
)
from docledger_engines.accounting_policy import (
    AccountingPolicy,
    ListMode,
    ListPolicy,
    PolicyAction,
    PolicyRule,
    SupplierOverride,
)
from docledger_engines.auto_approval import (
    DEFAULT_RULES,
    AutoApprovalRule,
    ConditionField,
    Operator,
    RuleAction,
    RuleCondition,
)
from docledger_kernel.domain.approval import ApprovalConfig, ApprovalLevel
from docledger_kernel.domain.documents import DocumentType
from docledger_kernel.exceptions import ConfigurationError

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigurationError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive dict merge; lists and scalars in ``override`` replace."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------


def parse_decimal(value: Any, key: str) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ConfigurationError(key, f"not a number: {value!r}") from None


def _optional_decimal(value: Any, key: str) -> Decimal | None:
    return None if value is None else parse_decimal(value, key)


def _int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(key, f"not an integer: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(key, f"not an integer: {value!r}") from None


def _float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(key, f"not a number: {value!r}") from None


def _bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(key, f"not a boolean: {value!r}")
    return value


def _enum(enum_type, value: Any, key: str):
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_type)
        raise ConfigurationError(key, f"{value!r} is not one of {allowed}") from None


def _pattern(value: Any, key: str) -> str | None:
    if value is None:
        return None
    try:
        re.compile(str(value))
    except re.error as exc:
        raise ConfigurationError(key, f"invalid regular expression {value!r}: {exc}") from None
    return str(value)


def _mapping(data: Any, key: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(key, "must be a mapping")
    return data


def _sequence(data: Any, key: str) -> list[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigurationError(key, "must be a list")
    return data


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def parse_tier(data: dict[str, Any], key: str) -> ApprovalTier:
    data = _mapping(data, key)
    if "level" not in data or "required_role" not in data:
        raise ConfigurationError(key, "tier needs level and required_role")
    return ApprovalTier(
        level=_enum(ApprovalLevel, str(data["level"]).upper(), f"{key}.level"),
        min_amount=parse_decimal(data.get("min_amount", 0), f"{key}.min_amount"),
        max_amount=_optional_decimal(data.get("max_amount"), f"{key}.max_amount"),
        required_role=str(data["required_role"]),
        approvers=tuple(str(a) for a in _sequence(data.get("approvers"), f"{key}.approvers")),
    )


def parse_approval(data: dict[str, Any]) -> ApprovalConfig:
    """
    Parse the ``approval`` section.

    Tiers must be ordered by ``min_amount`` and contiguous: each tier's
    ``max_amount`` is the next tier's ``min_amount``; only the last tier
    may be unbounded.
    """
    data = _mapping(data, "approval")
    defaults = ApprovalConfig()

    thresholds = defaults.thresholds
    if "tiers" in data:
        tiers = [
            parse_tier(t, f"approval.tiers[{i}]")
            for i, t in enumerate(_sequence(data["tiers"], "approval.tiers"))
        ]
        if not tiers:
            raise ConfigurationError("approval.tiers", "at least one tier is required")
        for i, (tier, nxt) in enumerate(zip(tiers, tiers[1:])):
            if tier.max_amount != nxt.min_amount:
                raise ConfigurationError(
                    f"approval.tiers[{i}].max_amount",
                    f"tiers must be contiguous ({tier.max_amount} != {nxt.min_amount})",
                )
        if tiers[-1].max_amount is not None:
            raise ConfigurationError("approval.tiers", "the last tier must be unbounded")
        thresholds = tuple(t.to_threshold() for t in tiers)

    def get(name: str, parse, default):
        return parse(data[name], f"approval.{name}") if name in data else default

    return ApprovalConfig(
        thresholds=thresholds,
        escalation_timeout_hours=get("escalation_timeout_hours", _int, defaults.escalation_timeout_hours),
        enable_auto_approval=get("enable_auto_approval", _bool, defaults.enable_auto_approval),
        auto_approval_max_amount=get("auto_approval_max_amount", parse_decimal, defaults.auto_approval_max_amount),
        require_dual_approval=get("require_dual_approval", _bool, defaults.require_dual_approval),
        dual_approval_threshold=get("dual_approval_threshold", parse_decimal, defaults.dual_approval_threshold),
        new_supplier_amount=get("new_supplier_amount", parse_decimal, defaults.new_supplier_amount),
        high_risk_score=get("high_risk_score", _int, defaults.high_risk_score),
        min_confidence=get("min_confidence", _float, defaults.min_confidence),
    )


def _parse_list_policy(data: Any, key: str) -> ListPolicy:
    data = _mapping(data, key)
    return ListPolicy(
        mode=_enum(ListMode, data.get("mode", ListMode.ALLOW_ALL.value), f"{key}.mode"),
        values=tuple(str(v) for v in _sequence(data.get("values"), f"{key}.values")),
    )


def parse_policy(data: dict[str, Any] | None) -> AccountingPolicy | None:
    if not data:
        return None
    data = _mapping(data, "policy")

    overrides = []
    for i, item in enumerate(_sequence(data.get("supplier_overrides"), "policy.supplier_overrides")):
        key = f"policy.supplier_overrides[{i}]"
        item = _mapping(item, key)
        if not item.get("supplier_pattern"):
            raise ConfigurationError(key, "supplier_pattern is required")
        overrides.append(SupplierOverride(
            supplier_pattern=_pattern(item["supplier_pattern"], f"{key}.supplier_pattern"),
            force_account=item.get("force_account"),
            force_cost_center=item.get("force_cost_center"),
            require_approval=_bool(item.get("require_approval", False), f"{key}.require_approval"),
            note=item.get("note"),
            enabled=_bool(item.get("enabled", True), f"{key}.enabled"),
        ))

    rules = []
    for i, item in enumerate(_sequence(data.get("rules"), "policy.rules")):
        key = f"policy.rules[{i}]"
        item = _mapping(item, key)
        if "name" not in item or "action" not in item:
            raise ConfigurationError(key, "rule needs name and action")
        rules.append(PolicyRule(
            name=str(item["name"]),
            action=_enum(PolicyAction, item["action"], f"{key}.action"),
            priority=_int(item.get("priority", 100), f"{key}.priority"),
            supplier_pattern=_pattern(item.get("supplier_pattern"), f"{key}.supplier_pattern"),
            min_amount=_optional_decimal(item.get("min_amount"), f"{key}.min_amount"),
            max_amount=_optional_decimal(item.get("max_amount"), f"{key}.max_amount"),
            doc_types=tuple(
                _enum(DocumentType, t, f"{key}.doc_types")
                for t in _sequence(item.get("doc_types"), f"{key}.doc_types")
            ),
            description_pattern=_pattern(item.get("description_pattern"), f"{key}.description_pattern"),
            reason=item.get("reason"),
            enabled=_bool(item.get("enabled", True), f"{key}.enabled"),
        ))

    return AccountingPolicy(
        accounts=_parse_list_policy(data.get("accounts"), "policy.accounts"),
        cost_centers=_parse_list_policy(data.get("cost_centers"), "policy.cost_centers"),
        fallback_account=data.get("fallback_account"),
        strict=_bool(data.get("strict", False), "policy.strict"),
        supplier_overrides=tuple(overrides),
        rules=tuple(rules),
    )


def _condition_value(field: ConditionField, operator: Operator, value: Any, key: str) -> Any:
    if operator == Operator.BETWEEN:
        values = _sequence(value, key)
        if len(values) != 2:
            raise ConfigurationError(key, "between needs exactly two values")
        return tuple(values)
    if operator == Operator.IN:
        return tuple(_sequence(value, key))
    if field == ConditionField.AMOUNT:
        return parse_decimal(value, key)
    return value


def parse_auto_approval_rules(data: Any) -> tuple[AutoApprovalRule, ...]:
    """None keeps the built-in rules; an empty list disables auto-approval rules."""
    if data is None:
        return DEFAULT_RULES
    rules = []
    for i, item in enumerate(_sequence(data, "auto_approval_rules")):
        key = f"auto_approval_rules[{i}]"
        item = _mapping(item, key)
        if "id" not in item:
            raise ConfigurationError(key, "id is required")
        conditions = []
        for j, cond in enumerate(_sequence(item.get("conditions"), f"{key}.conditions")):
            ckey = f"{key}.conditions[{j}]"
            cond = _mapping(cond, ckey)
            field = _enum(ConditionField, cond.get("field"), f"{ckey}.field")
            operator = _enum(Operator, cond.get("operator"), f"{ckey}.operator")
            conditions.append(RuleCondition(
                field, operator, _condition_value(field, operator, cond.get("value"), f"{ckey}.value"),
            ))
        rules.append(AutoApprovalRule(
            id=str(item["id"]),
            name=str(item.get("name", item["id"])),
            conditions=tuple(conditions),
            action=_enum(RuleAction, item.get("action", RuleAction.AUTO_APPROVE.value), f"{key}.action"),
            priority=_int(item.get("priority", 0), f"{key}.priority"),
            enabled=_bool(item.get("enabled", True), f"{key}.enabled"),
            description=str(item.get("description", "")),
        ))
    return tuple(rules)


def parse_close(data: Any) -> CloseConfig:
    data = _mapping(data, "close")
    defaults = CloseConfig()
    return CloseConfig(
        large_amount_threshold=parse_decimal(
            data.get("large_amount_threshold", defaults.large_amount_threshold),
            "close.large_amount_threshold",
        ),
        sample_limit=_int(data.get("sample_limit", defaults.sample_limit), "close.sample_limit"),
    )


def parse_currency(data: Any) -> CurrencyConfig:
    data = _mapping(data, "currency")
    defaults = CurrencyConfig()
    base = str(data.get("base_currency", defaults.base_currency)).upper()
    if len(base) != 3:
        raise ConfigurationError("currency.base_currency", f"not a currency code: {base!r}")
    return CurrencyConfig(
        base_currency=base,
        max_lookback_days=_int(
            data.get("max_lookback_days", defaults.max_lookback_days), "currency.max_lookback_days",
        ),
        provider_timeout_seconds=_float(
            data.get("provider_timeout_seconds", defaults.provider_timeout_seconds),
            "currency.provider_timeout_seconds",
        ),
    )


def parse_pipeline(data: Any) -> PipelineConfig:
    data = _mapping(data, "pipeline")
    defaults = PipelineConfig()
    start_month = _int(
        data.get("fiscal_year_start_month", defaults.fiscal_year_start_month),
        "pipeline.fiscal_year_start_month",
    )
    if not 1 <= start_month <= 12:
        raise ConfigurationError("pipeline.fiscal_year_start_month", "must be between 1 and 12")
    return PipelineConfig(
        default_account=str(data.get("default_account", defaults.default_account)),
        correct_line_items=_bool(
            data.get("correct_line_items", defaults.correct_line_items), "pipeline.correct_line_items",
        ),
        detect_multiple_receipts=_bool(
            data.get("detect_multiple_receipts", defaults.detect_multiple_receipts),
            "pipeline.detect_multiple_receipts",
        ),
        convert_currency=_bool(
            data.get("convert_currency", defaults.convert_currency), "pipeline.convert_currency",
        ),
        max_workers=_int(data.get("max_workers", defaults.max_workers), "pipeline.max_workers"),
        fiscal_year_start_month=start_month,
    )


def parse_company(company_id: str, data: dict[str, Any]) -> CompanyConfig:
    """Parse one merged company section."""
    data = _mapping(data, company_id)
    return CompanyConfig(
        company_id=company_id,
        name=str(data.get("name", "")),
        approval=parse_approval(data.get("approval")),
        policy=parse_policy(data.get("policy")),
        auto_approval_rules=parse_auto_approval_rules(data.get("auto_approval_rules")),
        close=parse_close(data.get("close")),
        currency=parse_currency(data.get("currency")),
        pipeline=parse_pipeline(data.get("pipeline")),
        checksum=compute_checksum(data),
    )


def load_config(path: Path | str) -> tuple[dict[str, Any], dict[str, CompanyConfig]]:
    """
    Load a configuration file.

    Returns the raw ``defaults`` section (merged over the packaged
    defaults) and the parsed companies.
    """
    packaged = _mapping(load_yaml_file(DEFAULTS_PATH).get("defaults"), "defaults")
    data = load_yaml_file(Path(path))
    defaults = merge(packaged, _mapping(data.get("defaults"), "defaults"))
    companies = {
        str(company_id): parse_company(str(company_id), merge(defaults, _mapping(section, str(company_id))))
        for company_id, section in _mapping(data.get("companies"), "companies").items()
    }
    return defaults, companies


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
