"""
Configuration Schema (``docledger_config.schema``).

Responsibility
--------------
Frozen dataclasses describing one company's configuration: approval tiers
and workflow settings, accounting policy, auto-approval rules, period
close settings, currency settings and pipeline behaviour.

Architecture position
---------------------
**Config layer** -- pure data.  Reuses the kernel's ``ApprovalConfig`` and
the engines' policy / rule types so a parsed configuration is handed to
them unchanged.

Invariants enforced
-------------------
* Every configuration object is immutable (``frozen=True``).
* ``CompanyConfig`` with no arguments is the built-in default company.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

from docledger_engines.accounting_policy import AccountingPolicy
from docledger_engines.auto_approval import DEFAULT_RULES, AutoApprovalRule
from docledger_kernel.domain.approval import ApprovalConfig, ApprovalLevel, ApprovalThreshold


@dataclass(frozen=True)
class ApprovalTier:
    """One row of the approval threshold table as written in YAML."""

    level: ApprovalLevel
    min_amount: Decimal
    max_amount: Decimal | None
    required_role: str
    approvers: tuple[str, ...] = ()

    def to_threshold(self) -> ApprovalThreshold:
        return ApprovalThreshold(
            level=self.level,
            min_amount=self.min_amount,
            max_amount=self.max_amount,
            required_role=self.required_role,
            approvers=self.approvers,
        )


@dataclass(frozen=True)
class CloseConfig:
    large_amount_threshold: Decimal = Decimal("100000")
    sample_limit: int = 10


@dataclass(frozen=True)
class CurrencyConfig:
    base_currency: str = "SEK"
    max_lookback_days: int = 7
    provider_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class PipelineConfig:
    default_account: str = "4010"
    correct_line_items: bool = True
    detect_multiple_receipts: bool = True
    convert_currency: bool = True
    max_workers: int = 4
    fiscal_year_start_month: int = 1


@dataclass(frozen=True)
class CompanyConfig:
    company_id: str = "default"
    name: str = ""
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    policy: AccountingPolicy | None = None
    auto_approval_rules: tuple[AutoApprovalRule, ...] = DEFAULT_RULES
    close: CloseConfig = field(default_factory=CloseConfig)
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    checksum: str | None = None

    def fiscal_year(self, on_date: date) -> tuple[date, date]:
        """First and last day of the fiscal year containing ``on_date``."""
        start_month = self.pipeline.fiscal_year_start_month
        start_year = on_date.year if on_date.month >= start_month else on_date.year - 1
        start = date(start_year, start_month, 1)
        end = date(start_year + 1, start_month, 1) - timedelta(days=1)
        return start, end
