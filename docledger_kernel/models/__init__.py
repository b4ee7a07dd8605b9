"""ORM models for the document ledger."""

from docledger_kernel.models.approval import ApprovalActionModel, ApprovalRequestModel
from docledger_kernel.models.audit import AuditLogModel
from docledger_kernel.models.bank import BankTransactionModel
from docledger_kernel.models.currency import ExchangeRateModel
from docledger_kernel.models.duplicate import (
    DuplicateCheckCacheModel,
    DuplicateOverrideModel,
    FingerprintModel,
)
from docledger_kernel.models.job import DocumentJobModel
from docledger_kernel.models.period import (
    AccountingPeriodModel,
    PeriodCheckModel,
    PeriodHistoryModel,
)
from docledger_kernel.models.supplier import SupplierStatsModel
from docledger_kernel.models.voucher import VoucherCounterModel, VoucherNumberModel

__all__ = [
    "AccountingPeriodModel",
    "ApprovalActionModel",
    "ApprovalRequestModel",
    "AuditLogModel",
    "BankTransactionModel",
    "DocumentJobModel",
    "DuplicateCheckCacheModel",
    "DuplicateOverrideModel",
    "ExchangeRateModel",
    "FingerprintModel",
    "PeriodCheckModel",
    "PeriodHistoryModel",
    "SupplierStatsModel",
    "VoucherCounterModel",
    "VoucherNumberModel",
]
