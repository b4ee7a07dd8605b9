"""
SupplierHistoryService -- running per-supplier aggregates.

Feeds the anomaly scorer (average, spread, usual accounts, recent dates) and
the auto-approval rules (approved count).  Updated once per posted job.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from docledger_kernel.domain.anomaly import SupplierHistory
from docledger_kernel.domain.duplicates import normalize_supplier
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.supplier import SupplierStatsModel
from docledger_kernel.services.base import BaseService

logger = get_logger("services.supplier_history")

MAX_TRACKED_DATES = 20
TYPICAL_ACCOUNT_LIMIT = 5


class SupplierHistoryService(BaseService):

    def history(self, company_id: str, supplier: str | None) -> SupplierHistory:
        model = self._find(company_id, supplier)
        if model is None or model.invoice_count == 0:
            return SupplierHistory()

        count = model.invoice_count
        mean = model.amount_sum / count
        variance = model.amount_sq_sum / count - mean * mean
        std = variance.sqrt() if variance > 0 else Decimal("0")
        ranked = sorted(model.account_counts.items(), key=lambda kv: (-kv[1], kv[0]))

        return SupplierHistory(
            total_invoices=count,
            average_amount=mean.quantize(Decimal("0.01")),
            min_amount=model.min_amount,
            max_amount=model.max_amount,
            std_deviation=std.quantize(Decimal("0.01")),
            typical_accounts=tuple(a for a, _ in ranked[:TYPICAL_ACCOUNT_LIMIT]),
            invoice_dates=tuple(sorted(model.invoice_dates or ())),
            approved_count=model.approved_count,
        )

    def is_new(self, company_id: str, supplier: str | None) -> bool:
        model = self._find(company_id, supplier)
        return model is None or model.invoice_count == 0

    def record_posting(
        self,
        company_id: str,
        supplier: str | None,
        amount: Decimal,
        account: str | None,
        invoice_date: date | None,
        approved: bool = True,
    ) -> None:
        """Fold one posted document into the supplier's aggregates."""
        if not supplier or not normalize_supplier(supplier):
            return
        model = self._get_or_create(company_id, supplier)
        amount = abs(amount)

        model.invoice_count += 1
        if approved:
            model.approved_count += 1
        model.amount_sum += amount
        model.amount_sq_sum += amount * amount
        model.min_amount = amount if model.min_amount is None else min(model.min_amount, amount)
        model.max_amount = amount if model.max_amount is None else max(model.max_amount, amount)
        if account:
            counts = dict(model.account_counts or {})
            counts[account] = counts.get(account, 0) + 1
            model.account_counts = counts
        if invoice_date is not None:
            dates = sorted([*(model.invoice_dates or []), invoice_date.isoformat()])
            model.invoice_dates = dates[-MAX_TRACKED_DATES:]
        model.last_invoice_at = self.clock.now()
        self.session.flush()

        logger.debug(
            "supplier_stats_updated",
            extra={"company_id": company_id, "supplier": model.supplier_key, "count": model.invoice_count},
        )

    def set_erp_supplier_id(self, company_id: str, supplier: str, erp_supplier_id: str) -> None:
        model = self._get_or_create(company_id, supplier)
        model.erp_supplier_id = erp_supplier_id
        self.session.flush()

    def erp_supplier_id(self, company_id: str, supplier: str | None) -> str | None:
        model = self._find(company_id, supplier)
        return model.erp_supplier_id if model is not None else None

    def _find(self, company_id: str, supplier: str | None) -> SupplierStatsModel | None:
        key = normalize_supplier(supplier)
        if not key:
            return None
        return self.session.execute(
            select(SupplierStatsModel).where(
                SupplierStatsModel.company_id == company_id,
                SupplierStatsModel.supplier_key == key,
            )
        ).scalar_one_or_none()

    def _get_or_create(self, company_id: str, supplier: str) -> SupplierStatsModel:
        model = self._find(company_id, supplier)
        if model is not None:
            return model
        try:
            with self.session.begin_nested():
                model = SupplierStatsModel(
                    company_id=company_id,
                    supplier_key=normalize_supplier(supplier),
                    display_name=supplier.strip(),
                    invoice_count=0,
                    approved_count=0,
                    amount_sum=Decimal("0"),
                    amount_sq_sum=Decimal("0"),
                    account_counts={},
                    invoice_dates=[],
                )
                self.session.add(model)
                self.session.flush()
        except IntegrityError:
            model = self._find(company_id, supplier)
            if model is None:
                raise
        return model
