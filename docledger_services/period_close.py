"""
docledger_services.period_close -- Pre-close checks and period closing.

Responsibility:
    Runs the pre-close check suite for one company month and drives the
    period through OPEN -> CLOSING -> CLOSED (or back to OPEN when a
    blocking check fails).  Builds the period summary persisted on close.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes PeriodService, SequenceService and AuditService; reads
    document jobs and bank transactions directly.

Invariants enforced:
    - Close lock: the period row is held FOR UPDATE from ``begin_closing``
      until the caller commits.  ``PeriodService.assert_writable`` takes
      the same lock, so a late posting either commits before the close
      starts or sees a non-OPEN period.
    - No CLOSED with blocking failures unless ``force``; a forced close
      records the failing check names in the period history.
    - Checks are read-only with respect to documents and vouchers.

Failure modes:
    - ``PeriodStateError`` for lock / reopen from the wrong status.
    - ``ValueError`` when reopening without a reason.
    - A check that raises internally degrades to WARNING (voucher
      sequence) so one broken check never hides the rest.

Audit relevance:
    Every run of checks is persisted; close, lock and reopen append
    period history entries and audit log entries.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from docledger_config import CompanyConfig
from docledger_engines import validate_classification
from docledger_kernel.domain.clock import Clock, SystemClock
from docledger_kernel.domain.documents import DocumentJob, DocumentType, JobStatus
from docledger_kernel.domain.period import (
    CheckRun,
    CheckStatus,
    ClosingResult,
    Period,
    PeriodStatus,
    PeriodSummary,
    PreCloseCheck,
    month_bounds,
    period_key,
)
from docledger_kernel.domain.voucher import VoucherNumber
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.bank import BankTransactionModel
from docledger_kernel.models.job import DocumentJobModel
from docledger_kernel.services.audit_service import AuditService
from docledger_kernel.services.period_service import PeriodService
from docledger_kernel.services.sequence_service import SequenceService

logger = get_logger("services.period_close")

# Job statuses that count as finished for the pending-documents check.
# A split parent is represented by its children.
_SETTLED = frozenset({JobStatus.APPROVED, JobStatus.SPLIT})

_INPUT_VAT_TYPES = frozenset({
    DocumentType.INVOICE,
    DocumentType.RECEIPT,
    DocumentType.CREDIT_NOTE,
    DocumentType.OTHER,
})


def _passed(name: str, blocking: bool, message: str, **details: Any) -> PreCloseCheck:
    return PreCloseCheck(name, CheckStatus.PASSED, blocking, message, details)


def _failed(name: str, blocking: bool, message: str, **details: Any) -> PreCloseCheck:
    status = CheckStatus.FAILED if blocking else CheckStatus.WARNING
    return PreCloseCheck(name, status, blocking, message, details)


class PeriodCloseOrchestrator:
    """
    Pre-close checks, close, lock, reopen and summaries for one company.

    Contract:
        Receives a caller-owned ``Session``; flushes and never commits.
        The facade wraps each call in ``session_scope``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: CompanyConfig | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.config = config or CompanyConfig()
        self._periods = PeriodService(session, self.clock)
        self._sequences = SequenceService(session, self.clock)
        self._audit = AuditService(session, self.clock)

        self._checks: tuple[Callable[[str, int, int, list[DocumentJob]], PreCloseCheck], ...] = (
            self._check_pending_documents,
            self._check_voucher_sequence,
            self._check_vat_reconciliation,
            self._check_bank_reconciliation,
            self._check_document_validation,
            self._check_future_dates,
            self._check_large_amounts,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def run_checks(self, company_id: str, year: int, month: int) -> CheckRun:
        """Run every pre-close check; read-only."""
        documents = self._documents(company_id, year, month)
        checks = tuple(check(company_id, year, month, documents) for check in self._checks)
        run = CheckRun(checks)
        logger.info(
            "pre_close_checks_completed",
            extra={
                "company_id": company_id,
                "period": period_key(year, month),
                "all_passed": run.all_passed,
                "blockers": [c.name for c in run.blockers],
                "warnings": [c.name for c in run.warnings],
            },
        )
        return run

    def _check_pending_documents(
        self, company_id: str, year: int, month: int, documents: list[DocumentJob],
    ) -> PreCloseCheck:
        name = "pending_documents"
        pending = [d for d in documents if d.status not in _SETTLED]
        if not pending:
            return _passed(name, True, "All documents in the period are approved")
        by_status = Counter(d.status.value for d in pending)
        return _failed(
            name, True,
            f"{len(pending)} document(s) in the period are not approved",
            count=len(pending),
            by_status=dict(by_status),
            job_ids=[str(d.id) for d in pending[: self.config.close.sample_limit]],
        )

    def _check_voucher_sequence(
        self, company_id: str, year: int, month: int, documents: list[DocumentJob],
    ) -> PreCloseCheck:
        name = "voucher_sequence"
        try:
            results = self._sequences.validate_all_series(company_id, year)
        except Exception as exc:
            logger.warning(
                "voucher_sequence_check_failed",
                extra={"company_id": company_id, "year": year},
                exc_info=True,
            )
            return PreCloseCheck(
                name, CheckStatus.WARNING, True, f"Voucher sequence could not be verified: {exc}",
            )

        broken = {series: v for series, v in results.items() if not v.is_valid}
        if not broken:
            return _passed(
                name, True, "Voucher sequences are contiguous",
                series={s: v.count for s, v in results.items() if v.count},
            )
        return _failed(
            name, True,
            "Voucher sequence has gaps or duplicates in series " + ", ".join(sorted(broken)),
            series={
                s: {"gaps": list(v.gaps), "duplicates": list(v.duplicates)}
                for s, v in sorted(broken.items())
            },
        )

    def _check_vat_reconciliation(
        self, company_id: str, year: int, month: int, documents: list[DocumentJob],
    ) -> PreCloseCheck:
        name = "vat_reconciliation"
        approved = [d for d in documents if d.status == JobStatus.APPROVED and d.classification]
        with_vat = [d for d in approved if d.classification.vat_amount]
        vat_input, vat_output = self._vat_totals(approved, posted_only=True)
        if with_vat and not (vat_input or vat_output):
            return _failed(
                name, True,
                "Documents carry VAT but no input or output VAT was booked",
                documents_with_vat=len(with_vat),
            )
        return _passed(
            name, True, "VAT reconciles",
            vat_input=str(vat_input),
            vat_output=str(vat_output),
            vat_to_pay=str(vat_output - vat_input),
        )

    def _check_bank_reconciliation(
        self, company_id: str, year: int, month: int, documents: list[DocumentJob],
    ) -> PreCloseCheck:
        name = "bank_reconciliation"
        start, end = month_bounds(year, month)
        unmatched = list(
            self.session.execute(
                select(BankTransactionModel).where(
                    BankTransactionModel.company_id == company_id,
                    BankTransactionModel.booking_date >= start,
                    BankTransactionModel.booking_date < end,
                    BankTransactionModel.is_matched.is_(False),
                )
            ).scalars()
        )
        if not unmatched:
            return _passed(name, True, "All bank transactions are matched")
        return _failed(
            name, True,
            f"{len(unmatched)} bank transaction(s) are unmatched",
            count=len(unmatched),
            amount=str(sum((t.amount for t in unmatched), Decimal("0"))),
            transaction_ids=[str(t.id) for t in unmatched[: self.config.close.sample_limit]],
        )

    def _check_document_validation(
        self, company_id: str, year: int, month: int, documents: list[DocumentJob],
    ) -> PreCloseCheck:
        name = "document_validation"
        today = self.clock.today()
        invalid: dict[str, list[str]] = {}
        for doc in documents:
            if doc.status != JobStatus.APPROVED and not doc.is_posted:
                continue
            if doc.classification is None:
                invalid[str(doc.id)] = ["NO_CLASSIFICATION"]
                continue
            result = validate_classification(
                doc.classification, today=today, base_currency=self.config.currency.base_currency,
            )
            if not result.passed:
                invalid[str(doc.id)] = [e.code for e in result.errors]

        if not invalid:
            return _passed(name, True, "Approved documents pass validation")
        sample = dict(list(invalid.items())[: self.config.close.sample_limit])
        return _failed(
            name, True,
            f"{len(invalid)} approved document(s) fail validation",
            count=len(invalid),
            documents=sample,
        )

    def _check_future_dates(
        self, company_id: str, year: int, month: int, documents: list[DocumentJob],
    ) -> PreCloseCheck:
        name = "future_dates"
        today = self.clock.today()
        future = [d for d in documents if d.document_date > today]
        if not future:
            return _passed(name, False, "No documents are dated in the future")
        return _failed(
            name, False,
            f"{len(future)} document(s) are dated in the future",
            count=len(future),
            job_ids=[str(d.id) for d in future[: self.config.close.sample_limit]],
        )

    def _check_large_amounts(
        self, company_id: str, year: int, month: int, documents: list[DocumentJob],
    ) -> PreCloseCheck:
        name = "large_amounts"
        threshold = self.config.close.large_amount_threshold
        large = [
            d for d in documents
            if d.classification is not None and abs(d.classification.total_amount) >= threshold
        ]
        if not large:
            return _passed(name, False, f"No documents at or above {threshold}", threshold=str(threshold))
        return _failed(
            name, False,
            f"{len(large)} document(s) at or above {threshold}",
            threshold=str(threshold),
            documents={
                str(d.id): str(d.classification.total_amount)
                for d in large[: self.config.close.sample_limit]
            },
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(
        self,
        company_id: str,
        year: int,
        month: int,
        actor: str,
        force: bool = False,
    ) -> ClosingResult:
        """
        Close a period.

        Holds the period row lock for the whole operation.  Returns
        ``success=False`` without changing status when blocking checks
        fail and ``force`` is false.
        """
        key = period_key(year, month)
        period = self._periods.get_or_create(company_id, year, month)
        if period.status in (PeriodStatus.CLOSED, PeriodStatus.LOCKED):
            return ClosingResult(
                success=False,
                period=period,
                message=f"already_closed: period {key} is {period.status.value}",
            )

        self._periods.begin_closing(company_id, year, month, actor)
        run = self.run_checks(company_id, year, month)
        self._periods.record_checks(company_id, year, month, run.checks)
        blockers = run.blockers

        if blockers and not force:
            period = self._periods.cancel_closing(
                company_id, year, month, actor, blockers=[c.name for c in blockers],
            )
            logger.warning(
                "period_close_blocked",
                extra={"company_id": company_id, "period": key, "blockers": [c.name for c in blockers]},
            )
            return ClosingResult(
                success=False,
                period=period,
                message=f"Period {key} has {len(blockers)} blocking check(s)",
                checks=run.checks,
                blockers=blockers,
                warnings=run.warnings,
            )

        summary = self.summary(company_id, year, month).to_dict()
        failed = [c.name for c in blockers]
        period = self._periods.mark_closed(
            company_id, year, month, actor, summary=summary, forced=bool(failed), failed_checks=failed,
        )
        self._audit.record(
            company_id, "period", key, "PERIOD_CLOSED", actor,
            {"forced": bool(failed), "failed_checks": failed},
        )
        if failed:
            logger.warning(
                "period_force_closed",
                extra={"company_id": company_id, "period": key, "failed_checks": failed, "actor": actor},
            )
        return ClosingResult(
            success=True,
            period=period,
            message=f"Period {key} closed" + (" (forced)" if failed else ""),
            checks=run.checks,
            blockers=blockers,
            warnings=run.warnings,
            summary=summary,
            forced=bool(failed),
        )

    def lock(self, company_id: str, year: int, month: int, actor: str) -> ClosingResult:
        period = self._periods.lock(company_id, year, month, actor)
        self._audit.record(company_id, "period", period.key, "PERIOD_LOCKED", actor, {})
        return ClosingResult(True, period, f"Period {period.key} locked")

    def reopen(self, company_id: str, year: int, month: int, actor: str, reason: str) -> ClosingResult:
        period = self._periods.reopen(company_id, year, month, actor, reason)
        self._audit.record(
            company_id, "period", period.key, "PERIOD_REOPENED", actor, {"reason": reason},
        )
        return ClosingResult(True, period, f"Period {period.key} reopened")

    def get_period(self, company_id: str, year: int, month: int) -> Period:
        return self._periods.get_or_create(company_id, year, month)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary(self, company_id: str, year: int, month: int) -> PeriodSummary:
        documents = self._documents(company_id, year, month)
        classified = [d for d in documents if d.classification is not None]
        approved = [d for d in classified if d.status == JobStatus.APPROVED]

        def total(types: set[DocumentType]) -> Decimal:
            return sum(
                (d.classification.total_amount for d in approved if d.classification.doc_type in types),
                Decimal("0"),
            )

        account_totals: dict[str, Decimal] = defaultdict(Decimal)
        for doc in approved:
            c = doc.classification
            if c.line_items:
                for line in c.line_items:
                    account = line.account or c.account or self.config.pipeline.default_account
                    account_totals[account] += line.net_amount
            else:
                account_totals[c.account or self.config.pipeline.default_account] += c.net_amount

        vat_input, vat_output = self._vat_totals(approved, posted_only=False)
        start, end = month_bounds(year, month)
        bank = list(
            self.session.execute(
                select(BankTransactionModel).where(
                    BankTransactionModel.company_id == company_id,
                    BankTransactionModel.booking_date >= start,
                    BankTransactionModel.booking_date < end,
                )
            ).scalars()
        )
        matched = [t for t in bank if t.is_matched]
        unmatched = [t for t in bank if not t.is_matched]

        return PeriodSummary(
            total_documents=len([d for d in documents if d.status != JobStatus.SPLIT]),
            approved_documents=len(approved),
            pending_documents=len([d for d in documents if d.status not in _SETTLED]),
            posted_documents=len([d for d in documents if d.is_posted]),
            total_invoice_amount=total({DocumentType.INVOICE, DocumentType.CREDIT_NOTE}),
            total_receipt_amount=total({DocumentType.RECEIPT}),
            vat_input=vat_input,
            vat_output=vat_output,
            account_totals=dict(account_totals),
            voucher_series=self._series_summary(company_id, year, documents),
            bank_matched_count=len(matched),
            bank_unmatched_count=len(unmatched),
            bank_matched_amount=sum((t.amount for t in matched), Decimal("0")),
            bank_unmatched_amount=sum((t.amount for t in unmatched), Decimal("0")),
            generated_at=self.clock.now(),
        )

    def _series_summary(
        self, company_id: str, year: int, documents: list[DocumentJob],
    ) -> dict[str, dict[str, Any]]:
        numbers: dict[str, list[int]] = defaultdict(list)
        for doc in documents:
            if doc.voucher_number:
                parsed = VoucherNumber.parse(doc.voucher_number)
                numbers[parsed.series].append(parsed.sequence)

        series: dict[str, dict[str, Any]] = {}
        for name, sequences in sorted(numbers.items()):
            validation = self._sequences.validate_sequence(company_id, name, year)
            series[name] = {
                "first": min(sequences),
                "last": max(sequences),
                "count": len(sequences),
                "gaps": list(validation.gaps),
            }
        return series

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _documents(self, company_id: str, year: int, month: int) -> list[DocumentJob]:
        """Jobs whose document date falls inside the month."""
        start, end = month_bounds(year, month)
        jobs = self.session.execute(
            select(DocumentJobModel)
            .where(DocumentJobModel.company_id == company_id)
            .order_by(DocumentJobModel.created_at)
        ).scalars()
        return [dto for dto in (job.to_dto() for job in jobs) if start <= dto.document_date < end]

    @staticmethod
    def _vat_totals(documents: list[DocumentJob], posted_only: bool) -> tuple[Decimal, Decimal]:
        vat_input = Decimal("0")
        vat_output = Decimal("0")
        for doc in documents:
            if doc.classification is None or (posted_only and not doc.is_posted):
                continue
            c = doc.classification
            if c.doc_type == DocumentType.SALES_INVOICE:
                vat_output += c.vat_amount
            elif c.doc_type in _INPUT_VAT_TYPES:
                vat_input += c.vat_amount
        return vat_input, vat_output
