"""
docledger_services.facade -- The public entry point.

Responsibility:
    ``DocLedger`` is what an API or UI layer talks to: document
    submission, job queries, approval decisions, voucher numbering,
    duplicate overrides and period closing.  Every call is one unit of
    work; the facade opens the session, commits on success and rolls back
    on error.

Architecture position:
    Services -- top of the service layer.  Wires the pipeline, the close
    orchestrator and the escalation scheduler to one session factory,
    one clock and one configuration registry.

Failure modes:
    Kernel exceptions (``ApprovalAuthorityError``, ``PeriodStateError``,
    ``OverrideReasonError``, ...) propagate unchanged to the caller.  An
    approval that succeeds but cannot be posted because the period is
    closed leaves the job ``ready`` with a warning instead of raising.

Usage:
    ledger = build_docledger("sqlite:///ledger.db", ocr=ocr, classifier=classifier)
    result = ledger.submit_document("acme", pdf_bytes, "invoice.pdf")
    ledger.approve(request_id, "manager-1", "manager")
    ledger.close_period("acme", 2024, 3, actor="controller-1")
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from docledger_config import ConfigRegistry
from docledger_kernel.db.engine import build_engine, create_tables, session_scope
from docledger_kernel.domain.approval import ApprovalRequest, ApprovalStats, ApprovalStatus
from docledger_kernel.domain.clock import Clock, SystemClock
from docledger_kernel.domain.documents import DocumentJob, JobStatus, SubmitResult
from docledger_kernel.domain.duplicates import DuplicateOverride, MatchType
from docledger_kernel.domain.period import CheckRun, ClosingResult, Period, PeriodHistoryEntry, PeriodSummary
from docledger_kernel.domain.voucher import SequenceValidation, VoucherNumber
from docledger_kernel.exceptions import AlreadyPostedError, PeriodNotWritableError
from docledger_kernel.logging_config import LogContext, get_logger
from docledger_kernel.services.approval_service import ApprovalService
from docledger_kernel.services.duplicate_service import DuplicateService
from docledger_kernel.services.period_service import PeriodService
from docledger_kernel.services.sequence_service import SequenceService
from docledger_services.currency import Conversion, CurrencyService, ProviderChain, RateQuote
from docledger_services.period_close import PeriodCloseOrchestrator
from docledger_services.pipeline import PipelineOrchestrator
from docledger_services.ports import (
    DocumentClassifier,
    ErpClient,
    ImagePreprocessor,
    InMemoryObjectStore,
    ObjectStore,
    OcrService,
    PeriodizationAdvisor,
    RateProvider,
)
from docledger_services.runner import JobRunner, ThreadPoolJobRunner
from docledger_services.scheduler import ApprovalEscalationScheduler

logger = get_logger("services.facade")

DEFAULT_DATABASE_URL = "sqlite:///docledger.db"


class DocLedger:
    """
    Document ledger facade.

    Contract:
        Each public method runs in its own transaction.  Approval and
        posting are separate transactions: an approved request stays
        approved even when the posting that follows is held back by a
        closed period.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        ocr: OcrService,
        classifier: DocumentClassifier,
        *,
        object_store: ObjectStore | None = None,
        config: ConfigRegistry | None = None,
        clock: Clock | None = None,
        runner: JobRunner | None = None,
        erp: ErpClient | None = None,
        preprocessor: ImagePreprocessor | None = None,
        periodizer: PeriodizationAdvisor | None = None,
        rate_providers: Iterable[RateProvider] = (),
        escalation_interval_seconds: float = 300,
    ):
        self.session_factory = session_factory
        self.config = config or ConfigRegistry()
        self.clock = clock or SystemClock()
        self.rate_chain = ProviderChain(rate_providers)
        self.pipeline = PipelineOrchestrator(
            session_factory,
            object_store if object_store is not None else InMemoryObjectStore(),
            ocr,
            classifier,
            runner=runner,
            config=self.config,
            clock=self.clock,
            erp=erp,
            preprocessor=preprocessor,
            periodizer=periodizer,
            rate_chain=self.rate_chain,
        )
        self.escalations = ApprovalEscalationScheduler(
            session_factory,
            config=self.config,
            clock=self.clock,
            interval_seconds=escalation_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def submit_document(
        self,
        company_id: str,
        content: bytes,
        file_name: str,
        mime_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> SubmitResult:
        return self.pipeline.submit(company_id, content, file_name, mime_type, metadata, request_id)

    def get_job(self, job_id: UUID) -> DocumentJob:
        return self.pipeline.get_job(job_id)

    def list_jobs(self, company_id: str, status: JobStatus | None = None, limit: int | None = None) -> list[DocumentJob]:
        return self.pipeline.list_jobs(company_id, status, limit)

    def retry_job(self, job_id: UUID) -> DocumentJob:
        return self.pipeline.retry_job(job_id)

    def resume_pending(self, company_id: str | None = None) -> list[UUID]:
        return self.pipeline.resume_pending(company_id)

    def delete_job(self, job_id: UUID, actor: str) -> None:
        self.pipeline.delete_job(job_id, actor)

    def approve_job(self, job_id: UUID, actor: str, actor_role: str | None = None) -> DocumentJob:
        """
        Post a ``ready`` job.  Jobs with an approval request need it APPROVED
        first; jobs without one need ``actor_role`` to cover the amount's tier.
        """
        with LogContext.bind(actor_id=actor, job_id=str(job_id)):
            return self.pipeline.approve_job(job_id, actor, actor_role)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def approve(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str,
        comment: str | None = None,
    ) -> ApprovalRequest:
        """
        Record an approval.  When the request becomes APPROVED the job is
        posted in a second transaction.
        """
        with LogContext.bind(actor_id=actor_id):
            with session_scope(self.session_factory) as session:
                request = self._approvals(session, request_id).approve(
                    request_id, actor_id, actor_role, comment,
                )
            if request.status == ApprovalStatus.APPROVED:
                self._post_approved(request, actor_id)
            return request

    def reject(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str,
        reason: str | None = None,
    ) -> ApprovalRequest:
        with LogContext.bind(actor_id=actor_id):
            with session_scope(self.session_factory) as session:
                request = self._approvals(session, request_id).reject(
                    request_id, actor_id, actor_role, reason,
                )
            self.pipeline.add_warning(
                request.job_id,
                f"Approval rejected by {actor_id}" + (f": {reason}" if reason else ""),
                {"approval_status": request.status.value},
            )
            return request

    def escalate(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str,
        reason: str | None = None,
        escalate_to: str | None = None,
    ) -> ApprovalRequest:
        with LogContext.bind(actor_id=actor_id):
            with session_scope(self.session_factory) as session:
                return self._approvals(session, request_id).escalate(
                    request_id, actor_id, actor_role, reason, escalate_to,
                )

    def delegate(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str,
        delegate_to: str,
        comment: str | None = None,
    ) -> ApprovalRequest:
        with LogContext.bind(actor_id=actor_id):
            with session_scope(self.session_factory) as session:
                return self._approvals(session, request_id).delegate(
                    request_id, actor_id, actor_role, delegate_to, comment,
                )

    def get_approval(self, request_id: UUID) -> ApprovalRequest:
        with session_scope(self.session_factory) as session:
            return ApprovalService(session, self.clock).get_request(request_id)

    def pending_approvals(self, company_id: str, role: str | None = None) -> list[ApprovalRequest]:
        with session_scope(self.session_factory) as session:
            return ApprovalService(session, self.clock).pending_requests(company_id, role)

    def approval_stats(self, company_id: str) -> ApprovalStats:
        with session_scope(self.session_factory) as session:
            return ApprovalService(session, self.clock).stats(company_id)

    def escalate_overdue(self) -> list[ApprovalRequest]:
        """Run one escalation sweep now and return the escalated requests."""
        with session_scope(self.session_factory) as session:
            return self.escalations.sweep(session)

    def _approvals(self, session: Session, request_id: UUID) -> ApprovalService:
        company_id = ApprovalService(session, self.clock).get_request(request_id).company_id
        return ApprovalService(session, self.clock, self.config.for_company(company_id).approval)

    def _post_approved(self, request: ApprovalRequest, actor: str) -> None:
        try:
            self.pipeline.approve_job(request.job_id, actor)
        except AlreadyPostedError as exc:
            logger.info(
                "approved_job_already_posted",
                extra={"job_id": str(request.job_id), "voucher_number": exc.voucher_number},
            )
        except PeriodNotWritableError as exc:
            logger.warning(
                "approved_job_posting_held",
                extra={"job_id": str(request.job_id), "period": exc.period_key, "status": exc.status},
            )
            self.pipeline.add_warning(
                request.job_id,
                f"Approved but not posted: {exc}",
                {"approval_status": request.status.value},
            )

    # ------------------------------------------------------------------
    # Duplicates
    # ------------------------------------------------------------------

    def register_duplicate_override(
        self,
        company_id: str,
        original_job_id: UUID,
        new_job_id: UUID,
        reason: str,
        approved_by: str,
        match_type: MatchType | None = None,
        new_file_hash: str | None = None,
    ) -> DuplicateOverride:
        with session_scope(self.session_factory) as session:
            return DuplicateService(session, self.clock).register_override(
                company_id, original_job_id, new_job_id, reason, approved_by,
                match_type=match_type, new_file_hash=new_file_hash,
            )

    # ------------------------------------------------------------------
    # Vouchers
    # ------------------------------------------------------------------

    def next_voucher_number(
        self, company_id: str, series: str, year: int, description: str | None = None,
    ) -> VoucherNumber:
        with session_scope(self.session_factory) as session:
            return SequenceService(session, self.clock).next(
                company_id, series, year, description=description,
            )

    def validate_voucher_sequence(self, company_id: str, series: str, year: int) -> SequenceValidation:
        with session_scope(self.session_factory) as session:
            return SequenceService(session, self.clock).validate_sequence(company_id, series, year)

    # ------------------------------------------------------------------
    # Periods
    # ------------------------------------------------------------------

    def run_pre_close_checks(self, company_id: str, year: int, month: int) -> CheckRun:
        with session_scope(self.session_factory) as session:
            run = self._close(session, company_id).run_checks(company_id, year, month)
            PeriodService(session, self.clock).record_checks(company_id, year, month, run.checks)
            return run

    def close_period(
        self, company_id: str, year: int, month: int, actor: str, force: bool = False,
    ) -> ClosingResult:
        with LogContext.bind(actor_id=actor, company_id=company_id):
            with session_scope(self.session_factory) as session:
                return self._close(session, company_id).close(company_id, year, month, actor, force)

    def lock_period(self, company_id: str, year: int, month: int, actor: str) -> ClosingResult:
        with session_scope(self.session_factory) as session:
            return self._close(session, company_id).lock(company_id, year, month, actor)

    def reopen_period(
        self, company_id: str, year: int, month: int, actor: str, reason: str,
    ) -> ClosingResult:
        with session_scope(self.session_factory) as session:
            return self._close(session, company_id).reopen(company_id, year, month, actor, reason)

    def get_period(self, company_id: str, year: int, month: int) -> Period:
        with session_scope(self.session_factory) as session:
            return PeriodService(session, self.clock).get_or_create(company_id, year, month)

    def period_history(self, company_id: str, year: int, month: int) -> list[PeriodHistoryEntry]:
        with session_scope(self.session_factory) as session:
            return PeriodService(session, self.clock).history(company_id, year, month)

    def period_summary(self, company_id: str, year: int, month: int) -> PeriodSummary:
        with session_scope(self.session_factory) as session:
            return self._close(session, company_id).summary(company_id, year, month)

    def _close(self, session: Session, company_id: str) -> PeriodCloseOrchestrator:
        return PeriodCloseOrchestrator(session, self.clock, self.config.for_company(company_id))

    # ------------------------------------------------------------------
    # Currency
    # ------------------------------------------------------------------

    def exchange_rate(
        self, company_id: str, from_currency: str, to_currency: str | None = None, on_date: date | None = None,
    ) -> RateQuote:
        with session_scope(self.session_factory) as session:
            return self._currency(session, company_id).rate(from_currency, to_currency, on_date)

    def convert_amount(
        self,
        company_id: str,
        amount: Decimal,
        from_currency: str,
        to_currency: str | None = None,
        on_date: date | None = None,
    ) -> Conversion:
        with session_scope(self.session_factory) as session:
            return self._currency(session, company_id).convert(amount, from_currency, to_currency, on_date)

    def _currency(self, session: Session, company_id: str) -> CurrencyService:
        currency = self.config.for_company(company_id).currency
        return CurrencyService(
            session,
            chain=self.rate_chain,
            clock=self.clock,
            base_currency=currency.base_currency,
            max_lookback_days=currency.max_lookback_days,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the escalation sweep and pick up interrupted jobs."""
        self.escalations.start()
        self.pipeline.resume_pending()

    def shutdown(self, wait: bool = True) -> None:
        self.escalations.stop()
        shutdown = getattr(self.pipeline.runner, "shutdown", None)
        if shutdown is not None:
            shutdown(wait=wait)
        self.rate_chain.shutdown()
        logger.info("docledger_stopped")


def build_docledger(
    database_url: str | None = None,
    *,
    ocr: OcrService,
    classifier: DocumentClassifier,
    config_path: str | Path | None = None,
    object_store: ObjectStore | None = None,
    max_workers: int | None = None,
    **options: Any,
) -> DocLedger:
    """
    Build a ``DocLedger`` against a database URL.

    The URL defaults to ``DATABASE_URL`` from the environment, then a
    local SQLite file.  Tables are created when missing.
    """
    url = database_url or os.environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL
    engine = build_engine(url)
    create_tables(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)

    config = ConfigRegistry.from_file(config_path) if config_path else ConfigRegistry()
    workers = max_workers or config.for_company("default").pipeline.max_workers
    options.setdefault("runner", ThreadPoolJobRunner(max_workers=workers))

    logger.info("docledger_built", extra={"dialect": engine.dialect.name, "max_workers": workers})
    return DocLedger(
        factory,
        ocr,
        classifier,
        object_store=object_store,
        config=config,
        **options,
    )
