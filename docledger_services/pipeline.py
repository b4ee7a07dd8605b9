"""
docledger_services.pipeline -- Document job pipeline.

Responsibility:
    Drives a submitted document from upload to a final status:

        queued -> uploading -> scanning -> ocr -> analyzing -> ready | approved
                                      \\-> split (one child job per receipt)

    Every stage runs in its own short transaction and writes its output
    (file_ref, ocr_text, classification) before the status advances, so a
    job picked up again resumes at the stage matching its status.

Architecture position:
    Services -- stateful orchestration over engines + kernel.  The only
    module that calls the external collaborators (store, OCR, classifier,
    ERP) and the only place where job transactions are committed.

Invariants enforced:
    - Status changes follow ``JOB_TRANSITIONS``; an illegal change raises
      ``InvalidJobTransitionError``.
    - Final decision, fingerprint registration, voucher numbering and the
      job update commit in one transaction under the job row lock.
    - A job is posted at most once (``AlreadyPostedError`` otherwise).
    - External calls (store upload, ERP) happen outside database
      transactions.

Failure modes:
    - Classification or OCR failure -> job ``error`` (retryable).
    - Currency, periodization, preprocessing, receipt detection and ERP
      failures -> job warning; processing continues.
    - Exact or likely duplicate -> job ``error`` with the matched job id.

Audit relevance:
    Auto-approval, posting and deletion each write an audit entry.

Usage:
    pipeline = PipelineOrchestrator(factory, store, ocr, classifier, config=registry)
    result = pipeline.submit("acme", pdf_bytes, "invoice.pdf")
    job = pipeline.get_job(result.job_id)
"""

from __future__ import annotations

import mimetypes
import threading
from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import PurePosixPath
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from docledger_config import ConfigRegistry, CompanyConfig
from docledger_engines import (
    AutoApprovalContext,
    DecisionFacts,
    correct_line_items,
    decide_status,
    detect_anomalies,
    evaluate_approval,
    evaluate_policy,
    evaluate_rules,
    validate_classification,
)
from docledger_kernel.db.engine import session_scope
from docledger_kernel.domain.approval import (
    LEVEL_ORDER,
    ApprovalEvaluation,
    ApprovalLevel,
    ApprovalStatus,
    ApproverRole,
    role_has_authority,
    role_rank,
)
from docledger_kernel.domain.clock import Clock, SystemClock
from docledger_kernel.domain.documents import (
    PIPELINE_STAGES,
    TERMINAL_JOB_STATUSES,
    Classification,
    DocumentJob,
    JobStatus,
    SubmitResult,
    SubmitStatus,
    can_transition,
)
from docledger_kernel.domain.duplicates import (
    DuplicateCheckResult,
    DuplicateConfidence,
    Fingerprint,
)
from docledger_kernel.domain.voucher import series_for
from docledger_kernel.exceptions import (
    AlreadyPostedError,
    ApprovalRequiredError,
    ExternalServiceError,
    InvalidJobTransitionError,
    JobNotFoundError,
    JobReferencedError,
    PeriodNotWritableError,
    PolicyRejectedError,
    PostingAuthorityError,
)
from docledger_kernel.logging_config import LogContext, get_logger
from docledger_kernel.models.job import DocumentJobModel
from docledger_kernel.services.approval_service import ApprovalService
from docledger_kernel.services.audit_service import AuditService
from docledger_kernel.services.duplicate_service import DuplicateService
from docledger_kernel.services.period_service import PeriodService
from docledger_kernel.services.sequence_service import SequenceService
from docledger_kernel.services.supplier_history_service import SupplierHistoryService
from docledger_kernel.utils.hashing import hash_file, hash_payload
from docledger_services.currency import CurrencyService, ProviderChain
from docledger_services.ports import (
    DocumentClassifier,
    ErpClient,
    ImagePreprocessor,
    NoPeriodization,
    ObjectStore,
    OcrService,
    PassthroughPreprocessor,
    PeriodizationAdvisor,
)
from docledger_services.runner import InlineJobRunner, JobRunner

logger = get_logger("services.pipeline")

SYSTEM_ACTOR = "system"


def _is_image(mime_type: str | None) -> bool:
    return bool(mime_type) and mime_type.startswith("image/")


def _receipt_file_name(file_name: str, number: int) -> str:
    path = PurePosixPath(file_name)
    return f"{path.stem}_receipt_{number}{path.suffix}"


def _hint_decimal(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value not in (None, "") else None


def _hint_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _evaluation_dict(evaluation: ApprovalEvaluation) -> dict[str, Any]:
    return {
        "requires_approval": evaluation.requires_approval,
        "required_level": evaluation.required_level.value,
        "matched_rules": list(evaluation.matched_rules),
        "reason": evaluation.reason,
        "required_role": evaluation.required_role,
    }


class PipelineOrchestrator:
    """
    Owns job processing end to end.

    Collaborators are injected; the pipeline never constructs an OCR
    engine, classifier or ERP client itself.  Kernel services are built
    per transaction on the session that transaction uses.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        object_store: ObjectStore,
        ocr: OcrService,
        classifier: DocumentClassifier,
        *,
        runner: JobRunner | None = None,
        config: ConfigRegistry | None = None,
        clock: Clock | None = None,
        erp: ErpClient | None = None,
        preprocessor: ImagePreprocessor | None = None,
        periodizer: PeriodizationAdvisor | None = None,
        rate_chain: ProviderChain | None = None,
    ):
        self.session_factory = session_factory
        self.store = object_store
        self.ocr = ocr
        self.classifier = classifier
        self.config = config or ConfigRegistry()
        self.clock = clock or SystemClock()
        self.erp = erp
        self.preprocessor = preprocessor or PassthroughPreprocessor()
        self.periodizer = periodizer or NoPeriodization()
        self.rate_chain = rate_chain or ProviderChain()
        self.runner = runner or InlineJobRunner()
        self.runner.bind(self.process)

        # Submitted bytes kept until the job no longer needs them
        self._contents: dict[UUID, bytes] = {}
        self._contents_lock = threading.Lock()

        self._stages = {
            JobStatus.QUEUED: self._upload,
            JobStatus.UPLOADING: self._upload,
            JobStatus.SCANNING: self._scan,
            JobStatus.OCR: self._ocr,
            JobStatus.ANALYZING: self._analyze,
        }

    # =====================================================================
    # Submission
    # =====================================================================

    def submit(
        self,
        company_id: str,
        content: bytes,
        file_name: str,
        mime_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> SubmitResult:
        """
        Accept a document and dispatch it for processing.

        A ``request_id`` makes the call idempotent: resubmitting the same
        file with the same request id returns the job created the first
        time.  Exact and likely duplicates are refused without creating a
        job; possible duplicates are queued with a warning.
        """
        if not content:
            raise ValueError("document content is empty")
        metadata = dict(metadata or {})
        mime_type = mime_type or mimetypes.guess_type(file_name)[0]
        file_hash = hash_file(content)

        with LogContext.bind(company_id=company_id, request_id=request_id):
            with session_scope(self.session_factory) as session:
                if request_id:
                    replay = self._find_submission(session, company_id, file_hash, request_id)
                    if replay is not None:
                        logger.info(
                            "submission_replayed",
                            extra={"job_id": str(replay.id), "request_id": request_id},
                        )
                        return SubmitResult(replay.id, SubmitStatus.QUEUED, message="Already submitted")

                fingerprint = Fingerprint(
                    company_id=company_id,
                    file_hash=file_hash,
                    supplier=metadata.get("supplier"),
                    invoice_number=metadata.get("invoice_number"),
                    amount=_hint_decimal(metadata.get("amount")),
                    invoice_date=_hint_date(metadata.get("invoice_date")),
                )
                duplicate = DuplicateService(session, self.clock).check(fingerprint, request_id)
                if duplicate.is_blocking:
                    logger.warning(
                        "submission_blocked_duplicate",
                        extra={
                            "matched_job_id": str(duplicate.matched_job_id),
                            "confidence": duplicate.confidence.value,
                        },
                    )
                    return SubmitResult(
                        None, SubmitStatus.DUPLICATE_BLOCKED, duplicate, duplicate.reason,
                    )

                now = self.clock.now()
                job = DocumentJobModel(
                    id=uuid4(),
                    company_id=company_id,
                    status=JobStatus.QUEUED.value,
                    file_name=file_name,
                    mime_type=mime_type,
                    file_hash=file_hash,
                    warnings=[],
                    job_metadata={
                        **metadata,
                        "request_id": request_id,
                        "submission_duplicate": duplicate.to_dict(),
                    },
                    created_at=now,
                    updated_at=now,
                )
                session.add(job)
                session.flush()
                job_id = job.id

            logger.info(
                "document_submitted",
                extra={"job_id": str(job_id), "file_name": file_name, "size": len(content)},
            )

        self._stash(job_id, content)
        self.runner.dispatch(job_id)

        if duplicate.confidence != DuplicateConfidence.NONE:
            return SubmitResult(job_id, SubmitStatus.DUPLICATE_WARNING, duplicate, duplicate.reason)
        return SubmitResult(job_id, SubmitStatus.QUEUED, duplicate)

    def _find_submission(
        self, session: Session, company_id: str, file_hash: str, request_id: str,
    ) -> DocumentJobModel | None:
        candidates = session.execute(
            select(DocumentJobModel).where(
                DocumentJobModel.company_id == company_id,
                DocumentJobModel.file_hash == file_hash,
            )
        ).scalars()
        for job in candidates:
            if (job.job_metadata or {}).get("request_id") == request_id:
                return job
        return None

    # =====================================================================
    # Processing
    # =====================================================================

    def process(self, job_id: UUID) -> DocumentJob:
        """
        Run the job through its remaining stages.

        Safe to call for a job in any status: terminal jobs are returned
        unchanged.  A stage that raises moves the job to ``error``.
        """
        with LogContext.bind(job_id=str(job_id)):
            while True:
                status = self._status(job_id)
                if status in TERMINAL_JOB_STATUSES:
                    break
                stage = self._stages[status]
                try:
                    stage(job_id)
                except Exception as exc:
                    logger.warning(
                        "job_stage_exception",
                        extra={"job_id": str(job_id), "stage": status.value},
                        exc_info=True,
                    )
                    self._fail(job_id, str(exc))
                    break
            job = self.get_job(job_id)
            # Once stored, a retry reads the bytes back from the object store
            if job.status != JobStatus.ERROR or job.file_ref is not None:
                self._release(job_id)
            return job

    def resume_pending(self, company_id: str | None = None) -> list[UUID]:
        """Dispatch every job that stopped part way through the pipeline."""
        with session_scope(self.session_factory) as session:
            query = select(DocumentJobModel.id).where(
                DocumentJobModel.status.in_([s.value for s in PIPELINE_STAGES])
            )
            if company_id is not None:
                query = query.where(DocumentJobModel.company_id == company_id)
            job_ids = list(session.execute(query.order_by(DocumentJobModel.created_at)).scalars())

        logger.info("jobs_resumed", extra={"count": len(job_ids), "company_id": company_id})
        for job_id in job_ids:
            self.runner.dispatch(job_id)
        return job_ids

    def retry_job(self, job_id: UUID) -> DocumentJob:
        """Move a failed job back to ``queued``; it resumes at its last checkpoint."""
        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            self._transition(job, JobStatus.QUEUED)
            job.error = None
            meta = dict(job.job_metadata or {})
            meta["retry_count"] = int(meta.get("retry_count", 0)) + 1
            job.job_metadata = meta

        logger.info("job_retried", extra={"job_id": str(job_id), "retry_count": meta["retry_count"]})
        self.runner.dispatch(job_id)
        return self.get_job(job_id)

    # ---------------------------------------------------------------------
    # Stages
    # ---------------------------------------------------------------------

    def _upload(self, job_id: UUID) -> None:
        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            if job.job_status == JobStatus.QUEUED:
                self._transition(job, JobStatus.UPLOADING)
            file_ref = job.file_ref
            company_id, file_name, mime_type = job.company_id, job.file_name, job.mime_type

        if file_ref is None:
            content = self._stashed(job_id)
            if content is None:
                raise ExternalServiceError(
                    "upload", "file content is no longer available; resubmit the document",
                )
            file_ref = self.store.upload(company_id, file_name, content, mime_type)
            logger.info("document_uploaded", extra={"job_id": str(job_id), "file_ref": file_ref})

        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            job.file_ref = file_ref
            self._transition(job, JobStatus.SCANNING)

    def _scan(self, job_id: UUID) -> None:
        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            snapshot = job.to_dto()
            parent_job_id = job.parent_job_id

        config = self.config.for_company(snapshot.company_id)
        warnings: list[str] = []
        receipts = []

        if _is_image(snapshot.mime_type) and not snapshot.metadata.get("scanned"):
            content = self._content(job_id, snapshot.file_ref)
            try:
                content = self.preprocessor.preprocess(content, snapshot.mime_type)
                self._stash(job_id, content)
            except Exception as exc:
                logger.warning("image_preprocessing_failed", extra={"job_id": str(job_id)}, exc_info=True)
                warnings.append(f"Image preprocessing failed: {exc}")

            if parent_job_id is None and config.pipeline.detect_multiple_receipts:
                try:
                    receipts = list(self.classifier.detect_receipts(content, snapshot.mime_type))
                except Exception as exc:
                    logger.warning("receipt_detection_failed", extra={"job_id": str(job_id)}, exc_info=True)
                    warnings.append(f"Receipt detection failed: {exc}")

        if len(receipts) > 1:
            self._split(job_id, snapshot, receipts, warnings)
            return

        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            for warning in warnings:
                job.add_warning(warning)
            job.job_metadata = {**(job.job_metadata or {}), "scanned": True}
            self._transition(job, JobStatus.OCR)

    def _split(self, job_id: UUID, parent: DocumentJob, receipts: list, warnings: list[str]) -> None:
        parent_content = self._stashed(job_id)
        children: list[tuple[UUID, bytes | None]] = []

        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            now = self.clock.now()
            for number, receipt in enumerate(receipts, start=1):
                if receipt.content:
                    file_hash = hash_file(receipt.content)
                else:
                    file_hash = hash_payload({"parent_hash": parent.file_hash, "index": receipt.index})
                child = DocumentJobModel(
                    id=uuid4(),
                    company_id=parent.company_id,
                    status=JobStatus.QUEUED.value,
                    file_name=_receipt_file_name(parent.file_name, number),
                    mime_type=parent.mime_type,
                    file_hash=file_hash,
                    warnings=[],
                    job_metadata={
                        "parent_job_id": str(job_id),
                        "receipt_index": receipt.index,
                        "receipt_description": receipt.description,
                        "bounds": dict(receipt.bounds) if receipt.bounds else None,
                        "scanned": receipt.content is None,
                    },
                    parent_job_id=job_id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(child)
                children.append((child.id, receipt.content or parent_content))

            for warning in warnings:
                job.add_warning(warning)
            job.split_info = {
                "receipt_count": len(receipts),
                "child_job_ids": [str(child_id) for child_id, _ in children],
            }
            self._transition(job, JobStatus.SPLIT)

        logger.info("job_split", extra={"job_id": str(job_id), "receipt_count": len(receipts)})
        for child_id, content in children:
            if content is not None:
                self._stash(child_id, content)
            self.runner.dispatch(child_id)

    def _ocr(self, job_id: UUID) -> None:
        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            snapshot = job.to_dto()
            text = job.ocr_text

        if not text:
            content = self._content(job_id, snapshot.file_ref)
            text = self.ocr.extract_text(content, snapshot.mime_type, snapshot.file_name)
            if not text or not text.strip():
                raise ExternalServiceError("ocr", "no text could be extracted from the document")
            logger.info("ocr_completed", extra={"job_id": str(job_id), "characters": len(text)})

        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            job.ocr_text = text
            self._transition(job, JobStatus.ANALYZING)

    def _analyze(self, job_id: UUID) -> None:
        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            company_id, file_name, text = job.company_id, job.file_name, job.ocr_text or ""
            raw = job.get_classification()

        config = self.config.for_company(company_id)

        if raw is None:
            try:
                raw = self.classifier.classify(text, company_id=company_id, file_name=file_name)
            except Exception as exc:
                raise ExternalServiceError("classifier", f"Classification failed: {exc}") from exc
            with session_scope(self.session_factory) as session:
                job = self._lock(session, job_id)
                job.set_classification(raw)
            logger.info(
                "document_classified",
                extra={"job_id": str(job_id), "doc_type": raw.doc_type.value, "confidence": raw.confidence},
            )

        classification, enrichment, warnings = self._enrich(job_id, raw, config)

        with session_scope(self.session_factory) as session:
            final_status = self._decide(session, job_id, classification, enrichment, warnings, config)

        if final_status == JobStatus.APPROVED:
            self._sync_erp(job_id)

    # ---------------------------------------------------------------------
    # Analysis helpers
    # ---------------------------------------------------------------------

    def _enrich(
        self, job_id: UUID, classification: Classification, config: CompanyConfig,
    ) -> tuple[Classification, dict[str, Any], list[str]]:
        """Line correction, policy, currency and periodization.  No locks held."""
        c = classification
        enrichment: dict[str, Any] = {}
        warnings: list[str] = []

        if config.pipeline.correct_line_items:
            correction = correct_line_items(c, config.pipeline.default_account)
            c = correction.classification
            if correction.changed:
                enrichment["line_corrections"] = list(correction.adjustments)

        policy = evaluate_policy(config.policy, c)
        c = policy.classification
        enrichment["policy"] = policy

        base = config.currency.base_currency
        if config.pipeline.convert_currency and c.currency != base and c.original_currency is None:
            try:
                with session_scope(self.session_factory) as session:
                    c = CurrencyService(
                        session,
                        chain=self.rate_chain,
                        clock=self.clock,
                        base_currency=base,
                        max_lookback_days=config.currency.max_lookback_days,
                    ).convert_classification(c)
            except Exception as exc:
                logger.warning("currency_conversion_failed", extra={"job_id": str(job_id)}, exc_info=True)
                warnings.append(f"Currency conversion failed: {exc}")

        try:
            hint = self.periodizer.suggest(c)
        except Exception as exc:
            logger.warning("periodization_failed", extra={"job_id": str(job_id)}, exc_info=True)
            warnings.append(f"Periodization failed: {exc}")
        else:
            if hint:
                c = c.with_changes(periodization=hint)

        return c, enrichment, warnings

    def _decide(
        self,
        session: Session,
        job_id: UUID,
        c: Classification,
        enrichment: dict[str, Any],
        warnings: list[str],
        config: CompanyConfig,
    ) -> JobStatus:
        """The decision transaction: validate, dedupe, score, decide, post."""
        job = self._lock(session, job_id)
        if job.job_status != JobStatus.ANALYZING:
            return job.job_status
        for warning in warnings:
            job.add_warning(warning)

        today = self.clock.today()
        validation = validate_classification(
            c,
            today=today,
            fiscal_year=config.fiscal_year(today),
            base_currency=config.currency.base_currency,
        )

        duplicates = DuplicateService(session, self.clock)
        fingerprint = self._fingerprint(job, c)
        duplicate = duplicates.check(fingerprint)
        if not duplicate.is_blocking and not duplicates.register_fingerprint(fingerprint):
            duplicate = duplicates.lost_registration(fingerprint)
        if duplicate.is_blocking:
            self._reject_duplicate(job, duplicate)
            return JobStatus.ERROR
        duplicate_warning = duplicate.is_duplicate

        suppliers = SupplierHistoryService(session, self.clock)
        history = suppliers.history(job.company_id, c.supplier)
        anomaly = detect_anomalies(c, history, today=today)
        policy = enrichment["policy"]
        auto_decision = evaluate_rules(
            AutoApprovalContext(
                confidence=c.confidence,
                amount=abs(c.total_amount),
                doc_type=c.doc_type,
                has_duplicate_warning=duplicate_warning,
                history=history,
            ),
            config.auto_approval_rules,
        )
        evaluation = evaluate_approval(
            abs(c.total_amount), history.is_new, anomaly, c.confidence, config.approval, supplier=c.supplier,
        )

        facts = DecisionFacts(
            policy_rejected=policy.reject,
            policy_requires_approval=policy.requires_approval,
            validation_failed=not validation.passed,
            anomaly_blocks_auto_approve=anomaly.blocks_auto_approve,
            workflow_requires_approval=evaluation.requires_approval,
            rule_auto_approve=config.approval.enable_auto_approval
            and (auto_decision.should_auto_approve or policy.auto_approve),
            duplicate_warning=duplicate_warning,
            has_warnings=bool(job.warnings),
        )
        rule, outcome = decide_status(facts)
        status, requires_approval = outcome.status, outcome.requires_approval

        job.set_classification(c)

        if outcome.create_request:
            request = ApprovalService(session, self.clock, config.approval).create_request(
                job.id,
                job.company_id,
                abs(c.total_amount),
                self._request_evaluation(evaluation, policy.summary, config),
                currency=c.currency,
            )
            job.approval_request_id = request.id

        if status == JobStatus.APPROVED:
            try:
                self._post_in(session, job, c, SYSTEM_ACTOR)
            except PeriodNotWritableError as exc:
                status, requires_approval = JobStatus.READY, True
                rule = "period_not_writable"
                job.add_warning(f"Auto-approval held: {exc}")
            else:
                AuditService(session, self.clock).record(
                    job.company_id, "document_job", job.id, "JOB_AUTO_APPROVED", SYSTEM_ACTOR,
                    {"rule": auto_decision.matched_rule, "policy_rule": policy.matched_rule},
                )

        job.anomaly_report = anomaly.to_dict()
        job.requires_approval = requires_approval
        job.job_metadata = {
            **(job.job_metadata or {}),
            "validation": {
                "passed": validation.passed,
                "errors": [i.to_dict() for i in validation.errors],
                "warnings": [i.to_dict() for i in validation.warnings],
            },
            "policy": policy.to_dict(),
            "auto_approval": auto_decision.to_dict(),
            "approval_evaluation": _evaluation_dict(evaluation),
            "duplicate": duplicate.to_dict(),
            "decision_rule": rule,
            "line_corrections": enrichment.get("line_corrections", []),
        }
        self._transition(job, status)

        logger.info(
            "job_analyzed",
            extra={
                "job_id": str(job.id),
                "status": status.value,
                "decision_rule": rule,
                "risk_score": anomaly.risk_score,
                "requires_approval": requires_approval,
            },
        )
        return status

    def _request_evaluation(
        self, evaluation: ApprovalEvaluation, reason: str, config: CompanyConfig,
    ) -> ApprovalEvaluation:
        """Policy-driven requests go to at least the standard tier."""
        if evaluation.requires_approval:
            return evaluation
        level = evaluation.required_level
        if LEVEL_ORDER.index(level) < LEVEL_ORDER.index(ApprovalLevel.STANDARD):
            level = ApprovalLevel.STANDARD
        threshold = config.approval.threshold_for(level)
        return replace(
            evaluation,
            requires_approval=True,
            required_level=level,
            matched_rules=(*evaluation.matched_rules, "accounting_policy"),
            reason=reason,
            required_role=threshold.required_role,
            suggested_approvers=threshold.approvers,
        )

    def _reject_duplicate(self, job: DocumentJobModel, duplicate: DuplicateCheckResult) -> None:
        job.error = f"Duplicate: {duplicate.reason} (job {duplicate.matched_job_id})"
        job.job_metadata = {**(job.job_metadata or {}), "duplicate": duplicate.to_dict()}
        self._transition(job, JobStatus.ERROR)
        logger.warning(
            "job_duplicate_rejected",
            extra={
                "job_id": str(job.id),
                "matched_job_id": str(duplicate.matched_job_id),
                "confidence": duplicate.confidence.value,
            },
        )

    @staticmethod
    def _fingerprint(job: DocumentJobModel, c: Classification) -> Fingerprint:
        return Fingerprint(
            company_id=job.company_id,
            file_hash=job.file_hash,
            supplier=c.supplier,
            invoice_number=c.invoice_number,
            amount=c.total_amount,
            invoice_date=c.invoice_date,
            job_id=job.id,
        )

    # =====================================================================
    # Posting
    # =====================================================================

    def approve_job(self, job_id: UUID, actor: str, actor_role: str | None = None) -> DocumentJob:
        """
        Post a ``ready`` job and mark it ``approved`` in one transaction.

        A job with an approval request posts only once that request is
        APPROVED.  A job without one needs ``actor_role`` at or above the
        role of the amount's tier, and the accounting policy must not reject
        it.

        Raises:
            AlreadyPostedError: The job already carries a voucher number.
            InvalidJobTransitionError: The job is not ``ready``.
            ApprovalRequiredError: The job's approval request is not APPROVED.
            PostingAuthorityError: ``actor_role`` is below the tier's role.
            PolicyRejectedError: The accounting policy rejects the job.
            PeriodNotWritableError: The document's period is closed or locked.
        """
        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            if job.posted_at is not None:
                raise AlreadyPostedError(str(job_id), job.voucher_number or "")
            if not can_transition(job.job_status, JobStatus.APPROVED):
                raise InvalidJobTransitionError(str(job_id), job.status, JobStatus.APPROVED.value)
            c = job.get_classification()
            if c is None:
                raise InvalidJobTransitionError(str(job_id), job.status, JobStatus.APPROVED.value)
            self._authorize_posting(session, job, c, actor, actor_role)
            self._post_in(session, job, c, actor)
            job.requires_approval = False
            self._transition(job, JobStatus.APPROVED)

        self._sync_erp(job_id)
        return self.get_job(job_id)

    def _authorize_posting(
        self,
        session: Session,
        job: DocumentJobModel,
        c: Classification,
        actor: str,
        actor_role: str | None,
    ) -> None:
        if job.approval_request_id is not None:
            request = ApprovalService(session, self.clock).get_request(job.approval_request_id)
            if request.status != ApprovalStatus.APPROVED:
                raise ApprovalRequiredError(str(job.id), str(request.id), request.status.value)
            return

        config = self.config.for_company(job.company_id)
        required_role = config.approval.tier_for_amount(abs(c.total_amount)).required_role
        # a person posting by hand is at least an accountant, even in the AUTO tier
        if role_rank(required_role) < role_rank(ApproverRole.ACCOUNTANT):
            required_role = ApproverRole.ACCOUNTANT.value
        if not role_has_authority(actor_role, required_role):
            raise PostingAuthorityError(str(job.id), actor, actor_role, required_role)
        policy = evaluate_policy(config.policy, c)
        if policy.reject:
            raise PolicyRejectedError(str(job.id), policy.matched_rule)

    def _post_in(self, session: Session, job: DocumentJobModel, c: Classification, actor: str) -> str:
        """Mint the voucher number and record the posting inside ``session``."""
        if job.posted_at is not None:
            raise AlreadyPostedError(str(job.id), job.voucher_number or "")

        document_date = c.invoice_date or job.created_at.date()
        PeriodService(session, self.clock).assert_writable(job.company_id, document_date)

        description = " ".join(part for part in (c.supplier, c.invoice_number) if part)
        number = SequenceService(session, self.clock).next(
            job.company_id,
            series_for(c.doc_type),
            document_date.year,
            job_id=job.id,
            description=description or job.file_name,
        )
        job.voucher_number = number.number
        job.posted_at = self.clock.now()

        DuplicateService(session, self.clock).register_fingerprint(self._fingerprint(job, c))
        SupplierHistoryService(session, self.clock).record_posting(
            job.company_id, c.supplier, c.total_amount, c.primary_account, c.invoice_date,
        )
        AuditService(session, self.clock).record(
            job.company_id, "document_job", job.id, "VOUCHER_POSTED", actor,
            {"voucher_number": job.voucher_number, "amount": c.total_amount, "currency": c.currency},
        )
        logger.info(
            "job_posted",
            extra={"job_id": str(job.id), "voucher_number": job.voucher_number, "actor": actor},
        )
        return job.voucher_number

    def _sync_erp(self, job_id: UUID) -> None:
        """Push a posted voucher to the ERP.  Failures become job warnings."""
        if self.erp is None:
            return
        with session_scope(self.session_factory) as session:
            job = self._get(session, job_id)
            if job.voucher_number is None or job.erp_reference is not None:
                return
            company_id, voucher_number = job.company_id, job.voucher_number
            c = job.get_classification()
            supplier_id = SupplierHistoryService(session, self.clock).erp_supplier_id(
                company_id, c.supplier if c else None,
            )

        warnings: list[str] = []
        new_supplier_id = None
        if supplier_id is None and c is not None and c.supplier:
            try:
                supplier_id = new_supplier_id = self.erp.find_or_create_supplier(company_id, c.supplier)
            except Exception as exc:
                logger.warning("erp_supplier_lookup_failed", extra={"job_id": str(job_id)}, exc_info=True)
                warnings.append(f"ERP supplier lookup failed: {exc}")

        reference = None
        try:
            reference = self.erp.post_voucher(company_id, voucher_number, c, supplier_id=supplier_id)
        except Exception as exc:
            logger.warning("erp_post_failed", extra={"job_id": str(job_id)}, exc_info=True)
            warnings.append(f"ERP posting failed: {exc}")

        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            if new_supplier_id is not None:
                SupplierHistoryService(session, self.clock).set_erp_supplier_id(
                    company_id, c.supplier, new_supplier_id,
                )
            if reference is not None:
                job.erp_reference = reference
            for warning in warnings:
                job.add_warning(warning)
            job.updated_at = self.clock.now()

        if reference is not None:
            logger.info("erp_voucher_posted", extra={"job_id": str(job_id), "erp_reference": reference})

    # =====================================================================
    # Queries and maintenance
    # =====================================================================

    def get_job(self, job_id: UUID) -> DocumentJob:
        with session_scope(self.session_factory) as session:
            return self._get(session, job_id).to_dto()

    def list_jobs(
        self, company_id: str, status: JobStatus | None = None, limit: int | None = None,
    ) -> list[DocumentJob]:
        with session_scope(self.session_factory) as session:
            query = select(DocumentJobModel).where(DocumentJobModel.company_id == company_id)
            if status is not None:
                query = query.where(DocumentJobModel.status == status.value)
            query = query.order_by(DocumentJobModel.created_at.desc())
            if limit is not None:
                query = query.limit(limit)
            return [job.to_dto() for job in session.execute(query).scalars()]

    def add_warning(self, job_id: UUID, message: str, metadata: dict[str, Any] | None = None) -> None:
        """Attach a warning (and optional metadata keys) to a job."""
        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            job.add_warning(message)
            if metadata:
                job.job_metadata = {**(job.job_metadata or {}), **metadata}
            job.updated_at = self.clock.now()

    def delete_job(self, job_id: UUID, actor: str) -> None:
        """
        Delete an unposted job with its fingerprints and stored file.

        Raises:
            JobReferencedError: The job has been posted.
        """
        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            if job.voucher_number is not None:
                raise JobReferencedError(str(job_id), job.voucher_number)
            company_id, file_ref = job.company_id, job.file_ref
            details = {"file_name": job.file_name, "file_hash": job.file_hash, "status": job.status}
            DuplicateService(session, self.clock).remove_fingerprints(job_id)
            session.delete(job)
            AuditService(session, self.clock).record(
                company_id, "document_job", job_id, "JOB_DELETED", actor, details,
            )

        self._release(job_id)
        if file_ref is not None:
            try:
                self.store.delete(file_ref)
            except Exception:
                logger.warning(
                    "stored_file_delete_failed",
                    extra={"job_id": str(job_id), "file_ref": file_ref},
                    exc_info=True,
                )
        logger.info("job_deleted", extra={"job_id": str(job_id), "actor": actor})

    # ---------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------

    def _fail(self, job_id: UUID, message: str) -> None:
        with session_scope(self.session_factory) as session:
            job = self._lock(session, job_id)
            if job.job_status in TERMINAL_JOB_STATUSES:
                return
            stage = job.status
            job.error = message
            self._transition(job, JobStatus.ERROR)
        logger.warning("job_stage_failed", extra={"job_id": str(job_id), "stage": stage, "error": message})

    def _transition(self, job: DocumentJobModel, target: JobStatus) -> None:
        if not can_transition(job.job_status, target):
            raise InvalidJobTransitionError(str(job.id), job.status, target.value)
        previous = job.status
        job.status = target.value
        job.updated_at = self.clock.now()
        logger.debug(
            "job_status_changed",
            extra={"job_id": str(job.id), "from_status": previous, "to_status": target.value},
        )

    def _status(self, job_id: UUID) -> JobStatus:
        with session_scope(self.session_factory) as session:
            return self._get(session, job_id).job_status

    @staticmethod
    def _get(session: Session, job_id: UUID) -> DocumentJobModel:
        job = session.get(DocumentJobModel, job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    @staticmethod
    def _lock(session: Session, job_id: UUID) -> DocumentJobModel:
        job = session.execute(
            select(DocumentJobModel)
            .where(DocumentJobModel.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    def _content(self, job_id: UUID, file_ref: str | None) -> bytes:
        content = self._stashed(job_id)
        if content is not None:
            return content
        if file_ref is None:
            raise ExternalServiceError("store", "document has not been uploaded")
        content = self.store.get(file_ref)
        self._stash(job_id, content)
        return content

    def _stash(self, job_id: UUID, content: bytes) -> None:
        with self._contents_lock:
            self._contents[job_id] = content

    def _stashed(self, job_id: UUID) -> bytes | None:
        with self._contents_lock:
            return self._contents.get(job_id)

    def _release(self, job_id: UUID) -> None:
        with self._contents_lock:
            self._contents.pop(job_id, None)
