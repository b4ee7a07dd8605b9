"""
DuplicateService -- fingerprint lookup, override registry and idempotent
check cache.

Responsibility:
    Decide whether a document repeats an already registered one, record
    the fingerprints of accepted documents, and store the auditable
    overrides that let a flagged duplicate proceed.

Architecture position:
    Kernel > Services.  Called by the pipeline (preliminary check at submit,
    full check during analysis) and by the facade for overrides.

Invariants enforced:
    - Lookup order: invoice number + supplier, then file hash, then fuzzy
      amount/date/supplier.  The first hit decides the verdict.
    - File-hash matches are never overridable.
    - A check never matches the fingerprint's own job.
    - With a request id the verdict is cached for 24 hours and replays
      return the cached verdict unchanged.
    - Override reasons are at least 10 characters after stripping.
    - A hash-bound override only suppresses a match for that exact file.

Failure modes:
    - OverrideReasonError for short reasons.
    - IntegrityError from a racing fingerprint insert is absorbed by
      ``register_fingerprint`` and reported as ``False`` (first writer wins).
"""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError

from docledger_kernel.domain.documents import JobStatus
from docledger_kernel.domain.duplicates import (
    CHECK_CACHE_TTL_HOURS,
    FUZZY_AMOUNT_TOLERANCE,
    FUZZY_DATE_WINDOW_DAYS,
    LIKELY_AMOUNT_DELTA,
    OVERRIDE_REASON_MIN_LENGTH,
    DuplicateCheckResult,
    DuplicateConfidence,
    DuplicateOverride,
    Fingerprint,
    MatchType,
)
from docledger_kernel.exceptions import OverrideReasonError
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.job import DocumentJobModel
from docledger_kernel.models.duplicate import (
    DuplicateCheckCacheModel,
    DuplicateOverrideModel,
    FingerprintModel,
)
from docledger_kernel.services.base import BaseService

logger = get_logger("services.duplicates")


class DuplicateService(BaseService):
    """
    Duplicate detection over registered fingerprints.

    Guarantees:
        - ``check`` without a request id has no side effects.
        - ``register_fingerprint`` is idempotent per job.
    """

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    def check(self, fingerprint: Fingerprint, request_id: str | None = None) -> DuplicateCheckResult:
        now = self.clock.now()

        if request_id:
            cached = self._cached_result(fingerprint.company_id, request_id)
            if cached is not None:
                logger.debug(
                    "duplicate_check_cache_hit",
                    extra={"company_id": fingerprint.company_id, "request_id": request_id},
                )
                return cached

        check_id = request_id or f"chk-{uuid4().hex[:16]}"
        result = replace(self._evaluate(fingerprint, check_id), checked_at=now)

        if request_id:
            self._store_result(fingerprint.company_id, request_id, result)

        if result.confidence != DuplicateConfidence.NONE:
            logger.info(
                "duplicate_detected",
                extra={
                    "company_id": fingerprint.company_id,
                    "confidence": result.confidence.value,
                    "match_type": result.match_type.value if result.match_type else None,
                    "matched_job_id": result.matched_job_id,
                },
            )
        return result

    def _evaluate(self, fp: Fingerprint, check_id: str) -> DuplicateCheckResult:
        # An override clears only the match it was granted for; the file
        # hash checks below still run.
        supplier_key = fp.supplier_key

        if fp.invoice_key and supplier_key:
            match = self._first_match(
                fp,
                FingerprintModel.supplier_key == supplier_key,
                FingerprintModel.invoice_key == fp.invoice_key,
            )
            if match is not None and not self._has_override(match.job_id, fp):
                return DuplicateCheckResult(
                    is_duplicate=True,
                    confidence=DuplicateConfidence.EXACT,
                    can_override=True,
                    check_id=check_id,
                    match_type=MatchType.INVOICE_NUMBER,
                    matched_job_id=match.job_id,
                    reason=f'Invoice number "{fp.invoice_number}" from {fp.supplier} already exists',
                )

        if fp.file_hash:
            match = self._first_match(fp, FingerprintModel.file_hash == fp.file_hash)
            if match is not None:
                return _same_file(check_id, match.job_id, "The exact same file has already been uploaded")
            if fp.job_id is None:
                # Preliminary check: jobs still in flight have no fingerprint yet
                in_flight = self._in_flight_job_with_hash(fp)
                if in_flight is not None:
                    return _same_file(check_id, in_flight, "The exact same file is already being processed")

        if supplier_key and fp.amount is not None and fp.invoice_date is not None:
            match, delta = self._fuzzy_match(fp)
            if match is not None:
                likely = delta <= LIKELY_AMOUNT_DELTA
                return DuplicateCheckResult(
                    is_duplicate=likely,
                    confidence=DuplicateConfidence.LIKELY if likely else DuplicateConfidence.POSSIBLE,
                    can_override=True,
                    check_id=check_id,
                    match_type=MatchType.AMOUNT_DATE,
                    matched_job_id=match.job_id,
                    reason=(
                        f"Similar amount ({fp.amount}) from {fp.supplier} "
                        f"dated {match.invoice_date.isoformat()}"
                    ),
                )

        return _clear(check_id)

    def lost_registration(self, fp: Fingerprint) -> DuplicateCheckResult:
        """
        Blocking result for a job whose fingerprint insert lost to another
        job with the same file.  Overrides never apply to a file hash.
        """
        owner = self._first_match(fp, FingerprintModel.file_hash == fp.file_hash)
        result = _same_file(
            f"chk-{uuid4().hex[:16]}",
            owner.job_id if owner is not None else None,
            "The exact same file was registered by another job",
        )
        return replace(result, checked_at=self.clock.now())

    def _first_match(self, fp: Fingerprint, *criteria) -> FingerprintModel | None:
        stmt = select(FingerprintModel).where(
            FingerprintModel.company_id == fp.company_id, *criteria
        )
        if fp.job_id is not None:
            stmt = stmt.where(FingerprintModel.job_id != fp.job_id)
        return self.session.execute(
            stmt.order_by(FingerprintModel.created_at).limit(1)
        ).scalar_one_or_none()

    def _in_flight_job_with_hash(self, fp: Fingerprint) -> UUID | None:
        return self.session.execute(
            select(DocumentJobModel.id)
            .where(
                DocumentJobModel.company_id == fp.company_id,
                DocumentJobModel.file_hash == fp.file_hash,
                DocumentJobModel.status != JobStatus.ERROR.value,
            )
            .order_by(DocumentJobModel.created_at)
            .limit(1)
        ).scalar_one_or_none()

    def _fuzzy_match(self, fp: Fingerprint) -> tuple[FingerprintModel | None, Decimal]:
        window = timedelta(days=FUZZY_DATE_WINDOW_DAYS)
        stmt = select(FingerprintModel).where(
            FingerprintModel.company_id == fp.company_id,
            FingerprintModel.supplier_key == fp.supplier_key,
            FingerprintModel.amount.is_not(None),
            FingerprintModel.invoice_date > fp.invoice_date - window,
            FingerprintModel.invoice_date < fp.invoice_date + window,
        )
        if fp.job_id is not None:
            stmt = stmt.where(FingerprintModel.job_id != fp.job_id)

        for candidate in self.session.execute(stmt.order_by(FingerprintModel.created_at)).scalars():
            if self._has_override(candidate.job_id, fp):
                continue
            larger = max(abs(candidate.amount), abs(fp.amount))
            delta = abs(candidate.amount - fp.amount)
            if larger == 0 or delta / larger < FUZZY_AMOUNT_TOLERANCE:
                return candidate, delta
        return None, Decimal("0")

    def _has_override(self, original_job_id: UUID, fp: Fingerprint) -> bool:
        overrides = self.session.execute(
            select(DuplicateOverrideModel).where(
                DuplicateOverrideModel.original_job_id == original_job_id,
            )
        ).scalars().all()
        for override in overrides:
            if override.new_file_hash:
                if override.new_file_hash == fp.file_hash:
                    return True
            elif fp.job_id is not None and override.new_job_id == fp.job_id:
                return True
        return False

    # ------------------------------------------------------------------
    # Idempotency cache
    # ------------------------------------------------------------------

    def _cached_result(self, company_id: str, request_id: str) -> DuplicateCheckResult | None:
        row = self.session.execute(
            select(DuplicateCheckCacheModel).where(
                DuplicateCheckCacheModel.company_id == company_id,
                DuplicateCheckCacheModel.request_id == request_id,
            )
        ).scalar_one_or_none()
        if row is None or row.expires_at <= self.clock.now():
            return None
        return DuplicateCheckResult.from_dict(row.result)

    def _store_result(self, company_id: str, request_id: str, result: DuplicateCheckResult) -> None:
        expires_at = self.clock.now() + timedelta(hours=CHECK_CACHE_TTL_HOURS)
        existing = self.session.execute(
            select(DuplicateCheckCacheModel).where(
                DuplicateCheckCacheModel.company_id == company_id,
                DuplicateCheckCacheModel.request_id == request_id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            # Expired entry: replace it
            existing.result = result.to_dict()
            existing.expires_at = expires_at
            self.session.flush()
            return

        savepoint = self.session.begin_nested()
        try:
            self.session.add(
                DuplicateCheckCacheModel(
                    company_id=company_id,
                    request_id=request_id,
                    result=result.to_dict(),
                    expires_at=expires_at,
                )
            )
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            # A concurrent replay stored its verdict first
            savepoint.rollback()

    def purge_expired_checks(self) -> int:
        result = self.session.execute(
            delete(DuplicateCheckCacheModel).where(
                DuplicateCheckCacheModel.expires_at <= self.clock.now()
            )
        )
        self.session.flush()
        return result.rowcount

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    def register_fingerprint(self, fp: Fingerprint) -> bool:
        """
        Record the fingerprint for ``fp.job_id``.

        Returns True when this job owns the fingerprint afterwards, False
        when a concurrent job registered the same file first.
        """
        if fp.job_id is None:
            raise ValueError("fingerprint registration requires a job_id")

        existing = self.session.execute(
            select(FingerprintModel).where(FingerprintModel.job_id == fp.job_id)
        ).scalar_one_or_none()
        if existing is not None:
            return True

        savepoint = self.session.begin_nested()
        try:
            self.session.add(
                FingerprintModel(
                    company_id=fp.company_id,
                    job_id=fp.job_id,
                    file_hash=fp.file_hash,
                    supplier_key=fp.supplier_key,
                    invoice_key=fp.invoice_key,
                    amount=fp.amount,
                    invoice_date=fp.invoice_date,
                    created_at=self.clock.now(),
                )
            )
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.warning(
                "fingerprint_registration_lost_race",
                extra={"company_id": fp.company_id, "job_id": fp.job_id},
            )
            return False

        logger.debug(
            "fingerprint_registered",
            extra={"company_id": fp.company_id, "job_id": fp.job_id},
        )
        return True

    def remove_fingerprints(self, job_id: UUID) -> int:
        result = self.session.execute(
            delete(FingerprintModel).where(FingerprintModel.job_id == job_id)
        )
        self.session.flush()
        return result.rowcount

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    def register_override(
        self,
        company_id: str,
        original_job_id: UUID,
        new_job_id: UUID,
        reason: str,
        approved_by: str,
        match_type: MatchType | None = None,
        new_file_hash: str | None = None,
    ) -> DuplicateOverride:
        cleaned = (reason or "").strip()
        if len(cleaned) < OVERRIDE_REASON_MIN_LENGTH:
            raise OverrideReasonError(reason, OVERRIDE_REASON_MIN_LENGTH)

        existing = self.session.execute(
            select(DuplicateOverrideModel).where(
                DuplicateOverrideModel.original_job_id == original_job_id,
                DuplicateOverrideModel.new_job_id == new_job_id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            return existing.to_dto()

        override = DuplicateOverrideModel(
            company_id=company_id,
            original_job_id=original_job_id,
            new_job_id=new_job_id,
            new_file_hash=new_file_hash,
            match_type=match_type.value if match_type else None,
            reason=cleaned,
            approved_by=approved_by,
            created_at=self.clock.now(),
        )
        self.session.add(override)
        self.session.flush()

        logger.info(
            "duplicate_override_registered",
            extra={
                "company_id": company_id,
                "original_job_id": original_job_id,
                "new_job_id": new_job_id,
                "approved_by": approved_by,
                "hash_bound": new_file_hash is not None,
            },
        )
        return override.to_dto()

    def overrides_for(self, job_id: UUID) -> list[DuplicateOverride]:
        rows = self.session.execute(
            select(DuplicateOverrideModel)
            .where(
                or_(
                    DuplicateOverrideModel.original_job_id == job_id,
                    DuplicateOverrideModel.new_job_id == job_id,
                )
            )
            .order_by(DuplicateOverrideModel.created_at)
        ).scalars()
        return [row.to_dto() for row in rows]


def _clear(check_id: str) -> DuplicateCheckResult:
    return DuplicateCheckResult(
        is_duplicate=False,
        confidence=DuplicateConfidence.NONE,
        can_override=False,
        check_id=check_id,
    )


def _same_file(check_id: str, matched_job_id: UUID | None, reason: str) -> DuplicateCheckResult:
    return DuplicateCheckResult(
        is_duplicate=True,
        confidence=DuplicateConfidence.EXACT,
        can_override=False,
        check_id=check_id,
        match_type=MatchType.FILE_HASH,
        matched_job_id=matched_job_id,
        reason=reason,
    )
