"""
SequenceService -- gap-free voucher numbering per (company, series, year).

Responsibility:
    Mints voucher numbers ``<series><year>-<seq>`` from a durable counter
    row and records every minted number.  Also reports gaps and duplicates
    for the pre-close voucher sequence check.

Architecture position:
    Kernel > Services.  Called by the pipeline's posting step, by the
    facade's ``next_voucher_number`` and by the close orchestrator.

Invariants enforced:
    - Linearizable increments: the counter is advanced with a single
      ``UPDATE voucher_counters SET current_value = current_value + n``,
      which takes the row's write lock in the database.  No in-process
      lock and no aggregate-max-plus-one query is involved.
    - Initialize once: a missing counter is inserted at zero inside a
      savepoint.  A concurrent initializer's IntegrityError is absorbed and
      the increment retried, so an advanced counter is never overwritten.
    - Counter and minted row commit together: both are flushed in the
      caller's transaction.
    - Gaps are reported, never repaired.

Failure modes:
    - InvalidVoucherSeriesError for an unknown series letter.
    - IntegrityError (uq_voucher_numbers_job) if the same job is minted
      twice; the posting path checks ``number_for_job`` first.

Audit relevance:
    Every minted number is persisted (append-only) with its job id and
    logged as ``voucher_number_minted``.
"""

from collections import Counter

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from docledger_kernel.domain.voucher import (
    VOUCHER_SERIES,
    SequenceValidation,
    VoucherNumber,
    format_voucher_number,
    validate_series,
)
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.voucher import VoucherCounterModel, VoucherNumberModel
from docledger_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceService(BaseService):
    """
    Voucher number allocation.

    Contract:
        ``next`` returns a number whose sequence is exactly one greater
        than the previous committed allocation for the same scope.

    Guarantees:
        - Strictly increasing, contiguous sequences per (company, series,
          year) across processes and workers.
        - A rolled-back transaction releases its allocation (the counter
          update rolls back with it), so committed numbers stay contiguous.

    Non-goals:
        Does NOT call ``session.commit()``.
    """

    def next(
        self,
        company_id: str,
        series: str,
        year: int,
        job_id=None,
        description: str | None = None,
    ) -> VoucherNumber:
        """Mint the next voucher number for (company, series, year)."""
        return self.reserve(company_id, series, year, 1, job_id=job_id, description=description)[0]

    def reserve(
        self,
        company_id: str,
        series: str,
        year: int,
        count: int,
        job_id=None,
        description: str | None = None,
    ) -> list[VoucherNumber]:
        """
        Atomically advance the counter by ``count`` and mint the contiguous
        range.  ``job_id`` is only recorded on the first number of a range.
        """
        validate_series(series)
        if count < 1:
            raise ValueError(f"count must be positive, got {count}")

        last = self._advance(company_id, series, year, count)
        first = last - count + 1
        assert first > 0, "voucher sequence must be strictly positive"

        now = self.clock.now()
        minted: list[VoucherNumber] = []
        for offset, sequence in enumerate(range(first, last + 1)):
            number = format_voucher_number(series, year, sequence)
            self.session.add(
                VoucherNumberModel(
                    company_id=company_id,
                    series=series,
                    year=year,
                    sequence=sequence,
                    number=number,
                    job_id=job_id if offset == 0 else None,
                    description=description,
                    created_at=now,
                )
            )
            minted.append(
                VoucherNumber(
                    number=number,
                    series=series,
                    year=year,
                    sequence=sequence,
                    company_id=company_id,
                )
            )
        self.session.flush()

        logger.info(
            "voucher_number_minted",
            extra={
                "company_id": company_id,
                "series": series,
                "year": year,
                "first": minted[0].number,
                "last": minted[-1].number,
                "count": count,
            },
        )
        return minted

    def _advance(self, company_id: str, series: str, year: int, count: int) -> int:
        """Atomic conditional increment; initializes the counter once."""
        for _ in range(2):
            new_value = self._increment(company_id, series, year, count)
            if new_value is not None:
                return new_value

            savepoint = self.session.begin_nested()
            try:
                self.session.add(
                    VoucherCounterModel(
                        company_id=company_id,
                        series=series,
                        year=year,
                        current_value=0,
                    )
                )
                self.session.flush()
                savepoint.commit()
                logger.debug(
                    "voucher_counter_initialized",
                    extra={"company_id": company_id, "series": series, "year": year},
                )
            except IntegrityError:
                # Another worker created the counter first
                savepoint.rollback()
                logger.debug(
                    "voucher_counter_race_retry",
                    extra={"company_id": company_id, "series": series, "year": year},
                )

        raise RuntimeError(
            f"voucher counter {company_id}#{series}#{year} could not be initialized"
        )

    def _increment(self, company_id: str, series: str, year: int, count: int) -> int | None:
        result = self.session.execute(
            update(VoucherCounterModel)
            .where(
                VoucherCounterModel.company_id == company_id,
                VoucherCounterModel.series == series,
                VoucherCounterModel.year == year,
            )
            .values(
                current_value=VoucherCounterModel.current_value + count,
                updated_at=self.clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        # Read back under the write lock taken by the UPDATE
        return self.session.execute(
            select(VoucherCounterModel.current_value).where(
                VoucherCounterModel.company_id == company_id,
                VoucherCounterModel.series == series,
                VoucherCounterModel.year == year,
            )
        ).scalar_one()

    def current_value(self, company_id: str, series: str, year: int) -> int:
        value = self.session.execute(
            select(VoucherCounterModel.current_value).where(
                VoucherCounterModel.company_id == company_id,
                VoucherCounterModel.series == series,
                VoucherCounterModel.year == year,
            )
        ).scalar_one_or_none()
        return value or 0

    def last_number(self, company_id: str, series: str, year: int) -> VoucherNumber | None:
        row = self.session.execute(
            select(VoucherNumberModel)
            .where(
                VoucherNumberModel.company_id == company_id,
                VoucherNumberModel.series == series,
                VoucherNumberModel.year == year,
            )
            .order_by(VoucherNumberModel.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    def is_used(self, company_id: str, number: str) -> bool:
        return self.session.execute(
            select(VoucherNumberModel.id).where(
                VoucherNumberModel.company_id == company_id,
                VoucherNumberModel.number == number,
            )
        ).first() is not None

    def number_for_job(self, company_id: str, job_id) -> VoucherNumber | None:
        row = self.session.execute(
            select(VoucherNumberModel).where(
                VoucherNumberModel.company_id == company_id,
                VoucherNumberModel.job_id == job_id,
            )
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    def numbers_for_year(self, company_id: str, series: str, year: int) -> list[VoucherNumber]:
        rows = self.session.execute(
            select(VoucherNumberModel)
            .where(
                VoucherNumberModel.company_id == company_id,
                VoucherNumberModel.series == series,
                VoucherNumberModel.year == year,
            )
            .order_by(VoucherNumberModel.sequence)
        ).scalars()
        return [row.to_dto() for row in rows]

    def validate_sequence(self, company_id: str, series: str, year: int) -> SequenceValidation:
        """
        Walk the minted numbers in sequence order and report missing and
        repeated integers.  Report-only: nothing is renumbered.
        """
        validate_series(series)
        sequences = [v.sequence for v in self.numbers_for_year(company_id, series, year)]
        if not sequences:
            return SequenceValidation(series=series, year=year, count=0)

        counts = Counter(sequences)
        duplicates = tuple(sorted(seq for seq, n in counts.items() if n > 1))
        present = set(counts)
        first, last = sequences[0], sequences[-1]
        gaps = tuple(seq for seq in range(1, last + 1) if seq not in present)

        result = SequenceValidation(
            series=series,
            year=year,
            count=len(sequences),
            gaps=gaps,
            duplicates=duplicates,
            first=first,
            last=last,
        )
        if not result.is_valid:
            logger.warning(
                "voucher_sequence_invalid",
                extra={
                    "company_id": company_id,
                    "series": series,
                    "year": year,
                    "gaps": list(gaps[:20]),
                    "duplicates": list(duplicates[:20]),
                },
            )
        return result

    def validate_all_series(self, company_id: str, year: int) -> dict[str, SequenceValidation]:
        return {s: self.validate_sequence(company_id, s, year) for s in VOUCHER_SERIES}
