"""
PeriodService -- accounting period lifecycle and posting guard.

Responsibility:
    Owns the per-company monthly period rows: lazy creation, the
    OPEN -> CLOSING -> CLOSED -> LOCKED state machine, reopen, the
    append-only history, and persisted pre-close check results.  Also
    provides ``assert_writable``, the guard every posting passes through.

Architecture position:
    Kernel > Services.  Used by the pipeline's posting step and by
    ``docledger_services.period_close``, which runs the checks and the
    summary and drives the transitions here.

Invariants enforced:
    - One row per (company, year, month); concurrent creators race on the
      unique constraint and the loser re-reads the winner's row.
    - Transitions follow ``PERIOD_TRANSITIONS``; anything else raises
      PeriodStateError.
    - Posting guard and close share the period row lock.  A posting that
      locks the row before the close sees OPEN and commits first; one that
      locks it after sees CLOSING / CLOSED and is refused.
    - History entries are only appended, never updated or deleted.

Failure modes:
    - PeriodNotFoundError when a transition targets a period never created.
    - PeriodStateError on an illegal transition.
    - PeriodNotWritableError from ``assert_writable``.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from docledger_kernel.domain.period import (
    PERIOD_TRANSITIONS,
    Period,
    PeriodAction,
    PeriodHistoryEntry,
    PeriodStatus,
    PreCloseCheck,
    period_key,
)
from docledger_kernel.exceptions import (
    PeriodNotFoundError,
    PeriodNotWritableError,
    PeriodStateError,
)
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.period import (
    AccountingPeriodModel,
    PeriodCheckModel,
    PeriodHistoryModel,
)
from docledger_kernel.services.base import BaseService

logger = get_logger("services.period")

SYSTEM_ACTOR = "system"


class PeriodService(BaseService):
    """
    Period persistence and lifecycle transitions.

    Every transition method loads the period row FOR UPDATE; callers that
    already hold the lock (the close orchestrator) simply re-acquire it in
    the same transaction.  Does NOT commit.
    """

    # =====================================================================
    # Lookup and creation
    # =====================================================================

    def get_or_create(self, company_id: str, year: int, month: int) -> Period:
        return self._get_or_create_model(company_id, year, month).to_dto()

    def get(self, company_id: str, year: int, month: int) -> Period | None:
        model = self._find(company_id, year, month)
        return model.to_dto() if model is not None else None

    def get_for_date(self, company_id: str, on_date: date) -> Period:
        return self.get_or_create(company_id, on_date.year, on_date.month)

    def _find(self, company_id: str, year: int, month: int) -> AccountingPeriodModel | None:
        return self.session.execute(
            select(AccountingPeriodModel).where(
                AccountingPeriodModel.company_id == company_id,
                AccountingPeriodModel.year == year,
                AccountingPeriodModel.month == month,
            )
        ).scalar_one_or_none()

    def _get_or_create_model(self, company_id: str, year: int, month: int) -> AccountingPeriodModel:
        model = self._find(company_id, year, month)
        if model is not None:
            return model

        try:
            with self.session.begin_nested():
                model = AccountingPeriodModel(
                    company_id=company_id,
                    year=year,
                    month=month,
                    status=PeriodStatus.OPEN.value,
                    created_by=SYSTEM_ACTOR,
                )
                self.session.add(model)
                self.session.flush()
                self._append_history(model, PeriodAction.PERIOD_CREATED, SYSTEM_ACTOR)
        except IntegrityError:
            # Another transaction created the row first
            logger.info(
                "period_create_race_lost",
                extra={"company_id": company_id, "period": period_key(year, month)},
            )
            model = self._find(company_id, year, month)
            if model is None:
                raise
            return model

        logger.info(
            "period_created",
            extra={"company_id": company_id, "period": period_key(year, month)},
        )
        return model

    def _load_for_update(
        self,
        company_id: str,
        year: int,
        month: int,
        create: bool = False,
    ) -> AccountingPeriodModel:
        if create:
            self._get_or_create_model(company_id, year, month)
        model = self.session.execute(
            select(AccountingPeriodModel)
            .where(
                AccountingPeriodModel.company_id == company_id,
                AccountingPeriodModel.year == year,
                AccountingPeriodModel.month == month,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise PeriodNotFoundError(company_id, period_key(year, month))
        return model

    # =====================================================================
    # Posting guard
    # =====================================================================

    def assert_writable(self, company_id: str, on_date: date) -> Period:
        """
        Lock the period containing ``on_date`` and require it to be OPEN.

        The lock is held until the caller's transaction ends, so the
        posting commits before any close of the same period can start.
        """
        model = self._load_for_update(company_id, on_date.year, on_date.month, create=True)
        if model.status != PeriodStatus.OPEN.value:
            logger.warning(
                "period_not_writable",
                extra={"company_id": company_id, "period": model.key, "status": model.status},
            )
            raise PeriodNotWritableError(company_id, model.key, model.status)
        return model.to_dto()

    def is_open(self, company_id: str, year: int, month: int) -> bool:
        """A period that was never created counts as open."""
        model = self._find(company_id, year, month)
        return model is None or model.status == PeriodStatus.OPEN.value

    # =====================================================================
    # Transitions
    # =====================================================================

    def begin_closing(self, company_id: str, year: int, month: int, actor: str) -> Period:
        model = self._load_for_update(company_id, year, month, create=True)
        self._transition(model, PeriodStatus.CLOSING, actor, "close")
        self._append_history(model, PeriodAction.CLOSING_STARTED, actor)
        self.session.flush()
        return model.to_dto()

    def cancel_closing(
        self,
        company_id: str,
        year: int,
        month: int,
        actor: str,
        blockers: Iterable[str] = (),
    ) -> Period:
        """CLOSING -> OPEN after blocking checks failed."""
        model = self._load_for_update(company_id, year, month)
        self._transition(model, PeriodStatus.OPEN, actor, "cancel closing of")
        self._append_history(
            model, PeriodAction.CLOSE_BLOCKED, actor, {"blockers": list(blockers)},
        )
        self.session.flush()
        return model.to_dto()

    def mark_closed(
        self,
        company_id: str,
        year: int,
        month: int,
        actor: str,
        summary: dict[str, Any] | None = None,
        forced: bool = False,
        failed_checks: Iterable[str] = (),
    ) -> Period:
        model = self._load_for_update(company_id, year, month)
        self._transition(model, PeriodStatus.CLOSED, actor, "close")
        model.closed_at = self.clock.now()
        model.closed_by = actor
        model.summary = summary
        self._append_history(
            model,
            PeriodAction.PERIOD_CLOSED,
            actor,
            {"forced": forced, "failed_checks": list(failed_checks)},
        )
        self.session.flush()
        logger.info(
            "period_closed",
            extra={"company_id": company_id, "period": model.key, "actor": actor, "forced": forced},
        )
        return model.to_dto()

    def lock(self, company_id: str, year: int, month: int, actor: str) -> Period:
        """CLOSED -> LOCKED.  Irreversible."""
        model = self._load_for_update(company_id, year, month)
        self._transition(model, PeriodStatus.LOCKED, actor, "lock")
        model.locked_at = self.clock.now()
        model.locked_by = actor
        self._append_history(model, PeriodAction.PERIOD_LOCKED, actor)
        self.session.flush()
        logger.info(
            "period_locked",
            extra={"company_id": company_id, "period": model.key, "actor": actor},
        )
        return model.to_dto()

    def reopen(self, company_id: str, year: int, month: int, actor: str, reason: str) -> Period:
        """CLOSED -> OPEN.  A reason is mandatory and kept in the history."""
        if not reason or not reason.strip():
            raise ValueError("A reason is required to reopen a period")
        model = self._load_for_update(company_id, year, month)
        if model.status != PeriodStatus.CLOSED.value:
            raise PeriodStateError(model.key, model.status, "reopen")
        self._transition(model, PeriodStatus.OPEN, actor, "reopen")
        model.closed_at = None
        model.closed_by = None
        self._append_history(
            model, PeriodAction.PERIOD_REOPENED, actor, {"reason": reason.strip()},
        )
        self.session.flush()
        logger.warning(
            "period_reopened",
            extra={"company_id": company_id, "period": model.key, "actor": actor, "reason": reason},
        )
        return model.to_dto()

    def _transition(
        self,
        model: AccountingPeriodModel,
        target: PeriodStatus,
        actor: str,
        action: str,
    ) -> None:
        current = PeriodStatus(model.status)
        if target not in PERIOD_TRANSITIONS[current]:
            raise PeriodStateError(model.key, current.value, action)
        model.status = target.value
        model.updated_by = actor

    def _append_history(
        self,
        model: AccountingPeriodModel,
        action: PeriodAction,
        actor: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        sequence = max((h.sequence for h in model.history), default=0) + 1
        model.history.append(
            PeriodHistoryModel(
                period_id=model.id,
                sequence=sequence,
                action=action.value,
                actor=actor,
                details=details or {},
                created_at=self.clock.now(),
            )
        )
        self.session.flush()

    # =====================================================================
    # Checks
    # =====================================================================

    def record_checks(
        self,
        company_id: str,
        year: int,
        month: int,
        checks: Iterable[PreCloseCheck],
    ) -> UUID:
        """Persist one run of pre-close checks; returns the run id."""
        model = self._get_or_create_model(company_id, year, month)
        run_id = uuid4()
        now = self.clock.now()
        for check in checks:
            self.session.add(
                PeriodCheckModel(
                    period_id=model.id,
                    run_id=run_id,
                    name=check.name,
                    status=check.status.value,
                    blocking=check.blocking,
                    message=check.message,
                    details=check.details,
                    created_at=now,
                )
            )
        self.session.flush()
        return run_id

    def latest_checks(self, company_id: str, year: int, month: int) -> list[PreCloseCheck]:
        model = self._find(company_id, year, month)
        if model is None:
            return []
        rows = list(
            self.session.execute(
                select(PeriodCheckModel)
                .where(PeriodCheckModel.period_id == model.id)
                .order_by(PeriodCheckModel.created_at.desc())
            ).scalars()
        )
        if not rows:
            return []
        latest_run = rows[0].run_id
        return [r.to_dto() for r in reversed(rows) if r.run_id == latest_run]

    # =====================================================================
    # Queries
    # =====================================================================

    def history(self, company_id: str, year: int, month: int) -> list[PeriodHistoryEntry]:
        model = self._find(company_id, year, month)
        if model is None:
            raise PeriodNotFoundError(company_id, period_key(year, month))
        return [h.to_dto() for h in model.history]

    def all_periods(self, company_id: str) -> list[Period]:
        return [
            m.to_dto()
            for m in self.session.execute(
                select(AccountingPeriodModel)
                .where(AccountingPeriodModel.company_id == company_id)
                .order_by(AccountingPeriodModel.year, AccountingPeriodModel.month)
            ).scalars()
        ]

    def open_periods(self, company_id: str) -> list[Period]:
        return [p for p in self.all_periods(company_id) if p.status == PeriodStatus.OPEN]

    def last_closed(self, company_id: str) -> Period | None:
        """Most recent CLOSED or LOCKED period."""
        closed = [
            p for p in self.all_periods(company_id)
            if p.status in (PeriodStatus.CLOSED, PeriodStatus.LOCKED)
        ]
        return closed[-1] if closed else None
