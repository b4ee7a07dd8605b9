"""
Background escalation of overdue approval requests.

A daemon thread wakes every ``interval_seconds`` and moves each open
request whose ``due_at`` has passed one tier up, as the system actor.
Each company is escalated under its own approval configuration, so a
company with a 12 hour timeout gets a 12 hour due date on the new tier.

Two processes running the sweep at once are serialized by the approval
request row locks; this is not a distributed scheduler.
"""

from __future__ import annotations

import threading
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from docledger_config import ConfigRegistry
from docledger_kernel.db.engine import session_scope
from docledger_kernel.domain.approval import OPEN_APPROVAL_STATUSES, ApprovalRequest
from docledger_kernel.domain.clock import Clock, SystemClock
from docledger_kernel.logging_config import LogContext, get_logger
from docledger_kernel.models.approval import ApprovalRequestModel
from docledger_kernel.services.approval_service import ApprovalService

logger = get_logger("services.scheduler")


class ApprovalEscalationScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: ConfigRegistry | None = None,
        clock: Clock | None = None,
        interval_seconds: float = 300,
    ):
        self._session_factory = session_factory
        self._config = config or ConfigRegistry()
        self._clock = clock or SystemClock()
        self._interval = interval_seconds
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name="docledger-escalation", daemon=True)
        self._thread.start()
        logger.info("escalation_scheduler_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Ask the loop to exit and wait for a sweep in progress to commit."""
        self._stopping.set()
        if self.is_running:
            self._thread.join(timeout=timeout)
        logger.info("escalation_scheduler_stopped")

    def tick(self) -> int:
        """
        Run one sweep in its own transaction and return how many requests
        moved up a tier.

        A failed sweep is rolled back in full and logged; the loop carries
        on at the next interval.
        """
        try:
            with session_scope(self._session_factory) as session:
                escalated = self.sweep(session)
        except Exception:
            logger.exception("escalation_tick_failed")
            return 0
        return len(escalated)

    def sweep(self, session: Session) -> list[ApprovalRequest]:
        """Escalate every overdue request, company by company. Caller commits."""
        now = self._clock.now()
        overdue_companies = session.execute(
            select(ApprovalRequestModel.company_id)
            .where(
                ApprovalRequestModel.status.in_([s.value for s in OPEN_APPROVAL_STATUSES]),
                ApprovalRequestModel.due_at.is_not(None),
                ApprovalRequestModel.due_at < now,
            )
            .distinct()
        ).scalars().all()

        escalated: list[ApprovalRequest] = []
        for company_id in sorted(overdue_companies):
            # stop() lands between companies, never inside one
            if self._stopping.is_set():
                break
            with LogContext.bind(company_id=company_id):
                service = ApprovalService(session, self._clock, self._config.for_company(company_id).approval)
                moved = service.escalate_overdue(as_of=now, company_id=company_id)
                if moved:
                    logger.info(
                        "overdue_approvals_escalated",
                        extra={"count": len(moved), "request_ids": [str(r.id) for r in moved]},
                    )
            escalated.extend(moved)
        return escalated

    def _loop(self) -> None:
        while not self._stopping.is_set():
            self.tick()
            self._stopping.wait(timeout=self._interval)
