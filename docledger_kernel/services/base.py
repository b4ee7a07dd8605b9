"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor contract for every kernel service: a caller-owned
    SQLAlchemy ``Session`` and an injected ``Clock``.

Invariants enforced:
    Services flush within the caller's transaction and never commit or
    roll back.  The pipeline orchestrator, the close orchestrator, the
    scheduler or the test harness owns the transaction boundary.
"""

from abc import ABC

from sqlalchemy.orm import Session

from docledger_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a ``Session`` from the caller and uses ``session.flush()``
        to persist changes within the active transaction.

    Non-goals:
        Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
