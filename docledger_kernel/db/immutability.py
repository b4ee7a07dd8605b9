"""
ORM-level append-only enforcement.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  Listeners registered here reject any modification of records that
form an audit trail:

Entity                  | When Immutable        | Why
------------------------|-----------------------|-------------------------------
DuplicateOverrideModel  | ALWAYS                | Override is the audit record
ApprovalActionModel     | ALWAYS                | Approval history is append-only
PeriodHistoryModel      | ALWAYS                | Period history is append-only
AuditLogModel           | ALWAYS                | Audit trail
VoucherNumberModel      | ALWAYS                | Minted numbers are evidence
FingerprintModel        | UPDATE only           | Deleted only with its owning job

A violation raises ImmutabilityViolationError and the flush is aborted.
"""

from sqlalchemy import event

from docledger_kernel.exceptions import ImmutabilityViolationError
from docledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_registered = False


def _reject(operation: str, reason: str):
    def _listener(mapper, connection, target):
        entity_type = type(target).__name__
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": entity_type,
                "entity_id": str(target.id),
                "operation": operation,
            },
        )
        raise ImmutabilityViolationError(
            entity_type=entity_type,
            entity_id=str(target.id),
            reason=reason,
        )

    return _listener


def register_immutability_listeners() -> None:
    """
    Register append-only listeners.  Safe to call more than once.

    Call after all models are imported but before any writes.
    """
    global _registered
    if _registered:
        return

    from docledger_kernel.models.approval import ApprovalActionModel
    from docledger_kernel.models.audit import AuditLogModel
    from docledger_kernel.models.duplicate import DuplicateOverrideModel, FingerprintModel
    from docledger_kernel.models.period import PeriodHistoryModel
    from docledger_kernel.models.voucher import VoucherNumberModel

    for model in (
        DuplicateOverrideModel,
        ApprovalActionModel,
        PeriodHistoryModel,
        AuditLogModel,
        VoucherNumberModel,
    ):
        event.listen(model, "before_update", _reject("UPDATE", "record is append-only"))
        event.listen(model, "before_delete", _reject("DELETE", "record is append-only"))

    event.listen(
        FingerprintModel,
        "before_update",
        _reject("UPDATE", "fingerprints are never mutated"),
    )

    _registered = True
    logger.debug("immutability_listeners_registered")
