"""
AuditService -- append-only audit log writer.

Every entry stores the canonical-JSON SHA-256 of its payload so a reader can
detect payload tampering with ``verify``.
"""

import json
from typing import Any

from sqlalchemy import select

from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.audit import AuditLogModel
from docledger_kernel.services.base import BaseService
from docledger_kernel.utils.hashing import canonicalize_json, hash_payload

logger = get_logger("services.audit")


class AuditService(BaseService):

    def record(
        self,
        company_id: str,
        entity_type: str,
        entity_id: Any,
        action: str,
        actor: str,
        payload: dict[str, Any] | None = None,
    ) -> AuditLogModel:
        # Stored payload is exactly what was hashed
        body = json.loads(canonicalize_json(payload or {}))
        entry = AuditLogModel(
            company_id=company_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            actor=actor,
            payload=body,
            payload_hash=hash_payload(body),
            created_at=self.clock.now(),
        )
        self.session.add(entry)
        self.session.flush()
        logger.debug(
            "audit_recorded",
            extra={"entity_type": entity_type, "entity_id": str(entity_id), "action": action},
        )
        return entry

    def entries_for(self, entity_type: str, entity_id: Any) -> list[AuditLogModel]:
        return list(
            self.session.execute(
                select(AuditLogModel)
                .where(
                    AuditLogModel.entity_type == entity_type,
                    AuditLogModel.entity_id == str(entity_id),
                )
                .order_by(AuditLogModel.created_at)
            ).scalars()
        )

    @staticmethod
    def verify(entry: AuditLogModel) -> bool:
        return hash_payload(entry.payload) == entry.payload_hash
