"""
Append-only audit trail for every state change and agent decision.
"""

import logging
from typing import Any

from approvalflow.models import ActorKind, AuditRecord
from approvalflow.store import RecordStore, new_id

logger = logging.getLogger(__name__)


class AuditSink:
    """Writes audit records. Records are never updated or deleted."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: str,
        actor_kind: ActorKind,
        details: dict[str, Any] | None = None,
        store: RecordStore | None = None,
    ) -> AuditRecord:
        """
        Append one audit record.

        Pass ``store`` to write through an open transaction so the record
        commits (or rolls back) with the change it describes.
        """
        record = AuditRecord(
            id=new_id("AUD"),
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            actor_kind=actor_kind,
            details=details or {},
        )
        await (store or self.store).append_audit(record)
        logger.info(
            f"Audit: {entity_type}/{entity_id} action={action} "
            f"actor={actor_id} ({actor_kind.value})"
        )
        return record

    async def history(self, entity_type: str, entity_id: str) -> list[AuditRecord]:
        return await self.store.list_audit(entity_type=entity_type, entity_id=entity_id)
