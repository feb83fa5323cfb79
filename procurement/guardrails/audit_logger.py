import logging
import uuid
from typing import Optional

from procurement.errors import AuditError
from procurement.models.audit import AuditEvent, AuditRecord
from procurement.repositories.audit import AuditRepository

logger = logging.getLogger(__name__)

class AuditLogger:
    """AuditSink that appends purchase order actions to the audit collection."""

    def __init__(self, repository: Optional[AuditRepository]):
        self.repository = repository

    async def log_purchase_order_action(self, record: AuditRecord) -> str:
        """
        Persist the record and return its event id.
        Raises AuditError when no audit store is available.
        """
        if self.repository is None:
            raise AuditError("audit", "audit repository not available")

        event = AuditEvent(
            event_id=f"EVT-{uuid.uuid4().hex}",
            **record.model_dump(exclude={"id"}),
        )
        await self.repository.log_event(event)

        logger.info(f"AUDIT [{event.action.value}]: {event.purchase_order_id} by {event.performed_by} ({event.event_id})")
        return event.event_id
