from typing import List
from procurement.repositories.base import BaseRepository
from procurement.models.audit import AuditEvent

class AuditRepository(BaseRepository[AuditEvent]):

    async def log_event(self, event: AuditEvent) -> AuditEvent:
        """Log an event to the audit trail."""
        return await self.create(event)

    async def get_for_purchase_order(self, purchase_order_id: str) -> List[AuditEvent]:
        """Retrieve all audit events for a purchase order, oldest first."""
        return await self.get_all_by_field("purchase_order_id", purchase_order_id, sort_field="timestamp")
