import logging

from procurement.collaborators import HookResult, PurchaseOrderStorage
from procurement.models.purchase_order import EnhancedStatus, PurchaseOrder

logger = logging.getLogger(__name__)

AWAITING_GOODS = (
    EnhancedStatus.APPROVED,
    EnhancedStatus.SENT_TO_SUPPLIER,
    EnhancedStatus.PARTIALLY_RECEIVED,
)

LEAVES_QUEUE = (
    EnhancedStatus.FULLY_RECEIVED,
    EnhancedStatus.CANCELLED,
    EnhancedStatus.CLOSED,
)

class ReceivingQueueHook:
    """Keeps the warehouse receiving queue in step with order status."""

    def __init__(self, storage: PurchaseOrderStorage):
        self.storage = storage

    async def on_status_changed(
        self,
        purchase_order: PurchaseOrder,
        previous_status: EnhancedStatus,
        new_status: EnhancedStatus,
    ) -> HookResult:
        if new_status in AWAITING_GOODS:
            action = "add" if previous_status not in AWAITING_GOODS else "update"
        elif new_status in LEAVES_QUEUE:
            action = "remove"
        else:
            return HookResult(success=True, message="No receiving queue change")

        result = await self.storage.update_receiving_queue(purchase_order, action)
        if not result.success:
            logger.warning(f"Receiving queue {action} failed for {purchase_order.po_number}: {result.message}")
            return HookResult(success=False, message=result.message)
        return HookResult(success=True, message=f"Receiving queue {action}: {purchase_order.po_number}")
