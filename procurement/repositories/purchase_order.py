from datetime import datetime
from typing import Any, Dict, List, Optional
from procurement.repositories.base import BaseRepository, id_filter
from procurement.models.purchase_order import (
    EnhancedStatus,
    LegacyStatus,
    PurchaseOrder,
    to_enhanced_status,
)

class PurchaseOrderRepository(BaseRepository[PurchaseOrder]):

    async def get_many(self, ids: List[str]) -> List[PurchaseOrder]:
        orders = []
        for po_id in ids:
            order = await self.get(po_id)
            if order:
                orders.append(order)
        return orders

    async def update_status(
        self,
        purchase_order_id: str,
        legacy_status: str,
        enhanced_status: EnhancedStatus,
        changes: Optional[Dict[str, Any]] = None,
        expected_status: Optional[EnhancedStatus] = None,
    ) -> bool:
        """
        Compare-and-set status write. Returns False when the order is missing
        or has moved away from `expected_status` in the meantime.
        """
        query: Dict[str, Any] = id_filter(purchase_order_id)
        if expected_status is not None:
            expected = EnhancedStatus(expected_status)
            # Older documents carry only the legacy status
            legacy_matches = [l.value for l in LegacyStatus if to_enhanced_status(l) == expected]
            conditions: List[Dict[str, Any]] = [{"enhanced_status": expected.value}]
            if legacy_matches:
                conditions.append({"enhanced_status": None, "status": {"$in": legacy_matches}})
            query["$or"] = conditions

        update = dict(changes or {})
        update.update({
            "status": legacy_status,
            "enhanced_status": EnhancedStatus(enhanced_status).value,
            "updated_at": datetime.utcnow(),
        })
        result = await self.collection.update_one(query, {"$set": update})
        return result.matched_count > 0
