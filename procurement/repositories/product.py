from datetime import datetime
from typing import List, Optional
from pymongo import UpdateOne
from procurement.repositories.base import BaseRepository, id_filter
from procurement.models.costing import ProductCostSnapshot, ProductCostUpdate
from procurement.models.product import Product

class ProductRepository(BaseRepository[Product]):

    async def get_cost_snapshot(self, product_id: str) -> Optional[ProductCostSnapshot]:
        doc = await self.collection.find_one(id_filter(product_id), {"cost": 1, "stock": 1})
        if not doc:
            return None
        return ProductCostSnapshot(
            product_id=product_id,
            cost=doc.get("cost") or 0.0,
            stock=doc.get("stock") or 0.0,
        )

    async def apply_cost_updates(self, updates: List[ProductCostUpdate], batch_id: str) -> int:
        """Write new cost and stock for every product in one ordered bulk write."""
        if not updates:
            return 0
        now = datetime.utcnow()
        operations = [
            UpdateOne(
                id_filter(u.product_id),
                {"$set": {
                    "cost": u.new_cost,
                    "stock": u.stock_quantity,
                    "updated_at": now,
                    "last_cost_batch_id": batch_id,
                }},
            )
            for u in updates
        ]
        result = await self.collection.bulk_write(operations, ordered=True)
        return result.matched_count
