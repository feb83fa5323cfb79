from procurement.repositories.base import BaseRepository
from procurement.models.receiving import ReceivingQueueEntry

class ReceivingQueueRepository(BaseRepository[ReceivingQueueEntry]):

    async def upsert(self, entry: ReceivingQueueEntry) -> None:
        await self.collection.replace_one(
            {"purchase_order_id": entry.purchase_order_id},
            entry.to_mongo(),
            upsert=True,
        )

    async def remove(self, purchase_order_id: str) -> bool:
        result = await self.collection.delete_one({"purchase_order_id": purchase_order_id})
        return result.deleted_count > 0
