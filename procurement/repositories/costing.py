from typing import List
from procurement.repositories.base import BaseRepository
from procurement.models.costing import CostUpdateTransaction, PriceVarianceRecord

class PriceVarianceRepository(BaseRepository[PriceVarianceRecord]):

    async def get_for_reference(self, reference_id: str) -> List[PriceVarianceRecord]:
        return await self.get_all_by_field("reference_id", reference_id, sort_field="detected_at")

class CostTransactionRepository(BaseRepository[CostUpdateTransaction]):

    async def record(self, transaction: CostUpdateTransaction) -> None:
        """Insert or overwrite by transaction id, so the completed or failed record replaces the pending one."""
        await self.collection.replace_one(
            {"transaction_id": transaction.transaction_id},
            transaction.to_mongo(),
            upsert=True,
        )
