import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from procurement.collaborators import StorageResult
from procurement.models.costing import CostUpdateTransaction, PriceVarianceRecord, ProductCostUpdate
from procurement.models.purchase_order import EnhancedStatus, PurchaseOrder
from procurement.models.receiving import ReceivingQueueEntry
from procurement.repositories.costing import CostTransactionRepository, PriceVarianceRepository
from procurement.repositories.product import ProductRepository
from procurement.repositories.purchase_order import PurchaseOrderRepository
from procurement.repositories.receiving_queue import ReceivingQueueRepository

logger = logging.getLogger(__name__)

class MongoStorage:
    """
    PurchaseOrderStorage backed by the MongoDB repositories.
    Driver errors are reported as failed results, never raised.
    """

    def __init__(
        self,
        purchase_orders: PurchaseOrderRepository,
        products: ProductRepository,
        price_variances: PriceVarianceRepository,
        cost_transactions: CostTransactionRepository,
        receiving_queue: ReceivingQueueRepository,
    ):
        self.purchase_orders = purchase_orders
        self.products = products
        self.price_variances = price_variances
        self.cost_transactions = cost_transactions
        self.receiving_queue = receiving_queue

    async def get_product_cost(self, product_id: str) -> StorageResult:
        try:
            snapshot = await self.products.get_cost_snapshot(product_id)
        except PyMongoError as e:
            return self._failed("get_product_cost", e)
        if snapshot is None:
            return StorageResult(success=False, message=f"Product {product_id} not found")
        return StorageResult(success=True, data=snapshot)

    async def update_product_costs(self, updates: List[ProductCostUpdate], batch_id: str) -> StorageResult:
        try:
            matched = await self.products.apply_cost_updates(updates, batch_id)
        except PyMongoError as e:
            return self._failed("update_product_costs", e)
        if matched != len(updates):
            return StorageResult(
                success=False,
                message=f"Only {matched} of {len(updates)} products found for batch {batch_id}",
            )
        return StorageResult(success=True, data={"matched": matched})

    async def save_price_variances(self, records: List[PriceVarianceRecord]) -> StorageResult:
        try:
            await self.price_variances.create_many(records)
        except PyMongoError as e:
            return self._failed("save_price_variances", e)
        return StorageResult(success=True, data={"inserted": len(records)})

    async def record_cost_transaction(self, transaction: CostUpdateTransaction) -> StorageResult:
        try:
            await self.cost_transactions.record(transaction)
        except PyMongoError as e:
            return self._failed("record_cost_transaction", e)
        return StorageResult(success=True, data={"transaction_id": transaction.transaction_id})

    async def update_purchase_order_status(
        self,
        purchase_order_id: str,
        legacy_status: str,
        enhanced_status: EnhancedStatus,
        changes: Optional[Dict[str, Any]] = None,
        expected_status: Optional[EnhancedStatus] = None,
    ) -> StorageResult:
        try:
            updated = await self.purchase_orders.update_status(
                purchase_order_id, legacy_status, enhanced_status, changes, expected_status
            )
        except PyMongoError as e:
            return self._failed("update_purchase_order_status", e)
        if not updated:
            return StorageResult(
                success=False,
                message=f"Purchase order {purchase_order_id} not found or changed concurrently",
            )
        return StorageResult(success=True)

    async def update_receiving_queue(self, purchase_order: PurchaseOrder, action: str) -> StorageResult:
        try:
            if action == "remove":
                await self.receiving_queue.remove(purchase_order.id)
            else:
                await self.receiving_queue.upsert(ReceivingQueueEntry(
                    purchase_order_id=purchase_order.id,
                    po_number=purchase_order.po_number,
                    supplier_name=purchase_order.supplier_name,
                    status=purchase_order.current_status().value,
                    total=purchase_order.total,
                    expected_items=len(purchase_order.items),
                ))
        except PyMongoError as e:
            return self._failed("update_receiving_queue", e)
        return StorageResult(success=True)

    def _failed(self, operation: str, error: Exception) -> StorageResult:
        logger.error(f"MongoDB error during {operation}: {error}")
        return StorageResult(success=False, message=str(error))
