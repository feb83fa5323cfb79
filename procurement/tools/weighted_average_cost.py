import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Tuple

from procurement.collaborators import PurchaseOrderStorage, call_storage
from procurement.errors import CostCalculationError, StorageError
from procurement.models.config import CostingSettings, GLMapping
from procurement.models.costing import (
    AdjustmentType,
    CostCalculationInput,
    CostUpdateOutcome,
    CostUpdateTransaction,
    InventoryValueAdjustment,
    PriceVarianceRecord,
    ProductCostSnapshot,
    ProductCostUpdate,
    ReceiptCost,
    TransactionStatus,
    WeightedAverageCostResult,
)
from procurement.models.purchase_order import PurchaseOrderItem

logger = logging.getLogger(__name__)

class WeightedAverageCostEngine:
    """
    Weighted average costing for received goods.

    Handles:
    1. Recomputing the blended unit cost when stock arrives at a new price
    2. Price variance detection against the ordered cost
    3. Inventory value adjustments for the general ledger
    4. A transaction record for every batch of cost changes
    """

    def __init__(
        self,
        storage: Optional[PurchaseOrderStorage] = None,
        settings: Optional[CostingSettings] = None,
        storage_timeout: Optional[float] = None,
        max_parallel: int = 8,
    ):
        self.storage = storage
        self.settings = settings or CostingSettings()
        self.storage_timeout = storage_timeout
        self.max_parallel = max(1, max_parallel)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def _money(self, value: float) -> float:
        return round(value, self.settings.money_precision)

    def _unit(self, value: float) -> float:
        return round(value, self.settings.unit_cost_precision)

    def calculate_weighted_average_cost(self, data: CostCalculationInput) -> WeightedAverageCostResult:
        if data.current_stock < 0 or data.incoming_quantity <= 0:
            raise CostCalculationError(
                f"Invalid stock quantities for weighted average cost calculation of {data.product_id}"
            )
        if data.current_cost < 0 or data.incoming_cost < 0:
            raise CostCalculationError(
                f"Invalid cost values for weighted average cost calculation of {data.product_id}"
            )

        current_total_value = data.current_stock * data.current_cost
        incoming_total_value = data.incoming_quantity * data.incoming_cost
        new_stock = data.current_stock + data.incoming_quantity
        new_total_value = current_total_value + incoming_total_value

        if new_stock > self.settings.minimum_stock_for_costing:
            new_cost = new_total_value / new_stock
        else:
            new_cost = data.incoming_cost

        cost_variance = new_cost - data.current_cost
        variance_percentage = (cost_variance / data.current_cost) * 100 if data.current_cost > 0 else 0.0

        return WeightedAverageCostResult(
            product_id=data.product_id,
            current_stock=data.current_stock,
            current_cost=data.current_cost,
            current_total_value=self._money(current_total_value),
            incoming_quantity=data.incoming_quantity,
            incoming_cost=data.incoming_cost,
            incoming_total_value=self._money(incoming_total_value),
            new_stock=new_stock,
            new_weighted_average_cost=self._unit(new_cost),
            new_total_value=self._money(new_total_value),
            cost_variance=self._unit(cost_variance),
            cost_variance_percentage=round(variance_percentage, 2),
            significant_variance=abs(variance_percentage) > self.settings.significant_variance_percent,
        )

    async def get_current_product_cost(self, product_id: str) -> ProductCostSnapshot:
        storage = self._require_storage()
        result = await call_storage(
            f"get_product_cost({product_id})",
            storage.get_product_cost(product_id),
            self.storage_timeout,
        )
        if result.data is None:
            raise StorageError(f"get_product_cost({product_id})", f"Product {product_id} not found")
        if isinstance(result.data, ProductCostSnapshot):
            return result.data
        return ProductCostSnapshot.model_validate({"product_id": product_id, **result.data})

    async def calculate_batch_weighted_average_costs(
        self,
        receipts: List[ReceiptCost],
        reference_id: Optional[str] = None,
        reference_type: str = "purchase_order",
    ) -> List[WeightedAverageCostResult]:
        """
        Cost every receipt against the product's stored cost and stock.

        Receipts of the same product are folded in order, each one costed on
        top of the previous result. Distinct products are read in bounded
        parallel. A failing product is logged and skipped.
        """
        groups: Dict[str, List[Tuple[int, ReceiptCost]]] = {}
        for index, receipt in enumerate(receipts):
            groups.setdefault(receipt.product_id, []).append((index, receipt))

        semaphore = asyncio.Semaphore(self.max_parallel)

        async def run_product(product_id: str, entries: List[Tuple[int, ReceiptCost]]):
            async with semaphore:
                try:
                    snapshot = await self.get_current_product_cost(product_id)
                except StorageError as e:
                    logger.error(f"Skipping cost calculation for product {product_id}: {e}")
                    return []

            stock, cost = snapshot.stock, snapshot.cost
            costed = []
            for index, receipt in entries:
                try:
                    result = self.calculate_weighted_average_cost(CostCalculationInput(
                        product_id=product_id,
                        current_stock=stock,
                        current_cost=cost,
                        incoming_quantity=receipt.received_quantity,
                        incoming_cost=receipt.actual_cost,
                        reference_id=reference_id,
                        reference_type=reference_type,
                    ))
                except CostCalculationError as e:
                    logger.error(f"Error calculating weighted average cost for product {product_id}: {e}")
                    continue
                stock, cost = result.new_stock, result.new_weighted_average_cost
                costed.append((index, result))
            return costed

        gathered = await asyncio.gather(*(run_product(pid, entries) for pid, entries in groups.items()))
        ordered = sorted((pair for group in gathered for pair in group), key=lambda pair: pair[0])
        return [result for _, result in ordered]

    def detect_price_variances(
        self,
        ordered_items: List[PurchaseOrderItem],
        receipts: List[ReceiptCost],
        reference_id: str,
    ) -> List[PriceVarianceRecord]:
        """Compare actual against ordered unit cost. Only deviations above the recording threshold are returned."""
        by_product = {item.product_id: item for item in ordered_items}
        variances: List[PriceVarianceRecord] = []

        for receipt in receipts:
            po_item = by_product.get(receipt.product_id)
            if po_item is None:
                continue

            expected_cost = po_item.cost
            variance = receipt.actual_cost - expected_cost
            variance_percentage = (variance / expected_cost) * 100 if expected_cost > 0 else 0.0

            if abs(variance_percentage) > self.settings.price_variance_record_percent:
                variances.append(PriceVarianceRecord(
                    product_id=receipt.product_id,
                    product_name=po_item.product_name,
                    product_sku=po_item.product_sku,
                    reference_id=reference_id,
                    expected_cost=expected_cost,
                    actual_cost=receipt.actual_cost,
                    variance=self._unit(variance),
                    variance_percentage=round(variance_percentage, 2),
                    quantity=receipt.received_quantity,
                    total_variance_amount=self._money(variance * receipt.received_quantity),
                ))

        return variances

    def generate_inventory_value_adjustments(
        self,
        cost_results: List[WeightedAverageCostResult],
        gl_mapping: Optional[GLMapping] = None,
    ) -> List[InventoryValueAdjustment]:
        gl = gl_mapping or self.settings.gl_mapping
        adjustments = []
        for result in cost_results:
            amount = result.new_total_value - result.current_total_value
            if amount >= 0:
                adjustment_type = AdjustmentType.INCREASE
                debit, credit = gl.inventory_gl, gl.accounts_payable_gl
            else:
                adjustment_type = AdjustmentType.DECREASE
                debit, credit = gl.cost_of_goods_gl, gl.inventory_gl

            adjustments.append(InventoryValueAdjustment(
                product_id=result.product_id,
                old_cost=result.current_cost,
                new_cost=result.new_weighted_average_cost,
                stock_quantity=result.new_stock,
                old_total_value=result.current_total_value,
                new_total_value=result.new_total_value,
                adjustment_amount=self._money(abs(amount)),
                adjustment_type=adjustment_type,
                gl_account_debit=debit,
                gl_account_credit=credit,
            ))
        return adjustments

    async def update_product_costs(
        self,
        cost_results: List[WeightedAverageCostResult],
        reference_id: str,
        reference_type: str,
        processed_by: str,
    ) -> CostUpdateTransaction:
        """
        Persist new costs and record the transaction.
        On failure the transaction is recorded as failed and the error re-raised.
        """
        storage = self._require_storage()
        transaction = CostUpdateTransaction(
            reference_id=reference_id,
            reference_type=reference_type,
            processed_by=processed_by,
        )
        updates = [
            ProductCostUpdate(
                product_id=r.product_id,
                old_cost=r.current_cost,
                new_cost=r.new_weighted_average_cost,
                stock_quantity=r.new_stock,
                value_adjustment=self._money(r.value_adjustment),
            )
            for r in cost_results
        ]

        transaction.products = updates
        transaction.total_value_adjustment = self._money(sum(u.value_adjustment for u in updates))

        try:
            # Written as pending, then overwritten as completed or failed under the same id
            await call_storage(
                "record_cost_transaction",
                storage.record_cost_transaction(transaction),
                self.storage_timeout,
            )
            await call_storage(
                "update_product_costs",
                storage.update_product_costs(updates, transaction.batch_id),
                self.storage_timeout,
            )
            transaction.status = TransactionStatus.COMPLETED
            await call_storage(
                "record_cost_transaction",
                storage.record_cost_transaction(transaction),
                self.storage_timeout,
            )
        except StorageError as e:
            transaction.status = TransactionStatus.FAILED
            transaction.error = str(e)
            try:
                await call_storage(
                    "record_cost_transaction",
                    storage.record_cost_transaction(transaction),
                    self.storage_timeout,
                )
            except StorageError as record_error:
                logger.error(f"Could not record failed transaction {transaction.transaction_id}: {record_error}")
            raise

        logger.info(
            f"Cost update {transaction.transaction_id} completed for {len(updates)} products "
            f"(adjustment {transaction.total_value_adjustment:,.2f})"
        )
        return transaction

    async def process_purchase_order_cost_updates(
        self,
        purchase_order_id: str,
        ordered_items: List[PurchaseOrderItem],
        receipts: List[ReceiptCost],
        processed_by: str,
    ) -> CostUpdateOutcome:
        """Full receipt batch: cost, detect variances, persist, then build GL adjustments."""
        async with self._product_locks(r.product_id for r in receipts):
            cost_calculations = await self.calculate_batch_weighted_average_costs(receipts, reference_id=purchase_order_id)

            price_variances = self.detect_price_variances(ordered_items, receipts, purchase_order_id)
            if price_variances:
                storage = self._require_storage()
                await call_storage(
                    "save_price_variances",
                    storage.save_price_variances(price_variances),
                    self.storage_timeout,
                )
                logger.info(f"Recorded {len(price_variances)} price variances for PO {purchase_order_id}")

            transaction = await self.update_product_costs(
                cost_calculations,
                purchase_order_id,
                "purchase_order",
                processed_by,
            )

        value_adjustments = self.generate_inventory_value_adjustments(cost_calculations)

        return CostUpdateOutcome(
            cost_calculations=cost_calculations,
            price_variances=price_variances,
            value_adjustments=value_adjustments,
            transaction=transaction,
        )

    @asynccontextmanager
    async def _product_locks(self, product_ids: Iterable[str]):
        # Sorted acquisition so overlapping batches cannot deadlock
        ids = sorted(set(product_ids))
        for pid in ids:
            self._lock_users[pid] = self._lock_users.get(pid, 0) + 1
        locks = [self._locks.setdefault(pid, asyncio.Lock()) for pid in ids]
        acquired = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for pid in ids:
                self._lock_users[pid] -= 1
                # Nobody holds or waits on this product any more
                if not self._lock_users[pid]:
                    del self._lock_users[pid]
                    del self._locks[pid]

    def _require_storage(self) -> PurchaseOrderStorage:
        if self.storage is None:
            raise StorageError("storage", "no storage collaborator configured")
        return self.storage
