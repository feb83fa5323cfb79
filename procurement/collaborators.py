"""
Contracts for the services the engine talks to but does not own.

Concrete MongoDB-backed versions live in procurement.repositories,
procurement.guardrails.audit_logger and procurement.tools; tests pass mocks.
"""
import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar

from pydantic import BaseModel

from procurement.errors import StorageError, AuditError
from procurement.models.audit import AuditRecord
from procurement.models.costing import (
    CostUpdateTransaction,
    PriceVarianceRecord,
    ProductCostUpdate,
)
from procurement.models.notification import NotificationLog
from procurement.models.purchase_order import EnhancedStatus, PurchaseOrder

logger = logging.getLogger(__name__)

T = TypeVar("T")

class StorageResult(BaseModel):
    success: bool
    message: str = ""
    data: Any = None

class HookResult(BaseModel):
    success: bool
    message: str = ""

class PurchaseOrderStorage(Protocol):
    """
    Record store. Implementations must serialize concurrent status writes to
    the same order. When `expected_status` is given the write only applies
    if the stored order is still in that status.
    """

    async def get_product_cost(self, product_id: str) -> StorageResult: ...

    async def update_product_costs(self, updates: List[ProductCostUpdate], batch_id: str) -> StorageResult: ...

    async def save_price_variances(self, records: List[PriceVarianceRecord]) -> StorageResult: ...

    async def record_cost_transaction(self, transaction: CostUpdateTransaction) -> StorageResult: ...

    async def update_purchase_order_status(
        self,
        purchase_order_id: str,
        legacy_status: str,
        enhanced_status: EnhancedStatus,
        changes: Optional[Dict[str, Any]] = None,
        expected_status: Optional[EnhancedStatus] = None,
    ) -> StorageResult: ...

    async def update_receiving_queue(self, purchase_order: PurchaseOrder, action: str) -> StorageResult: ...

class NotificationSender(Protocol):
    async def send(self, template_id: str, recipients: List[str], variables: Dict[str, Any]) -> List[NotificationLog]: ...

class AuditSink(Protocol):
    async def log_purchase_order_action(self, record: AuditRecord) -> str: ...

class IntegrationHook(Protocol):
    async def on_status_changed(
        self,
        purchase_order: PurchaseOrder,
        previous_status: EnhancedStatus,
        new_status: EnhancedStatus,
    ) -> HookResult: ...

async def with_timeout(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout)

async def call_storage(operation: str, awaitable: Awaitable[StorageResult], timeout: Optional[float]) -> StorageResult:
    """Await a storage call and turn failure or timeout into StorageError."""
    try:
        result = await with_timeout(awaitable, timeout)
    except asyncio.TimeoutError:
        logger.error(f"Storage timeout during {operation} after {timeout}s")
        raise StorageError(operation, f"timed out after {timeout}s")
    except StorageError:
        raise
    except Exception as e:
        logger.error(f"Storage error during {operation}: {e}")
        raise StorageError(operation, str(e)) from e
    if not result.success:
        logger.error(f"Storage failure during {operation}: {result.message}")
        raise StorageError(operation, result.message or "storage reported failure")
    return result

async def call_audit(audit: AuditSink, record: AuditRecord, timeout: Optional[float]) -> str:
    try:
        return await with_timeout(audit.log_purchase_order_action(record), timeout)
    except asyncio.TimeoutError:
        logger.error(f"Audit timeout for {record.purchase_order_id} after {timeout}s")
        raise AuditError("audit", f"timed out after {timeout}s")
    except AuditError:
        raise
    except Exception as e:
        logger.error(f"Audit write failed for {record.purchase_order_id}: {e}")
        raise AuditError("audit", str(e)) from e
