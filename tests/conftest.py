import pytest
from datetime import datetime
from unittest.mock import AsyncMock

from procurement.collaborators import HookResult, StorageResult
from procurement.models.purchase_order import (
    EnhancedStatus,
    PurchaseOrder,
    PurchaseOrderItem,
    to_legacy_status,
)
from procurement.workflow.orchestrator import ApprovalWorkflow

RECEIPT_DATE = datetime(2024, 3, 1, 9, 0, 0)

@pytest.fixture
def sample_items():
    return [
        PurchaseOrderItem(product_id="P-1", product_name="Rice 25kg", product_sku="RICE-25", quantity=100, cost=20.0, total=2000.0),
        PurchaseOrderItem(product_id="P-2", product_name="Cooking Oil 1L", product_sku="OIL-1", quantity=10, cost=4.0, total=40.0),
    ]

@pytest.fixture
def make_order(sample_items):
    def _make(status=EnhancedStatus.DRAFT, id="po_001", **overrides):
        status = EnhancedStatus(status)
        data = dict(
            id=id,
            po_number=f"PO-{id}",
            supplier_id="SUP-1",
            supplier_name="Metro Wholesale",
            items=[item.model_copy() for item in sample_items],
            subtotal=2040.0,
            tax=200.0,
            total=2240.0,
            status=to_legacy_status(status).value,
            enhanced_status=status,
            created_by="user:purchaser-1",
        )
        data.update(overrides)
        return PurchaseOrder(**data)
    return _make

@pytest.fixture
def mock_storage():
    storage = AsyncMock()
    storage.get_product_cost.return_value = StorageResult(success=True, data={"cost": 0.0, "stock": 0.0})
    storage.update_product_costs.return_value = StorageResult(success=True)
    storage.save_price_variances.return_value = StorageResult(success=True)
    storage.record_cost_transaction.return_value = StorageResult(success=True)
    storage.update_purchase_order_status.return_value = StorageResult(success=True)
    storage.update_receiving_queue.return_value = StorageResult(success=True)
    return storage

@pytest.fixture
def mock_audit():
    audit = AsyncMock()
    audit.log_purchase_order_action.return_value = "EVT-test"
    return audit

@pytest.fixture
def mock_notifications():
    notifications = AsyncMock()
    notifications.send.return_value = []
    return notifications

@pytest.fixture
def mock_hook():
    hook = AsyncMock()
    hook.on_status_changed.return_value = HookResult(success=True)
    return hook

@pytest.fixture
def workflow(mock_storage, mock_audit, mock_notifications, mock_hook):
    return ApprovalWorkflow(
        storage=mock_storage,
        audit=mock_audit,
        notifications=mock_notifications,
        hook=mock_hook,
        storage_timeout=1.0,
        audit_timeout=1.0,
        notification_timeout=1.0,
        hook_timeout=1.0,
    )
