from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from procurement.models.base import MongoModel
from procurement.models.costing import CostUpdateOutcome
from procurement.models.purchase_order import PurchaseOrder
from procurement.models.validation import ReceivingValidationResult, ValidationError

class ItemCondition(str, Enum):
    GOOD = "good"
    DAMAGED = "damaged"
    EXPIRED = "expired"

class QualityStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class DamageSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"

class DamageReport(BaseModel):
    category: str = Field(..., description="One of the configured damage categories")
    description: str
    severity: DamageSeverity = DamageSeverity.MINOR
    affected_quantity: float = Field(0.0, ge=0)
    photographs: List[str] = []
    reported_by: str
    report_date: datetime = Field(default_factory=datetime.utcnow)
    estimated_loss: Optional[float] = None
    supplier_notified: bool = False

class ReceiptItem(BaseModel):
    """One order line as counted at the dock. Built per receiving action."""
    purchase_order_item_id: str
    product_id: str
    product_name: str = ""
    ordered_quantity: float
    received_quantity: float
    previously_received_quantity: float = 0.0
    condition: ItemCondition = ItemCondition.GOOD
    quality_status: Optional[QualityStatus] = None
    expiry_date: Optional[datetime] = None
    batch_number: Optional[str] = None
    damage_report: Optional[DamageReport] = None
    notes: Optional[str] = None

    def total_received(self) -> float:
        return self.previously_received_quantity + self.received_quantity

    def quantity_variance(self) -> float:
        """Positive when over-received, negative when short."""
        return self.total_received() - self.ordered_quantity

class ReceivingUser(BaseModel):
    user_id: str
    name: str = ""
    role: str

class ReceivingApproval(BaseModel):
    """Sign-off for a receipt the tolerance rules hold for approval."""
    approved_by: str
    role: str
    reason: Optional[str] = None

class ReceivingContext(BaseModel):
    purchase_order: PurchaseOrder
    receiving_user: ReceivingUser
    approval: Optional[ReceivingApproval] = None
    # Quantity received so far per product, for order lines this receipt does not list
    received_to_date: Dict[str, float] = {}
    receipt_date: datetime = Field(default_factory=datetime.utcnow)
    is_partial_receipt: bool = False
    previous_receipts_count: int = 0
    partial_reason: Optional[str] = None
    metadata: Dict[str, Any] = {}

class ReceivingQueueEntry(MongoModel):
    """Read model behind the warehouse's list of orders awaiting goods."""
    purchase_order_id: str
    po_number: str
    supplier_name: Optional[str] = None
    status: str
    total: float = 0.0
    expected_items: int = 0
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class ReceivingStatistics(BaseModel):
    total_items: int = 0
    fully_received_items: int = 0
    partially_received_items: int = 0
    damaged_items: int = 0
    expired_items: int = 0
    completion_percentage: float = 0.0
    total_variance: float = 0.0
    average_variance_percentage: float = 0.0

class ReceivingResult(BaseModel):
    """Outcome of a full receive: validation, status change and cost updates."""
    success: bool
    purchase_order_id: str
    validation: ReceivingValidationResult
    error: Optional[str] = None
    errors: List[ValidationError] = []
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    audit_log_id: Optional[str] = None
    cost_updates: Optional[CostUpdateOutcome] = None
