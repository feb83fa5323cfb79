from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field
from procurement.models.base import MongoModel, PyObjectId

class EnhancedStatus(str, Enum):
    """Canonical status vocabulary used by every decision in the engine."""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    SENT_TO_SUPPLIER = "sent_to_supplier"
    PARTIALLY_RECEIVED = "partially_received"
    FULLY_RECEIVED = "fully_received"
    CANCELLED = "cancelled"
    CLOSED = "closed"

class LegacyStatus(str, Enum):
    """Status vocabulary understood by the persistence layer."""
    DRAFT = "draft"
    SENT = "sent"
    RECEIVED = "received"
    PARTIAL = "partial"
    CANCELLED = "cancelled"

# Lossy on purpose: several enhanced values collapse onto one legacy value.
ENHANCED_TO_LEGACY: Dict[EnhancedStatus, LegacyStatus] = {
    EnhancedStatus.DRAFT: LegacyStatus.DRAFT,
    EnhancedStatus.PENDING_APPROVAL: LegacyStatus.DRAFT,
    EnhancedStatus.APPROVED: LegacyStatus.SENT,
    EnhancedStatus.SENT_TO_SUPPLIER: LegacyStatus.SENT,
    EnhancedStatus.PARTIALLY_RECEIVED: LegacyStatus.PARTIAL,
    EnhancedStatus.FULLY_RECEIVED: LegacyStatus.RECEIVED,
    EnhancedStatus.CANCELLED: LegacyStatus.CANCELLED,
    EnhancedStatus.CLOSED: LegacyStatus.RECEIVED,
}

LEGACY_TO_ENHANCED: Dict[LegacyStatus, EnhancedStatus] = {
    LegacyStatus.DRAFT: EnhancedStatus.DRAFT,
    LegacyStatus.SENT: EnhancedStatus.SENT_TO_SUPPLIER,
    LegacyStatus.RECEIVED: EnhancedStatus.FULLY_RECEIVED,
    LegacyStatus.PARTIAL: EnhancedStatus.PARTIALLY_RECEIVED,
    LegacyStatus.CANCELLED: EnhancedStatus.CANCELLED,
}

def to_legacy_status(status: Union[EnhancedStatus, str]) -> LegacyStatus:
    """Project a canonical status onto the persistence vocabulary."""
    try:
        return ENHANCED_TO_LEGACY[EnhancedStatus(status)]
    except ValueError:
        return LegacyStatus.DRAFT

def to_enhanced_status(status: Union[EnhancedStatus, LegacyStatus, str, None]) -> EnhancedStatus:
    """
    Read a stored status back into the canonical vocabulary.
    Legacy values are mapped, canonical values pass through, anything else is draft.
    """
    if status is None:
        return EnhancedStatus.DRAFT
    value = status.value if isinstance(status, Enum) else str(status)
    try:
        return LEGACY_TO_ENHANCED[LegacyStatus(value)]
    except ValueError:
        pass
    try:
        return EnhancedStatus(value)
    except ValueError:
        return EnhancedStatus.DRAFT

TERMINAL_STATUSES = (EnhancedStatus.CANCELLED, EnhancedStatus.CLOSED)

class PurchaseOrderItem(MongoModel):
    product_id: str
    product_name: str = ""
    product_sku: Optional[str] = None
    quantity: float = Field(..., ge=0)
    cost: float = Field(..., ge=0, description="Ordered unit cost")
    total: float = Field(0.0, ge=0)

    def line_total(self) -> float:
        return self.total or round(self.quantity * self.cost, 2)

class PurchaseOrder(MongoModel):
    """
    Purchase order document.
    `status` is the legacy value the store understands; `enhanced_status`
    carries the canonical value when known and always wins over `status`.
    """
    id: PyObjectId = Field(..., alias="_id")
    po_number: str = Field(..., description="Human readable PO number")

    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None

    items: List[PurchaseOrderItem] = []

    subtotal: float = 0.0
    tax: float = 0.0
    total: float = 0.0
    currency: str = "PHP"

    status: str = LegacyStatus.DRAFT.value
    enhanced_status: Optional[EnhancedStatus] = None

    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    received_date: Optional[datetime] = None

    def current_status(self) -> EnhancedStatus:
        if self.enhanced_status is not None:
            return self.enhanced_status
        return to_enhanced_status(self.status)

    def is_terminal(self) -> bool:
        return self.current_status() in TERMINAL_STATUSES

    def calculate_totals(self) -> float:
        """Recalculate total from line items and tax."""
        return round(sum(item.line_total() for item in self.items) + self.tax, 2)

    def totals_consistent(self, tolerance: float = 0.01) -> bool:
        return abs(self.calculate_totals() - self.total) <= tolerance

class StatusTransition(BaseModel):
    """Append-only audit of a single successful status change."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"transition_{uuid4().hex}")
    from_status: EnhancedStatus
    to_status: EnhancedStatus
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    performed_by: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
