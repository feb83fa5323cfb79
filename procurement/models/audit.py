from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import ConfigDict, Field
from procurement.models.base import MongoModel

class AuditAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    BULK_APPROVED = "bulk_approved"
    RECEIVED = "received"

class AuditRecord(MongoModel):
    """
    Structured purchase order action handed to the audit collaborator.
    """
    purchase_order_id: str
    purchase_order_number: Optional[str] = None
    action: AuditAction
    performed_by: str
    performed_by_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "purchase_order_id": "po_123",
            "purchase_order_number": "PO-2024-0042",
            "action": "approved",
            "performed_by": "user_7",
            "old_values": {"status": "pending_approval"},
            "new_values": {"status": "approved"},
            "reason": "Approved: Budget confirmed"
        }
    })

class AuditEvent(AuditRecord):
    """Stored form of an AuditRecord."""
    event_id: str = Field(..., description="Unique event ID")
