from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import Field
from procurement.models.base import MongoModel

class NotificationTemplate(str, Enum):
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    BULK_APPROVAL = "bulk_approval"
    PARTIAL_RECEIPT = "partial_receipt"
    FULL_RECEIPT = "full_receipt"
    PRICE_VARIANCE_ALERT = "price_variance_alert"

class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"

class NotificationLog(MongoModel):
    template_id: str
    recipient: str
    channel: str = "email"
    status: DeliveryStatus
    error: Optional[str] = None
    sent_at: datetime = Field(default_factory=datetime.utcnow)
