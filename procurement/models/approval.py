from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field
from procurement.models.validation import ValidationError

class ApprovalRequest(BaseModel):
    purchase_order_id: Optional[str] = None
    reason: str
    comments: Optional[str] = None
    user_id: str
    user_email: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    reason_id: Optional[str] = None
    custom_reason: Optional[str] = None

class RejectionRequest(ApprovalRequest):
    comments: str = ""

class BulkApprovalRequest(BaseModel):
    purchase_order_ids: List[str] = []
    reason: str
    comments: Optional[str] = None
    user_id: str
    user_email: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    reason_id: Optional[str] = None
    custom_reason: Optional[str] = None

    def for_order(self, purchase_order_id: str) -> ApprovalRequest:
        return ApprovalRequest(
            purchase_order_id=purchase_order_id,
            reason=self.reason,
            comments=self.comments,
            user_id=self.user_id,
            user_email=self.user_email,
            timestamp=self.timestamp,
            reason_id=self.reason_id,
            custom_reason=self.custom_reason,
        )

class ApprovalResult(BaseModel):
    success: bool
    purchase_order_id: str
    error: Optional[str] = None
    errors: List[ValidationError] = []
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    audit_log_id: Optional[str] = None

class BulkApprovalResult(BaseModel):
    results: List[ApprovalResult] = []
    success_count: int = 0
    failure_count: int = 0
    errors: List[str] = []
    audit_log_id: Optional[str] = None
