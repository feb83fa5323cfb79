from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import uuid4
from pydantic import BaseModel, Field
from procurement.models.base import MongoModel

class CostCalculationInput(BaseModel):
    product_id: str
    current_stock: float
    current_cost: float
    incoming_quantity: float
    incoming_cost: float
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None # purchase_order, adjustment, transfer

class WeightedAverageCostResult(BaseModel):
    product_id: str
    current_stock: float
    current_cost: float
    current_total_value: float
    incoming_quantity: float
    incoming_cost: float
    incoming_total_value: float
    new_stock: float
    new_weighted_average_cost: float
    new_total_value: float
    cost_variance: float
    cost_variance_percentage: float
    significant_variance: bool

    @property
    def value_adjustment(self) -> float:
        return self.new_total_value - self.current_total_value

class ProductCostSnapshot(BaseModel):
    """Current cost and on-hand stock as read from storage."""
    product_id: str
    cost: float = 0.0
    stock: float = 0.0

class ReceiptCost(BaseModel):
    """Actual landed cost of one receipt line."""
    product_id: str
    received_quantity: float
    actual_cost: float
    batch_number: Optional[str] = None

class VarianceStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"

class PriceVarianceRecord(MongoModel):
    record_id: str = Field(default_factory=lambda: f"pv_{uuid4().hex}")
    product_id: str
    product_name: str = ""
    product_sku: Optional[str] = None
    reference_id: str
    reference_type: str = "purchase_order"
    expected_cost: float
    actual_cost: float
    variance: float
    variance_percentage: float
    quantity: float
    total_variance_amount: float
    detected_at: datetime = Field(default_factory=datetime.utcnow)
    status: VarianceStatus = VarianceStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    notes: Optional[str] = None

class AdjustmentType(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"

class InventoryValueAdjustment(BaseModel):
    """Signed GL entry for a change in inventory valuation."""
    product_id: str
    old_cost: float
    new_cost: float
    stock_quantity: float
    old_total_value: float
    new_total_value: float
    adjustment_amount: float
    adjustment_type: AdjustmentType
    gl_account_debit: Optional[str] = None
    gl_account_credit: Optional[str] = None

class ProductCostUpdate(BaseModel):
    product_id: str
    old_cost: float
    new_cost: float
    stock_quantity: float
    value_adjustment: float

class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class CostUpdateTransaction(MongoModel):
    transaction_id: str = Field(default_factory=lambda: f"txn_{uuid4().hex}")
    batch_id: str = Field(default_factory=lambda: f"batch_{uuid4().hex[:12]}")
    products: List[ProductCostUpdate] = []
    total_value_adjustment: float = 0.0
    reference_id: str
    reference_type: str = "purchase_order"
    processed_by: str
    processed_at: datetime = Field(default_factory=datetime.utcnow)
    status: TransactionStatus = TransactionStatus.PENDING
    error: Optional[str] = None

class CostUpdateOutcome(BaseModel):
    cost_calculations: List[WeightedAverageCostResult] = []
    price_variances: List[PriceVarianceRecord] = []
    value_adjustments: List[InventoryValueAdjustment] = []
    transaction: CostUpdateTransaction
