from datetime import datetime
from typing import Optional
from pydantic import Field
from procurement.models.base import MongoModel

class Product(MongoModel):
    """Inventory product as far as costing is concerned."""
    name: str = ""
    sku: Optional[str] = None
    cost: float = Field(0.0, ge=0, description="Current weighted average unit cost")
    stock: float = 0.0
    updated_at: Optional[datetime] = None
    last_cost_batch_id: Optional[str] = None
