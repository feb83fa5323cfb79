import json
import logging
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

class ToleranceType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"

class DamagedItemHandling(str, Enum):
    REJECT = "reject"
    PARTIAL_ACCEPT = "partial_accept"
    FULL_ACCEPT = "full_accept"

class ToleranceConfig(BaseModel):
    """Quantity variance thresholds. Percentages are of the ordered quantity."""
    enabled: bool = True
    tolerance_type: ToleranceType = ToleranceType.PERCENTAGE
    tolerance_value: float = Field(5.0, ge=0)
    require_approval: bool = True
    approval_roles: List[str] = ["manager"]
    auto_accept: bool = False
    warning_threshold: float = Field(3.0, ge=0)
    block_threshold: Optional[float] = Field(10.0, ge=0)
    notify_on_variance: bool = True

    def units(self, value: Optional[float], ordered_quantity: float) -> Optional[float]:
        """Convert a configured threshold to units for a given order line."""
        if value is None:
            return None
        if self.tolerance_type == ToleranceType.PERCENTAGE:
            return ordered_quantity * value / 100
        return value

    @field_validator("block_threshold")
    @classmethod
    def validate_block(cls, v, info):
        if v is not None and "tolerance_value" in info.data and v < info.data["tolerance_value"]:
            raise ValueError("block_threshold must not be below tolerance_value")
        return v

class PartialReceivingConfig(BaseModel):
    enabled: bool = True
    allow_partial_receipts: bool = True
    max_partial_receipts: int = 5
    close_on_partial_after_days: Optional[int] = 30
    require_reason_for_partial: bool = True
    notify_on_partial_receipt: bool = True

class QualityCheckConfig(BaseModel):
    enabled: bool = True
    require_quality_check: bool = False
    quality_check_roles: List[str] = ["admin", "manager", "warehouse"]
    rejection_reasons: List[str] = ["Damaged", "Wrong Item", "Poor Quality", "Expired"]
    damaged_item_handling: DamagedItemHandling = DamagedItemHandling.PARTIAL_ACCEPT
    quality_hold_days: int = 3

class ExpiryHandlingConfig(BaseModel):
    enabled: bool = True
    check_expiry_on_receipt: bool = True
    warn_before_expiry_days: int = 30
    reject_expired_items: bool = True
    accept_near_expiry_with_approval: bool = True
    near_expiry_threshold_days: int = 7
    approval_roles: List[str] = ["manager"]

class DamageHandlingConfig(BaseModel):
    enabled: bool = True
    require_damage_report: bool = True
    photograph_required: bool = False
    damage_categories: List[str] = ["Physical Damage", "Water Damage", "Contamination", "Packaging Issue"]
    auto_create_credit_note: bool = False
    notify_supplier_on_damage: bool = True

class ReceivingToleranceSettings(BaseModel):
    over_receiving: ToleranceConfig = Field(default_factory=ToleranceConfig)
    under_receiving: ToleranceConfig = Field(default_factory=lambda: ToleranceConfig(
        tolerance_value=10.0,
        require_approval=False,
        approval_roles=[],
        auto_accept=True,
        warning_threshold=5.0,
        block_threshold=None,
    ))
    partial_receiving: PartialReceivingConfig = Field(default_factory=PartialReceivingConfig)
    quality_checks: QualityCheckConfig = Field(default_factory=QualityCheckConfig)
    expiry_handling: ExpiryHandlingConfig = Field(default_factory=ExpiryHandlingConfig)
    damage_handling: DamageHandlingConfig = Field(default_factory=DamageHandlingConfig)
    receiving_roles: List[str] = ["admin", "manager", "warehouse", "employee"]

class RolePermissionTable(BaseModel):
    """
    Which target statuses each role may move an order into, plus per-role
    approval ceilings. "*" grants every status.
    """
    allowed_statuses: Dict[str, List[str]] = {
        "admin": ["*"],
        "manager": ["pending_approval", "approved", "cancelled", "partially_received", "fully_received"],
        "purchaser": ["draft", "pending_approval", "cancelled"],
        "warehouse": ["partially_received", "fully_received"],
    }
    approval_limits: Dict[str, float] = {
        "manager": 50000.0,
    }
    bulk_approval_limits: Dict[str, float] = {
        "manager": 100000.0,
    }

    def statuses_for(self, role: str) -> List[str]:
        return self.allowed_statuses.get(role, [])

    def approval_limit(self, role: str) -> Optional[float]:
        return self.approval_limits.get(role)

class GLMapping(BaseModel):
    """Placeholder ledger accounts for inventory revaluation."""
    inventory_gl: str = "1200"
    accounts_payable_gl: str = "2000"
    cost_of_goods_gl: str = "5000"

class CostingSettings(BaseModel):
    significant_variance_percent: float = 10.0
    price_variance_record_percent: float = 5.0
    minimum_stock_for_costing: float = 0.001
    money_precision: int = 2
    unit_cost_precision: int = 4
    gl_mapping: GLMapping = Field(default_factory=GLMapping)

class NotificationSettings(BaseModel):
    enabled: bool = True
    channels: List[str] = ["email"]
    # Decision notifications go to these plus the order creator
    approval_recipients: List[str] = ["role:manager", "role:finance"]
    receiving_recipients: List[str] = ["role:warehouse"]

class WorkflowConfig(BaseModel):
    """
    Versioned business rules for the purchase order engine.
    Editable as data so that permission or tolerance changes need no redeploy.
    """
    version: str = "1"
    receiving: ReceivingToleranceSettings = Field(default_factory=ReceivingToleranceSettings)
    permissions: RolePermissionTable = Field(default_factory=RolePermissionTable)
    costing: CostingSettings = Field(default_factory=CostingSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

def load_workflow_config(path: Optional[str] = None) -> WorkflowConfig:
    """Load rules from a JSON file, falling back to defaults when no path is set."""
    if not path:
        return WorkflowConfig()
    config_path = Path(path)
    if not config_path.exists():
        logger.warning(f"Workflow config {path} not found, using defaults")
        return WorkflowConfig()
    with config_path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    config = WorkflowConfig.model_validate(data)
    logger.info(f"Loaded workflow config version {config.version} from {path}")
    return config
