from procurement.models.base import MongoModel
from procurement.models.purchase_order import PurchaseOrder, PurchaseOrderItem, StatusTransition, EnhancedStatus, LegacyStatus, to_legacy_status, to_enhanced_status
from procurement.models.validation import ValidationError, ValidationWarning, ValidationResult, ReceivingValidationResult, ReceivingAdjustment
from procurement.models.receiving import ReceiptItem, DamageReport, ReceivingApproval, ReceivingContext, ReceivingUser, ReceivingStatistics, ReceivingResult, ReceivingQueueEntry
from procurement.models.costing import CostCalculationInput, WeightedAverageCostResult, PriceVarianceRecord, InventoryValueAdjustment, CostUpdateTransaction, ReceiptCost, CostUpdateOutcome
from procurement.models.audit import AuditRecord, AuditEvent, AuditAction
from procurement.models.notification import NotificationLog, NotificationTemplate, DeliveryStatus
from procurement.models.config import WorkflowConfig, ReceivingToleranceSettings, RolePermissionTable, CostingSettings, load_workflow_config
from procurement.models.approval import ApprovalRequest, RejectionRequest, BulkApprovalRequest, ApprovalResult, BulkApprovalResult
from procurement.models.product import Product
