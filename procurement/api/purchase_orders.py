from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, Field

from procurement.config import settings
from procurement.database import Database, get_db
from procurement.errors import CostCalculationError, StorageError
from procurement.models.approval import (
    ApprovalRequest,
    ApprovalResult,
    BulkApprovalRequest,
    BulkApprovalResult,
    RejectionRequest,
)
from procurement.models.audit import AuditEvent
from procurement.models.config import load_workflow_config
from procurement.models.costing import CostUpdateOutcome, PriceVarianceRecord, ReceiptCost
from procurement.models.purchase_order import EnhancedStatus, PurchaseOrder
from procurement.models.receiving import (
    ReceiptItem,
    ReceivingApproval,
    ReceivingContext,
    ReceivingResult,
    ReceivingStatistics,
    ReceivingUser,
)
from procurement.models.validation import ReceivingValidationResult, ValidationResult
from procurement.workflow.orchestrator import ApprovalWorkflow, build_approval_workflow
from procurement.workflow.state_machine import TransitionContext

router = APIRouter(prefix="/api/purchase-orders", tags=["Purchase Orders"])

_workflow: Optional[ApprovalWorkflow] = None

async def get_workflow(database: Database = Depends(get_db)) -> ApprovalWorkflow:
    """One workflow per process so per-product cost locks are shared."""
    global _workflow
    if _workflow is None:
        _workflow = build_approval_workflow(database, load_workflow_config(settings.WORKFLOW_CONFIG_PATH))
    return _workflow

class DecisionBody(BaseModel):
    role: str
    user_id: str
    user_email: str
    reason: str
    comments: Optional[str] = None
    reason_id: Optional[str] = None
    custom_reason: Optional[str] = None

class BulkDecisionBody(DecisionBody):
    purchase_order_ids: List[str] = Field(..., min_length=1)

class ReceivingBody(BaseModel):
    receipt_items: List[ReceiptItem]
    receiving_user: ReceivingUser
    approval: Optional[ReceivingApproval] = None
    received_to_date: Dict[str, float] = {}
    receipt_date: Optional[datetime] = None
    is_partial_receipt: bool = False
    previous_receipts_count: int = 0
    partial_reason: Optional[str] = None
    receipts: Optional[List[ReceiptCost]] = None

    def context(self, purchase_order: PurchaseOrder) -> ReceivingContext:
        return ReceivingContext(
            purchase_order=purchase_order,
            receiving_user=self.receiving_user,
            approval=self.approval,
            received_to_date=self.received_to_date,
            receipt_date=self.receipt_date or datetime.utcnow(),
            is_partial_receipt=self.is_partial_receipt,
            previous_receipts_count=self.previous_receipts_count,
            partial_reason=self.partial_reason,
        )

class ReceivingValidationResponse(BaseModel):
    validation: ReceivingValidationResult
    statistics: ReceivingStatistics
    recommendations: List[str] = []

class CostUpdateBody(BaseModel):
    actor_id: str
    receipts: List[ReceiptCost] = Field(..., min_length=1)

class TransitionCheckBody(BaseModel):
    target_status: EnhancedStatus
    role: Optional[str] = None
    performed_by: Optional[str] = None
    reason: Optional[str] = None

class TransitionCheckResponse(BaseModel):
    current_status: EnhancedStatus
    target_status: EnhancedStatus
    validation: ValidationResult
    permission: Optional[ValidationResult] = None
    valid_transitions: List[EnhancedStatus] = []
    is_final_state: bool = False

async def _load_order(database: Database, purchase_order_id: str) -> PurchaseOrder:
    order = await database.purchase_orders.get(purchase_order_id)
    if not order:
        raise HTTPException(status_code=404, detail=f"Purchase order {purchase_order_id} not found")
    return order

@router.post("/{purchase_order_id}/approve", response_model=ApprovalResult)
async def approve_purchase_order(
    purchase_order_id: str,
    body: DecisionBody = Body(...),
    database: Database = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    order = await _load_order(database, purchase_order_id)
    request = ApprovalRequest(purchase_order_id=purchase_order_id, **body.model_dump(exclude={"role"}))
    return await workflow.approve(order, request, body.role)

@router.post("/{purchase_order_id}/reject", response_model=ApprovalResult)
async def reject_purchase_order(
    purchase_order_id: str,
    body: DecisionBody = Body(...),
    database: Database = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    order = await _load_order(database, purchase_order_id)
    data = body.model_dump(exclude={"role"})
    data["comments"] = data.get("comments") or ""
    request = RejectionRequest(purchase_order_id=purchase_order_id, **data)
    return await workflow.reject(order, request, body.role)

@router.post("/bulk-approve", response_model=BulkApprovalResult)
async def bulk_approve_purchase_orders(
    body: BulkDecisionBody = Body(...),
    database: Database = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    orders = await database.purchase_orders.get_many(body.purchase_order_ids)
    found = {po.id for po in orders}
    missing = [po_id for po_id in body.purchase_order_ids if po_id not in found]

    request = BulkApprovalRequest(**body.model_dump(exclude={"role"}))
    result = await workflow.bulk_approve(orders, request, body.role)

    for po_id in missing:
        result.results.append(ApprovalResult(success=False, purchase_order_id=po_id, error="Purchase order not found"))
        result.errors.append(f"{po_id}: Purchase order not found")
    result.failure_count += len(missing)
    return result

@router.post("/{purchase_order_id}/receiving/validate", response_model=ReceivingValidationResponse)
async def validate_receiving(
    purchase_order_id: str,
    body: ReceivingBody = Body(...),
    database: Database = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    order = await _load_order(database, purchase_order_id)
    context = body.context(order)
    validation = workflow.validate_receiving(body.receipt_items, context)
    validator = workflow.tolerance_validator
    return ReceivingValidationResponse(
        validation=validation,
        statistics=validator.calculate_receiving_statistics(body.receipt_items, context.receipt_date),
        recommendations=validator.generate_receiving_recommendations(validation, body.receipt_items, context.receipt_date),
    )

@router.post("/{purchase_order_id}/receive", response_model=ReceivingResult)
async def receive_purchase_order(
    purchase_order_id: str,
    body: ReceivingBody = Body(...),
    database: Database = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    order = await _load_order(database, purchase_order_id)
    try:
        return await workflow.receive(order, body.receipt_items, body.context(order), body.receipts)
    except CostCalculationError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.post("/{purchase_order_id}/cost-updates", response_model=CostUpdateOutcome)
async def process_cost_updates(
    purchase_order_id: str,
    body: CostUpdateBody = Body(...),
    database: Database = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    order = await _load_order(database, purchase_order_id)
    try:
        return await workflow.process_receipt_cost_updates(order.id, order.items, body.receipts, body.actor_id)
    except CostCalculationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=502, detail=str(e))

@router.post("/{purchase_order_id}/transitions/validate", response_model=TransitionCheckResponse)
async def validate_transition(
    purchase_order_id: str,
    body: TransitionCheckBody = Body(...),
    database: Database = Depends(get_db),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    order = await _load_order(database, purchase_order_id)
    machine = workflow.state_machine
    current = order.current_status()
    validation = machine.validate_transition(
        order,
        body.target_status,
        TransitionContext(performed_by=body.performed_by, reason=body.reason),
    )
    permission = None
    if body.role:
        permission = machine.validate_user_permissions(body.role, body.target_status, order)
    return TransitionCheckResponse(
        current_status=current,
        target_status=body.target_status,
        validation=validation,
        permission=permission,
        valid_transitions=machine.get_valid_transitions(current),
        is_final_state=machine.is_final_state(current),
    )

@router.get("/{purchase_order_id}/audit-trail", response_model=List[AuditEvent])
async def get_audit_trail(purchase_order_id: str, database: Database = Depends(get_db)):
    """Every recorded action on the order, oldest first."""
    return await database.audit.get_for_purchase_order(purchase_order_id)

@router.get("/{purchase_order_id}/price-variances", response_model=List[PriceVarianceRecord])
async def get_price_variances(purchase_order_id: str, database: Database = Depends(get_db)):
    return await database.price_variances.get_for_reference(purchase_order_id)
