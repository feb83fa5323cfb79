"""
Purchase order state machine.

All status changes go through here. The machine validates and computes the
next order state; it never persists anything.
"""
import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from pydantic import BaseModel, Field

from procurement.guardrails.permissions import PermissionChecker
from procurement.models.purchase_order import (
    EnhancedStatus,
    PurchaseOrder,
    StatusTransition,
    to_legacy_status,
)
from procurement.models.validation import ValidationError, ValidationResult

logger = logging.getLogger(__name__)

S = EnhancedStatus

# current status -> statuses it may move to
PO_TRANSITIONS: Mapping[EnhancedStatus, FrozenSet[EnhancedStatus]] = {
    S.DRAFT: frozenset({S.PENDING_APPROVAL, S.CANCELLED}),
    S.PENDING_APPROVAL: frozenset({S.APPROVED, S.DRAFT, S.CANCELLED}),
    S.APPROVED: frozenset({S.SENT_TO_SUPPLIER, S.PARTIALLY_RECEIVED, S.FULLY_RECEIVED, S.CANCELLED}),
    S.SENT_TO_SUPPLIER: frozenset({S.PARTIALLY_RECEIVED, S.FULLY_RECEIVED, S.CANCELLED}),
    S.PARTIALLY_RECEIVED: frozenset({S.FULLY_RECEIVED}),
    S.FULLY_RECEIVED: frozenset({S.CLOSED}),
    S.CANCELLED: frozenset(),
    S.CLOSED: frozenset(),
}

RECEIVABLE_STATUSES = (S.APPROVED, S.SENT_TO_SUPPLIER, S.PARTIALLY_RECEIVED)

# The natural next step when nothing else decides it
NEXT_LOGICAL_STATUS: Mapping[EnhancedStatus, EnhancedStatus] = {
    S.DRAFT: S.PENDING_APPROVAL,
    S.PENDING_APPROVAL: S.APPROVED,
    S.APPROVED: S.SENT_TO_SUPPLIER,
    S.FULLY_RECEIVED: S.CLOSED,
}

class TransitionContext(BaseModel):
    performed_by: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None

class TransitionOutcome(BaseModel):
    updated_purchase_order: PurchaseOrder
    transition: Optional[StatusTransition] = None
    is_valid: bool
    errors: List[ValidationError] = []

class PurchaseOrderStateMachine:
    def __init__(
        self,
        permission_checker: Optional[PermissionChecker] = None,
        transitions: Optional[Mapping[EnhancedStatus, FrozenSet[EnhancedStatus]]] = None,
    ):
        self.permission_checker = permission_checker or PermissionChecker()
        self.transitions = transitions or PO_TRANSITIONS

    def can_transition(self, from_status: EnhancedStatus, to_status: EnhancedStatus) -> bool:
        return EnhancedStatus(to_status) in self.transitions.get(EnhancedStatus(from_status), frozenset())

    def get_valid_transitions(self, current_status: EnhancedStatus) -> List[EnhancedStatus]:
        allowed = self.transitions.get(EnhancedStatus(current_status), frozenset())
        return [s for s in EnhancedStatus if s in allowed]

    def is_final_state(self, status: EnhancedStatus) -> bool:
        return not self.transitions.get(EnhancedStatus(status))

    def validate_transition(
        self,
        purchase_order: PurchaseOrder,
        new_status: EnhancedStatus,
        context: TransitionContext,
    ) -> ValidationResult:
        """Check the edge and every business rule for the target status."""
        result = ValidationResult()
        new_status = EnhancedStatus(new_status)
        current = purchase_order.current_status()

        if not self.can_transition(current, new_status):
            result.add_error(
                code="INVALID_TRANSITION",
                message=f"Invalid transition from {current.value} to {new_status.value}",
                field="status",
            )

        if new_status == S.PENDING_APPROVAL:
            if not purchase_order.items:
                result.add_error(
                    code="NO_ITEMS",
                    message="Purchase order must have at least one item before approval",
                    field="items",
                )
            if purchase_order.total <= 0:
                result.add_error(
                    code="INVALID_TOTAL",
                    message="Purchase order total must be greater than zero",
                    field="total",
                )
            if not purchase_order.supplier_id:
                result.add_error(
                    code="NO_SUPPLIER",
                    message="Supplier must be selected before approval",
                    field="supplier_id",
                )

        elif new_status == S.APPROVED:
            if not context.performed_by:
                result.add_error(
                    code="NO_APPROVER",
                    message="Approver information is required",
                    field="performed_by",
                )

        elif new_status in (S.PARTIALLY_RECEIVED, S.FULLY_RECEIVED):
            if current not in RECEIVABLE_STATUSES:
                result.add_error(
                    code="NOT_READY_FOR_RECEIVING",
                    message="Purchase order must be approved or sent to supplier before receiving",
                    field="status",
                )

        elif new_status == S.CANCELLED:
            if current in (S.FULLY_RECEIVED, S.CLOSED):
                result.add_error(
                    code="CANNOT_CANCEL_RECEIVED",
                    message="Cannot cancel a received or closed purchase order",
                    field="status",
                )

        return result

    def execute_transition(
        self,
        purchase_order: PurchaseOrder,
        new_status: EnhancedStatus,
        context: TransitionContext,
    ) -> TransitionOutcome:
        """
        Validate, then return the updated order and a fresh transition record.
        The input order is left untouched.
        """
        new_status = EnhancedStatus(new_status)
        validation = self.validate_transition(purchase_order, new_status, context)
        if not validation.is_valid:
            logger.info(
                f"Rejected transition of {purchase_order.po_number} to {new_status.value}: {validation.error_codes()}"
            )
            return TransitionOutcome(
                updated_purchase_order=purchase_order,
                is_valid=False,
                errors=validation.errors,
            )

        current = purchase_order.current_status()
        transition = StatusTransition(
            from_status=current,
            to_status=new_status,
            timestamp=context.timestamp or datetime.utcnow(),
            performed_by=context.performed_by,
            reason=context.reason,
            metadata=dict(context.metadata),
        )

        changes: Dict[str, Any] = {
            "status": to_legacy_status(new_status).value,
            "enhanced_status": new_status,
        }
        if new_status == S.FULLY_RECEIVED and purchase_order.received_date is None:
            changes["received_date"] = transition.timestamp

        updated = purchase_order.model_copy(update=changes, deep=True)
        logger.info(f"PO {purchase_order.po_number}: {current.value} -> {new_status.value} ({transition.id})")

        return TransitionOutcome(updated_purchase_order=updated, transition=transition, is_valid=True)

    def get_next_logical_status(
        self,
        purchase_order: PurchaseOrder,
        received_quantities: Optional[Dict[str, float]] = None,
    ) -> Optional[EnhancedStatus]:
        """
        Suggest the natural next status. Never applied automatically.
        `received_quantities` maps product id to cumulative quantity received.
        """
        current = purchase_order.current_status()

        if current in (S.SENT_TO_SUPPLIER, S.PARTIALLY_RECEIVED):
            if received_quantities is not None and self._is_fully_received(purchase_order, received_quantities):
                return S.FULLY_RECEIVED
            return S.PARTIALLY_RECEIVED

        if current == S.APPROVED and received_quantities:
            # Goods can arrive before the order is marked as sent
            if self._is_fully_received(purchase_order, received_quantities):
                return S.FULLY_RECEIVED
            return S.PARTIALLY_RECEIVED

        return NEXT_LOGICAL_STATUS.get(current)

    def validate_user_permissions(
        self,
        role: str,
        new_status: EnhancedStatus,
        purchase_order: PurchaseOrder,
    ) -> ValidationResult:
        return self.permission_checker.validate_user_permissions(role, new_status, purchase_order)

    def _is_fully_received(self, purchase_order: PurchaseOrder, received_quantities: Dict[str, float]) -> bool:
        return all(
            received_quantities.get(item.product_id, 0) >= item.quantity
            for item in purchase_order.items
        )
