"""
Approval workflow orchestrator.

Runs the business actions (approve, reject, bulk approve, receive) on top of
the state machine. Every action follows the same order:
permission -> transition -> persist -> audit -> notify -> hook.
Storage and audit failures fail the action; notification and hook failures
are logged and ignored.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from procurement.collaborators import (
    AuditSink,
    IntegrationHook,
    NotificationSender,
    PurchaseOrderStorage,
    call_audit,
    call_storage,
    with_timeout,
)
from procurement.config import settings
from procurement.errors import AuditError, StorageError
from procurement.guardrails.audit_logger import AuditLogger
from procurement.guardrails.permissions import PermissionChecker
from procurement.models.approval import (
    ApprovalRequest,
    ApprovalResult,
    BulkApprovalRequest,
    BulkApprovalResult,
    RejectionRequest,
)
from procurement.models.audit import AuditAction, AuditRecord
from procurement.models.config import WorkflowConfig
from procurement.models.costing import CostUpdateOutcome, ReceiptCost
from procurement.models.notification import DeliveryStatus, NotificationTemplate
from procurement.models.purchase_order import (
    EnhancedStatus,
    PurchaseOrder,
    PurchaseOrderItem,
    to_legacy_status,
)
from procurement.models.receiving import ReceiptItem, ReceivingContext, ReceivingResult
from procurement.models.validation import ReceivingValidationResult, ValidationError
from procurement.tools.integration_hooks import ReceivingQueueHook
from procurement.tools.notification_tool import NotificationTool
from procurement.tools.receiving_tolerance import ReceivingToleranceValidator
from procurement.tools.weighted_average_cost import WeightedAverageCostEngine
from procurement.workflow.state_machine import PurchaseOrderStateMachine, TransitionContext

logger = logging.getLogger(__name__)

BULK_OPERATION_ID = "BULK_OPERATION"

def _reason(prefix: str, reason: str, comments: Optional[str]) -> str:
    return f"{prefix}: {reason}" + (f" - {comments}" if comments else "")

class ApprovalWorkflow:
    def __init__(
        self,
        storage: PurchaseOrderStorage,
        audit: AuditSink,
        notifications: Optional[NotificationSender] = None,
        hook: Optional[IntegrationHook] = None,
        config: Optional[WorkflowConfig] = None,
        state_machine: Optional[PurchaseOrderStateMachine] = None,
        tolerance_validator: Optional[ReceivingToleranceValidator] = None,
        cost_engine: Optional[WeightedAverageCostEngine] = None,
        storage_timeout: Optional[float] = settings.STORAGE_TIMEOUT_SECONDS,
        audit_timeout: Optional[float] = settings.AUDIT_TIMEOUT_SECONDS,
        notification_timeout: Optional[float] = settings.NOTIFICATION_TIMEOUT_SECONDS,
        hook_timeout: Optional[float] = settings.HOOK_TIMEOUT_SECONDS,
    ):
        self.config = config or WorkflowConfig()
        self.storage = storage
        self.audit = audit
        self.notifications = notifications
        self.hook = hook
        self.permission_checker = PermissionChecker(self.config.permissions)
        self.state_machine = state_machine or PurchaseOrderStateMachine(self.permission_checker)
        self.tolerance_validator = tolerance_validator or ReceivingToleranceValidator(self.config.receiving)
        self.cost_engine = cost_engine or WeightedAverageCostEngine(
            storage=storage,
            settings=self.config.costing,
            storage_timeout=storage_timeout,
            max_parallel=settings.MAX_PARALLEL_PRODUCT_READS,
        )
        self.storage_timeout = storage_timeout
        self.audit_timeout = audit_timeout
        self.notification_timeout = notification_timeout
        self.hook_timeout = hook_timeout

    async def approve(self, purchase_order: PurchaseOrder, request: ApprovalRequest, role: str) -> ApprovalResult:
        return await self._decide(
            purchase_order,
            request,
            role,
            target=EnhancedStatus.APPROVED,
            action=AuditAction.APPROVED,
            template=NotificationTemplate.APPROVAL_GRANTED,
            reason=_reason("Approved", request.reason, request.comments),
            changes={"approved_by": request.user_id, "approved_at": request.timestamp},
        )

    async def reject(self, purchase_order: PurchaseOrder, request: RejectionRequest, role: str) -> ApprovalResult:
        # Rejecting needs the same authority as approving
        return await self._decide(
            purchase_order,
            request,
            role,
            target=EnhancedStatus.CANCELLED,
            action=AuditAction.REJECTED,
            template=NotificationTemplate.APPROVAL_REJECTED,
            reason=_reason("Rejected", request.reason, request.comments),
            changes={"cancelled_by": request.user_id, "cancelled_at": request.timestamp},
        )

    async def bulk_approve(
        self,
        purchase_orders: List[PurchaseOrder],
        request: BulkApprovalRequest,
        role: str,
    ) -> BulkApprovalResult:
        """
        Approve each order independently, then write one consolidated audit
        entry and send one consolidated notification.
        """
        violations = self.validate_approval_thresholds(role, purchase_orders)
        for violation in violations:
            logger.warning(f"Bulk approval threshold: {violation}")

        results: List[ApprovalResult] = []
        errors: List[str] = []
        for po in purchase_orders:
            try:
                result = await self._decide(
                    po,
                    request.for_order(po.id),
                    role,
                    target=EnhancedStatus.APPROVED,
                    action=AuditAction.APPROVED,
                    template=None,
                    reason=_reason("Approved", request.reason, request.comments),
                    changes={"approved_by": request.user_id, "approved_at": request.timestamp},
                )
            except Exception as e:
                logger.exception(f"Unexpected error approving {po.po_number} in bulk")
                result = ApprovalResult(success=False, purchase_order_id=po.id, error=str(e))
            results.append(result)
            if not result.success:
                errors.append(f"{po.po_number}: {result.error}")

        success_count = sum(1 for r in results if r.success)
        failure_count = len(results) - success_count
        approved = [po for po, r in zip(purchase_orders, results) if r.success]

        bulk_result = BulkApprovalResult(
            results=results,
            success_count=success_count,
            failure_count=failure_count,
            errors=errors,
        )

        record = AuditRecord(
            purchase_order_id=BULK_OPERATION_ID,
            purchase_order_number=f"Bulk Approval ({len(purchase_orders)} orders)",
            action=AuditAction.BULK_APPROVED,
            performed_by=request.user_id,
            performed_by_name=request.user_email,
            timestamp=request.timestamp,
            reason=_reason("Bulk approval", request.reason, request.comments),
            metadata={
                "purchase_order_ids": [po.id for po in purchase_orders],
                "success_count": success_count,
                "failure_count": failure_count,
                "total_amount": round(sum(po.total for po in purchase_orders), 2),
                "threshold_violations": violations,
            },
        )
        try:
            bulk_result.audit_log_id = await call_audit(self.audit, record, self.audit_timeout)
        except AuditError as e:
            bulk_result.errors.append(f"Bulk audit failed: {e.detail}")

        if success_count > 0:
            await self._notify(
                NotificationTemplate.BULK_APPROVAL,
                self._recipients(self.config.notifications.approval_recipients, approved),
                {
                    "success_count": success_count,
                    "po_numbers": [po.po_number for po in approved],
                    "total_amount": round(sum(po.total for po in approved), 2),
                    "approver": request.user_email,
                    "reason": request.reason,
                },
            )

        logger.info(f"Bulk approval by {request.user_id}: {success_count} approved, {failure_count} failed")
        return bulk_result

    def validate_receiving(self, receipt_items: List[ReceiptItem], context: ReceivingContext) -> ReceivingValidationResult:
        return self.tolerance_validator.validate_receiving(receipt_items, context)

    async def process_receipt_cost_updates(
        self,
        purchase_order_id: str,
        ordered_items: List[PurchaseOrderItem],
        receipts: List[ReceiptCost],
        actor_id: str,
    ) -> CostUpdateOutcome:
        outcome = await self.cost_engine.process_purchase_order_cost_updates(
            purchase_order_id, ordered_items, receipts, actor_id
        )
        if outcome.price_variances:
            await self._notify(
                NotificationTemplate.PRICE_VARIANCE_ALERT,
                list(self.config.notifications.approval_recipients),
                {
                    "po_number": purchase_order_id,
                    "variance_count": len(outcome.price_variances),
                    "total_variance_amount": round(sum(v.total_variance_amount for v in outcome.price_variances), 2),
                },
            )
        return outcome

    def validate_approval_thresholds(self, role: str, purchase_orders: List[PurchaseOrder]) -> List[str]:
        return self.permission_checker.validate_approval_thresholds(role, purchase_orders)

    async def receive(
        self,
        purchase_order: PurchaseOrder,
        receipt_items: List[ReceiptItem],
        context: ReceivingContext,
        receipts: Optional[List[ReceiptCost]] = None,
    ) -> ReceivingResult:
        """
        Validate a receipt, move the order to partially or fully received,
        then update product costs. Stops before any write when the receipt
        is blocked or needs an approval no qualifying role has given.
        """
        validation = self.validate_receiving(receipt_items, context)
        previous = purchase_order.current_status()

        if not validation.can_proceed:
            return ReceivingResult(
                success=False,
                purchase_order_id=purchase_order.id,
                validation=validation,
                error=validation.first_message(),
                errors=validation.errors,
                previous_status=previous.value,
            )
        approver = None
        if validation.requires_approval:
            approver = self._receipt_approver(context, validation.required_roles)
            if approver is None:
                return ReceivingResult(
                    success=False,
                    purchase_order_id=purchase_order.id,
                    validation=validation,
                    error=f"Receipt requires approval from: {', '.join(validation.required_roles) or 'an authorized approver'}",
                    previous_status=previous.value,
                )

        # Lines missing from this receipt keep their earlier totals
        received: Dict[str, float] = dict(context.received_to_date)
        receipt_totals: Dict[str, float] = {}
        for item in receipt_items:
            receipt_totals[item.product_id] = receipt_totals.get(item.product_id, 0.0) + item.total_received()
        received.update(receipt_totals)
        target = self.state_machine.get_next_logical_status(purchase_order, received)
        if target not in (EnhancedStatus.PARTIALLY_RECEIVED, EnhancedStatus.FULLY_RECEIVED):
            # Let the state machine report why receiving is not possible
            target = EnhancedStatus.PARTIALLY_RECEIVED

        user = context.receiving_user
        updated = purchase_order
        if not (previous == target == EnhancedStatus.PARTIALLY_RECEIVED):
            outcome = self.state_machine.execute_transition(
                purchase_order,
                target,
                TransitionContext(
                    performed_by=user.user_id,
                    reason=context.partial_reason,
                    metadata={"receipt_items": len(receipt_items)},
                    timestamp=context.receipt_date,
                ),
            )
            if not outcome.is_valid:
                return ReceivingResult(
                    success=False,
                    purchase_order_id=purchase_order.id,
                    validation=validation,
                    error="; ".join(e.message for e in outcome.errors),
                    errors=outcome.errors,
                    previous_status=previous.value,
                )
            updated = outcome.updated_purchase_order
            changes = {"received_date": updated.received_date} if updated.received_date else None
            try:
                await self._persist_status(purchase_order, target, changes)
            except StorageError as e:
                return ReceivingResult(
                    success=False,
                    purchase_order_id=purchase_order.id,
                    validation=validation,
                    error=str(e),
                    previous_status=previous.value,
                )

        result = ReceivingResult(
            success=True,
            purchase_order_id=purchase_order.id,
            validation=validation,
            previous_status=previous.value,
            new_status=target.value,
        )

        record = AuditRecord(
            purchase_order_id=purchase_order.id,
            purchase_order_number=purchase_order.po_number,
            action=AuditAction.RECEIVED,
            performed_by=user.user_id,
            performed_by_name=user.name or None,
            timestamp=context.receipt_date,
            old_values={"status": previous.value},
            new_values={"status": target.value},
            reason=context.partial_reason,
            metadata={
                "received": received,
                "approved_by": approver,
                "warnings": validation.warning_codes(),
                "adjustments": [a.model_dump() for a in validation.adjustments],
            },
        )
        try:
            result.audit_log_id = await call_audit(self.audit, record, self.audit_timeout)
        except AuditError as e:
            logger.error(f"Receipt for {purchase_order.po_number} persisted but audit failed: {e}")
            result.success = False
            result.error = str(e)
            return result

        if receipts is None:
            receipts = self._receipts_at_ordered_cost(purchase_order, receipt_items)
        if receipts:
            try:
                result.cost_updates = await self.process_receipt_cost_updates(
                    purchase_order.id, purchase_order.items, receipts, user.user_id
                )
            except StorageError as e:
                logger.error(f"Cost updates failed for {purchase_order.po_number}: {e}")
                result.success = False
                result.error = str(e)
                return result

        template = (
            NotificationTemplate.FULL_RECEIPT
            if target == EnhancedStatus.FULLY_RECEIVED
            else NotificationTemplate.PARTIAL_RECEIPT
        )
        await self._notify(
            template,
            self._recipients(self.config.notifications.receiving_recipients, [purchase_order]),
            {
                "po_number": purchase_order.po_number,
                "supplier_name": purchase_order.supplier_name,
                "received_by": user.name or user.user_id,
                "status": target.value,
            },
        )
        if target != previous:
            await self._fire_hook(updated, previous, target)
        return result

    def _receipt_approver(self, context: ReceivingContext, required_roles: List[str]) -> Optional[Dict[str, Any]]:
        """
        Who signs off a receipt held for approval: an explicit approval when
        its role qualifies, otherwise the receiving user if their own role does.
        """
        approval = context.approval
        if approval is not None and approval.role in required_roles:
            return {"user_id": approval.approved_by, "role": approval.role, "reason": approval.reason}
        user = context.receiving_user
        if user.role in required_roles:
            return {"user_id": user.user_id, "role": user.role, "reason": None}
        return None

    async def _decide(
        self,
        purchase_order: PurchaseOrder,
        request: ApprovalRequest,
        role: str,
        target: EnhancedStatus,
        action: AuditAction,
        template: Optional[NotificationTemplate],
        reason: str,
        changes: Dict[str, Any],
    ) -> ApprovalResult:
        previous = purchase_order.current_status()

        # 1. Permission and amount threshold
        permission = self.state_machine.validate_user_permissions(role, EnhancedStatus.APPROVED, purchase_order)
        if not permission.is_valid:
            return self._failed(purchase_order, permission.errors, previous)

        # 2. Transition
        outcome = self.state_machine.execute_transition(
            purchase_order,
            target,
            TransitionContext(
                performed_by=request.user_id,
                reason=reason,
                metadata={
                    "user_email": request.user_email,
                    "reason_id": request.reason_id,
                    "custom_reason": request.custom_reason,
                },
                timestamp=request.timestamp,
            ),
        )
        if not outcome.is_valid:
            return self._failed(purchase_order, outcome.errors, previous)

        # 3. Persist
        try:
            await self._persist_status(purchase_order, target, changes)
        except StorageError as e:
            return ApprovalResult(
                success=False,
                purchase_order_id=purchase_order.id,
                error=str(e),
                previous_status=previous.value,
            )

        # 4. Audit
        record = AuditRecord(
            purchase_order_id=purchase_order.id,
            purchase_order_number=purchase_order.po_number,
            action=action,
            performed_by=request.user_id,
            performed_by_name=request.user_email,
            timestamp=request.timestamp,
            old_values={"status": previous.value, "legacy_status": purchase_order.status},
            new_values={"status": target.value, "legacy_status": to_legacy_status(target).value},
            reason=reason,
            metadata={"transition_id": outcome.transition.id, "role": role},
        )
        try:
            audit_log_id = await call_audit(self.audit, record, self.audit_timeout)
        except AuditError as e:
            logger.error(f"{purchase_order.po_number} moved to {target.value} but audit failed: {e}")
            return ApprovalResult(
                success=False,
                purchase_order_id=purchase_order.id,
                error=str(e),
                previous_status=previous.value,
                new_status=target.value,
            )

        # 5. Notify
        if template is not None:
            await self._notify(
                template,
                self._recipients(self.config.notifications.approval_recipients, [purchase_order]),
                {
                    "po_number": purchase_order.po_number,
                    "supplier_name": purchase_order.supplier_name,
                    "total": purchase_order.total,
                    "decision": target.value,
                    "approver": request.user_email,
                    "reason": request.reason,
                    "comments": request.comments,
                },
            )

        # 6. Best-effort hook
        await self._fire_hook(outcome.updated_purchase_order, previous, target)

        logger.info(f"{purchase_order.po_number}: {action.value} by {request.user_id}")
        return ApprovalResult(
            success=True,
            purchase_order_id=purchase_order.id,
            previous_status=previous.value,
            new_status=target.value,
            audit_log_id=audit_log_id,
        )

    async def _persist_status(
        self,
        purchase_order: PurchaseOrder,
        target: EnhancedStatus,
        changes: Optional[Dict[str, Any]],
    ) -> None:
        await call_storage(
            "update_purchase_order_status",
            self.storage.update_purchase_order_status(
                purchase_order.id,
                to_legacy_status(target).value,
                target,
                changes,
                expected_status=purchase_order.current_status(),
            ),
            self.storage_timeout,
        )

    async def _notify(self, template: NotificationTemplate, recipients: List[str], variables: Dict[str, Any]) -> None:
        if self.notifications is None or not self.config.notifications.enabled or not recipients:
            return
        try:
            logs = await with_timeout(
                self.notifications.send(template.value, recipients, variables),
                self.notification_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Notification {template.value} timed out after {self.notification_timeout}s")
            return
        except Exception as e:
            logger.warning(f"Notification {template.value} failed: {e}")
            return
        failed = [log.recipient for log in logs if log.status == DeliveryStatus.FAILED]
        if failed:
            logger.warning(f"Notification {template.value} not delivered to {', '.join(failed)}")

    async def _fire_hook(self, purchase_order: PurchaseOrder, previous: EnhancedStatus, new: EnhancedStatus) -> None:
        if self.hook is None:
            return
        try:
            result = await with_timeout(self.hook.on_status_changed(purchase_order, previous, new), self.hook_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Integration hook timed out for {purchase_order.po_number} after {self.hook_timeout}s")
            return
        except Exception as e:
            logger.warning(f"Integration hook failed for {purchase_order.po_number}: {e}")
            return
        if not result.success:
            logger.warning(f"Integration hook reported failure for {purchase_order.po_number}: {result.message}")

    def _recipients(self, configured: List[str], orders: List[PurchaseOrder]) -> List[str]:
        recipients = list(configured)
        for po in orders:
            if po.created_by and po.created_by not in recipients:
                recipients.append(po.created_by)
        return recipients

    def _receipts_at_ordered_cost(self, purchase_order: PurchaseOrder, receipt_items: List[ReceiptItem]) -> List[ReceiptCost]:
        costs = {item.product_id: item.cost for item in purchase_order.items}
        return [
            ReceiptCost(
                product_id=item.product_id,
                received_quantity=item.received_quantity,
                actual_cost=costs[item.product_id],
                batch_number=item.batch_number,
            )
            for item in receipt_items
            if item.received_quantity > 0 and item.product_id in costs
        ]

    def _failed(self, purchase_order: PurchaseOrder, errors: List[ValidationError], previous: EnhancedStatus) -> ApprovalResult:
        return ApprovalResult(
            success=False,
            purchase_order_id=purchase_order.id,
            error="; ".join(e.message for e in errors),
            errors=errors,
            previous_status=previous.value,
        )

def build_approval_workflow(database, config: Optional[WorkflowConfig] = None) -> ApprovalWorkflow:
    """Wire the workflow to the MongoDB-backed collaborators of a connected Database."""
    config = config or WorkflowConfig()
    return ApprovalWorkflow(
        storage=database.storage,
        audit=AuditLogger(database.audit),
        notifications=NotificationTool(config.notifications.channels),
        hook=ReceivingQueueHook(database.storage),
        config=config,
    )
