import asyncio
import pytest

from procurement.collaborators import HookResult, StorageResult
from procurement.errors import AuditError
from procurement.models.approval import ApprovalRequest, BulkApprovalRequest, RejectionRequest
from procurement.models.audit import AuditAction
from procurement.models.costing import ReceiptCost
from procurement.models.notification import DeliveryStatus, NotificationLog
from procurement.models.purchase_order import EnhancedStatus
from procurement.models.receiving import ReceiptItem, ReceivingApproval, ReceivingContext, ReceivingUser
from procurement.workflow.orchestrator import BULK_OPERATION_ID, ApprovalWorkflow
from tests.conftest import RECEIPT_DATE

S = EnhancedStatus

@pytest.fixture
def approval():
    return ApprovalRequest(reason="Budget confirmed", user_id="user:manager-1", user_email="manager@example.com")

@pytest.fixture
def rejection():
    return RejectionRequest(
        reason="Supplier not vetted",
        comments="use the framework supplier",
        user_id="user:manager-1",
        user_email="manager@example.com",
    )

def recording(calls, name, value):
    async def _call(*args, **kwargs):
        calls.append(name)
        return value
    return _call

@pytest.mark.asyncio
async def test_approve_runs_steps_in_order(workflow, make_order, approval, mock_storage, mock_audit, mock_notifications, mock_hook):
    calls = []
    mock_storage.update_purchase_order_status.side_effect = recording(calls, "persist", StorageResult(success=True))
    mock_audit.log_purchase_order_action.side_effect = recording(calls, "audit", "EVT-1")
    mock_notifications.send.side_effect = recording(calls, "notify", [])
    mock_hook.on_status_changed.side_effect = recording(calls, "hook", HookResult(success=True))

    result = await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "manager")

    assert result.success
    assert result.previous_status == "pending_approval"
    assert result.new_status == "approved"
    assert result.audit_log_id == "EVT-1"
    assert calls == ["persist", "audit", "notify", "hook"]

@pytest.mark.asyncio
async def test_approve_persists_both_statuses(workflow, make_order, approval, mock_storage, mock_audit, mock_notifications):
    await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "manager")

    args = mock_storage.update_purchase_order_status.await_args
    assert args.args[0] == "po_001"
    assert args.args[1] == "sent"
    assert args.args[2] == S.APPROVED
    assert args.args[3]["approved_by"] == "user:manager-1"
    assert args.kwargs["expected_status"] == S.PENDING_APPROVAL

    record = mock_audit.log_purchase_order_action.await_args.args[0]
    assert record.action == AuditAction.APPROVED
    assert record.old_values == {"status": "pending_approval", "legacy_status": "draft"}
    assert record.new_values == {"status": "approved", "legacy_status": "sent"}
    assert record.reason == "Approved: Budget confirmed"
    assert record.metadata["role"] == "manager"

    template, recipients, variables = mock_notifications.send.await_args.args
    assert template == "approval_granted"
    assert recipients == ["role:manager", "role:finance", "user:purchaser-1"]
    assert variables["po_number"] == "PO-po_001"

@pytest.mark.asyncio
async def test_manager_over_limit_is_refused(workflow, make_order, approval, mock_storage, mock_audit):
    result = await workflow.approve(make_order(S.PENDING_APPROVAL, total=75000.0), approval, "manager")

    assert not result.success
    assert [e.code for e in result.errors] == ["EXCEEDS_APPROVAL_LIMIT"]
    mock_storage.update_purchase_order_status.assert_not_awaited()
    mock_audit.log_purchase_order_action.assert_not_awaited()

@pytest.mark.asyncio
async def test_cannot_approve_draft(workflow, make_order, approval, mock_storage):
    result = await workflow.approve(make_order(S.DRAFT), approval, "manager")

    assert not result.success
    assert [e.code for e in result.errors] == ["INVALID_TRANSITION"]
    assert result.previous_status == "draft"
    mock_storage.update_purchase_order_status.assert_not_awaited()

@pytest.mark.asyncio
async def test_warehouse_cannot_approve(workflow, make_order, approval):
    result = await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "warehouse")
    assert [e.code for e in result.errors] == ["INSUFFICIENT_PERMISSIONS"]

@pytest.mark.asyncio
@pytest.mark.parametrize("failure", [RuntimeError("queue down"), HookResult(success=False, message="queue full")])
async def test_hook_failure_does_not_fail_action(workflow, make_order, approval, mock_hook, failure):
    if isinstance(failure, Exception):
        mock_hook.on_status_changed.side_effect = failure
    else:
        mock_hook.on_status_changed.return_value = failure

    result = await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "manager")
    assert result.success
    mock_hook.on_status_changed.assert_awaited_once()

@pytest.mark.asyncio
async def test_slow_hook_and_notifications_are_abandoned(make_order, approval, mock_storage, mock_audit, mock_notifications, mock_hook):
    async def slow(*args, **kwargs):
        await asyncio.sleep(1)

    mock_notifications.send.side_effect = slow
    mock_hook.on_status_changed.side_effect = slow
    workflow = ApprovalWorkflow(
        storage=mock_storage,
        audit=mock_audit,
        notifications=mock_notifications,
        hook=mock_hook,
        storage_timeout=1.0,
        audit_timeout=1.0,
        notification_timeout=0.01,
        hook_timeout=0.01,
    )

    result = await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "manager")
    assert result.success

@pytest.mark.asyncio
async def test_notification_errors_are_ignored(workflow, make_order, approval, mock_notifications, mock_hook):
    mock_notifications.send.side_effect = ConnectionError("smtp down")
    result = await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "manager")
    assert result.success
    mock_hook.on_status_changed.assert_awaited_once()

@pytest.mark.asyncio
async def test_failed_deliveries_do_not_fail_action(workflow, make_order, approval, mock_notifications):
    mock_notifications.send.return_value = [
        NotificationLog(template_id="approval_granted", recipient="role:manager", status=DeliveryStatus.FAILED, error="bounced"),
    ]
    assert (await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "manager")).success

@pytest.mark.asyncio
async def test_storage_failure_stops_before_audit(workflow, make_order, approval, mock_storage, mock_audit, mock_notifications, mock_hook):
    mock_storage.update_purchase_order_status.return_value = StorageResult(success=False, message="status changed concurrently")

    result = await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "manager")

    assert not result.success
    assert "status changed concurrently" in result.error
    mock_audit.log_purchase_order_action.assert_not_awaited()
    mock_notifications.send.assert_not_awaited()
    mock_hook.on_status_changed.assert_not_awaited()

@pytest.mark.asyncio
async def test_storage_timeout_fails_action(make_order, approval, mock_storage, mock_audit):
    async def slow(*args, **kwargs):
        await asyncio.sleep(1)

    mock_storage.update_purchase_order_status.side_effect = slow
    workflow = ApprovalWorkflow(storage=mock_storage, audit=mock_audit, storage_timeout=0.01)

    result = await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "manager")
    assert not result.success
    assert "timed out" in result.error
    mock_audit.log_purchase_order_action.assert_not_awaited()

@pytest.mark.asyncio
async def test_audit_failure_fails_action(workflow, make_order, approval, mock_audit, mock_notifications, mock_hook):
    mock_audit.log_purchase_order_action.side_effect = AuditError("audit", "collection unavailable")

    result = await workflow.approve(make_order(S.PENDING_APPROVAL), approval, "manager")

    assert not result.success
    assert result.new_status == "approved"
    assert "collection unavailable" in result.error
    mock_notifications.send.assert_not_awaited()
    mock_hook.on_status_changed.assert_not_awaited()

@pytest.mark.asyncio
async def test_reject_pending_order(workflow, make_order, rejection, mock_storage, mock_audit, mock_notifications):
    result = await workflow.reject(make_order(S.PENDING_APPROVAL), rejection, "manager")

    assert result.success
    assert result.new_status == "cancelled"
    args = mock_storage.update_purchase_order_status.await_args.args
    assert args[1] == "cancelled"
    assert args[3]["cancelled_by"] == "user:manager-1"

    record = mock_audit.log_purchase_order_action.await_args.args[0]
    assert record.action == AuditAction.REJECTED
    assert record.reason == "Rejected: Supplier not vetted - use the framework supplier"
    assert mock_notifications.send.await_args.args[0] == "approval_rejected"

@pytest.mark.asyncio
async def test_cannot_reject_received_order(workflow, make_order, rejection, mock_storage):
    result = await workflow.reject(make_order(S.FULLY_RECEIVED), rejection, "admin")

    assert not result.success
    assert "CANNOT_CANCEL_RECEIVED" in [e.code for e in result.errors]
    mock_storage.update_purchase_order_status.assert_not_awaited()

@pytest.mark.asyncio
async def test_reject_requires_approval_authority(workflow, make_order, rejection):
    result = await workflow.reject(make_order(S.PENDING_APPROVAL), rejection, "purchaser")
    assert [e.code for e in result.errors] == ["INSUFFICIENT_PERMISSIONS"]

@pytest.mark.asyncio
async def test_bulk_approve_partial_success(workflow, make_order, mock_audit, mock_notifications, mock_hook):
    orders = [
        make_order(S.PENDING_APPROVAL, id="po_1"),
        make_order(S.DRAFT, id="po_2"),
        make_order(S.PENDING_APPROVAL, id="po_3"),
    ]
    request = BulkApprovalRequest(
        purchase_order_ids=[po.id for po in orders],
        reason="Month end",
        user_id="user:manager-1",
        user_email="manager@example.com",
    )

    result = await workflow.bulk_approve(orders, request, "manager")

    assert result.success_count == 2
    assert result.failure_count == 1
    assert [r.success for r in result.results] == [True, False, True]
    assert result.errors[0].startswith("PO-po_2")
    assert result.audit_log_id == "EVT-test"

    # Two per-order entries plus one consolidated entry
    assert mock_audit.log_purchase_order_action.await_count == 3
    bulk_record = mock_audit.log_purchase_order_action.await_args.args[0]
    assert bulk_record.action == AuditAction.BULK_APPROVED
    assert bulk_record.purchase_order_id == BULK_OPERATION_ID
    assert bulk_record.metadata["success_count"] == 2
    assert bulk_record.metadata["failure_count"] == 1

    mock_notifications.send.assert_awaited_once()
    template, _, variables = mock_notifications.send.await_args.args
    assert template == "bulk_approval"
    assert variables["po_numbers"] == ["PO-po_1", "PO-po_3"]
    assert mock_hook.on_status_changed.await_count == 2

@pytest.mark.asyncio
async def test_bulk_approve_all_failed_sends_nothing(workflow, make_order, mock_audit, mock_notifications):
    request = BulkApprovalRequest(reason="Month end", user_id="user:manager-1", user_email="manager@example.com")
    result = await workflow.bulk_approve([make_order(S.CANCELLED)], request, "manager")

    assert result.success_count == 0
    assert result.failure_count == 1
    mock_audit.log_purchase_order_action.assert_awaited_once()
    mock_notifications.send.assert_not_awaited()

@pytest.mark.asyncio
async def test_bulk_approve_continues_after_storage_failure(workflow, make_order, mock_storage):
    mock_storage.update_purchase_order_status.side_effect = [
        StorageResult(success=True),
        StorageResult(success=False, message="write conflict"),
    ]
    request = BulkApprovalRequest(reason="Month end", user_id="user:manager-1", user_email="manager@example.com")
    result = await workflow.bulk_approve(
        [make_order(S.PENDING_APPROVAL, id="po_1"), make_order(S.PENDING_APPROVAL, id="po_2")],
        request,
        "manager",
    )
    assert result.success_count == 1
    assert "write conflict" in result.results[1].error

def test_validate_approval_thresholds(workflow, make_order):
    orders = [make_order(S.PENDING_APPROVAL, id=f"po_{i}", total=30000.0) for i in range(4)]
    violations = workflow.validate_approval_thresholds("manager", orders)
    assert len(violations) == 1
    assert "bulk limit" in violations[0]

def receiving_context(order, **kwargs):
    return ReceivingContext(
        purchase_order=order,
        receiving_user=ReceivingUser(user_id="user:wh-1", name="Dock 3", role="warehouse"),
        receipt_date=RECEIPT_DATE,
        **kwargs,
    )

def receipt(product_id, ordered, received, **kwargs):
    return ReceiptItem(
        purchase_order_item_id=f"line-{product_id}",
        product_id=product_id,
        product_name=product_id,
        ordered_quantity=ordered,
        received_quantity=received,
        **kwargs,
    )

@pytest.mark.asyncio
async def test_full_receipt(workflow, make_order, mock_storage, mock_audit, mock_notifications, mock_hook):
    order = make_order(S.SENT_TO_SUPPLIER)
    items = [receipt("P-1", 100, 100), receipt("P-2", 10, 10)]

    result = await workflow.receive(order, items, receiving_context(order))

    assert result.success
    assert result.previous_status == "sent_to_supplier"
    assert result.new_status == "fully_received"

    args = mock_storage.update_purchase_order_status.await_args.args
    assert args[1] == "received"
    assert args[3] == {"received_date": RECEIPT_DATE}

    record = mock_audit.log_purchase_order_action.await_args.args[0]
    assert record.action == AuditAction.RECEIVED
    assert record.metadata["received"] == {"P-1": 100, "P-2": 10}

    costs = result.cost_updates
    assert [c.new_weighted_average_cost for c in costs.cost_calculations] == [20.0, 4.0]
    assert costs.price_variances == []
    mock_storage.update_product_costs.assert_awaited_once()

    assert mock_notifications.send.await_args.args[0] == "full_receipt"
    hook_args = mock_hook.on_status_changed.await_args.args
    assert hook_args[1:] == (S.SENT_TO_SUPPLIER, S.FULLY_RECEIVED)

@pytest.mark.asyncio
async def test_partial_receipt(workflow, make_order, mock_storage, mock_notifications):
    order = make_order(S.SENT_TO_SUPPLIER)
    items = [receipt("P-1", 100, 40), receipt("P-2", 10, 10)]

    result = await workflow.receive(order, items, receiving_context(order, is_partial_receipt=True, partial_reason="Backorder"))

    assert result.success
    assert result.new_status == "partially_received"
    assert mock_storage.update_purchase_order_status.await_args.args[1] == "partial"
    assert mock_notifications.send.await_args.args[0] == "partial_receipt"

@pytest.mark.asyncio
async def test_repeat_partial_receipt_keeps_status(workflow, make_order, mock_storage, mock_audit, mock_hook):
    order = make_order(S.PARTIALLY_RECEIVED)
    items = [receipt("P-1", 100, 20, previously_received_quantity=40)]

    result = await workflow.receive(order, items, receiving_context(order, is_partial_receipt=True, partial_reason="Backorder"))

    assert result.success
    assert result.new_status == "partially_received"
    mock_storage.update_purchase_order_status.assert_not_awaited()
    mock_audit.log_purchase_order_action.assert_awaited_once()
    mock_storage.update_product_costs.assert_awaited_once()
    mock_hook.on_status_changed.assert_not_awaited()

@pytest.mark.asyncio
async def test_receipt_needing_approval_writes_nothing(workflow, make_order, mock_storage, mock_audit):
    order = make_order(S.SENT_TO_SUPPLIER)
    result = await workflow.receive(order, [receipt("P-1", 100, 109)], receiving_context(order))

    assert not result.success
    assert result.validation.requires_approval
    assert "manager" in result.error
    mock_storage.update_purchase_order_status.assert_not_awaited()
    mock_storage.update_product_costs.assert_not_awaited()
    mock_audit.log_purchase_order_action.assert_not_awaited()

@pytest.mark.asyncio
async def test_final_receipt_completes_from_earlier_totals(workflow, make_order, mock_storage, mock_audit, mock_hook):
    # P-1 arrived in full on an earlier delivery; only P-2 is on the dock
    order = make_order(S.PARTIALLY_RECEIVED)
    context = receiving_context(order, received_to_date={"P-1": 100})

    result = await workflow.receive(order, [receipt("P-2", 10, 10)], context)

    assert result.success
    assert result.new_status == "fully_received"
    assert mock_storage.update_purchase_order_status.await_args.args[1] == "received"
    record = mock_audit.log_purchase_order_action.await_args.args[0]
    assert record.metadata["received"] == {"P-1": 100, "P-2": 10}
    assert mock_hook.on_status_changed.await_args.args[1:] == (S.PARTIALLY_RECEIVED, S.FULLY_RECEIVED)

@pytest.mark.asyncio
async def test_receipt_lines_override_earlier_totals(workflow, make_order):
    order = make_order(S.PARTIALLY_RECEIVED)
    context = receiving_context(order, received_to_date={"P-1": 100, "P-2": 2})

    result = await workflow.receive(order, [receipt("P-2", 10, 5, previously_received_quantity=2)], context)

    assert result.success
    assert result.new_status == "partially_received"

@pytest.mark.asyncio
async def test_manager_approval_lets_over_receipt_through(workflow, make_order, mock_storage, mock_audit):
    order = make_order(S.SENT_TO_SUPPLIER)
    context = receiving_context(
        order,
        approval=ReceivingApproval(approved_by="user:manager-1", role="manager", reason="Supplier bonus stock"),
    )

    result = await workflow.receive(order, [receipt("P-1", 100, 108)], context)

    assert result.success
    assert result.validation.requires_approval
    assert result.new_status == "partially_received"
    mock_storage.update_purchase_order_status.assert_awaited_once()
    record = mock_audit.log_purchase_order_action.await_args.args[0]
    assert record.metadata["approved_by"] == {
        "user_id": "user:manager-1",
        "role": "manager",
        "reason": "Supplier bonus stock",
    }

@pytest.mark.asyncio
async def test_receiving_manager_approves_own_receipt(workflow, make_order, mock_audit):
    order = make_order(S.SENT_TO_SUPPLIER)
    context = ReceivingContext(
        purchase_order=order,
        receiving_user=ReceivingUser(user_id="user:manager-1", name="Ops Manager", role="manager"),
        receipt_date=RECEIPT_DATE,
    )

    result = await workflow.receive(order, [receipt("P-1", 100, 108)], context)

    assert result.success
    record = mock_audit.log_purchase_order_action.await_args.args[0]
    assert record.metadata["approved_by"]["user_id"] == "user:manager-1"

@pytest.mark.asyncio
async def test_approval_from_wrong_role_is_ignored(workflow, make_order, mock_storage):
    order = make_order(S.SENT_TO_SUPPLIER)
    context = receiving_context(order, approval=ReceivingApproval(approved_by="user:purchaser-1", role="purchaser"))

    result = await workflow.receive(order, [receipt("P-1", 100, 108)], context)

    assert not result.success
    assert "manager" in result.error
    mock_storage.update_purchase_order_status.assert_not_awaited()

@pytest.mark.asyncio
async def test_clean_receipt_has_no_approver(workflow, make_order, mock_audit):
    order = make_order(S.SENT_TO_SUPPLIER)
    await workflow.receive(order, [receipt("P-1", 100, 100), receipt("P-2", 10, 10)], receiving_context(order))

    record = mock_audit.log_purchase_order_action.await_args.args[0]
    assert record.metadata["approved_by"] is None

@pytest.mark.asyncio
async def test_blocked_receipt_writes_nothing(workflow, make_order, mock_storage):
    order = make_order(S.SENT_TO_SUPPLIER)
    result = await workflow.receive(order, [receipt("P-1", 100, 150)], receiving_context(order))

    assert not result.success
    assert [e.code for e in result.errors] == ["OVER_RECEIVING_BLOCKED"]
    mock_storage.update_purchase_order_status.assert_not_awaited()

@pytest.mark.asyncio
async def test_receiving_draft_order_fails(workflow, make_order, mock_storage):
    order = make_order(S.DRAFT)
    result = await workflow.receive(order, [receipt("P-1", 100, 100), receipt("P-2", 10, 10)], receiving_context(order))

    assert not result.success
    assert "NOT_READY_FOR_RECEIVING" in [e.code for e in result.errors]
    mock_storage.update_purchase_order_status.assert_not_awaited()

@pytest.mark.asyncio
async def test_price_variance_alert(workflow, make_order, mock_notifications):
    outcome = await workflow.process_receipt_cost_updates(
        "po_001",
        make_order().items,
        [ReceiptCost(product_id="P-1", received_quantity=100, actual_cost=23.0)],
        "user:wh-1",
    )

    assert len(outcome.price_variances) == 1
    template, _, variables = mock_notifications.send.await_args.args
    assert template == "price_variance_alert"
    assert variables["total_variance_amount"] == 300.0
