import pytest
from datetime import datetime

from procurement.models.purchase_order import EnhancedStatus
from procurement.workflow.state_machine import (
    PO_TRANSITIONS,
    PurchaseOrderStateMachine,
    TransitionContext,
)

S = EnhancedStatus

@pytest.fixture
def machine():
    return PurchaseOrderStateMachine()

@pytest.fixture
def ctx():
    return TransitionContext(performed_by="user:manager-1", reason="Budget confirmed")

def test_transition_table_edges(machine):
    assert machine.can_transition(S.DRAFT, S.PENDING_APPROVAL)
    assert machine.can_transition(S.PENDING_APPROVAL, S.DRAFT)
    assert machine.can_transition(S.APPROVED, S.FULLY_RECEIVED)
    assert machine.can_transition(S.FULLY_RECEIVED, S.CLOSED)
    assert not machine.can_transition(S.DRAFT, S.APPROVED)
    assert not machine.can_transition(S.PARTIALLY_RECEIVED, S.CANCELLED)

def test_every_missing_edge_is_invalid(machine, make_order, ctx):
    for current in S:
        order = make_order(current)
        for target in S:
            if target in PO_TRANSITIONS[current]:
                continue
            assert machine.can_transition(current, target) is False
            result = machine.validate_transition(order, target, ctx)
            assert "INVALID_TRANSITION" in result.error_codes(), (current, target)
            assert result.is_valid is False

@pytest.mark.parametrize("status", [S.CANCELLED, S.CLOSED])
def test_terminal_states_have_no_exits(machine, status):
    assert machine.get_valid_transitions(status) == []
    assert machine.is_final_state(status)

def test_valid_transitions_listing(machine):
    assert machine.get_valid_transitions(S.PENDING_APPROVAL) == [S.DRAFT, S.APPROVED, S.CANCELLED]
    assert not machine.is_final_state(S.DRAFT)

def test_submit_for_approval_valid(machine, make_order, ctx):
    order = make_order(S.DRAFT)
    assert order.total == 2240.0
    result = machine.validate_transition(order, S.PENDING_APPROVAL, ctx)
    assert result.is_valid
    assert result.errors == []

def test_submit_for_approval_reports_all_errors(machine, make_order, ctx):
    order = make_order(S.DRAFT, items=[], total=0.0, supplier_id=None)
    result = machine.validate_transition(order, S.PENDING_APPROVAL, ctx)
    assert not result.is_valid
    assert result.error_codes() == ["NO_ITEMS", "INVALID_TOTAL", "NO_SUPPLIER"]

def test_approval_requires_approver(machine, make_order):
    result = machine.validate_transition(make_order(S.PENDING_APPROVAL), S.APPROVED, TransitionContext())
    assert result.error_codes() == ["NO_APPROVER"]

def test_receiving_requires_approved_order(machine, make_order, ctx):
    result = machine.validate_transition(make_order(S.DRAFT), S.PARTIALLY_RECEIVED, ctx)
    assert set(result.error_codes()) == {"INVALID_TRANSITION", "NOT_READY_FOR_RECEIVING"}

    assert machine.validate_transition(make_order(S.SENT_TO_SUPPLIER), S.FULLY_RECEIVED, ctx).is_valid

@pytest.mark.parametrize("status", [S.FULLY_RECEIVED, S.CLOSED])
def test_cannot_cancel_received(machine, make_order, ctx, status):
    result = machine.validate_transition(make_order(status), S.CANCELLED, ctx)
    assert "CANNOT_CANCEL_RECEIVED" in result.error_codes()

def test_execute_transition_updates_copy(machine, make_order, ctx):
    order = make_order(S.PENDING_APPROVAL)
    outcome = machine.execute_transition(order, S.APPROVED, ctx)

    assert outcome.is_valid
    updated = outcome.updated_purchase_order
    assert updated.enhanced_status == S.APPROVED
    assert updated.status == "sent"
    assert order.enhanced_status == S.PENDING_APPROVAL

    transition = outcome.transition
    assert transition.id.startswith("transition_")
    assert transition.from_status == S.PENDING_APPROVAL
    assert transition.to_status == S.APPROVED
    assert transition.performed_by == "user:manager-1"

def test_execute_transition_repeatable(machine, make_order, ctx):
    order = make_order(S.PENDING_APPROVAL)
    first = machine.execute_transition(order, S.APPROVED, ctx)
    second = machine.execute_transition(order, S.APPROVED, ctx)
    assert first.transition.id != second.transition.id
    assert first.updated_purchase_order.status == second.updated_purchase_order.status

def test_execute_invalid_transition_returns_errors(machine, make_order, ctx):
    order = make_order(S.CANCELLED)
    outcome = machine.execute_transition(order, S.APPROVED, ctx)
    assert not outcome.is_valid
    assert outcome.transition is None
    assert outcome.updated_purchase_order is order
    assert "INVALID_TRANSITION" in [e.code for e in outcome.errors]

def test_received_date_set_once(machine, make_order):
    stamp = datetime(2024, 3, 1, 10, 0)
    outcome = machine.execute_transition(
        make_order(S.SENT_TO_SUPPLIER), S.FULLY_RECEIVED, TransitionContext(performed_by="wh", timestamp=stamp)
    )
    assert outcome.updated_purchase_order.received_date == stamp
    assert outcome.updated_purchase_order.status == "received"

    earlier = datetime(2024, 2, 1)
    outcome = machine.execute_transition(
        make_order(S.PARTIALLY_RECEIVED, received_date=earlier), S.FULLY_RECEIVED, TransitionContext(timestamp=stamp)
    )
    assert outcome.updated_purchase_order.received_date == earlier

def test_next_logical_status(machine, make_order):
    assert machine.get_next_logical_status(make_order(S.DRAFT)) == S.PENDING_APPROVAL
    assert machine.get_next_logical_status(make_order(S.PENDING_APPROVAL)) == S.APPROVED
    assert machine.get_next_logical_status(make_order(S.FULLY_RECEIVED)) == S.CLOSED
    assert machine.get_next_logical_status(make_order(S.CANCELLED)) is None

    sent = make_order(S.SENT_TO_SUPPLIER)
    assert machine.get_next_logical_status(sent, {"P-1": 40, "P-2": 10}) == S.PARTIALLY_RECEIVED
    assert machine.get_next_logical_status(sent, {"P-1": 100, "P-2": 10}) == S.FULLY_RECEIVED
    assert machine.get_next_logical_status(make_order(S.APPROVED), {"P-1": 100, "P-2": 12}) == S.FULLY_RECEIVED

def test_permissions_delegate_to_checker(machine, make_order):
    result = machine.validate_user_permissions("warehouse", S.APPROVED, make_order(S.PENDING_APPROVAL))
    assert result.error_codes() == ["INSUFFICIENT_PERMISSIONS"]
    assert machine.validate_user_permissions("warehouse", S.FULLY_RECEIVED, make_order(S.APPROVED)).is_valid
