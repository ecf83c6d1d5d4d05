import pytest

from ferrow.model.orderstate import (
    OrderState, OrderStatus as O, PaymentStatus as P, TransitionError,
    can_transition_order, can_transition_payment, map_gateway_status,
    plan_admin_update, plan_payment_update,
)


def state(status=O.PENDING, pay=P.PENDING, paid_at=None, committed=False):
    return OrderState(status=status, payment_status=pay, paid_at=paid_at,
                      stock_committed=committed)


@pytest.mark.parametrize("ts,fs,expected", [
    ("capture", "accept", (P.PAID, O.CONFIRMED)),
    ("capture", None, (P.PAID, O.CONFIRMED)),
    ("capture", "challenge", (P.PENDING, None)),
    ("capture", "deny", (P.FAILED, O.CANCELLED)),
    ("settlement", None, (P.PAID, O.CONFIRMED)),
    ("pending", None, (P.PENDING, None)),
    ("cancel", None, (P.FAILED, O.CANCELLED)),
    ("deny", None, (P.FAILED, O.CANCELLED)),
    ("failure", None, (P.FAILED, O.CANCELLED)),
    ("expire", None, (P.EXPIRED, O.CANCELLED)),
    ("refund", None, (P.REFUNDED, O.CANCELLED)),
    ("partial_refund", None, (P.REFUNDED, O.CANCELLED)),
])
def test_gateway_status_mapping(ts, fs, expected):
    assert map_gateway_status(ts, fs) == expected


def test_unknown_gateway_status_raises():
    with pytest.raises(TransitionError):
        map_gateway_status("authorize")
    with pytest.raises(TransitionError):
        map_gateway_status("capture", "maybe")


def test_order_moves_forward_only():
    assert can_transition_order("pending", "confirmed")
    assert can_transition_order("confirmed", "shipped")
    assert can_transition_order("shipped", "shipped")
    assert not can_transition_order("shipped", "processing")
    assert not can_transition_order("completed", "cancelled")
    assert not can_transition_order("cancelled", "pending")
    assert can_transition_order("processing", "cancelled")
    assert not can_transition_order("shipped", "cancelled")


def test_payment_edges():
    assert can_transition_payment("pending", "paid")
    assert can_transition_payment("paid", "refunded")
    assert can_transition_payment("paid", "paid")
    assert not can_transition_payment("paid", "pending")
    assert not can_transition_payment("expired", "paid")
    assert not can_transition_payment("refunded", "paid")


def test_payment_settles_pending_order():
    tr = plan_payment_update(state(), P.PAID, O.CONFIRMED)
    assert tr.status == O.CONFIRMED
    assert tr.payment_status == P.PAID
    assert tr.set_paid_at and tr.commit_stock and not tr.release_stock
    values = tr.values(100.0)
    assert values == {"status": "confirmed", "payment_status": "paid",
                      "updated_at": 100.0, "paid_at": 100.0}


def test_replaying_current_state_is_a_noop():
    s = state(O.CONFIRMED, P.PAID, paid_at=5.0, committed=True)
    tr = plan_payment_update(s, P.PAID, O.CONFIRMED)
    assert not tr.changed
    assert not tr.commit_stock and not tr.set_paid_at
    assert tr.values(10.0) == {}


def test_late_pending_after_paid_is_refused():
    s = state(O.CONFIRMED, P.PAID, paid_at=5.0, committed=True)
    with pytest.raises(TransitionError):
        plan_payment_update(s, P.PENDING)


def test_settlement_after_expire_is_refused():
    s = state(O.CANCELLED, P.EXPIRED)
    with pytest.raises(TransitionError):
        plan_payment_update(s, P.PAID, O.CONFIRMED)


def test_expired_payment_cancels_without_touching_stock():
    tr = plan_payment_update(state(), P.EXPIRED, O.CANCELLED)
    assert tr.status == O.CANCELLED
    assert not tr.commit_stock and not tr.release_stock


def test_refund_cancels_and_restocks_cancellable_order():
    s = state(O.PROCESSING, P.PAID, paid_at=5.0, committed=True)
    tr = plan_payment_update(s, P.REFUNDED, O.CANCELLED)
    assert tr.status == O.CANCELLED
    assert tr.release_stock
    assert not tr.set_paid_at


def test_refund_leaves_shipped_order_alone():
    s = state(O.SHIPPED, P.PAID, paid_at=5.0, committed=True)
    tr = plan_payment_update(s, P.REFUNDED, O.CANCELLED)
    assert tr.status == O.SHIPPED
    assert tr.payment_status == P.REFUNDED
    assert not tr.release_stock


def test_gateway_never_moves_fulfilled_order_back():
    s = state(O.SHIPPED, P.PAID, paid_at=5.0, committed=True)
    tr = plan_payment_update(s, P.PAID, O.CONFIRMED)
    assert tr.status == O.SHIPPED
    assert not tr.changed


def test_paid_after_cancel_keeps_order_cancelled():
    s = state(O.CANCELLED, P.PENDING)
    tr = plan_payment_update(s, P.PAID, O.CONFIRMED)
    assert tr.status == O.CANCELLED
    assert tr.payment_status == P.PAID
    assert not tr.commit_stock


def test_admin_cannot_fulfil_unpaid_order():
    with pytest.raises(TransitionError):
        plan_admin_update(state(), status="processing")


def test_admin_marks_paid_and_ships_in_one_edit():
    tr = plan_admin_update(state(), status="shipped", pay="paid")
    assert tr.status == O.SHIPPED
    assert tr.commit_stock and tr.set_paid_at


def test_admin_cancel_releases_committed_stock():
    s = state(O.CONFIRMED, P.PAID, paid_at=5.0, committed=True)
    tr = plan_admin_update(s, status="cancelled")
    assert tr.release_stock
    assert tr.payment_status == P.PAID


def test_admin_failing_payment_cancels_order():
    tr = plan_admin_update(state(), pay="failed")
    assert tr.status == O.CANCELLED


def test_admin_rejects_unknown_values():
    with pytest.raises(TransitionError):
        plan_admin_update(state(), status="lost")
    with pytest.raises(TransitionError):
        plan_admin_update(state(), pay="settled")


def test_admin_cannot_reopen_terminal_order():
    s = state(O.COMPLETED, P.PAID, paid_at=5.0, committed=True)
    with pytest.raises(TransitionError):
        plan_admin_update(s, status="cancelled")
