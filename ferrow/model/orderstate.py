# model/orderstate.py
"""
Order status / payment status state machine.

Two status fields live on every order and move together:

    order:    pending -> confirmed -> processing -> shipped -> delivered
                                                             -> completed
              pending | confirmed | processing -> cancelled

    payment:  pending -> paid | failed | expired
              paid    -> refunded

Consistency rules applied after every change:
- an order only moves into fulfillment (confirmed and later) once its
  payment is paid (or was paid and later refunded)
- a failed/expired/refunded payment cancels the order while it is still
  cancellable
- paid_at is stamped once, on the first move into paid
- stock is committed once, when payment moves into paid, and released once,
  when a stock-committed order is cancelled (a refund cancels the order
  while it is still cancellable)

Nothing in here touches the database; callers read an `OrderState`, ask for
a `Transition` and write `Transition.values()` back.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class TransitionError(ValueError):
    pass


ORDER_FLOW = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
)
_RANK = {s: i for i, s in enumerate(ORDER_FLOW)}

CANCELLABLE = frozenset({
    OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING,
})
TERMINAL_ORDER = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

PAYMENT_EDGES = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.EXPIRED,
    }),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}
PAYMENT_DEAD = frozenset({
    PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.REFUNDED,
})
# payment states an order in fulfillment may carry
PAYMENT_SETTLED = frozenset({PaymentStatus.PAID, PaymentStatus.REFUNDED})


def order_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise TransitionError(f"unknown order status: {value!r}") from None


def payment_status(value) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError:
        raise TransitionError(f"unknown payment status: {value!r}") from None


def can_transition_order(src, dst) -> bool:
    src, dst = order_status(src), order_status(dst)
    if src == dst:
        return True
    if src in TERMINAL_ORDER:
        return False
    if dst == OrderStatus.CANCELLED:
        return src in CANCELLABLE
    return _RANK[dst] > _RANK[src]


def can_transition_payment(src, dst) -> bool:
    src, dst = payment_status(src), payment_status(dst)
    return src == dst or dst in PAYMENT_EDGES[src]


# ----------------------------------------------------------------------------
# Gateway reports
# ----------------------------------------------------------------------------
_GATEWAY_FINAL = {
    "settlement": (PaymentStatus.PAID, OrderStatus.CONFIRMED),
    "pending": (PaymentStatus.PENDING, None),
    "cancel": (PaymentStatus.FAILED, OrderStatus.CANCELLED),
    "deny": (PaymentStatus.FAILED, OrderStatus.CANCELLED),
    "failure": (PaymentStatus.FAILED, OrderStatus.CANCELLED),
    "expire": (PaymentStatus.EXPIRED, OrderStatus.CANCELLED),
    "refund": (PaymentStatus.REFUNDED, OrderStatus.CANCELLED),
    "partial_refund": (PaymentStatus.REFUNDED, OrderStatus.CANCELLED),
}


def map_gateway_status(
    transaction_status: Optional[str], fraud_status: Optional[str] = None
) -> Tuple[PaymentStatus, Optional[OrderStatus]]:
    """
    Translate a Midtrans transaction_status/fraud_status pair into
    (payment status, order status or None for "leave as is").
    """
    ts = (transaction_status or "").strip().lower()
    fs = (fraud_status or "").strip().lower()
    if ts == "capture":
        if fs in ("", "accept"):
            return PaymentStatus.PAID, OrderStatus.CONFIRMED
        if fs == "challenge":
            return PaymentStatus.PENDING, None
        if fs == "deny":
            return PaymentStatus.FAILED, OrderStatus.CANCELLED
        raise TransitionError(f"unknown fraud status: {fraud_status!r}")
    try:
        return _GATEWAY_FINAL[ts]
    except KeyError:
        raise TransitionError(
            f"unknown transaction status: {transaction_status!r}"
        ) from None


# ----------------------------------------------------------------------------
# Transitions
# ----------------------------------------------------------------------------
@dataclass(frozen=True)
class OrderState:
    status: OrderStatus
    payment_status: PaymentStatus
    paid_at: Optional[float] = None
    stock_committed: bool = False

    @classmethod
    def of(cls, order) -> "OrderState":
        return cls(
            status=order_status(order.status),
            payment_status=payment_status(order.payment_status),
            paid_at=order.paid_at,
            stock_committed=bool(order.stock_committed),
        )


@dataclass(frozen=True)
class Transition:
    before: OrderState
    status: OrderStatus
    payment_status: PaymentStatus
    set_paid_at: bool = False
    commit_stock: bool = False
    release_stock: bool = False

    @property
    def changed(self) -> bool:
        return (
            self.status != self.before.status
            or self.payment_status != self.before.payment_status
        )

    def values(self, now: float) -> dict:
        if not self.changed:
            return {}
        out = {
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "updated_at": now,
        }
        if self.set_paid_at:
            out["paid_at"] = now
        return out


def _settle(
    state: OrderState, status: OrderStatus, pay: PaymentStatus
) -> Transition:
    if pay in PAYMENT_DEAD and status in CANCELLABLE:
        status = OrderStatus.CANCELLED

    if (status not in (OrderStatus.PENDING, OrderStatus.CANCELLED)
            and pay not in PAYMENT_SETTLED):
        raise TransitionError(
            f"order cannot be {status.value} while payment is {pay.value}"
        )

    commit = (
        pay == PaymentStatus.PAID
        and state.payment_status != PaymentStatus.PAID
        and not state.stock_committed
        and status != OrderStatus.CANCELLED
    )
    release = state.stock_committed and status == OrderStatus.CANCELLED
    return Transition(
        before=state,
        status=status,
        payment_status=pay,
        set_paid_at=(pay == PaymentStatus.PAID and state.paid_at is None),
        commit_stock=commit,
        release_stock=release,
    )


def plan_payment_update(
    state: OrderState,
    pay,
    order: Optional[OrderStatus] = None,
) -> Transition:
    """
    Transition for a gateway report. The payment edge must be legal, so a
    late `pending` after `paid` raises. The order target only ever pulls a
    pending order forward into `confirmed`; cancellation follows from the
    payment by the consistency rules.
    """
    pay = payment_status(pay)
    if not can_transition_payment(state.payment_status, pay):
        raise TransitionError(
            f"payment cannot go from {state.payment_status.value} "
            f"to {pay.value}"
        )
    status = state.status
    if order is not None and order_status(order) == OrderStatus.CONFIRMED:
        if status == OrderStatus.PENDING:
            status = OrderStatus.CONFIRMED
    return _settle(state, status, pay)


def plan_admin_update(
    state: OrderState,
    status=None,
    pay=None,
) -> Transition:
    """
    Transition for a back-office edit: payment first, then order status,
    then the consistency rules. Anything illegal raises TransitionError.
    """
    new_pay = state.payment_status
    if pay is not None:
        new_pay = payment_status(pay)
        if not can_transition_payment(state.payment_status, new_pay):
            raise TransitionError(
                f"payment cannot go from {state.payment_status.value} "
                f"to {new_pay.value}"
            )
    new_status = state.status
    if status is not None:
        new_status = order_status(status)
        if not can_transition_order(state.status, new_status):
            raise TransitionError(
                f"order cannot go from {state.status.value} "
                f"to {new_status.value}"
            )
    return _settle(state, new_status, new_pay)
