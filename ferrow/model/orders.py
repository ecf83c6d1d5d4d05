# model/orders.py
"""
Orders: creation from a cart, admin edits and gateway-driven status updates.

Every status change goes through `orderstate` and is written in the same
transaction as the stock it commits or releases. The order row is locked
(SELECT ... FOR UPDATE on Postgres) for the duration, so a webhook and an
admin edit racing on the same order serialize.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError, NotFoundError
from ..helpers import (
    now_ts, to_iso, is_valid_email, new_id, new_order_number, as_int,
)
from ..infra.sql import GatedAsyncSession
from . import catalog
from .cart import quote_cart
from .orm import Order, OrderItem
from .orderstate import (
    CANCELLABLE, OrderState, OrderStatus, PaymentStatus, Transition,
    TransitionError,
    map_gateway_status, plan_admin_update, plan_payment_update, order_status,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "user_id", "customer_name", "customer_email", "customer_phone",
    "shipping_address", "shipping_city", "shipping_province",
    "shipping_postal_code",
)
OPTIONAL_FIELDS = (
    "shipping_city_id", "shipping_province_id", "courier", "service",
    "estimated_delivery",
)


# ------------------------------------------------------------------------------
# Serialization
# ------------------------------------------------------------------------------
def item_to_dict(i: OrderItem) -> Dict[str, Any]:
    return {
        "id": i.id,
        "order_id": i.order_id,
        "product_id": i.product_id,
        "product_name": i.product_name,
        "product_code": i.product_code,
        "product_image_url": i.product_image_url,
        "quantity": i.quantity,
        "unit_price": str(i.unit_price),
        "total_price": str(i.total_price),
        "created_at": to_iso(i.created_at),
    }


def order_to_dict(o: Order, with_items: bool = True) -> Dict[str, Any]:
    out = {
        "id": o.id,
        "order_number": o.order_number,
        "user_id": o.user_id,
        "customer_name": o.customer_name,
        "customer_email": o.customer_email,
        "customer_phone": o.customer_phone,
        "shipping_address": o.shipping_address,
        "shipping_city": o.shipping_city,
        "shipping_province": o.shipping_province,
        "shipping_postal_code": o.shipping_postal_code,
        "shipping_city_id": o.shipping_city_id,
        "shipping_province_id": o.shipping_province_id,
        "subtotal": str(o.subtotal),
        "shipping_cost": str(o.shipping_cost),
        "total_amount": str(o.total_amount),
        "courier": o.courier,
        "service": o.service,
        "estimated_delivery": o.estimated_delivery,
        "tracking_number": o.tracking_number,
        "payment_method": o.payment_method,
        "payment_status": o.payment_status,
        "payment_token": o.payment_token,
        "payment_url": o.payment_url,
        "transaction_id": o.transaction_id,
        "paid_at": to_iso(o.paid_at),
        "status": o.status,
        "notes": o.notes,
        "stock_committed": bool(o.stock_committed),
        "created_at": to_iso(o.created_at),
        "updated_at": to_iso(o.updated_at),
    }
    if with_items:
        out["order_items"] = [item_to_dict(i) for i in o.items]
    return out


# ------------------------------------------------------------------------------
# Create
# ------------------------------------------------------------------------------
def validate_order_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    missing = [
        f for f in REQUIRED_FIELDS
        if not str(payload.get(f) or "").strip()
    ]
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        missing.append("items")
    if missing:
        raise ValidationError(
            "Missing required fields",
            {f: "required" for f in missing},
        )
    if not all(isinstance(i, dict) for i in items):
        raise ValidationError(
            "Invalid cart items",
            {"items": "every item must be an object"},
        )

    clean = {f: str(payload[f]).strip() for f in REQUIRED_FIELDS}
    if not is_valid_email(clean["customer_email"]):
        raise ValidationError(
            "Invalid email format",
            {"customer_email": "invalid email"},
        )
    for f in OPTIONAL_FIELDS:
        v = payload.get(f)
        clean[f] = str(v).strip() if v not in (None, "") else None

    shipping = payload.get("shipping_cost")
    if shipping in (None, ""):
        clean["shipping_cost"] = None
    else:
        clean["shipping_cost"] = as_int(shipping)
        if clean["shipping_cost"] is None:
            raise ValidationError(
                "Invalid numeric values",
                {"shipping_cost": "must be a number"},
            )
    clean["payment_method"] = payload.get("payment_method") or "midtrans"
    clean["items"] = items
    return clean


async def create_order(db: GatedAsyncSession, payload: Dict[str, Any]
                       ) -> Dict[str, Any]:
    clean = validate_order_payload(payload)
    items = clean.pop("items")
    shipping_cost = clean.pop("shipping_cost")
    now = now_ts()

    async with db.gated():
        async with db.session.begin():
            products = await catalog.load_products(
                db.session,
                [as_int(i.get("product_id", i.get("id")), -1) for i in items],
            )
            quote = quote_cart(items, products, shipping_cost)
            order = Order(
                id=new_id(),
                order_number=new_order_number(now),
                subtotal=quote["subtotal"],
                shipping_cost=quote["shipping"],
                total_amount=quote["total"],
                status=OrderStatus.PENDING.value,
                payment_status="pending",
                stock_committed=False,
                created_at=now,
                updated_at=now,
                **clean,
            )
            order.items = [
                OrderItem(created_at=now, **line) for line in quote["lines"]
            ]
            db.session.add(order)

    logger.info(
        "order created %s total=%s items=%d",
        order.order_number, order.total_amount, len(quote["lines"]),
    )
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "payment_token": order.payment_token,
        "subtotal": str(order.subtotal),
        "shipping_cost": str(order.shipping_cost),
        "total_amount": str(order.total_amount),
    }


# ------------------------------------------------------------------------------
# Read
# ------------------------------------------------------------------------------
async def _load(session: AsyncSession, *, order_id: Optional[str] = None,
                order_number: Optional[str] = None,
                for_update: bool = False) -> Order:
    stmt = select(Order)
    if order_id is not None:
        stmt = stmt.where(Order.id == order_id)
    else:
        stmt = stmt.where(Order.order_number == order_number)
    if for_update:
        stmt = stmt.with_for_update()
    order = (await session.execute(stmt)).scalars().first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def get_order(db: GatedAsyncSession, order_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            order = await _load(db.session, order_id=order_id)
            return order_to_dict(order)


async def get_order_by_number(db: GatedAsyncSession, order_number: str
                              ) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            order = await _load(db.session, order_number=order_number)
            return order_to_dict(order)


async def list_orders(
    db: GatedAsyncSession,
    offset: int,
    limit: int,
    status: Optional[str] = None,
    search: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    conds = []
    if user_id:
        conds.append(Order.user_id == user_id)
    if status and status != "all":
        conds.append(Order.status == status)
    if search:
        pattern = f"%{search.lower()}%"
        conds.append(or_(
            func.lower(Order.order_number).like(pattern),
            func.lower(Order.customer_name).like(pattern),
        ))

    async with db.gated():
        async with db.session.begin():
            total = (await db.session.execute(
                select(func.count()).select_from(Order).where(*conds)
            )).scalar_one()
            rows = (await db.session.execute(
                select(Order).where(*conds)
                .order_by(Order.created_at.desc())
                .offset(offset).limit(limit)
            )).scalars().all()
            return [order_to_dict(o) for o in rows], int(total)


# ------------------------------------------------------------------------------
# Status changes
# ------------------------------------------------------------------------------
async def _apply(session: AsyncSession, order: Order, tr: Transition) -> None:
    now = now_ts()
    lines = [(i.product_id, i.quantity) for i in order.items]

    if tr.commit_stock:
        short = await catalog.commit_stock(session, lines)
        if short:
            logger.warning(
                "stock shortfall on %s for products %s",
                order.order_number, short,
            )
            note = f"stock shortfall at payment: products {short}"
            order.notes = f"{order.notes}\n{note}" if order.notes else note
        else:
            order.stock_committed = True

    if tr.release_stock:
        await catalog.release_stock(session, lines)
        order.stock_committed = False

    for k, v in tr.values(now).items():
        setattr(order, k, v)


async def update_order(
    db: GatedAsyncSession,
    order_id: str,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    tracking_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Back-office edit. Raises TransitionError on an illegal change."""
    async with db.gated():
        async with db.session.begin():
            order = await _load(db.session, order_id=order_id,
                                for_update=True)
            tr = plan_admin_update(
                OrderState.of(order), status or None, payment_status or None
            )
            await _apply(db.session, order, tr)
            if tracking_number not in (None, ""):
                order.tracking_number = str(tracking_number).strip()
            if notes is not None:
                order.notes = str(notes)
            order.updated_at = now_ts()
            out = order_to_dict(order)

    if tr.changed:
        logger.info(
            "order %s updated by admin: %s/%s -> %s/%s",
            out["order_number"],
            tr.before.status.value, tr.before.payment_status.value,
            tr.status.value, tr.payment_status.value,
        )
    return out


async def delete_order(db: GatedAsyncSession, order_id: str) -> None:
    async with db.gated():
        async with db.session.begin():
            order = await _load(db.session, order_id=order_id,
                                for_update=True)
            # goods that never left the warehouse go back on the shelf
            if order.stock_committed and \
                    order_status(order.status) in CANCELLABLE:
                await catalog.release_stock(
                    db.session,
                    [(i.product_id, i.quantity) for i in order.items],
                )
            await db.session.execute(
                delete(OrderItem).where(OrderItem.order_id == order_id)
            )
            await db.session.execute(
                delete(Order).where(Order.id == order_id)
            )
    logger.info("order deleted id=%s", order_id)


async def attach_payment(db: GatedAsyncSession, order_id: str,
                         token: str, redirect_url: str) -> None:
    async with db.gated():
        async with db.session.begin():
            order = await _load(db.session, order_id=order_id,
                                for_update=True)
            order.payment_token = token
            order.payment_url = redirect_url
            order.updated_at = now_ts()


async def apply_payment_report(
    db: GatedAsyncSession,
    order_number: str,
    transaction_status: str,
    fraud_status: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Apply a gateway report (webhook or status check).

    Returns {"applied": bool, "ignored": reason | None, ...}. Reports the
    state machine refuses (out of order, stale) are ignored rather than
    raised: the gateway retries anything that isn't a 2xx.
    """
    pay, target = map_gateway_status(transaction_status, fraud_status)

    async with db.gated():
        async with db.session.begin():
            order = await _load(db.session, order_number=order_number,
                                for_update=True)
            before = OrderState.of(order)
            try:
                tr = plan_payment_update(before, pay, target)
            except TransitionError as e:
                logger.info(
                    "ignoring %s/%s for %s: %s",
                    transaction_status, fraud_status, order_number, e,
                )
                return {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "payment_token": order.payment_token,
                    "applied": False,
                    "ignored": str(e),
                    "status": order.status,
                    "payment_status": order.payment_status,
                }
            await _apply(db.session, order, tr)
            if transaction_id:
                order.transaction_id = transaction_id
                order.updated_at = now_ts()
            result = {
                "order_id": order.id,
                "order_number": order.order_number,
                "payment_token": order.payment_token,
                "applied": tr.changed,
                "ignored": None,
                "status": order.status,
                "payment_status": order.payment_status,
            }

    if tr.changed:
        logger.info(
            "order %s: %s/%s -> %s/%s (gateway %s)",
            order_number,
            before.status.value, before.payment_status.value,
            tr.status.value, tr.payment_status.value, transaction_status,
        )
    if tr.changed and tr.payment_status == PaymentStatus.PAID and \
            tr.status == OrderStatus.CANCELLED:
        logger.warning("order %s paid after cancellation; needs refund",
                       order_number)
    return result
