# ferrow/analytics.py
"""Sales analytics for the admin back office."""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func

from .helpers import now_ts
from .infra.sql import GatedAsyncSession
from .model.catalog import LOW_STOCK_THRESHOLD, product_to_dict
from .model.orm import Order, Product

DAY = 24 * 3600
PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
# bucket width per period, in days
BUCKET_DAYS = {"7d": 1, "30d": 1, "90d": 3, "1y": 30}
TOP_PRODUCTS = 5
RECENT_PRODUCTS = 5


def half_up(x: float) -> int:
    # amounts are non-negative; round() would go half-to-even
    return int(x + 0.5)


def period_window(period: Optional[str], now: Optional[float] = None):
    """Returns (period, start_ts, end_ts); unknown periods mean 7d."""
    if period not in PERIOD_DAYS:
        period = "7d"
    end = now if now is not None else now_ts()
    return period, end - PERIOD_DAYS[period] * DAY, end


def _day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def time_series(orders: List[Dict[str, Any]], period: str,
                start: float, end: float) -> List[Dict[str, Any]]:
    step = BUCKET_DAYS.get(period, 1) * DAY
    out = []
    current = start
    while current <= end:
        nxt = current + step
        bucket = [o for o in orders if current <= o["created_at"] < nxt]
        out.append({
            "date": _day(current),
            "revenue": sum(o["total_amount"] for o in bucket
                           if o["payment_status"] == "paid"),
            "orders": len(bucket),
        })
        current = nxt
    return out


def top_products(orders: List[Dict[str, Any]], n: int = TOP_PRODUCTS
                 ) -> List[Dict[str, Any]]:
    sales: Dict[str, Dict[str, int]] = {}
    for o in orders:
        for item in o.get("items") or []:
            name = item.get("product_name") or "Unknown Product"
            s = sales.setdefault(name, {"quantity": 0, "revenue": 0})
            s["quantity"] += int(item["quantity"])
            s["revenue"] += int(item["total_price"])
    ranked = sorted(sales.items(), key=lambda kv: kv[1]["revenue"],
                    reverse=True)
    return [{"name": name, **s} for name, s in ranked[:n]]


def process_analytics(orders: List[Dict[str, Any]], period: str,
                      start: float, end: float) -> Dict[str, Any]:
    """
    orders: [{"total_amount": int, "status": str, "payment_status": str,
              "created_at": float, "items": [...]}, ...]
    """
    def count(status):
        return sum(1 for o in orders if o["status"] == status)

    total_revenue = sum(o["total_amount"] for o in orders
                        if o["payment_status"] == "paid")
    total_orders = len(orders)
    completed = count("completed")
    pending = count("pending")
    conversion = completed / total_orders * 100 if total_orders else 0.0

    return {
        "summary": {
            "totalRevenue": total_revenue,
            "totalOrders": total_orders,
            "completedOrders": completed,
            "pendingOrders": pending,
            "conversionRate": round(conversion, 2),
            "averageOrderValue": half_up(total_revenue / total_orders)
            if total_orders else 0,
        },
        "timeSeriesData": time_series(orders, period, start, end),
        "topProducts": top_products(orders),
        "statusDistribution": {
            "pending": pending,
            "completed": completed,
            "cancelled": count("cancelled"),
            "processing": count("processing"),
        },
        "period": period,
    }


async def load_orders_since(db: GatedAsyncSession, start: float
                            ) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(Order).where(Order.created_at >= start)
                .order_by(Order.created_at.asc())
            )).scalars().all()
            return [{
                "id": o.id,
                "total_amount": int(o.total_amount),
                "status": o.status,
                "payment_status": o.payment_status,
                "created_at": float(o.created_at),
                "items": [{
                    "product_name": i.product_name,
                    "quantity": i.quantity,
                    "unit_price": i.unit_price,
                    "total_price": i.total_price,
                } for i in o.items],
            } for o in rows]


async def analytics_report(db: GatedAsyncSession, period: Optional[str]
                           ) -> Dict[str, Any]:
    period, start, end = period_window(period)
    orders = await load_orders_since(db, start)
    return process_analytics(orders, period, start, end)


async def dashboard_stats(db: GatedAsyncSession) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            total_products = (await db.session.execute(
                select(func.count()).select_from(Product)
            )).scalar_one()
            low_stock = (await db.session.execute(
                select(func.count()).select_from(Product)
                .where(Product.stock < LOW_STOCK_THRESHOLD)
            )).scalar_one()
            total_orders = (await db.session.execute(
                select(func.count()).select_from(Order)
            )).scalar_one()
            revenue = (await db.session.execute(
                select(func.coalesce(func.sum(Order.total_amount), 0))
                .where(Order.status == "completed")
            )).scalar_one()
            recent = (await db.session.execute(
                select(Product)
                .order_by(Product.created_at.desc(), Product.id.desc())
                .limit(RECENT_PRODUCTS)
            )).scalars().all()
            recent = [product_to_dict(p) for p in recent]
    return {
        "totalProducts": int(total_products),
        "totalRevenue": int(revenue),
        "totalOrders": int(total_orders),
        "lowStock": int(low_stock),
        "recentProducts": recent,
    }
