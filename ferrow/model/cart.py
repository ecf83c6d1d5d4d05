from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ValidationError
from ..helpers import as_int

FREE_SHIPPING_ABOVE = 100_000
FLAT_SHIPPING = 15_000


def flat_shipping(subtotal: int) -> int:
    return 0 if subtotal > FREE_SHIPPING_ABOVE else FLAT_SHIPPING


def quote_cart(
    items: List[Dict[str, Any]],
    catalog: Mapping[int, Any],
    shipping_cost: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Price cart lines from the catalog (client prices are ignored).

    items:   [{"id"| "product_id": 3, "quantity": 2}, ...]
    catalog: {product_id: Product}
    shipping_cost: courier quote; None falls back to the flat-rate rule
    """
    lines = []
    errors: Dict[str, str] = {}
    merged: Dict[int, int] = {}
    for raw in items or []:
        if not isinstance(raw, dict):
            errors["items"] = "every item must be an object"
            continue
        pid = as_int(raw.get("product_id", raw.get("id")))
        qty = as_int(raw.get("quantity"), 0)
        if pid is None:
            errors["items"] = "every item needs a product id"
            continue
        if qty <= 0:
            continue
        merged[pid] = merged.get(pid, 0) + qty

    for pid, qty in merged.items():
        p = catalog.get(pid)
        if p is None or not p.is_active:
            errors[f"items.{pid}"] = "product is not available"
            continue
        if qty > p.stock:
            errors[f"items.{pid}"] = f"only {p.stock} left in stock"
            continue
        lines.append({
            "product_id": p.id,
            "product_name": p.name,
            "product_code": p.code,
            "product_image_url": p.image_url,
            "quantity": qty,
            "unit_price": p.price,
            "total_price": p.price * qty,
        })

    if errors:
        raise ValidationError("Invalid cart", errors)
    if not lines:
        raise ValidationError("Cart is empty", {"items": "cart is empty"})

    subtotal = sum(line["total_price"] for line in lines)
    if shipping_cost is None:
        shipping = flat_shipping(subtotal)
    else:
        if shipping_cost < 0:
            raise ValidationError(
                "Invalid shipping cost",
                {"shipping_cost": "must not be negative"},
            )
        shipping = shipping_cost
    return {
        "lines": lines,
        "subtotal": subtotal,
        "shipping": shipping,
        "total": subtotal + shipping,
    }
