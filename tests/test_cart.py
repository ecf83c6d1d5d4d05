from types import SimpleNamespace

import pytest

from ferrow.errors import ValidationError
from ferrow.model.cart import FLAT_SHIPPING, flat_shipping, quote_cart


def product(pid, price, stock=10, active=True):
    return SimpleNamespace(id=pid, name=f"Product {pid}", code=f"P{pid}",
                           image_url=None, price=price, stock=stock,
                           is_active=active)


CATALOG = {
    1: product(1, 40000),
    2: product(2, 25000, stock=3),
    3: product(3, 10000, active=False),
}


def test_flat_shipping_rule():
    assert flat_shipping(100000) == FLAT_SHIPPING
    assert flat_shipping(100001) == 0
    assert flat_shipping(0) == FLAT_SHIPPING


def test_quote_uses_catalog_prices_and_merges_lines():
    q = quote_cart([
        {"id": 1, "quantity": 1, "price": 1},
        {"product_id": "1", "quantity": "1"},
        {"id": 2, "quantity": 0},
    ], CATALOG)
    assert len(q["lines"]) == 1
    line = q["lines"][0]
    assert line["quantity"] == 2
    assert line["unit_price"] == 40000
    assert q["subtotal"] == 80000
    assert q["shipping"] == FLAT_SHIPPING
    assert q["total"] == 80000 + FLAT_SHIPPING


def test_courier_quote_overrides_flat_rate():
    q = quote_cart([{"id": 1, "quantity": 3}], CATALOG, shipping_cost=22000)
    assert q["subtotal"] == 120000
    assert q["shipping"] == 22000
    assert q["total"] == 142000


def test_free_shipping_above_threshold():
    q = quote_cart([{"id": 1, "quantity": 3}], CATALOG)
    assert q["shipping"] == 0


def test_rejects_more_than_stock():
    with pytest.raises(ValidationError) as e:
        quote_cart([{"id": 2, "quantity": 4}], CATALOG)
    assert "items.2" in e.value.fields


def test_rejects_inactive_and_unknown_products():
    with pytest.raises(ValidationError) as e:
        quote_cart([{"id": 3, "quantity": 1}, {"id": 99, "quantity": 1}],
                   CATALOG)
    assert set(e.value.fields) == {"items.3", "items.99"}


def test_empty_cart():
    with pytest.raises(ValidationError):
        quote_cart([{"id": 1, "quantity": 0}], CATALOG)


def test_negative_shipping_rejected():
    with pytest.raises(ValidationError):
        quote_cart([{"id": 1, "quantity": 1}], CATALOG, shipping_cost=-1)


def test_non_object_item_rejected():
    with pytest.raises(ValidationError) as e:
        quote_cart([5, {"id": 1, "quantity": 1}], CATALOG)
    assert "items" in e.value.fields
