import uuid

from conftest import customer, get_order, get_stock, place_order


def test_order_totals_come_from_the_catalog(client, make_product):
    p = make_product(price=30000, stock=10)
    created = place_order(client, [
        {"product_id": p["id"], "quantity": 2, "unit_price": 1},
    ])
    assert created["success"] is True
    assert created["order_number"].startswith("ORD-")
    assert created["subtotal"] == "60000"
    assert created["shipping_cost"] == "15000"
    assert created["total_amount"] == "75000"

    order = get_order(client, created["order_id"])
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["stock_committed"] is False
    assert order["order_items"][0]["unit_price"] == "30000"
    assert order["order_items"][0]["total_price"] == "60000"
    # stock is only taken once the order is paid
    assert get_stock(client, p["id"]) == 10


def test_courier_quote_is_used_for_shipping(client, make_product):
    p = make_product(price=30000)
    created = place_order(client, [{"id": p["id"], "quantity": 1}],
                          shipping_cost="9000", courier="jne",
                          service="REG")
    assert created["total_amount"] == "39000"
    order = get_order(client, created["order_id"])
    assert order["courier"] == "jne"


def test_missing_fields(client, make_product):
    p = make_product()
    body = customer(customer_phone="")
    res = client.post("/api/orders", json={**body, "items": []})
    assert res.status_code == 400
    assert set(res.json()["fields"]) == {"customer_phone", "items"}

    res = client.post("/api/orders", json={
        **customer(customer_email="nope"),
        "items": [{"id": p["id"], "quantity": 1}],
    })
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid email format"


def test_non_object_items_rejected(client):
    res = client.post("/api/orders", json={**customer(), "items": [5]})
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert "items" in body["fields"]


def test_cannot_order_more_than_stock(client, make_product):
    p = make_product(stock=1)
    res = client.post("/api/orders", json={
        **customer(), "items": [{"id": p["id"], "quantity": 2}],
    })
    assert res.status_code == 400


def test_unknown_order(client):
    assert client.get("/api/orders/does-not-exist").status_code == 404


def test_listing_by_user(client, make_product):
    p = make_product()
    user = f"u-{uuid.uuid4().hex[:8]}"
    for _ in range(3):
        place_order(client, [{"id": p["id"], "quantity": 1}], user_id=user)

    res = client.get("/api/orders", params={"user_id": user, "limit": 2})
    assert res.status_code == 200
    body = res.json()
    assert len(body["orders"]) == 2
    assert body["pagination"] == {
        "page": 1, "limit": 2, "total": 3, "totalPages": 2,
    }


def test_full_listing_is_admin_only(client, admin_headers, make_product):
    assert client.get("/api/orders").status_code == 401

    p = make_product()
    created = place_order(client, [{"id": p["id"], "quantity": 1}],
                          customer_name="Budi Searchable")
    res = client.get("/api/orders", params={"search": "budi search"},
                     headers=admin_headers)
    assert res.status_code == 200
    ids = [o["id"] for o in res.json()["orders"]]
    assert created["order_id"] in ids


def test_admin_edit_goes_through_the_state_machine(
        client, admin_headers, make_product):
    p = make_product(stock=5)
    created = place_order(client, [{"id": p["id"], "quantity": 2}])
    oid = created["order_id"]

    # cannot ship before payment
    res = client.put(f"/api/orders/{oid}", json={"status": "shipped"},
                     headers=admin_headers)
    assert res.status_code == 409

    res = client.put(f"/api/orders/{oid}", json={
        "payment_status": "paid", "status": "processing",
        "tracking_number": " JNE123 ",
    }, headers=admin_headers)
    assert res.status_code == 200, res.text
    order = res.json()["order"]
    assert order["status"] == "processing"
    assert order["paid_at"] is not None
    assert order["tracking_number"] == "JNE123"
    assert order["stock_committed"] is True
    assert get_stock(client, p["id"]) == 3

    # cannot go backwards
    res = client.put(f"/api/orders/{oid}", json={"status": "confirmed"},
                     headers=admin_headers)
    assert res.status_code == 409

    res = client.put(f"/api/orders/{oid}", json={"status": "cancelled"},
                     headers=admin_headers)
    assert res.status_code == 200
    assert get_stock(client, p["id"]) == 5
    assert get_order(client, oid)["stock_committed"] is False


def test_admin_edit_coerces_scalar_fields(
        client, admin_headers, make_product):
    p = make_product()
    created = place_order(client, [{"id": p["id"], "quantity": 1}])
    res = client.put(f"/api/orders/{created['order_id']}", json={
        "tracking_number": 12345, "notes": 7,
    }, headers=admin_headers)
    assert res.status_code == 200, res.text
    order = res.json()["order"]
    assert order["tracking_number"] == "12345"
    assert order["notes"] == "7"


def test_admin_edit_requires_token(client, make_product):
    p = make_product()
    created = place_order(client, [{"id": p["id"], "quantity": 1}])
    res = client.put(f"/api/orders/{created['order_id']}",
                     json={"status": "cancelled"})
    assert res.status_code == 401


def test_delete_order_restocks(client, admin_headers, make_product):
    p = make_product(stock=4)
    created = place_order(client, [{"id": p["id"], "quantity": 3}])
    oid = created["order_id"]
    client.put(f"/api/orders/{oid}", json={"payment_status": "paid"},
               headers=admin_headers)
    assert get_stock(client, p["id"]) == 1

    res = client.delete(f"/api/orders/{oid}", headers=admin_headers)
    assert res.status_code == 200
    assert client.get(f"/api/orders/{oid}").status_code == 404
    assert get_stock(client, p["id"]) == 4
