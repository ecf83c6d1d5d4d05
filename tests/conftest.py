import hashlib
import os
import tempfile
import uuid

import pytest

# configuration is read at import time; set it before ferrow is imported
_TMP = tempfile.mkdtemp(prefix="ferrow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/test.db"
os.environ["PAYSESSION_BACKEND"] = "sql"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["MOCK_SECRET"] = "test-mock-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["STATIC_DIR"] = os.path.join(_TMP, "static")
os.environ["PUBLIC_BASE_URL"] = "http://shop.test"
os.environ["MOCK_WEBHOOK_URL"] = "http://127.0.0.1:9/unreachable"

MOCK_SECRET = "test-mock-secret"
JWT_SECRET = "test-jwt-secret"
ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "supasecret"


@pytest.fixture(scope="session")
def client():
    from fastapi.testclient import TestClient
    from ferrow.server import app

    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="session")
def run_db(client):
    """Run `await fn(db, *args)` on the app's event loop."""
    from ferrow.infra.sql import GatedAsyncSession
    from ferrow.server import SessionAsync, gated

    async def _call(fn, args):
        async with SessionAsync() as session:
            return await fn(GatedAsyncSession(session=session, gated=gated),
                            *args)

    def _run(fn, *args):
        return client.portal.call(_call, fn, args)
    return _run


@pytest.fixture(scope="session")
def admin_headers(client, run_db):
    from ferrow.auth import create_admin

    run_db(create_admin, ADMIN_USERNAME, ADMIN_PASSWORD)
    res = client.post("/api/admin/login", json={
        "username": ADMIN_USERNAME, "password": ADMIN_PASSWORD,
    })
    assert res.status_code == 200, res.text
    return auth_headers(res.json()["data"]["token"])


@pytest.fixture
def make_product(client, admin_headers):
    def _make(price=50000, stock=10, **extra):
        body = {
            "name": extra.pop("name", "Salmon Kibble"),
            "code": f"T-{uuid.uuid4().hex[:10]}",
            "category": "Dry Cat Food",
            "price": price,
            "stock": stock,
            **extra,
        }
        res = client.post("/api/products", json=body, headers=admin_headers)
        assert res.status_code == 201, res.text
        return res.json()
    return _make


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def customer(**overrides) -> dict:
    body = {
        "user_id": "user-1",
        "customer_name": "Sari Wijaya",
        "customer_email": "sari@example.com",
        "customer_phone": "081234567890",
        "shipping_address": "Jl. Merdeka 10",
        "shipping_city": "Bandung",
        "shipping_province": "Jawa Barat",
        "shipping_postal_code": "40111",
    }
    body.update(overrides)
    return body


def place_order(client, items, **overrides) -> dict:
    res = client.post("/api/orders", json={**customer(**overrides),
                                           "items": items})
    assert res.status_code == 200, res.text
    return res.json()


def get_order(client, order_id) -> dict:
    res = client.get(f"/api/orders/{order_id}")
    assert res.status_code == 200, res.text
    return res.json()["order"]


def get_stock(client, product_id) -> int:
    return client.get(f"/api/products/{product_id}").json()["stock"]


def sign(order_id: str, status_code: str, gross_amount: str,
         key: str = MOCK_SECRET) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{key}"
    return hashlib.sha512(raw.encode()).hexdigest()


def notification(order_number: str, gross, transaction_status: str,
                 fraud_status=None, transaction_id=None,
                 status_code="200") -> dict:
    gross_amount = f"{int(gross)}.00"
    body = {
        "order_id": order_number,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "transaction_status": transaction_status,
        "transaction_id": transaction_id or str(uuid.uuid4()),
        "signature_key": sign(order_number, status_code, gross_amount),
    }
    if fraud_status:
        body["fraud_status"] = fraud_status
    return body


def notify(client, order: dict, transaction_status: str, **kw):
    return client.post("/api/payment/notification", json=notification(
        order["order_number"], order["total_amount"], transaction_status,
        **kw
    ))
