import uuid

import pytest

from ferrow.errors import ValidationError
from ferrow.model.catalog import list_categories, validate_product

from conftest import auth_headers


def valid(**overrides):
    data = {
        "name": "Tuna Pouch",
        "code": "TP-01",
        "category": "Wet Food",
        "price": "12000",
        "stock": 40,
    }
    data.update(overrides)
    return data


def test_validate_cleans_values():
    clean = validate_product(valid(image_url="https://cdn.test/a.png",
                                   protein=" 12% "))
    assert clean["price"] == 12000
    assert clean["stock"] == 40
    assert clean["protein"] == "12%"


def test_validate_reports_every_bad_field():
    with pytest.raises(ValidationError) as e:
        validate_product(valid(name="", price=0, stock=-1,
                               image_url="not a url",
                               description="x" * 1001))
    assert set(e.value.fields) == {
        "name", "price", "stock", "image_url", "description",
    }


def test_partial_validation_only_checks_given_fields():
    assert validate_product({"stock": "7"}, partial=True) == {"stock": 7}
    with pytest.raises(ValidationError):
        validate_product({"code": ""}, partial=True)


def test_price_upper_bound():
    with pytest.raises(ValidationError) as e:
        validate_product(valid(price=1_000_000_000))
    assert "price" in e.value.fields


def test_categories():
    names = [c["name"] for c in list_categories()]
    assert "Cat Litter" in names and len(names) == 5


def test_product_crud(client, admin_headers):
    code = f"CRUD-{uuid.uuid4().hex[:8]}"
    res = client.post("/api/products", json=valid(code=code),
                      headers=admin_headers)
    assert res.status_code == 201, res.text
    pid = res.json()["id"]

    res = client.put(f"/api/products/{pid}", json={"stock": 5},
                     headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["stock"] == 5
    assert res.json()["name"] == "Tuna Pouch"

    listed = client.get("/api/products", params={"search": code.lower()})
    assert [p["id"] for p in listed.json()] == [pid]

    res = client.delete(f"/api/products/{pid}", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["deletedProduct"] == {"id": pid, "name": "Tuna Pouch"}
    assert client.get(f"/api/products/{pid}").status_code == 404


def test_duplicate_code_conflicts(client, admin_headers):
    code = f"DUP-{uuid.uuid4().hex[:8]}"
    assert client.post("/api/products", json=valid(code=code),
                       headers=admin_headers).status_code == 201
    res = client.post("/api/products", json=valid(code=code),
                      headers=admin_headers)
    assert res.status_code == 409


def test_invalid_product_returns_field_errors(client, admin_headers):
    res = client.post("/api/products", json=valid(price="abc"),
                      headers=admin_headers)
    assert res.status_code == 400
    assert "price" in res.json()["fields"]


def test_product_writes_need_admin(client):
    res = client.post("/api/products", json=valid())
    assert res.status_code == 401
    assert res.json()["requireReauth"] is True
    res = client.post("/api/products", json=valid(),
                      headers=auth_headers("not-a-jwt"))
    assert res.status_code == 401


def test_upload_image(client, admin_headers):
    res = client.post(
        "/api/upload-image",
        files={"file": ("cat.png", b"\x89PNG\r\n\x1a\nfake", "image/png")},
        headers=admin_headers,
    )
    assert res.status_code == 200, res.text
    url = res.json()["publicUrl"]
    assert url.startswith("http://shop.test/static/product-images/")
    served = client.get("/static/" + res.json()["path"])
    assert served.status_code == 200
    assert served.content == b"\x89PNG\r\n\x1a\nfake"


def test_upload_rejects_other_types(client, admin_headers):
    res = client.post(
        "/api/upload-image",
        files={"file": ("a.gif", b"GIF89a", "image/gif")},
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert res.json()["fields"] == {"file": "unsupported type"}


def test_bad_product_id_uses_error_body(client):
    res = client.get("/api/products/abc")
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "invalid product id",
                          "fields": {"id": "must be a number"}}
