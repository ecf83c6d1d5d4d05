import asyncio

import httpx
import pytest

from ferrow.errors import ConfigurationError, ShippingError, ValidationError
from ferrow.shipping import RajaOngkir, validate_cost_request

BASE = "https://ongkir.test/starter"


def ok(results, key="results"):
    return {"rajaongkir": {"status": {"code": 200, "description": "OK"},
                           key: results}}


def call(handler, fn):
    async def go():
        async with httpx.AsyncClient(
                transport=httpx.MockTransport(handler)) as http:
            return await fn(RajaOngkir("k-123", BASE), http)
    return asyncio.run(go())


def test_provinces_sends_key_header():
    seen = {}

    def handler(request):
        seen["key"] = request.headers.get("key")
        seen["url"] = str(request.url)
        return httpx.Response(200, json=ok([{"province_id": "9",
                                             "province": "Jawa Barat"}]))

    provinces = call(handler, lambda ro, http: ro.provinces(http))
    assert provinces[0]["province"] == "Jawa Barat"
    assert seen == {"key": "k-123", "url": f"{BASE}/province"}


def test_single_city_is_wrapped():
    def handler(request):
        assert request.url.params["province"] == "9"
        return httpx.Response(200, json=ok({"city_id": "23",
                                            "city_name": "Bandung"}))

    cities = call(handler, lambda ro, http: ro.cities(http, "9"))
    assert cities == [{"city_id": "23", "city_name": "Bandung"}]


def test_cost_posts_form():
    def handler(request):
        assert request.method == "POST"
        body = request.content.decode()
        assert "origin=501" in body and "courier=jne" in body
        return httpx.Response(200, json=ok([{"code": "jne", "costs": []}]))

    results = call(handler, lambda ro, http: ro.cost(http, "501", "23", 1000))
    assert results[0]["code"] == "jne"


def test_waybill_returns_result():
    def handler(request):
        return httpx.Response(200, json=ok({"delivered": True}, "result"))

    data = call(handler,
                lambda ro, http: ro.waybill(http, "JNE123", "jne"))
    assert data == {"delivered": True}


def test_api_error_status():
    def handler(request):
        return httpx.Response(400, json={"rajaongkir": {
            "status": {"code": 400, "description": "Invalid key"},
        }})

    with pytest.raises(ShippingError, match="Invalid key"):
        call(handler, lambda ro, http: ro.provinces(http))


def test_non_json_response():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(ShippingError):
        call(handler, lambda ro, http: ro.provinces(http))


def test_missing_key():
    async def go():
        async with httpx.AsyncClient() as http:
            return await RajaOngkir("", BASE).provinces(http)

    with pytest.raises(ConfigurationError):
        asyncio.run(go())


def test_validate_cost_request():
    assert validate_cost_request({
        "origin": " 501 ", "destination": "23", "weight": "1200",
    }) == {"origin": "501", "destination": "23", "weight": 1200,
           "courier": "jne"}
    with pytest.raises(ValidationError) as e:
        validate_cost_request({"origin": "501", "weight": 0})
    assert set(e.value.fields) == {"destination", "weight"}


def test_shipping_endpoint_without_key(client):
    res = client.post("/api/shipping/cost", json={
        "origin": "501", "destination": "23", "weight": 1000,
    })
    assert res.status_code == 500
    assert "not configured" in res.json()["error"]
