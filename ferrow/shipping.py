import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from .errors import ConfigurationError, ShippingError, ValidationError
from .helpers import as_int

logger = logging.getLogger(__name__)

RAJAONGKIR_API_KEY = os.environ.get("RAJAONGKIR_API_KEY", "")
RAJAONGKIR_BASE_URL = os.environ.get(
    "RAJAONGKIR_BASE_URL", "https://api.rajaongkir.com/starter"
)
DEFAULT_COURIER = "jne"


class RajaOngkir:
    """Thin client for the RajaOngkir starter API (key header auth)."""

    def __init__(self, api_key: str = RAJAONGKIR_API_KEY,
                 base_url: str = RAJAONGKIR_BASE_URL):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def _call(self, http: httpx.AsyncClient, method: str,
                    endpoint: str, *, params: Optional[dict] = None,
                    data: Optional[dict] = None) -> Dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError("Raja Ongkir API key not configured")
        url = f"{self.base_url}/{endpoint}"
        logger.debug("RajaOngkir %s %s", method, url)
        try:
            r = await http.request(method, url, params=params, data=data,
                                   headers={"key": self.api_key})
        except httpx.HTTPError as e:
            raise ShippingError(f"Raja Ongkir unreachable: {e}") from e

        try:
            body = r.json()["rajaongkir"]
        except (ValueError, KeyError, TypeError):
            raise ShippingError(
                f"Raja Ongkir API error: {r.status_code}"
            ) from None
        status = body.get("status") or {}
        if status.get("code") != 200:
            raise ShippingError(
                status.get("description") or
                f"Raja Ongkir API error: {r.status_code}"
            )
        return body

    async def provinces(self, http: httpx.AsyncClient) -> List[dict]:
        body = await self._call(http, "GET", "province")
        return body.get("results") or []

    async def cities(self, http: httpx.AsyncClient,
                     province_id: Optional[str] = None) -> List[dict]:
        params = {"province": province_id} if province_id else None
        body = await self._call(http, "GET", "city", params=params)
        results = body.get("results") or []
        # a single-id lookup answers with one object
        return results if isinstance(results, list) else [results]

    async def cost(self, http: httpx.AsyncClient, origin: str,
                   destination: str, weight: int,
                   courier: Optional[str] = None) -> List[dict]:
        body = await self._call(http, "POST", "cost", data={
            "origin": origin,
            "destination": destination,
            "weight": weight,
            "courier": courier or DEFAULT_COURIER,
        })
        return body.get("results") or []

    async def waybill(self, http: httpx.AsyncClient, waybill: str,
                      courier: str) -> Dict[str, Any]:
        body = await self._call(http, "POST", "waybill", data={
            "waybill": waybill,
            "courier": courier,
        })
        return body.get("result") or {}


def validate_cost_request(payload: Dict[str, Any]) -> Dict[str, Any]:
    origin = str(payload.get("origin") or "").strip()
    destination = str(payload.get("destination") or "").strip()
    weight = as_int(payload.get("weight"))
    errors = {}
    if not origin:
        errors["origin"] = "required"
    if not destination:
        errors["destination"] = "required"
    if weight is None or weight <= 0:
        errors["weight"] = "must be a positive number of grams"
    if errors:
        raise ValidationError(
            "origin, destination, and weight are required", errors
        )
    return {
        "origin": origin,
        "destination": destination,
        "weight": weight,
        "courier": (payload.get("courier") or DEFAULT_COURIER).strip(),
    }
