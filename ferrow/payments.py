from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict
import hashlib
import hmac
import logging
import os
import time
import uuid

import httpx

from .errors import ConfigurationError, PaymentGatewayError, ValidationError

logger = logging.getLogger(__name__)

MIDTRANS_SERVER_KEY = os.environ.get("MIDTRANS_SERVER_KEY", "")
MIDTRANS_CLIENT_KEY = os.environ.get("MIDTRANS_CLIENT_KEY", "")
MIDTRANS_IS_PRODUCTION = (
    os.environ.get("MIDTRANS_IS_PRODUCTION", "false").lower() == "true"
)
# MockPay signs its notifications exactly like Midtrans does
MOCK_SECRET = os.environ.get("MOCK_SECRET", "mock-server-key")

ENABLED_PAYMENTS = [
    "credit_card", "bca_va", "bni_va", "bri_va", "echannel", "gopay",
    "shopeepay",
]


def snap_url(is_production: bool) -> str:
    if is_production:
        return "https://app.midtrans.com/snap/v1/transactions"
    return "https://app.sandbox.midtrans.com/snap/v1/transactions"


def api_url(is_production: bool) -> str:
    if is_production:
        return "https://api.midtrans.com/v2"
    return "https://api.sandbox.midtrans.com/v2"


def notification_signature(order_id: str, status_code: str,
                           gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode()).hexdigest()


def basic_auth(server_key: str) -> httpx.BasicAuth:
    # Midtrans: server key as username, empty password
    return httpx.BasicAuth(server_key, "")


def item_slug(name: str) -> str:
    return "-".join(name.split()).lower()


def build_snap_payload(order: Dict[str, Any], base_url: str) -> Dict[str, Any]:
    """
    Snap transaction body for an order dict (see orders.order_to_dict).
    gross_amount must equal the sum of item_details, so shipping goes in as
    its own line.
    """
    items = [
        {
            "id": item_slug(i["product_name"]),
            "price": int(i["unit_price"]),
            "quantity": int(i["quantity"]),
            "name": i["product_name"][:50],
        }
        for i in order["order_items"]
    ]
    shipping = int(order["shipping_cost"])
    if shipping > 0:
        items.append({
            "id": "shipping-cost",
            "price": shipping,
            "quantity": 1,
            "name": "Shipping Cost",
        })
    base_url = base_url.rstrip("/")
    return {
        "transaction_details": {
            "order_id": order["order_number"],
            "gross_amount": int(order["total_amount"]),
        },
        "customer_details": {
            "first_name": order["customer_name"],
            "email": order["customer_email"],
            "phone": order["customer_phone"],
            "shipping_address": {
                "first_name": order["customer_name"],
                "address": order["shipping_address"],
                "city": order["shipping_city"],
                "postal_code": order["shipping_postal_code"],
                "country_code": "IDN",
            },
        },
        "item_details": items,
        "enabled_payments": list(ENABLED_PAYMENTS),
        "callbacks": {
            "finish": f"{base_url}/payment/finish",
            "error": f"{base_url}/payment/error",
            "pending": f"{base_url}/payment/pending",
        },
    }


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    token: str
    redirect_url: str


class PaymentAdapter(ABC):
    name: str = ""
    client_key: str = ""

    @abstractmethod
    async def create_transaction(
        self, http: httpx.AsyncClient, order: Dict[str, Any]
    ) -> CreateSessionResult: ...

    # None when the gateway has nothing (yet) for this order
    @abstractmethod
    async def fetch_status(
        self, http: httpx.AsyncClient, order_number: str
    ) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def server_key(self) -> str: ...

    def verify_notification(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Raises ValidationError on a missing field or a bad signature."""
        sig = payload.get("signature_key")
        fields = ("order_id", "status_code", "gross_amount")
        if not sig or any(payload.get(f) in (None, "") for f in fields):
            raise ValidationError("Invalid notification")
        expected = notification_signature(
            str(payload["order_id"]), str(payload["status_code"]),
            str(payload["gross_amount"]), self.server_key(),
        )
        if not hmac.compare_digest(expected, str(sig)):
            raise ValidationError("Invalid signature")
        return payload


# ----------------------------
# Midtrans Snap
# ----------------------------
class MidtransSnap(PaymentAdapter):
    name = "midtrans"

    def __init__(self, server_key: str, client_key: str,
                 is_production: bool, base_url: str):
        self._server_key = server_key
        self.client_key = client_key
        self.is_production = is_production
        self.base_url = base_url

    def server_key(self) -> str:
        if not self._server_key or not self.client_key:
            raise ConfigurationError(
                "Midtrans server/client key not configured"
            )
        return self._server_key

    async def create_transaction(
        self, http: httpx.AsyncClient, order: Dict[str, Any]
    ) -> CreateSessionResult:
        body = build_snap_payload(order, self.base_url)
        try:
            r = await http.post(
                snap_url(self.is_production),
                json=body,
                auth=basic_auth(self.server_key()),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Midtrans unreachable: {e}") from e

        if r.status_code >= 400:
            logger.error("Midtrans API error %s: %s", r.status_code, r.text)
            try:
                data = r.json()
            except ValueError:
                raise PaymentGatewayError(
                    f"Midtrans API error: {r.status_code}"
                ) from None
            messages = data.get("error_messages") or []
            raise PaymentGatewayError(
                messages[0] if messages
                else data.get("message", "Failed to create transaction")
            )

        data = r.json()
        logger.info("Snap transaction created for %s",
                    order["order_number"])
        return {"token": data["token"], "redirect_url": data["redirect_url"]}

    async def fetch_status(
        self, http: httpx.AsyncClient, order_number: str
    ) -> Optional[Dict[str, Any]]:
        try:
            r = await http.get(
                f"{api_url(self.is_production)}/{order_number}/status",
                auth=basic_auth(self.server_key()),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning("Midtrans status check failed: %s", e)
            return None
        if r.status_code >= 400:
            return None
        data = r.json()
        # the status API answers 200 with an inner status_code on misses
        if str(data.get("status_code", "")) == "404":
            return None
        return data


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    name = "mock"
    client_key = "mock-client-key"

    def __init__(self, secret: str = MOCK_SECRET):
        self._secret = secret

    def server_key(self) -> str:
        return self._secret

    async def create_transaction(
        self, http: httpx.AsyncClient, order: Dict[str, Any]
    ) -> CreateSessionResult:
        token = f"mock_{uuid.uuid4().hex}"
        return {"token": token, "redirect_url": f"/mockpay/{token}"}

    async def fetch_status(
        self, http: httpx.AsyncClient, order_number: str
    ) -> Optional[Dict[str, Any]]:
        return None

    def build_notification(self, order_number: str, gross_amount: int,
                           transaction_status: str,
                           fraud_status: Optional[str] = None
                           ) -> Dict[str, Any]:
        status_code = {
            "settlement": "200", "capture": "200", "pending": "201",
        }.get(transaction_status, "202")
        gross = f"{int(gross_amount)}.00"
        event = {
            "transaction_time": time.strftime("%Y-%m-%d %H:%M:%S"),
            "transaction_status": transaction_status,
            "transaction_id": str(uuid.uuid4()),
            "status_code": status_code,
            "payment_type": "mock",
            "order_id": order_number,
            "gross_amount": gross,
            "currency": "IDR",
            "signature_key": notification_signature(
                order_number, status_code, gross, self._secret
            ),
        }
        if fraud_status:
            event["fraud_status"] = fraud_status
        return event


def adapter_from_env(provider: str, base_url: str) -> PaymentAdapter:
    if provider == "mock":
        return MockPay()
    if provider == "midtrans":
        return MidtransSnap(
            server_key=MIDTRANS_SERVER_KEY,
            client_key=MIDTRANS_CLIENT_KEY,
            is_production=MIDTRANS_IS_PRODUCTION,
            base_url=base_url,
        )
    raise ConfigurationError(f"unknown PAYMENT_PROVIDER: {provider}")
