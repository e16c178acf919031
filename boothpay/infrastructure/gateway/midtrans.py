# boothpay/infrastructure/gateway/midtrans.py

import hashlib
import hmac
import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

logger = logging.getLogger(__name__)

SNAP_BASE_SANDBOX = "https://app.sandbox.midtrans.com/snap/v1"
SNAP_BASE_PRODUCTION = "https://app.midtrans.com/snap/v1"
CORE_BASE_SANDBOX = "https://api.sandbox.midtrans.com/v2"
CORE_BASE_PRODUCTION = "https://api.midtrans.com/v2"

_EXPIRY_BOUNDS = {
    "minutes": (5, 1440),
    "hours": (1, 24),
    "days": (1, 7),
}


# -----------------------------
# Errors
# -----------------------------
class GatewayError(Exception):
    """Gateway rejected the request or answered with something unusable."""

    def __init__(self, message: str, status_code: int | None = None, info: Any = None):
        self.message = message
        self.status_code = status_code
        self.info = info
        super().__init__(message)


class OrderIdConflictError(GatewayError):
    """The order id was already used for a transaction at the gateway."""


class GatewayTransactionNotFoundError(GatewayError):
    """The gateway has no transaction for this order id."""


class GatewayUnavailableError(GatewayError):
    """Timeout or transport failure. Nothing is known about the outcome."""


@dataclass(frozen=True)
class GatewaySession:
    token: str
    redirect_url: str
    order_id: str


# -----------------------------
# Payload helpers
# -----------------------------
def ensure_integer_amount(value: Any, fallback: int = 0) -> int:
    """Gateway amounts are whole rupiah. Negative, non-numeric or non-finite input falls back."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    amount = math.floor(number)
    if amount < 0:
        return fallback
    return amount


def build_expiry(duration: Any = None, unit: str = "minutes", default_minutes: int = 30) -> dict:
    unit = str(unit or "minutes").lower()
    if unit not in _EXPIRY_BOUNDS:
        unit = "minutes"
    try:
        value = int(duration)
    except (TypeError, ValueError):
        value = default_minutes
    low, high = _EXPIRY_BOUNDS[unit]
    return {"unit": unit, "duration": max(low, min(high, value))}


def _is_order_id_conflict(status_code: int, info: Mapping[str, Any]) -> bool:
    if status_code == 409:
        return True
    messages = [str(info.get("status_message") or "")]
    messages.extend(str(m) for m in info.get("error_messages") or [])
    text = " ".join(messages).lower()
    return "order id" in text or "order_id" in text


class MidtransGateway:
    """
    Thin client over Snap (session creation) and the Core API
    (status lookup). Every call is bounded by ``timeout``.
    """

    def __init__(
        self,
        server_key: str,
        is_production: bool = False,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.server_key = server_key
        self.snap_base = SNAP_BASE_PRODUCTION if is_production else SNAP_BASE_SANDBOX
        self.core_base = CORE_BASE_PRODUCTION if is_production else CORE_BASE_SANDBOX
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        if not self.server_key:
            raise GatewayError("MIDTRANS_SERVER_KEY not set")
        return httpx.Client(
            auth=(self.server_key, ""),
            timeout=self.timeout,
            transport=self.transport,
            headers={"Accept": "application/json"},
        )

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            with self._client() as client:
                return client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Gateway timeout on %s %s", method, url)
            raise GatewayUnavailableError("Gateway request timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("Gateway transport error on %s %s: %s", method, url, exc)
            raise GatewayUnavailableError(f"Gateway unreachable: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    # -----------------------------
    # Snap
    # -----------------------------
    def create_session(
        self,
        order_id: str,
        amount: int,
        customer: Mapping[str, Any],
        *,
        items: list[dict] | None = None,
        enabled_payments: list[str] | None = None,
        expiry_minutes: int = 30,
        metadata: Mapping[str, Any] | None = None,
        custom_field1: str | None = None,
    ) -> GatewaySession:
        body: dict[str, Any] = {
            "transaction_details": {
                "order_id": order_id,
                "gross_amount": ensure_integer_amount(amount),
            },
            "item_details": [
                {
                    "id": item.get("id") or "item",
                    "price": ensure_integer_amount(item.get("price")),
                    "quantity": ensure_integer_amount(item.get("quantity")),
                    "name": item.get("name"),
                    "category": item.get("category"),
                }
                for item in items or []
            ],
            "customer_details": {
                "first_name": customer.get("first_name"),
                "last_name": customer.get("last_name"),
                "email": customer.get("email"),
                "phone": customer.get("phone"),
            },
            "credit_card": {"secure": True},
            "metadata": dict(metadata or {}),
            "expiry": build_expiry(expiry_minutes),
        }
        # Omitted means every channel activated on the merchant account.
        if enabled_payments:
            body["enabled_payments"] = list(enabled_payments)
        if custom_field1:
            body["custom_field1"] = custom_field1

        response = self._request("POST", f"{self.snap_base}/transactions", json=body)
        info = self._json(response)

        if response.is_error:
            message = info.get("status_message") or "; ".join(
                str(m) for m in info.get("error_messages") or []
            ) or "Midtrans error"
            if _is_order_id_conflict(response.status_code, info):
                raise OrderIdConflictError(message, response.status_code, info)
            logger.error("Snap create failed for %s: %s %s", order_id, response.status_code, info)
            raise GatewayError(message, response.status_code, info)

        token = info.get("token")
        redirect_url = info.get("redirect_url")
        if not token or not redirect_url:
            raise GatewayError("Snap response missing token", response.status_code, info)

        return GatewaySession(token=token, redirect_url=redirect_url, order_id=order_id)

    # -----------------------------
    # Core API
    # -----------------------------
    def fetch_status(self, order_id: str) -> dict:
        if not order_id:
            raise ValueError("order_id required")

        response = self._request("GET", f"{self.core_base}/{order_id}/status")
        info = self._json(response)

        # The Core API may answer HTTP 200 with the real code in the body.
        body_code = str(info.get("status_code") or "")
        if response.status_code == 404 or body_code == "404":
            raise GatewayTransactionNotFoundError(
                info.get("status_message") or "Transaction doesn't exist.",
                404,
                info,
            )
        if response.is_error:
            raise GatewayError(
                info.get("status_message") or "Midtrans status error",
                response.status_code,
                info,
            )
        return info

    def verify_signature(
        self,
        order_id: str,
        status_code: str,
        gross_amount: str,
        signature_key: str,
    ) -> bool:
        if not self.server_key or not signature_key:
            return False
        raw = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        digest = hashlib.sha512(raw.encode("utf-8")).hexdigest()
        return hmac.compare_digest(digest, str(signature_key))
