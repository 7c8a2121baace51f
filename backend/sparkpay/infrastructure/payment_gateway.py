"""
Midtrans payment gateway adapter.

Outbound:
  - Snap token creation (POST, never retried: a duplicate order_id is rejected
    upstream and the checkout rolls back instead)
  - Transaction status query (GET, retried on transport errors with backoff)

Inbound:
  - Notification signature: sha512(order_id + status_code + gross_amount + server_key).
    It is the only authentication a webhook carries.
"""

import base64
import hashlib
import hmac
import time
from typing import Any, Optional
from urllib.parse import quote

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sparkpay.core.config import Settings, get_settings
from sparkpay.core.logging import get_logger
from sparkpay.core.metrics import gateway_latency, record_gateway_request

logger = get_logger(__name__)

SNAP_URL_PRODUCTION = "https://app.midtrans.com/snap/v1/transactions"
SNAP_URL_SANDBOX = "https://app.sandbox.midtrans.com/snap/v1/transactions"
API_BASE_PRODUCTION = "https://api.midtrans.com"
API_BASE_SANDBOX = "https://api.sandbox.midtrans.com"

ITEM_NAME_MAX_LENGTH = 50
ITEM_ID_MAX_LENGTH = 50


class GatewayConfigError(RuntimeError):
    """Raised when the gateway cannot be called because configuration is missing."""


class PaymentGatewayError(Exception):
    """Non-2xx or malformed response from the gateway."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


def generate_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    data = f"{order_id}{status_code}{gross_amount}{server_key}".encode("utf-8")
    return hashlib.sha512(data).hexdigest()


def format_gross_amount(value: Any) -> str:
    """Render gross_amount exactly as the gateway signs it ("100000.00")."""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float)):
        return f"{value:.2f}"
    return "" if value is None else str(value)


def verify_notification_signature(payload: dict, server_key: str) -> bool:
    supplied = str(payload.get("signature_key") or "")
    if not supplied or not server_key:
        return False
    status_code = payload.get("status_code")
    expected = generate_signature(
        str(payload.get("order_id") or ""),
        "" if status_code is None else str(status_code),
        format_gross_amount(payload.get("gross_amount")),
        server_key,
    )
    return hmac.compare_digest(supplied.lower(), expected)


def build_item_details(items: list[dict]) -> list[dict]:
    """Clamp item ids and names to the gateway's field limits."""
    return [
        {
            "id": str(item["id"])[:ITEM_ID_MAX_LENGTH],
            "price": int(item["price"]),
            "quantity": int(item["quantity"]),
            "name": str(item.get("name") or "")[:ITEM_NAME_MAX_LENGTH],
        }
        for item in items
    ]


def build_transaction_payload(
    order_number: str,
    gross_amount: int,
    items: list[dict],
    customer: dict,
    expiry_minutes: int,
    finish_url: str,
) -> dict:
    return {
        "transaction_details": {
            "order_id": order_number,
            "gross_amount": int(gross_amount),
        },
        "item_details": build_item_details(items),
        "customer_details": {
            "first_name": customer.get("first_name", ""),
            "email": customer.get("email", ""),
            "phone": customer.get("phone") or "",
        },
        "custom_expiry": {
            "expiry_duration": int(expiry_minutes),
            "unit": "minute",
        },
        "callbacks": {
            "finish": finish_url,
        },
    }


class MidtransGateway:
    """Thin async client around the Snap and status endpoints."""

    def __init__(
        self,
        server_key: str,
        is_production: bool = False,
        timeout: float = 15.0,
        status_retry_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_key = server_key
        self.is_production = is_production
        self.timeout = timeout
        self.status_retry_attempts = max(1, status_retry_attempts)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "MidtransGateway":
        return cls(
            server_key=settings.MIDTRANS_SERVER_KEY,
            is_production=settings.MIDTRANS_IS_PRODUCTION,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            status_retry_attempts=settings.GATEWAY_STATUS_RETRY_ATTEMPTS,
        )

    @property
    def snap_url(self) -> str:
        return SNAP_URL_PRODUCTION if self.is_production else SNAP_URL_SANDBOX

    @property
    def api_base_url(self) -> str:
        return API_BASE_PRODUCTION if self.is_production else API_BASE_SANDBOX

    def _headers(self) -> dict:
        if not self.server_key:
            raise GatewayConfigError("MIDTRANS_SERVER_KEY is not configured")
        token = base64.b64encode(f"{self.server_key}:".encode("utf-8")).decode("ascii")
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Basic {token}",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _json_or_none(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    async def create_token(self, payload: dict) -> dict:
        """Create a Snap transaction. Returns {"token", "redirect_url"}."""
        headers = self._headers()
        start = time.perf_counter()
        try:
            async with self._client() as client:
                response = await client.post(self.snap_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            record_gateway_request("create_token", "transport_error")
            logger.error("gateway_token_transport_error", error=str(e))
            raise PaymentGatewayError(f"Gateway unreachable: {e}") from e
        finally:
            gateway_latency.labels(operation="create_token").observe(time.perf_counter() - start)

        data = self._json_or_none(response)
        if not response.is_success:
            record_gateway_request("create_token", "http_error")
            logger.error("gateway_token_rejected", status_code=response.status_code, body=data)
            raise PaymentGatewayError("Token request rejected", response.status_code, data)

        if not isinstance(data, dict) or not data.get("token"):
            record_gateway_request("create_token", "http_error")
            raise PaymentGatewayError("Malformed token response", response.status_code, data)

        record_gateway_request("create_token", "ok")
        return {"token": data["token"], "redirect_url": data.get("redirect_url")}

    async def _fetch_status(self, order_number: str) -> httpx.Response:
        url = f"{self.api_base_url}/v2/{quote(order_number, safe='')}/status"
        async with self._client() as client:
            return await client.get(url, headers=self._headers())

    async def query_status(self, order_number: str) -> dict:
        """Poll the transaction status. Raises PaymentGatewayError (404 when unknown upstream)."""
        start = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.status_retry_attempts),
                wait=wait_exponential(multiplier=0.2, max=2),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await self._fetch_status(order_number)
        except httpx.HTTPError as e:
            record_gateway_request("query_status", "transport_error")
            logger.error("gateway_status_transport_error", error=str(e))
            raise PaymentGatewayError(f"Gateway unreachable: {e}") from e
        finally:
            gateway_latency.labels(operation="query_status").observe(time.perf_counter() - start)

        data = self._json_or_none(response)
        if not response.is_success:
            record_gateway_request("query_status", "http_error")
            raise PaymentGatewayError("Status request failed", response.status_code, data)

        if not isinstance(data, dict):
            record_gateway_request("query_status", "http_error")
            raise PaymentGatewayError("Malformed status response", response.status_code, data)

        # The status API answers HTTP 200 with status_code "404" for unknown transactions
        if str(data.get("status_code") or "") == "404":
            record_gateway_request("query_status", "http_error")
            raise PaymentGatewayError("Transaction not found", 404, data)

        record_gateway_request("query_status", "ok")
        return data


def get_gateway() -> MidtransGateway:
    """FastAPI dependency; tests override it with an in-memory fake."""
    return MidtransGateway.from_settings(get_settings())
