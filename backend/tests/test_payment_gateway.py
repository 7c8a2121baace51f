"""
Tests for the Midtrans adapter: signatures, payload shaping and HTTP handling.
"""

import base64
import json

import httpx
import pytest

from sparkpay.infrastructure.payment_gateway import (
    GatewayConfigError,
    MidtransGateway,
    PaymentGatewayError,
    build_transaction_payload,
    format_gross_amount,
    generate_signature,
    verify_notification_signature,
)

KEY = "SB-Mid-server-abc"


def gateway_with(handler, **kwargs) -> MidtransGateway:
    return MidtransGateway(KEY, transport=httpx.MockTransport(handler), **kwargs)


def test_signature_over_literal_fields():
    payload = {"order_id": "SPK-1-AAAAA", "status_code": "200", "gross_amount": "150000.00"}
    payload["signature_key"] = generate_signature("SPK-1-AAAAA", "200", "150000.00", KEY)
    assert verify_notification_signature(payload, KEY)


def test_numeric_fields_are_signed_as_the_gateway_renders_them():
    signature = generate_signature("PRD-9-XYZ12", "200", "100000.00", KEY)
    payload = {"order_id": "PRD-9-XYZ12", "status_code": 200, "gross_amount": 100000, "signature_key": signature}
    assert format_gross_amount(100000) == "100000.00"
    assert verify_notification_signature(payload, KEY)


def test_tampered_or_missing_signature_is_rejected():
    payload = {"order_id": "SPK-1-AAAAA", "status_code": "200", "gross_amount": "150000.00"}
    payload["signature_key"] = generate_signature("SPK-1-AAAAA", "200", "1.00", KEY)
    assert not verify_notification_signature(payload, KEY)
    assert not verify_notification_signature({**payload, "signature_key": ""}, KEY)
    assert not verify_notification_signature(payload, "")


def test_transaction_payload_clamps_item_fields():
    payload = build_transaction_payload(
        order_number="SPK-1-AAAAA",
        gross_amount=100000,
        items=[{"id": "ticket-1", "price": 50000, "quantity": 2, "name": "N" * 80}],
        customer={"first_name": "Ayu", "email": "ayu@example.com", "phone": None},
        expiry_minutes=15,
        finish_url="https://shop.test/booking-success?order_id=SPK-1-AAAAA",
    )
    assert payload["transaction_details"] == {"order_id": "SPK-1-AAAAA", "gross_amount": 100000}
    assert len(payload["item_details"][0]["name"]) == 50
    assert payload["customer_details"]["phone"] == ""
    assert payload["custom_expiry"] == {"expiry_duration": 15, "unit": "minute"}
    assert payload["callbacks"]["finish"].endswith("order_id=SPK-1-AAAAA")


@pytest.mark.asyncio
async def test_create_token_uses_basic_auth_against_sandbox():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"token": "snap-token", "redirect_url": "https://pay/x"})

    result = await gateway_with(handler).create_token({"transaction_details": {"order_id": "A"}})

    assert result == {"token": "snap-token", "redirect_url": "https://pay/x"}
    assert seen["url"] == "https://app.sandbox.midtrans.com/snap/v1/transactions"
    assert seen["auth"] == "Basic " + base64.b64encode(f"{KEY}:".encode()).decode()
    assert seen["body"]["transaction_details"]["order_id"] == "A"


@pytest.mark.asyncio
async def test_create_token_rejection_carries_upstream_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error_messages": ["order_id has already been taken"]})

    with pytest.raises(PaymentGatewayError) as exc_info:
        await gateway_with(handler).create_token({})
    assert exc_info.value.status_code == 400
    assert exc_info.value.payload == {"error_messages": ["order_id has already been taken"]}


@pytest.mark.asyncio
async def test_create_token_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentGatewayError):
        await gateway_with(handler).create_token({})
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_missing_server_key_is_a_config_error():
    gateway = MidtransGateway("", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(GatewayConfigError):
        await gateway.create_token({})


@pytest.mark.asyncio
async def test_query_status_not_found_body():
    """The status API reports unknown transactions inside an HTTP 200."""

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v2/SPK-1-AAAAA/status"
        return httpx.Response(200, json={"status_code": "404", "status_message": "Transaction doesn't exist."})

    with pytest.raises(PaymentGatewayError) as exc_info:
        await gateway_with(handler).query_status("SPK-1-AAAAA")
    assert exc_info.value.is_not_found


@pytest.mark.asyncio
async def test_query_status_retries_transport_errors():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"status_code": "200", "transaction_status": "settlement"})

    data = await gateway_with(handler, status_retry_attempts=3).query_status("SPK-1-AAAAA")

    assert data["transaction_status"] == "settlement"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_query_status_gives_up_after_retries():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(PaymentGatewayError):
        await gateway_with(handler, status_retry_attempts=2).query_status("SPK-1-AAAAA")
    assert len(calls) == 2
