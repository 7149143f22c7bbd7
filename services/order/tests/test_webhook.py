import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.models import Transaction
from app.status import WebhookEvent
from app.webhook import (
    SIGNATURE_HEADER,
    USER_AGENT,
    build_webhook_payload,
    send_webhook,
    sign_payload,
    verify_signature,
)

WEBHOOK_URL = "https://subscriber.example.com/hooks/orders"


def make_transaction(**overrides) -> Transaction:
    fields = {
        "id": "6f1c2d4e-0000-4000-8000-000000000001",
        "reference": "RH-TEST0001",
        "type": "data_bundle",
        "product_id": "bundle-1gb",
        "product_name": "MTN 1GB",
        "network": "mtn",
        "amount": 12.5,
        "customer_phone": "0241234567",
        "customer_email": None,
        "is_bulk_order": False,
        "phone_numbers": None,
        "status": "confirmed",
        "payment_status": "paid",
        "delivery_status": "processing",
        "created_at": datetime(2026, 10, 1, 9, 30, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Transaction(**fields)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── ペイロード生成 ───────────────────────────────


def test_single_order_yields_one_product():
    payload = build_webhook_payload(make_transaction(), WebhookEvent.ORDER_CREATED)

    assert len(payload.products) == 1
    product = payload.products[0]
    assert product.phone == "0241234567"
    assert product.bundle_id == "bundle-1gb"
    assert product.bundle_name == "MTN 1GB"
    assert product.network == "mtn"


def test_bulk_order_expands_one_product_per_recipient():
    phone_numbers = json.dumps([
        {"phone": "0241111111"},
        {"phone": "0242222222", "bundleId": "bundle-2gb", "bundleName": "MTN 2GB"},
        {"phone": "0553333333"},
    ])
    transaction = make_transaction(
        is_bulk_order=True, customer_phone=None, phone_numbers=phone_numbers
    )

    payload = build_webhook_payload(transaction, WebhookEvent.ORDER_STATUS_UPDATED)

    assert len(payload.products) == 3
    assert [p.phone for p in payload.products] == ["0241111111", "0242222222", "0553333333"]
    assert payload.products[0].bundle_id == "bundle-1gb"
    assert payload.products[1].bundle_id == "bundle-2gb"
    assert payload.products[1].bundle_name == "MTN 2GB"
    assert payload.products[2].bundle_name == "MTN 1GB"


def test_bulk_order_accepts_plain_phone_strings():
    transaction = make_transaction(
        is_bulk_order=True, customer_phone=None,
        phone_numbers=json.dumps(["0241111111", "0242222222"]),
    )
    payload = build_webhook_payload(transaction, WebhookEvent.ORDER_CREATED)
    assert [p.phone for p in payload.products] == ["0241111111", "0242222222"]


@pytest.mark.parametrize("broken", ["not json", "{\"phone\": \"0241111111\"}", "[]", "[42]"])
def test_malformed_phone_numbers_fall_back_to_single_product(broken):
    transaction = make_transaction(is_bulk_order=True, customer_phone=None, phone_numbers=broken)

    payload = build_webhook_payload(transaction, WebhookEvent.ORDER_STATUS_UPDATED)

    assert len(payload.products) == 1
    assert payload.products[0].bundle_id == "bundle-1gb"
    assert payload.products[0].phone == ""


def test_wire_format_is_camel_case():
    transaction = make_transaction(
        status="completed",
        delivery_status="delivered",
        customer_email="buyer@example.com",
        completed_at=datetime(2026, 10, 1, 9, 45, tzinfo=timezone.utc),
    )
    wire = build_webhook_payload(
        transaction, WebhookEvent.ORDER_STATUS_UPDATED, previous_status="confirmed"
    ).to_wire()

    assert wire["event"] == "order.status_updated"
    assert wire["reference"] == "RH-TEST0001"
    assert wire["deliveryStatus"] == "delivered"
    assert wire["order"]["previousStatus"] == "confirmed"
    assert wire["order"]["currentStatus"] == "completed"
    assert wire["order"]["customerEmail"] == "buyer@example.com"
    assert wire["order"]["isBulkOrder"] is False
    assert wire["order"]["amount"] == 12.5
    assert wire["order"]["createdAt"].startswith("2026-10-01T09:30:00")
    assert wire["order"]["completedAt"].startswith("2026-10-01T09:45:00")
    assert set(wire["products"][0]) == {"bundleId", "bundleName", "phone", "network"}


def test_wire_format_omits_absent_optional_fields():
    wire = build_webhook_payload(make_transaction(), WebhookEvent.ORDER_CREATED).to_wire()
    assert "previousStatus" not in wire["order"]
    assert "customerEmail" not in wire["order"]
    assert "completedAt" not in wire["order"]


# ── 署名 ─────────────────────────────────────────


def test_signature_is_keyed_hmac():
    body = b'{"reference":"RH-TEST0001"}'
    signature = sign_payload(body, "s3cret")

    assert signature.startswith("sha256=")
    assert len(signature) == len("sha256=") + 64
    assert verify_signature(body, "s3cret", signature)
    assert not verify_signature(body, "other", signature)
    assert not verify_signature(body + b" ", "s3cret", signature)


# ── 送信 ─────────────────────────────────────────


async def test_success_on_first_attempt_sends_signed_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"received": True})

    payload = build_webhook_payload(make_transaction(), WebhookEvent.ORDER_CREATED)
    async with mock_client(handler) as client:
        result = await send_webhook(WEBHOOK_URL, payload, secret="s3cret", client=client)

    assert result.success
    assert result.status_code == 200
    assert result.attempt == 1

    request = seen[0]
    assert request.method == "POST"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["User-Agent"] == USER_AGENT
    assert verify_signature(request.content, "s3cret", request.headers[SIGNATURE_HEADER])
    assert json.loads(request.content)["reference"] == "RH-TEST0001"


async def test_fails_twice_then_succeeds_with_backoff():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(204)

    async with mock_client(handler) as client:
        with patch("app.webhook.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await send_webhook(WEBHOOK_URL, {"event": "order.created"}, client=client)

    assert result.success
    assert result.attempt == 3
    assert result.status_code == 204
    assert [c.args[0] for c in sleep.await_args_list] == [1, 2]


async def test_network_errors_are_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200)

    async with mock_client(handler) as client:
        with patch("app.webhook.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await send_webhook(WEBHOOK_URL, {"event": "order.created"}, client=client)

    assert result.success
    assert result.attempt == 2
    sleep.assert_awaited_once_with(1)


async def test_timeout_stops_without_retrying():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    async with mock_client(handler) as client:
        with patch("app.webhook.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await send_webhook(WEBHOOK_URL, {"event": "order.created"}, client=client)

    assert not result.success
    assert result.attempts == 1
    assert "timed out" in result.error
    assert len(calls) == 1
    sleep.assert_not_awaited()


async def test_exhausted_retries_report_last_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    async with mock_client(handler) as client:
        with patch("app.webhook.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await send_webhook(WEBHOOK_URL, {"event": "order.created"}, client=client)

    assert not result.success
    assert result.attempts == 3
    assert result.status_code == 500
    assert result.error == "HTTP 500: boom"
    assert [c.args[0] for c in sleep.await_args_list] == [1, 2]


async def test_custom_retry_budget():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    async with mock_client(handler) as client:
        with patch("app.webhook.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await send_webhook(WEBHOOK_URL, {}, retries=4, client=client)

    assert result.attempts == 4
    assert [c.args[0] for c in sleep.await_args_list] == [1, 2, 4]


async def test_closed_client_is_reported_not_raised():
    client = mock_client(lambda request: httpx.Response(200))
    await client.aclose()

    with patch("app.webhook.asyncio.sleep", new_callable=AsyncMock) as sleep:
        result = await send_webhook(WEBHOOK_URL, {"event": "order.created"}, client=client)

    assert not result.success
    assert result.attempts == 1
    assert "closed" in result.error
    sleep.assert_not_awaited()
