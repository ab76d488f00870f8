"""Tests for the PayPal REST client against a mocked transport."""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from unitpay.core.config import settings
from unitpay.core.errors import (
    OffchainTimeoutError,
    TransientNetworkError,
    ValidationError,
    WebhookSignatureError,
)
from unitpay.services.paypal.client import PayPalAPIError, PayPalClient, format_amount

from helpers import MERCHANT, completed_order

SIGNED_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2024-01-01T00:00:00Z",
}


@pytest.fixture(autouse=True)
def paypal_settings():
    with (
        patch.object(settings, "paypal_client_id", "client"),
        patch.object(settings, "paypal_client_secret", "secret"),
        patch.object(settings, "paypal_webhook_id", "WH-1"),
        patch.object(PayPalClient._request.retry, "sleep", AsyncMock()),
    ):
        yield


class Recorder:
    """MockTransport handler that answers by path and records requests."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        responder = self.routes[(request.method, request.url.path)]
        if callable(responder):
            return responder(request)
        return responder

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def make_client(routes: dict) -> tuple[PayPalClient, Recorder]:
    recorder = Recorder(routes)
    return PayPalClient(transport=httpx.MockTransport(recorder)), recorder


class TestAuth:
    @pytest.mark.asyncio
    async def test_token_is_cached(self):
        client, recorder = make_client({
            ("GET", "/v2/checkout/orders/A"): httpx.Response(200, json={"id": "A"}),
        })
        await client.get_order("A")
        await client.get_order("A")
        assert len(recorder.calls("/v1/oauth2/token")) == 1
        assert recorder.calls("/v2/checkout/orders/A")[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        client, _ = make_client({})
        with patch.object(settings, "paypal_client_id", ""):
            with pytest.raises(ValidationError):
                await client.get_access_token()


class TestOrders:
    @pytest.mark.asyncio
    async def test_create_order_body(self):
        client, recorder = make_client({
            ("POST", "/v2/checkout/orders"): httpx.Response(201, json={"id": "ORDER-1", "status": "CREATED"}),
        })
        order = await client.create_order(MERCHANT, Decimal("12.5"), "USD", "intent-7")
        assert order["id"] == "ORDER-1"

        sent = recorder.calls("/v2/checkout/orders")[0]
        body = json.loads(sent.content)
        unit = body["purchase_units"][0]
        assert body["intent"] == "CAPTURE"
        assert unit["amount"] == {"currency_code": "USD", "value": "12.50"}
        assert unit["payee"] == {"email_address": MERCHANT}
        assert unit["reference_id"] == "intent-7"
        assert sent.headers["PayPal-Request-Id"] == "intent-7-create"

    @pytest.mark.asyncio
    async def test_capture_sends_request_id(self):
        client, recorder = make_client({
            ("POST", "/v2/checkout/orders/ORDER-1/capture"): httpx.Response(201, json=completed_order()),
        })
        order = await client.capture_order("ORDER-1", "intent-1-capture")
        assert order["status"] == "COMPLETED"
        sent = recorder.calls("/v2/checkout/orders/ORDER-1/capture")[0]
        assert sent.headers["PayPal-Request-Id"] == "intent-1-capture"

    @pytest.mark.asyncio
    async def test_cancel_refuses_captured_order(self):
        client, _ = make_client({
            ("GET", "/v2/checkout/orders/ORDER-1"): httpx.Response(200, json=completed_order()),
        })
        with pytest.raises(ValidationError):
            await client.cancel_order("ORDER-1")

    @pytest.mark.asyncio
    async def test_partial_refund_body(self):
        client, recorder = make_client({
            ("POST", "/v2/payments/captures/CAP-1/refund"): httpx.Response(201, json={"status": "COMPLETED"}),
        })
        await client.refund_capture("CAP-1", "refund-1", Decimal("3"), "USD")
        body = json.loads(recorder.calls("/v2/payments/captures/CAP-1/refund")[0].content)
        assert body == {"amount": {"currency_code": "USD", "value": "3.00"}}


class TestErrors:
    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        client, recorder = make_client({
            ("GET", "/v2/checkout/orders/NOPE"): httpx.Response(
                404, json={"name": "RESOURCE_NOT_FOUND", "details": [{"issue": "INVALID_RESOURCE_ID"}]},
            ),
        })
        with pytest.raises(PayPalAPIError) as exc_info:
            await client.get_order("NOPE")
        assert exc_info.value.issue == "INVALID_RESOURCE_ID"
        assert exc_info.value.http_status == 404
        assert len(recorder.calls("/v2/checkout/orders/NOPE")) == 1

    @pytest.mark.asyncio
    async def test_server_error_retried_then_succeeds(self):
        responses = iter([
            httpx.Response(503),
            httpx.Response(200, json={"id": "A"}),
        ])
        client, recorder = make_client({
            ("GET", "/v2/checkout/orders/A"): lambda request: next(responses),
        })
        assert (await client.get_order("A"))["id"] == "A"
        assert len(recorder.calls("/v2/checkout/orders/A")) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_attempts(self):
        client, recorder = make_client({
            ("GET", "/v2/checkout/orders/A"): httpx.Response(429),
        })
        with pytest.raises(TransientNetworkError):
            await client.get_order("A")
        assert len(recorder.calls("/v2/checkout/orders/A")) == settings.paypal_max_attempts

    @pytest.mark.asyncio
    async def test_timeout_is_classified(self):
        def boom(request):
            raise httpx.ReadTimeout("slow", request=request)

        client, _ = make_client({("GET", "/v2/checkout/orders/A"): boom})
        with pytest.raises(OffchainTimeoutError):
            await client.get_order("A")

    @pytest.mark.asyncio
    async def test_rejected_token_is_refreshed(self):
        responses = iter([
            httpx.Response(401, json={"name": "AUTHENTICATION_FAILURE"}),
            httpx.Response(200, json={"id": "A"}),
        ])
        client, recorder = make_client({
            ("GET", "/v2/checkout/orders/A"): lambda request: next(responses),
        })
        await client.get_order("A")
        assert len(recorder.calls("/v1/oauth2/token")) == 2


class TestWebhookSignature:
    @pytest.mark.asyncio
    async def test_success(self):
        client, recorder = make_client({
            ("POST", "/v1/notifications/verify-webhook-signature"): httpx.Response(
                200, json={"verification_status": "SUCCESS"},
            ),
        })
        await client.verify_webhook_signature(SIGNED_HEADERS, {"id": "WH-EVENT"})
        body = json.loads(recorder.calls("/v1/notifications/verify-webhook-signature")[0].content)
        assert body["webhook_id"] == "WH-1"
        assert body["transmission_id"] == "tx-1"
        assert body["webhook_event"] == {"id": "WH-EVENT"}

    @pytest.mark.asyncio
    async def test_failure(self):
        client, _ = make_client({
            ("POST", "/v1/notifications/verify-webhook-signature"): httpx.Response(
                200, json={"verification_status": "FAILURE"},
            ),
        })
        with pytest.raises(WebhookSignatureError):
            await client.verify_webhook_signature(SIGNED_HEADERS, {"id": "WH-EVENT"})

    @pytest.mark.asyncio
    async def test_missing_headers(self):
        client, recorder = make_client({})
        with pytest.raises(WebhookSignatureError):
            await client.verify_webhook_signature({}, {"id": "WH-EVENT"})
        assert recorder.requests == []


def test_format_amount():
    assert format_amount(Decimal("7")) == "7.00"
    assert format_amount(Decimal("7.005")) == "7.00"
