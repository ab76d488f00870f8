"""Async client for the PayPal REST API (orders v2, payments v2, webhooks)."""

import logging
import time
from decimal import Decimal

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from unitpay.core.config import settings
from unitpay.core.errors import (
    OffchainTimeoutError,
    TransientNetworkError,
    UnitpayError,
    ValidationError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

# Headers PayPal signs on every webhook delivery
WEBHOOK_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalAPIError(UnitpayError):
    """PayPal rejected the request (4xx other than 401/429)."""

    kind = "offchain_rejected"
    status_code = 502

    def __init__(self, status: int, body: dict):
        self.http_status = status
        self.body = body
        details = body.get("details") or [{}]
        self.issue = details[0].get("issue") or body.get("name") or "UNKNOWN"
        super().__init__(
            f"PayPal returned {status}: {self.issue}",
            {"http_status": status, "issue": self.issue, "debug_id": body.get("debug_id")},
        )


def format_amount(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01")))


class PayPalClient:
    """Thin async wrapper around the PayPal REST API."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = settings.paypal_base_url.rstrip("/")
        self._transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0

    @retry(
        stop=(
            stop_after_attempt(settings.paypal_max_attempts)
            | stop_after_delay(settings.paypal_hard_timeout_seconds)
        ),
        wait=wait_exponential(multiplier=1.5, min=1, max=10),
        retry=retry_if_exception_type(TransientNetworkError),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        *,
        authenticated: bool = True,
        **kwargs,
    ) -> dict:
        """Execute an HTTP request with tenacity retry.

        Timeouts surface as OffchainTimeoutError, 429/5xx and connection
        failures as TransientNetworkError; both are retried.
        """
        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("Accept", "application/json")
        if authenticated:
            headers["Authorization"] = f"Bearer {await self.get_access_token()}"

        try:
            async with httpx.AsyncClient(
                timeout=settings.paypal_timeout_seconds, transport=self._transport,
            ) as client:
                resp = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("PayPal %s %s timed out", method, path)
            raise OffchainTimeoutError(f"PayPal {method} {path} timed out", {"path": path}) from exc
        except httpx.TransportError as exc:
            logger.warning("PayPal %s %s transport error: %s", method, path, exc)
            raise TransientNetworkError(f"PayPal {method} {path} failed: {exc}", {"path": path}) from exc

        if resp.status_code == 401 and authenticated:
            self._token = None
            raise TransientNetworkError("PayPal access token rejected", {"path": path})
        if resp.status_code == 429 or resp.status_code >= 500:
            logger.warning("PayPal %s %s returned %s", method, path, resp.status_code)
            raise TransientNetworkError(
                f"PayPal {method} {path} returned {resp.status_code}",
                {"path": path, "http_status": resp.status_code},
            )
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {"name": resp.text[:200]}
            raise PayPalAPIError(resp.status_code, body)
        if not resp.content:
            return {}
        return resp.json()

    async def get_access_token(self) -> str:
        """OAuth2 client-credentials token, cached until shortly before expiry."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not settings.paypal_configured:
            raise ValidationError("PayPal credentials are not configured")

        data = await self._request(
            "POST",
            "/v1/oauth2/token",
            authenticated=False,
            auth=(settings.paypal_client_id, settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
        )
        self._token = data["access_token"]
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 300)) - 60, 30)
        return self._token

    async def create_order(
        self,
        merchant_email: str,
        amount: Decimal,
        currency: str,
        reference_id: str,
    ) -> dict:
        """Create a CAPTURE order payable to ``merchant_email``."""
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference_id,
                    "amount": {"currency_code": currency, "value": format_amount(amount)},
                    "payee": {"email_address": merchant_email},
                }
            ],
        }
        order = await self._request(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={"PayPal-Request-Id": f"{reference_id}-create", "Prefer": "return=representation"},
        )
        logger.info("Created PayPal order %s for %s", order.get("id"), reference_id)
        return order

    async def get_order(self, order_id: str) -> dict:
        return await self._request("GET", f"/v2/checkout/orders/{order_id}")

    async def capture_order(self, order_id: str, request_id: str) -> dict:
        """Capture an approved order; ``request_id`` makes retries idempotent."""
        order = await self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers={
                "Content-Type": "application/json",
                "PayPal-Request-Id": request_id,
                "Prefer": "return=representation",
            },
        )
        logger.info("Captured PayPal order %s (status=%s)", order_id, order.get("status"))
        return order

    async def cancel_order(self, order_id: str) -> dict:
        """Abandon an uncaptured order.

        PayPal has no cancel endpoint for orders; uncaptured orders lapse on
        their own, so this only guards against cancelling a captured one.
        """
        order = await self.get_order(order_id)
        if order.get("status") == "COMPLETED":
            raise ValidationError(
                f"PayPal order {order_id} is already captured; refund it instead",
                {"order_id": order_id},
            )
        logger.info("Abandoned PayPal order %s (status=%s)", order_id, order.get("status"))
        return order

    async def refund_capture(
        self,
        capture_id: str,
        request_id: str,
        amount: Decimal | None = None,
        currency: str | None = None,
    ) -> dict:
        body: dict = {}
        if amount is not None and currency:
            body["amount"] = {"currency_code": currency, "value": format_amount(amount)}
        refund = await self._request(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json=body,
            headers={"PayPal-Request-Id": request_id},
        )
        logger.info("Refunded PayPal capture %s (status=%s)", capture_id, refund.get("status"))
        return refund

    async def verify_webhook_signature(self, headers: dict[str, str], event: dict) -> None:
        """Ask PayPal to verify a webhook delivery; raise if it is not genuine."""
        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [h for h in WEBHOOK_SIGNATURE_HEADERS.values() if h not in lowered]
        if missing or not settings.paypal_webhook_id:
            raise WebhookSignatureError(
                "Webhook signature headers missing", {"missing": missing},
            )

        body = {field: lowered[header] for field, header in WEBHOOK_SIGNATURE_HEADERS.items()}
        body["webhook_id"] = settings.paypal_webhook_id
        body["webhook_event"] = event
        result = await self._request(
            "POST", "/v1/notifications/verify-webhook-signature", json=body,
        )
        if result.get("verification_status") != "SUCCESS":
            raise WebhookSignatureError(
                "Webhook signature verification failed",
                {"event_id": event.get("id")},
            )
