"""PayPal endpoints: order creation, capture, webhooks and the oracle check."""

import logging

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.api.schemas import CaptureRequest, CreateOrderRequest, IntentResponse, OrderResponse
from unitpay.core.config import settings
from unitpay.core.deps import get_bridge, get_connections, get_db, get_paypal
from unitpay.core.errors import ValidationError
from unitpay.core.idempotency import check_idempotency, clear_idempotency
from unitpay.core.rate_limit import limiter
from unitpay.services.bridge import VerificationBridge
from unitpay.services.connections import ConnectionManager
from unitpay.services.paypal.client import PayPalClient
from unitpay.services.paypal.verification import OracleVerificationRequest, verify_order

logger = logging.getLogger(__name__)

router = APIRouter(tags=["paypal"])


def _approve_url(order: dict) -> str | None:
    for link in order.get("links") or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


@router.post("/paypal/orders/{intent_id}", response_model=OrderResponse, status_code=201)
@limiter.limit(settings.rate_limit_mutations)
async def create_order(
    request: Request,
    intent_id: int,
    body: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    bridge: VerificationBridge = Depends(get_bridge),
):
    """Create (or return) the PayPal order the claiming LP pays."""
    order = await bridge.create_offchain_order(db, intent_id, body.lp_address)
    return OrderResponse(
        order_id=order["id"], status=order.get("status", ""), approve_url=_approve_url(order),
    )


@router.post("/paypal/orders/{intent_id}/capture", response_model=IntentResponse)
@limiter.limit(settings.rate_limit_mutations)
async def capture_order(
    request: Request,
    intent_id: int,
    body: CaptureRequest,
    db: AsyncSession = Depends(get_db),
    bridge: VerificationBridge = Depends(get_bridge),
    connections: ConnectionManager = Depends(get_connections),
):
    """Capture the approved order and verify it strictly against the intent."""
    intent = await bridge.capture_and_verify(db, intent_id, body.order_id)
    await connections.publish_intent(intent)
    return intent


@router.post("/paypal/webhook")
async def paypal_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    paypal: PayPalClient = Depends(get_paypal),
    bridge: VerificationBridge = Depends(get_bridge),
) -> dict:
    """Receive PayPal webhook deliveries; signature is verified first."""
    try:
        event = await request.json()
    except ValueError:
        raise ValidationError("Webhook body is not JSON")
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be an object")

    await paypal.verify_webhook_signature(dict(request.headers), event)

    event_id = event.get("id") or ""
    key = f"paypal:webhook:{event_id}"
    if not await check_idempotency(key, ttl=86400):
        logger.info("Duplicate PayPal webhook %s dropped", event_id)
        return {"status": "duplicate"}

    try:
        outcome = await bridge.handle_webhook_event(db, event)
    except Exception:
        # PayPal redelivers on a non-2xx response; let that delivery through
        await clear_idempotency(key)
        raise
    logger.info("PayPal webhook %s (%s): %s", event_id, event.get("event_type"), outcome)
    return {"status": outcome}


@router.post("/oracle/verify")
async def oracle_verify(
    payload: dict = Body(...),
    paypal: PayPalClient = Depends(get_paypal),
) -> dict:
    """Verification endpoint for the oracle network. Read-only, so re-invocable."""
    if "args" in payload:
        req = OracleVerificationRequest.from_args(payload["args"])
    else:
        req = OracleVerificationRequest.parse(payload)

    order = await paypal.get_order(req.order_id)
    result = verify_order(req, order)
    return {
        "verified": True,
        "payment_id": req.payment_id,
        "payer_email": result.payer_email,
        "merchant_email": result.merchant_email,
        "amount_cents": result.amount_cents,
        "status": result.status,
        "encoded": "0x" + result.encode().hex(),
    }
