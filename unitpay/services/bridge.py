"""Off-chain verification bridge: PayPal order capture to on-chain proof.

The bridge creates the PayPal order for a claimed intent, captures it,
verifies the capture strictly against the intent, and then either hands
the order id to the escrow oracle or, without a chain, confirms directly.
A capture that fails verification never reaches the chain.
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.core.errors import (
    InvalidTransitionError,
    PermissionDeniedError,
    ReconciliationConflict,
    TransientNetworkError,
    ValidationError,
    VerificationMismatch,
)
from unitpay.models.payment_intent import PaymentIntent
from unitpay.services.chain.escrow_adapter import EscrowAdapter
from unitpay.services.intent_state_machine import Actor, IntentAction, IntentStatus, main_line_rank
from unitpay.services.payment_intent import (
    append_history,
    apply_transition,
    confirm_intent,
    ensure_onchain_payment_id,
    fail_intent,
    get_intent,
    get_intent_by_order_id,
    guarded_write,
    normalize_address,
)
from unitpay.services.paypal.client import PayPalAPIError, PayPalClient
from unitpay.services.paypal.verification import extract_capture, verify_capture
from unitpay.services.settlement import CAPTURE, SUBMIT_PROOF, dispatch_action, start_processing

logger = logging.getLogger(__name__)

ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"


class VerificationBridge:
    """Drives one intent's PayPal leg and hands verified proof onwards."""

    def __init__(self, paypal: PayPalClient, escrow: EscrowAdapter | None = None) -> None:
        self.paypal = paypal
        self.escrow = escrow

    async def create_offchain_order(
        self, db: AsyncSession, intent_id: int, lp_address: str,
    ) -> dict:
        """Create the PayPal order the LP pays, payable to the merchant."""
        lp_address = normalize_address(lp_address)
        intent = await get_intent(db, intent_id)
        if intent.lp_address != lp_address:
            raise PermissionDeniedError("Only the LP holding the claim can create its order")
        if intent.offchain_order_id:
            return await self.paypal.get_order(intent.offchain_order_id)
        if intent.status != IntentStatus.CLAIMED:
            raise InvalidTransitionError(intent.status, "create_order", Actor.LP)

        order = await self.paypal.create_order(
            intent.merchant_email,
            Decimal(intent.amount),
            intent.currency,
            reference_id=f"intent-{intent_id}",
        )

        intent = await get_intent(db, intent_id)
        async with guarded_write(db, intent_id, "record order"):
            intent.offchain_order_id = order["id"]
            append_history(intent, actor=Actor.LP, note=f"PayPal order {order['id']} created")
        return order

    async def _capture(self, order_id: str, intent_id: int) -> dict:
        try:
            return await self.paypal.capture_order(order_id, request_id=f"capture-{intent_id}")
        except PayPalAPIError as exc:
            if exc.issue != ALREADY_CAPTURED:
                raise
            logger.info("Order %s already captured, fetching it", order_id)
            return await self.paypal.get_order(order_id)

    async def capture_and_verify(
        self, db: AsyncSession, intent_id: int, order_id: str | None = None,
    ) -> PaymentIntent:
        """Capture the intent's PayPal order and verify it strictly.

        Mismatches and exhausted retries fail the intent (releasing quota)
        and re-raise. PayPal rejections such as an unapproved order leave
        the intent unchanged.
        """
        intent = await get_intent(db, intent_id)
        if (intent.payment_proof or {}).get("verified"):
            return intent
        rank = main_line_rank(intent.status)
        if intent.status not in (IntentStatus.CLAIMED, IntentStatus.PAID):
            if rank is not None and rank >= main_line_rank(IntentStatus.CONFIRMED):
                return intent
            raise InvalidTransitionError(intent.status, "capture", Actor.SYSTEM)

        order_id = order_id or intent.offchain_order_id
        if not order_id:
            raise ValidationError("Intent has no PayPal order to capture")
        if intent.offchain_order_id and order_id != intent.offchain_order_id:
            raise ValidationError(
                f"Order {order_id} does not belong to intent {intent_id}",
                {"expected": intent.offchain_order_id},
            )

        merchant_email = intent.merchant_email
        payer_email = intent.lp_payout_email
        amount = Decimal(intent.amount)
        currency = intent.currency

        try:
            order = await self._capture(order_id, intent_id)
        except TransientNetworkError as exc:
            logger.warning("Capture of order %s gave up: %s", order_id, exc.message)
            await fail_intent(db, intent_id, f"PayPal capture failed: {exc.message}")
            raise

        capture = extract_capture(order)
        try:
            verify_capture(
                capture,
                merchant_email=merchant_email,
                payer_email=payer_email,
                amount=amount,
                currency=currency,
            )
        except VerificationMismatch as exc:
            detail = json.dumps(exc.details.get("mismatches", {}), sort_keys=True)
            await fail_intent(db, intent_id, f"{exc.message}: {detail}")
            raise

        intent = await get_intent(db, intent_id)
        async with guarded_write(db, intent_id, "record verified capture"):
            if intent.status == IntentStatus.CLAIMED:
                await apply_transition(
                    db, intent, IntentAction.MARK_PAID, Actor.SYSTEM,
                    note=f"PayPal capture {capture.capture_id} verified",
                )
            intent.payment_proof = {
                **(intent.payment_proof or {}),
                **capture.as_proof(),
                "verified": True,
                "verified_at": datetime.now(timezone.utc).isoformat(),
            }
            intent.offchain_order_id = capture.order_id or order_id
        logger.info("Intent %s capture %s verified", intent_id, capture.capture_id)

        if self.escrow is None:
            return await confirm_intent(db, intent_id)

        await ensure_onchain_payment_id(db, intent_id)
        intent = await start_processing(db, intent_id, SUBMIT_PROOF)
        dispatch_action(SUBMIT_PROOF, intent_id)
        return intent

    async def handle_webhook_event(self, db: AsyncSession, event: dict) -> str:
        """Apply a verified PayPal webhook event; returns what was done."""
        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}

        if event_type == "CHECKOUT.ORDER.APPROVED":
            order_id = resource.get("id", "")
            intent = await get_intent_by_order_id(db, order_id)
            if intent is None:
                logger.info("Approved order %s matches no intent", order_id)
                return "ignored"
            dispatch_action(CAPTURE, intent.id, order_id)
            return "capture_dispatched"

        order_id = (
            (resource.get("supplementary_data") or {}).get("related_ids") or {}
        ).get("order_id", "")
        intent = await get_intent_by_order_id(db, order_id) if order_id else None
        if intent is None:
            logger.info("Webhook %s for unknown order %r", event_type, order_id)
            return "ignored"

        if event_type == "PAYMENT.CAPTURE.DENIED":
            if intent.status not in (IntentStatus.CLAIMED, IntentStatus.PAID):
                return "ignored"
            await fail_intent(db, intent.id, f"PayPal capture {resource.get('id')} denied")
            return "failed"

        if event_type in ("PAYMENT.CAPTURE.REFUNDED", "PAYMENT.CAPTURE.REVERSED"):
            conflict = ReconciliationConflict(
                f"PayPal capture for intent {intent.id} was {event_type.rsplit('.', 1)[-1].lower()}",
                {"intent_id": intent.id, "status": intent.status, "event_id": event.get("id")},
            )
            logger.warning("%s", conflict.message, extra={"conflict": conflict.to_dict()})
            return "conflict_logged"

        return "ignored"
