"""End-to-end walk of one intent from request to LP payout."""

from decimal import Decimal
from unittest.mock import patch

import pytest

from unitpay.services import matching
from unitpay.services import payment_intent as intent_svc
from unitpay.services import settlement
from unitpay.services.bridge import VerificationBridge
from unitpay.services.chain.escrow_adapter import EscrowStatus

from helpers import LP_A, USER, FakeEscrow, fake_paypal, holding_total, long_ago, make_intent, make_lp


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_intent_settles_and_returns_quota(self, db):
        escrow = FakeEscrow()
        await make_lp(db, total="500", per_tx="200")
        intent_id = (await make_intent(db, "100")).id

        async def assert_quota(locked, available):
            lp = await matching.get_lp(db, LP_A)
            assert lp.locked_quota == Decimal(locked)
            assert lp.available_quota == Decimal(available)
            assert lp.locked_quota == await holding_total(db)

        intent = await matching.claim_intent(db, intent_id, LP_A)
        assert intent.status == "claimed"
        await assert_quota("100", "400")

        with patch("unitpay.services.settlement.dispatch_action") as dispatch:
            await settlement.begin_escrow_lock(db, escrow, intent_id)
        dispatch.assert_called_once_with(settlement.LOCK, intent_id)
        intent = await settlement.lock_funds(db, escrow, intent_id)
        payment_id = intent.onchain_payment_id
        assert intent.lock_tx_hash is not None
        assert (await escrow.get_payment(payment_id)).status == EscrowStatus.LOCKED

        bridge = VerificationBridge(fake_paypal(), escrow)
        await bridge.create_offchain_order(db, intent_id, LP_A)
        intent = await intent_svc.mark_paid(db, intent_id, LP_A, {"order_id": "ORDER-1"})
        assert intent.status == "paid"
        await assert_quota("100", "400")

        with patch("unitpay.services.bridge.dispatch_action") as dispatch:
            intent = await bridge.capture_and_verify(db, intent_id)
        dispatch.assert_called_once_with(settlement.SUBMIT_PROOF, intent_id)
        assert intent.payment_proof["verified"] is True

        await settlement.submit_proof(db, escrow, intent_id)
        assert escrow.calls[-1] == ("submitOrderId", payment_id)

        escrow.set(payment_id, EscrowStatus.CONFIRMED, released_at=long_ago())
        intent = await intent_svc.confirm_intent(db, intent_id, USER, escrow=escrow)
        assert intent.status == "confirmed"
        await assert_quota("100", "400")

        intent = await settlement.withdraw(db, escrow, intent_id)
        assert intent.status == "settled"
        assert intent.settlement_tx_hash is not None
        assert escrow.calls[-1] == ("withdrawPayment", payment_id)
        await assert_quota("0", "500")

        statuses = [entry["status"] for entry in intent.status_history if "status" in entry]
        for status in ("created", "claimed", "paid", "confirmed", "settled"):
            assert status in statuses
