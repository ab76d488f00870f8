"""Shared builders and fakes for the service tests."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.core.errors import EscrowNotReady
from unitpay.models.payment_intent import PaymentIntent
from unitpay.services import matching
from unitpay.services import payment_intent as intent_svc
from unitpay.services.chain.escrow_adapter import EscrowEvent, EscrowRecord, EscrowStatus, TxResult
from unitpay.services.intent_state_machine import QUOTA_HOLDING_STATUSES

USER = "0x" + "a1" * 20
LP_A = "0x" + "b2" * 20
LP_B = "0x" + "c3" * 20
OUTSIDER = "0x" + "d4" * 20
MERCHANT = "merchant@shop.example"
LP_A_EMAIL = "lp-a@payouts.example"
LP_B_EMAIL = "lp-b@payouts.example"


async def make_lp(
    db: AsyncSession,
    address: str = LP_A,
    *,
    total: str = "500",
    per_tx: str = "200",
    fee_rate: str = "0.5",
    paypal_email: str | None = LP_A_EMAIL,
):
    await matching.register_lp(
        db,
        address=address,
        name=f"LP {address[-4:]}",
        platforms=["paypal"],
        total_quota=total,
        per_transaction_quota=per_tx,
        fee_rate=fee_rate,
    )
    if paypal_email:
        await matching.bind_payout_email(db, address, paypal_email)
    return await matching.get_lp(db, address)


async def make_intent(db: AsyncSession, amount: str = "100", user: str = USER):
    return await intent_svc.create_intent(
        db,
        amount=amount,
        currency="USD",
        platform="paypal",
        merchant_email=MERCHANT,
        user_address=user,
    )


async def holding_total(db: AsyncSession, lp_address: str = LP_A) -> Decimal:
    """Sum of the amounts of the LP's intents that still hold quota."""
    result = await db.execute(
        select(PaymentIntent.amount).where(
            PaymentIntent.lp_address == lp_address,
            PaymentIntent.status.in_([s.value for s in QUOTA_HOLDING_STATUSES]),
        )
    )
    return sum((Decimal(amount) for amount in result.scalars().all()), Decimal("0"))


async def claimed_intent(db: AsyncSession, amount: str = "100", lp: str = LP_A):
    intent = await make_intent(db, amount)
    return await matching.claim_intent(db, intent.id, lp)


def completed_order(
    order_id: str = "ORDER-1",
    *,
    payee: str = MERCHANT,
    payer: str = LP_A_EMAIL,
    amount: str = "100.00",
    currency: str = "USD",
    status: str = "COMPLETED",
) -> dict:
    return {
        "id": order_id,
        "status": "COMPLETED",
        "payer": {"email_address": payer},
        "purchase_units": [
            {
                "reference_id": "intent-1",
                "payee": {"email_address": payee},
                "payments": {
                    "captures": [
                        {
                            "id": f"CAP-{order_id}",
                            "status": status,
                            "amount": {"currency_code": currency, "value": amount},
                        }
                    ]
                },
            }
        ],
    }


def fake_paypal(order: dict | None = None) -> MagicMock:
    paypal = MagicMock()
    paypal.create_order = AsyncMock(return_value={"id": "ORDER-1", "status": "CREATED"})
    paypal.get_order = AsyncMock(return_value=order or completed_order())
    paypal.capture_order = AsyncMock(return_value=order or completed_order())
    return paypal


def escrow_record(
    payment_id: str,
    status: EscrowStatus = EscrowStatus.LOCKED,
    *,
    released_at: datetime | None = None,
    disputed: bool = False,
) -> EscrowRecord:
    now = datetime.now(timezone.utc)
    return EscrowRecord(
        payment_id=payment_id,
        payer=USER,
        payee=LP_A,
        token="0x" + "e5" * 20,
        amount=100_000_000,
        platform_fee=500_000,
        created_at=now,
        locked_at=now if status != EscrowStatus.NONE else None,
        released_at=released_at,
        network="sepolia",
        status=status,
        is_disputed=disputed,
    )


class FakeEscrow:
    """In-memory stand-in for EscrowAdapter keyed by payment id."""

    def __init__(self) -> None:
        self.records: dict[str, EscrowRecord] = {}
        self.calls: list[tuple[str, str]] = []
        self.oracle_confirmed: set[str] = set()
        self.fail_with: Exception | None = None
        self.events: list[EscrowEvent] = []
        self.block = 100

    def set(self, payment_id: str, status: EscrowStatus, **kwargs) -> None:
        self.records[payment_id] = escrow_record(payment_id, status, **kwargs)

    async def get_payment(self, payment_id: str) -> EscrowRecord:
        return self.records.get(payment_id) or escrow_record(payment_id, EscrowStatus.NONE)

    async def is_oracle_confirmed(self, payment_id: str) -> bool:
        record = await self.get_payment(payment_id)
        return payment_id in self.oracle_confirmed or record.status in (
            EscrowStatus.CONFIRMED, EscrowStatus.RELEASED,
        )

    async def latest_block(self) -> int:
        return self.block

    async def get_events(self, from_block: int, to_block: int) -> list[EscrowEvent]:
        return [e for e in self.events if from_block <= e.block_number <= to_block]

    def _tx(self, operation: str, payment_id: str) -> TxResult:
        self.calls.append((operation, payment_id))
        if self.fail_with is not None:
            raise self.fail_with
        return TxResult(operation=operation, tx_hash=f"0x{len(self.calls):064x}", block_number=100)

    async def lock(self, lp_address, amount: Decimal, payment_id: str, network=None):
        if (await self.get_payment(payment_id)).exists:
            return None
        result = self._tx("lockPayment", payment_id)
        self.set(payment_id, EscrowStatus.LOCKED)
        return result

    async def submit_offchain_proof(self, payment_id: str, order_id: str):
        return self._tx("submitOrderId", payment_id)

    async def withdraw(self, payment_id: str, now: datetime | None = None):
        record = await self.get_payment(payment_id)
        if not record.can_withdraw(now):
            raise EscrowNotReady("not withdrawable", ready_at=record.withdrawable_at())
        result = self._tx("withdrawPayment", payment_id)
        self.records[payment_id] = replace(record, status=EscrowStatus.RELEASED)
        return result

    async def cancel(self, payment_id: str):
        result = self._tx("cancelExpiredPayment", payment_id)
        self.set(payment_id, EscrowStatus.REFUNDED)
        return result


def long_ago(hours: int = 48) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)
