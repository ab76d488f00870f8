"""Tests for the escrow adapter with a mocked web3 contract."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from unitpay.core.config import settings
from unitpay.core.errors import ChainRevertError, ChainTimeoutError, EscrowNotReady
from unitpay.services.chain import escrow_adapter
from unitpay.services.chain.abi import ESCROW_ABI, ESCROW_EVENTS
from unitpay.services.chain.escrow_adapter import (
    EscrowAdapter,
    EscrowRecord,
    EscrowStatus,
    VerificationStatus,
    from_token_units,
    get_escrow_adapter,
    to_token_units,
)

from helpers import LP_A, USER

TOKEN = "0x" + "e5" * 20
OPERATOR = "0x" + "f6" * 20
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def payment_tuple(status: EscrowStatus, *, released: datetime | None = None, disputed: bool = False) -> tuple:
    ts = int(NOW.timestamp())
    return (
        USER, LP_A, TOKEN, 100_000_000, ts, ts if status else 0,
        int(released.timestamp()) if released else 0, 500_000,
        "UPabc", "sepolia", 0, int(status), disputed,
    )


async def _value(value):
    return value


@pytest.fixture(autouse=True)
def chain_settings():
    with (
        patch.object(settings, "token_address", TOKEN),
        patch.object(EscrowAdapter._call.retry, "sleep", AsyncMock()),
    ):
        yield


@pytest.fixture
def adapter() -> EscrowAdapter:
    adapter = EscrowAdapter.__new__(EscrowAdapter)
    adapter.w3 = MagicMock()
    adapter.contract = MagicMock()
    adapter.token = None
    adapter.account = MagicMock(address=OPERATOR)
    adapter.account.sign_transaction.return_value = MagicMock(raw_transaction=b"\x01")

    eth = adapter.w3.eth
    eth.get_block = AsyncMock(return_value={"baseFeePerGas": 10})
    eth.max_priority_fee = _value(2)
    eth.get_transaction_count = AsyncMock(return_value=5)
    eth.send_raw_transaction = AsyncMock(return_value=b"\x12" * 32)
    eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 1, "blockNumber": 77})
    adapter.w3.to_hex.return_value = "0xabc"
    return adapter


def set_payment(adapter: EscrowAdapter, status: EscrowStatus, **kwargs) -> None:
    getter = adapter.contract.functions.getPaymentByPaymentId.return_value
    getter.call = AsyncMock(return_value=payment_tuple(status, **kwargs))


def set_verification(adapter: EscrowAdapter, status: VerificationStatus) -> None:
    adapter.contract.functions.verificationStatus.return_value.call = AsyncMock(return_value=int(status))


def contract_fn(adapter: EscrowAdapter, name: str) -> MagicMock:
    fn = getattr(adapter.contract.functions, name).return_value
    fn.estimate_gas = AsyncMock(return_value=100_000)
    fn.build_transaction = AsyncMock(side_effect=lambda tx: {**tx, "to": "0xescrow", "data": "0x"})
    return fn


class TestRecord:
    def test_from_tuple(self):
        record = EscrowRecord.from_tuple("UPabc", payment_tuple(EscrowStatus.LOCKED))
        assert record.payer == USER
        assert record.payee == LP_A
        assert record.status == EscrowStatus.LOCKED
        assert record.status_name == "locked"
        assert record.locked_at == NOW
        assert record.released_at is None
        assert record.exists

    def test_withdrawal_window(self):
        record = EscrowRecord.from_tuple(
            "UPabc", payment_tuple(EscrowStatus.CONFIRMED, released=NOW),
        )
        assert record.withdrawable_at() == NOW + timedelta(hours=settings.withdrawal_delay_hours)
        assert not record.can_withdraw(NOW)
        assert record.can_withdraw(NOW + timedelta(hours=settings.withdrawal_delay_hours))

    def test_disputed_is_never_withdrawable(self):
        record = EscrowRecord.from_tuple(
            "UPabc", payment_tuple(EscrowStatus.CONFIRMED, released=NOW, disputed=True),
        )
        assert not record.can_withdraw(NOW + timedelta(days=30))

    def test_token_units(self):
        assert to_token_units(Decimal("12.5")) == 12_500_000
        assert from_token_units(12_500_000) == Decimal("12.5")


class TestReads:
    @pytest.mark.asyncio
    async def test_get_payment(self, adapter):
        set_payment(adapter, EscrowStatus.CONFIRMED)
        record = await adapter.get_payment("UPabc")
        assert record.status == EscrowStatus.CONFIRMED
        adapter.contract.functions.getPaymentByPaymentId.assert_called_with("UPabc")

    @pytest.mark.asyncio
    async def test_transient_read_is_retried(self, adapter):
        getter = adapter.contract.functions.getPaymentByPaymentId.return_value
        getter.call = AsyncMock(side_effect=[aiohttp.ClientError("reset"), payment_tuple(EscrowStatus.LOCKED)])
        record = await adapter.get_payment("UPabc")
        assert record.status == EscrowStatus.LOCKED
        assert getter.call.await_count == 2

    @pytest.mark.asyncio
    async def test_read_revert(self, adapter):
        getter = adapter.contract.functions.getPaymentByPaymentId.return_value
        getter.call = AsyncMock(side_effect=ContractLogicError("execution reverted: bad id"))
        with pytest.raises(ChainRevertError) as exc_info:
            await adapter.get_payment("UPabc")
        assert exc_info.value.reason == "bad id"

    @pytest.mark.asyncio
    async def test_oracle_confirmed_from_verification_status(self, adapter):
        set_payment(adapter, EscrowStatus.LOCKED)
        set_verification(adapter, VerificationStatus.VERIFIED)
        assert await adapter.is_oracle_confirmed("UPabc")
        set_verification(adapter, VerificationStatus.PENDING)
        assert not await adapter.is_oracle_confirmed("UPabc")


class TestLock:
    @pytest.mark.asyncio
    async def test_sends_lock(self, adapter):
        set_payment(adapter, EscrowStatus.NONE)
        fn = contract_fn(adapter, "lockPayment")

        result = await adapter.lock(LP_A, Decimal("100"), "UPabc")

        assert result.tx_hash == "0xabc"
        assert result.block_number == 77
        args = adapter.contract.functions.lockPayment.call_args.args
        assert args[2:] == (100_000_000, "sepolia", "UPabc")
        tx = fn.build_transaction.await_args.args[0]
        assert tx["gas"] == int(100_000 * settings.chain_gas_buffer)
        assert tx["nonce"] == 5
        assert tx["maxFeePerGas"] == 22

    @pytest.mark.asyncio
    async def test_existing_record_skips_lock(self, adapter):
        set_payment(adapter, EscrowStatus.LOCKED)
        assert await adapter.lock(LP_A, Decimal("100"), "UPabc") is None
        adapter.w3.eth.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_estimate_revert(self, adapter):
        set_payment(adapter, EscrowStatus.NONE)
        fn = contract_fn(adapter, "lockPayment")
        fn.estimate_gas = AsyncMock(side_effect=ContractLogicError("execution reverted: paused"))
        with pytest.raises(ChainRevertError) as exc_info:
            await adapter.lock(LP_A, Decimal("100"), "UPabc")
        assert exc_info.value.reason == "paused"
        adapter.w3.eth.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_receipt_replays_reason(self, adapter):
        set_payment(adapter, EscrowStatus.NONE)
        contract_fn(adapter, "lockPayment")
        adapter.w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 0, "blockNumber": 78})
        adapter.w3.eth.call = AsyncMock(side_effect=ContractLogicError("execution reverted: Insufficient balance"))
        with pytest.raises(ChainRevertError) as exc_info:
            await adapter.lock(LP_A, Decimal("100"), "UPabc")
        assert exc_info.value.reason == "Insufficient balance"
        assert exc_info.value.tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, adapter):
        set_payment(adapter, EscrowStatus.NONE)
        contract_fn(adapter, "lockPayment")
        adapter.w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted())
        with pytest.raises(ChainTimeoutError) as exc_info:
            await adapter.lock(LP_A, Decimal("100"), "UPabc")
        assert exc_info.value.tx_hash == "0xabc"


class TestProofAndWithdraw:
    @pytest.mark.asyncio
    async def test_proof_before_lock(self, adapter):
        set_payment(adapter, EscrowStatus.NONE)
        with pytest.raises(EscrowNotReady):
            await adapter.submit_offchain_proof("UPabc", "ORDER-1")

    @pytest.mark.asyncio
    async def test_proof_already_pending(self, adapter):
        set_payment(adapter, EscrowStatus.LOCKED)
        set_verification(adapter, VerificationStatus.PENDING)
        assert await adapter.submit_offchain_proof("UPabc", "ORDER-1") is None

    @pytest.mark.asyncio
    async def test_proof_submitted(self, adapter):
        set_payment(adapter, EscrowStatus.LOCKED)
        set_verification(adapter, VerificationStatus.NONE)
        contract_fn(adapter, "submitOrderId")
        result = await adapter.submit_offchain_proof("UPabc", "ORDER-1")
        assert result.operation == "submitOrderId"
        adapter.contract.functions.submitOrderId.assert_called_with("UPabc", "ORDER-1")

    @pytest.mark.asyncio
    async def test_withdraw_before_delay(self, adapter):
        set_payment(adapter, EscrowStatus.CONFIRMED, released=NOW)
        with pytest.raises(EscrowNotReady) as exc_info:
            await adapter.withdraw("UPabc", NOW + timedelta(hours=1))
        assert exc_info.value.ready_at == NOW + timedelta(hours=settings.withdrawal_delay_hours)

    @pytest.mark.asyncio
    async def test_withdraw_disputed(self, adapter):
        set_payment(adapter, EscrowStatus.CONFIRMED, released=NOW, disputed=True)
        with pytest.raises(EscrowNotReady):
            await adapter.withdraw("UPabc", NOW + timedelta(days=3))

    @pytest.mark.asyncio
    async def test_withdraw_after_delay(self, adapter):
        set_payment(adapter, EscrowStatus.CONFIRMED, released=NOW)
        contract_fn(adapter, "withdrawPayment")
        result = await adapter.withdraw("UPabc", NOW + timedelta(days=2))
        assert result.operation == "withdrawPayment"

    @pytest.mark.asyncio
    async def test_cancel_refunded_is_noop(self, adapter):
        set_payment(adapter, EscrowStatus.REFUNDED)
        assert await adapter.cancel("UPabc") is None

    @pytest.mark.asyncio
    async def test_cancel_confirmed_refused(self, adapter):
        set_payment(adapter, EscrowStatus.CONFIRMED)
        with pytest.raises(EscrowNotReady):
            await adapter.cancel("UPabc")


class TestFactory:
    def test_none_without_chain(self):
        with patch.object(settings, "chain_rpc_url", ""), patch.object(escrow_adapter, "_adapter", None):
            assert get_escrow_adapter() is None


def _signature(entry: dict) -> str:
    return f"{entry['name']}({','.join(i['type'] for i in entry['inputs'])})"


class TestAbi:
    def _events(self) -> dict[str, dict]:
        return {e["name"]: e for e in ESCROW_ABI if e["type"] == "event"}

    def test_event_signatures_match_contract(self):
        events = self._events()
        assert _signature(events["PaymentLocked"]) == "PaymentLocked(string,address,address,uint256,uint256)"
        assert _signature(events["PaymentReleased"]) == "PaymentReleased(string,address,uint256,uint256)"
        assert _signature(events["PaymentConfirmed"]) == "PaymentConfirmed(string,bool)"
        assert set(events) == set(ESCROW_EVENTS)

    def test_payment_id_is_never_indexed(self):
        # An indexed string is logged as its hash and cannot be matched back to an intent
        for event in self._events().values():
            payment_id = next(i for i in event["inputs"] if i["name"] == "paymentId")
            assert payment_id["indexed"] is False

    def test_locked_event_indexes_parties(self):
        inputs = {i["name"]: i for i in self._events()["PaymentLocked"]["inputs"]}
        assert inputs["user"]["indexed"] and inputs["lp"]["indexed"]
        assert not inputs["amount"]["indexed"]
