"""On-chain escrow adapter: typed calls, state pre-checks, receipts, events."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import IntEnum

import aiohttp
from eth_account import Account
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, ProviderConnectionError, TimeExhausted
from web3.logs import DISCARD

from unitpay.core.config import settings
from unitpay.core.errors import (
    ChainRevertError,
    ChainTimeoutError,
    EscrowNotReady,
    TransientNetworkError,
)
from unitpay.services.chain.abi import ERC20_ABI, ESCROW_ABI, ESCROW_EVENTS

logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (aiohttp.ClientError, OSError, asyncio.TimeoutError, ProviderConnectionError)


class EscrowStatus(IntEnum):
    NONE = 0
    LOCKED = 1
    CONFIRMED = 2
    RELEASED = 3
    REFUNDED = 4


class VerificationStatus(IntEnum):
    NONE = 0
    PENDING = 1
    VERIFIED = 2
    FAILED = 3


# On-chain state mapping: getter returns int
CHAIN_STATE_MAP = {status.value: status.name.lower() for status in EscrowStatus}


def _revert_reason(exc: ContractLogicError) -> str:
    reason = getattr(exc, "message", None) or str(exc)
    return reason.removeprefix("execution reverted: ").removeprefix("execution reverted").strip() or "reverted"


def _to_datetime(ts: int) -> datetime | None:
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None


def to_token_units(amount: Decimal) -> int:
    return int(Decimal(amount) * (10 ** settings.token_decimals))


def from_token_units(units: int) -> Decimal:
    return Decimal(units) / (10 ** settings.token_decimals)


@dataclass(frozen=True)
class EscrowRecord:
    """The contract's view of one payment, addressed by payment id."""

    payment_id: str
    payer: str
    payee: str
    token: str
    amount: int
    platform_fee: int
    created_at: datetime | None
    locked_at: datetime | None
    released_at: datetime | None
    network: str
    status: EscrowStatus
    is_disputed: bool

    @classmethod
    def from_tuple(cls, payment_id: str, values: tuple | list) -> "EscrowRecord":
        (user, lp, token, amount, timestamp, lock_time, release_time,
         platform_fee, _, network, _, escrow_status, is_disputed) = values
        return cls(
            payment_id=payment_id,
            payer=user,
            payee=lp,
            token=token,
            amount=int(amount),
            platform_fee=int(platform_fee),
            created_at=_to_datetime(int(timestamp)),
            locked_at=_to_datetime(int(lock_time)),
            released_at=_to_datetime(int(release_time)),
            network=network,
            status=EscrowStatus(int(escrow_status)),
            is_disputed=bool(is_disputed),
        )

    @property
    def exists(self) -> bool:
        return self.status != EscrowStatus.NONE

    @property
    def status_name(self) -> str:
        return CHAIN_STATE_MAP[self.status]

    def withdrawable_at(self) -> datetime | None:
        """Earliest withdrawal time: release timestamp plus the T+1 delay."""
        if self.released_at is None:
            return None
        return self.released_at + timedelta(hours=settings.withdrawal_delay_hours)

    def can_withdraw(self, now: datetime | None = None) -> bool:
        ready_at = self.withdrawable_at()
        return (
            self.status in (EscrowStatus.CONFIRMED, EscrowStatus.RELEASED)
            and not self.is_disputed
            and ready_at is not None
            and (now or datetime.now(timezone.utc)) >= ready_at
        )


@dataclass(frozen=True)
class TxResult:
    operation: str
    tx_hash: str
    block_number: int
    events: list["EscrowEvent"] = field(default_factory=list)


@dataclass(frozen=True)
class EscrowEvent:
    name: str
    payment_id: str
    tx_hash: str
    block_number: int
    args: dict


class EscrowAdapter:
    """Typed wrapper over the escrow contract, signing with the operator key."""

    def __init__(self, w3: AsyncWeb3 | None = None, private_key: str | None = None) -> None:
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.chain_rpc_url))
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(settings.escrow_contract_address),
            abi=ESCROW_ABI,
        )
        self.token = (
            self.w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(settings.token_address), abi=ERC20_ABI,
            )
            if settings.token_address
            else None
        )
        self.account = Account.from_key(private_key or settings.operator_private_key)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1.5, min=1, max=10),
        retry=retry_if_exception_type(TransientNetworkError),
        reraise=True,
    )
    async def _call(self, fn, description: str):
        try:
            return await fn.call()
        except ContractLogicError as exc:
            raise ChainRevertError(description, _revert_reason(exc))
        except _NETWORK_ERRORS as exc:
            logger.warning("RPC read %s failed: %s", description, exc)
            raise TransientNetworkError(f"RPC read {description} failed: {exc}") from exc

    async def get_payment(self, payment_id: str) -> EscrowRecord:
        values = await self._call(
            self.contract.functions.getPaymentByPaymentId(payment_id), "getPaymentByPaymentId",
        )
        return EscrowRecord.from_tuple(payment_id, values)

    async def get_verification_status(self, payment_id: str) -> VerificationStatus:
        value = await self._call(
            self.contract.functions.verificationStatus(payment_id), "verificationStatus",
        )
        return VerificationStatus(int(value))

    async def is_oracle_confirmed(self, payment_id: str) -> bool:
        record = await self.get_payment(payment_id)
        if record.status in (EscrowStatus.CONFIRMED, EscrowStatus.RELEASED):
            return True
        if record.status != EscrowStatus.LOCKED:
            return False
        return await self.get_verification_status(payment_id) == VerificationStatus.VERIFIED

    async def latest_block(self) -> int:
        try:
            return await self.w3.eth.block_number
        except _NETWORK_ERRORS as exc:
            raise TransientNetworkError(f"RPC block_number failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _replay_revert(self, tx: dict, block_number: int) -> str:
        """Re-run a failed transaction as a call to recover its revert reason."""
        call = {k: tx[k] for k in ("from", "to", "data", "value") if k in tx}
        try:
            await self.w3.eth.call(call, block_number)
        except ContractLogicError as exc:
            return _revert_reason(exc)
        except _NETWORK_ERRORS:
            logger.warning("Could not replay failed tx to decode revert reason")
        return "reverted without reason"

    async def _transact(self, fn, operation: str) -> TxResult:
        """Estimate gas, sign, send and wait for the receipt."""
        sender = self.account.address
        try:
            try:
                gas = await fn.estimate_gas({"from": sender})
            except ContractLogicError as exc:
                raise ChainRevertError(operation, _revert_reason(exc))

            latest = await self.w3.eth.get_block("latest")
            priority_fee = await self.w3.eth.max_priority_fee
            tx = await fn.build_transaction({
                "from": sender,
                "nonce": await self.w3.eth.get_transaction_count(sender, "pending"),
                "gas": int(gas * settings.chain_gas_buffer),
                "maxPriorityFeePerGas": priority_fee,
                "maxFeePerGas": int(latest.get("baseFeePerGas", 0)) * 2 + priority_fee,
                "chainId": settings.chain_id,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            tx_hex = self.w3.to_hex(tx_hash)
            logger.info("%s tx sent: %s (gas=%s)", operation, tx_hex, tx["gas"])

            try:
                receipt = await self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=settings.chain_receipt_timeout_seconds,
                )
            except TimeExhausted:
                logger.warning("%s tx %s not mined in time", operation, tx_hex)
                raise ChainTimeoutError(operation, tx_hex)

            if receipt["status"] != 1:
                reason = await self._replay_revert(tx, receipt["blockNumber"])
                logger.warning("%s tx %s reverted: %s", operation, tx_hex, reason)
                raise ChainRevertError(operation, reason, tx_hex)
        except _NETWORK_ERRORS as exc:
            raise TransientNetworkError(f"RPC {operation} failed: {exc}") from exc

        logger.info("%s confirmed in block %s: %s", operation, receipt["blockNumber"], tx_hex)
        return TxResult(
            operation=operation,
            tx_hash=tx_hex,
            block_number=receipt["blockNumber"],
            events=self.decode_receipt(receipt),
        )

    async def _ensure_allowance(self, units: int) -> None:
        if self.token is None:
            return
        allowance = await self._call(
            self.token.functions.allowance(self.account.address, self.contract.address), "allowance",
        )
        if int(allowance) >= units:
            return
        await self._transact(self.token.functions.approve(self.contract.address, units), "approve")

    async def lock(
        self, lp_address: str, amount: Decimal, payment_id: str, network: str | None = None,
    ) -> TxResult | None:
        """Lock ``amount`` for ``lp_address``; None if the id is already in use."""
        record = await self.get_payment(payment_id)
        if record.exists:
            logger.info("Escrow %s already %s, skipping lock", payment_id, record.status_name)
            return None

        units = to_token_units(amount)
        await self._ensure_allowance(units)
        return await self._transact(
            self.contract.functions.lockPayment(
                AsyncWeb3.to_checksum_address(lp_address),
                AsyncWeb3.to_checksum_address(settings.token_address),
                units,
                network or settings.chain_network,
                payment_id,
            ),
            "lockPayment",
        )

    async def submit_offchain_proof(self, payment_id: str, order_id: str) -> TxResult | None:
        """Hand the PayPal order id to the oracle; None if nothing to do."""
        record = await self.get_payment(payment_id)
        if record.status == EscrowStatus.NONE:
            raise EscrowNotReady(f"Escrow {payment_id} is not locked yet")
        if record.status != EscrowStatus.LOCKED:
            logger.info("Escrow %s already %s, skipping proof", payment_id, record.status_name)
            return None

        verification = await self.get_verification_status(payment_id)
        if verification in (VerificationStatus.PENDING, VerificationStatus.VERIFIED):
            logger.info("Escrow %s verification already %s", payment_id, verification.name.lower())
            return None

        return await self._transact(
            self.contract.functions.submitOrderId(payment_id, order_id), "submitOrderId",
        )

    async def withdraw(self, payment_id: str, now: datetime | None = None) -> TxResult:
        """Pay the LP out once the escrow is confirmed and T+1 has passed."""
        record = await self.get_payment(payment_id)
        if record.status not in (EscrowStatus.CONFIRMED, EscrowStatus.RELEASED):
            raise EscrowNotReady(f"Escrow {payment_id} is {record.status_name}, not withdrawable")
        if record.is_disputed:
            raise EscrowNotReady(f"Escrow {payment_id} is disputed")
        if not record.can_withdraw(now):
            raise EscrowNotReady(
                f"Escrow {payment_id} withdrawable after the release delay",
                ready_at=record.withdrawable_at(),
            )
        return await self._transact(
            self.contract.functions.withdrawPayment(payment_id), "withdrawPayment",
        )

    async def cancel(self, payment_id: str) -> TxResult | None:
        """Return locked funds for an expired payment; None if already refunded."""
        record = await self.get_payment(payment_id)
        if record.status == EscrowStatus.REFUNDED:
            return None
        if record.status != EscrowStatus.LOCKED:
            raise EscrowNotReady(f"Escrow {payment_id} is {record.status_name}, cannot cancel")
        return await self._transact(
            self.contract.functions.cancelExpiredPayment(payment_id), "cancelExpiredPayment",
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @staticmethod
    def _to_event(log) -> EscrowEvent:
        args = dict(log["args"])
        return EscrowEvent(
            name=log["event"],
            payment_id=args.get("paymentId", ""),
            tx_hash=AsyncWeb3.to_hex(log["transactionHash"]),
            block_number=log["blockNumber"],
            args=args,
        )

    def decode_receipt(self, receipt) -> list[EscrowEvent]:
        events: list[EscrowEvent] = []
        for name in ESCROW_EVENTS:
            for log in getattr(self.contract.events, name)().process_receipt(receipt, errors=DISCARD):
                events.append(self._to_event(log))
        return events

    async def get_events(self, from_block: int, to_block: int) -> list[EscrowEvent]:
        events: list[EscrowEvent] = []
        try:
            for name in ESCROW_EVENTS:
                logs = await getattr(self.contract.events, name).get_logs(
                    from_block=from_block, to_block=to_block,
                )
                events.extend(self._to_event(log) for log in logs)
        except _NETWORK_ERRORS as exc:
            raise TransientNetworkError(f"RPC get_logs failed: {exc}") from exc
        events.sort(key=lambda e: e.block_number)
        return events


_adapter: EscrowAdapter | None = None


def get_escrow_adapter() -> EscrowAdapter | None:
    """Shared adapter, or None when no chain is configured."""
    global _adapter
    if not settings.chain_configured:
        return None
    if _adapter is None:
        _adapter = EscrowAdapter()
    return _adapter
