from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Payment intents
# ---------------------------------------------------------------------------


class CreateIntentRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    platform: str = "paypal"
    merchant_email: str
    user_address: str
    description: str | None = Field(default=None, max_length=1000)


class CallerRequest(BaseModel):
    caller_address: str


class CancelIntentRequest(CallerRequest):
    reason: str | None = Field(default=None, max_length=500)


class IntentResponse(BaseModel):
    id: int
    onchain_payment_id: str | None
    amount: Decimal
    currency: str
    platform: str
    merchant_email: str
    description: str | None
    user_address: str
    lp_address: str | None
    status: str
    status_history: list[dict]
    payment_proof: dict | None
    offchain_order_id: str | None
    lock_tx_hash: str | None
    settlement_tx_hash: str | None
    error_detail: str | None
    expires_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class IntentDetailResponse(IntentResponse):
    available_actions: list[str] = []
    history_valid: bool = True


# ---------------------------------------------------------------------------
# LP tasks
# ---------------------------------------------------------------------------


class ClaimRequest(BaseModel):
    lp_address: str


class MarkPaidRequest(BaseModel):
    lp_address: str
    order_id: str | None = Field(default=None, max_length=64)
    proof: dict = {}


class CreateOrderRequest(BaseModel):
    lp_address: str


class CaptureRequest(BaseModel):
    order_id: str | None = Field(default=None, max_length=64)


class OrderResponse(BaseModel):
    order_id: str
    status: str
    approve_url: str | None = None


# ---------------------------------------------------------------------------
# Liquidity providers
# ---------------------------------------------------------------------------


class RegisterLPRequest(BaseModel):
    address: str
    name: str = Field(min_length=1, max_length=255)
    email: str | None = None
    platforms: list[str] = ["paypal"]
    total_quota: Decimal = Field(gt=0)
    per_transaction_quota: Decimal | None = Field(default=None, gt=0)
    fee_rate: Decimal | None = None


class UpdateQuotaRequest(BaseModel):
    total_quota: Decimal | None = Field(default=None, gt=0)
    per_transaction_quota: Decimal | None = Field(default=None, gt=0)


class BindPayoutEmailRequest(BaseModel):
    email: str


class LPResponse(BaseModel):
    id: int
    address: str
    name: str
    email: str | None
    supported_platforms: list[str]
    total_quota: Decimal
    per_transaction_quota: Decimal
    locked_quota: Decimal
    available_quota: Decimal
    fee_rate: Decimal
    paypal_email: str | None
    paypal_verified_at: datetime | None
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}
