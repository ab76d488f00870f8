from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from unitpay.db.base import Base


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise a stored timestamp to an aware UTC datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    onchain_payment_id: Mapped[str | None] = mapped_column(
        String(24), unique=True, nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="paypal")
    merchant_email: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    lp_address: Mapped[str | None] = mapped_column(String(42), nullable=True, index=True)
    lp_payout_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default="created", server_default="created", nullable=False, index=True
    )  # see services.intent_state_machine.IntentStatus
    status_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    payment_proof: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    offchain_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    lock_tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    settlement_tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    quota_released: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    processing_action: Mapped[str | None] = mapped_column(String(32), nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_attempts: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
