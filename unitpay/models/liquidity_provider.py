from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from unitpay.db.base import Base


class LiquidityProvider(Base):
    __tablename__ = "liquidity_providers"
    __table_args__ = (
        CheckConstraint("locked_quota >= 0", name="locked_non_negative"),
        CheckConstraint("locked_quota <= total_quota", name="locked_within_total"),
    )

    address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    supported_platforms: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    total_quota: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=0)
    per_transaction_quota: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=0)
    locked_quota: Mapped[Decimal] = mapped_column(
        Numeric(18, 6), nullable=False, default=0, server_default="0"
    )
    fee_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0.5"))
    paypal_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paypal_verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )

    @property
    def available_quota(self) -> Decimal:
        return Decimal(self.total_quota) - Decimal(self.locked_quota)
