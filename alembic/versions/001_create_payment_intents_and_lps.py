"""create payment_intents and liquidity_providers tables

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "liquidity_providers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("supported_platforms", sa.JSON(), nullable=False),
        sa.Column("total_quota", sa.Numeric(18, 6), nullable=False),
        sa.Column("per_transaction_quota", sa.Numeric(18, 6), nullable=False),
        sa.Column("locked_quota", sa.Numeric(18, 6), server_default="0", nullable=False),
        sa.Column("fee_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("paypal_email", sa.String(255), nullable=True),
        sa.Column("paypal_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_liquidity_providers"),
        sa.CheckConstraint("locked_quota >= 0", name=op.f("ck_liquidity_providers_locked_non_negative")),
        sa.CheckConstraint(
            "locked_quota <= total_quota", name=op.f("ck_liquidity_providers_locked_within_total")
        ),
    )
    op.create_index(
        "ix_liquidity_providers_address", "liquidity_providers", ["address"], unique=True
    )

    op.create_table(
        "payment_intents",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("onchain_payment_id", sa.String(24), nullable=True),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("merchant_email", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("lp_address", sa.String(42), nullable=True),
        sa.Column("lp_payout_email", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), server_default="created", nullable=False),
        sa.Column("status_history", sa.JSON(), nullable=False),
        sa.Column("payment_proof", sa.JSON(), nullable=True),
        sa.Column("offchain_order_id", sa.String(64), nullable=True),
        sa.Column("lock_tx_hash", sa.String(80), nullable=True),
        sa.Column("settlement_tx_hash", sa.String(80), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quota_released", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("processing_action", sa.String(32), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_payment_intents"),
    )
    op.create_index(
        "ix_payment_intents_onchain_payment_id", "payment_intents", ["onchain_payment_id"], unique=True
    )
    op.create_index("ix_payment_intents_user_address", "payment_intents", ["user_address"])
    op.create_index("ix_payment_intents_lp_address", "payment_intents", ["lp_address"])
    op.create_index("ix_payment_intents_status", "payment_intents", ["status"])
    op.create_index("ix_payment_intents_offchain_order_id", "payment_intents", ["offchain_order_id"])
    # Sweeps scan by status and deadline
    op.create_index("ix_payment_intents_status_expires_at", "payment_intents", ["status", "expires_at"])


def downgrade() -> None:
    op.drop_index("ix_payment_intents_status_expires_at", table_name="payment_intents")
    op.drop_index("ix_payment_intents_offchain_order_id", table_name="payment_intents")
    op.drop_index("ix_payment_intents_status", table_name="payment_intents")
    op.drop_index("ix_payment_intents_lp_address", table_name="payment_intents")
    op.drop_index("ix_payment_intents_user_address", table_name="payment_intents")
    op.drop_index("ix_payment_intents_onchain_payment_id", table_name="payment_intents")
    op.drop_table("payment_intents")
    op.drop_index("ix_liquidity_providers_address", table_name="liquidity_providers")
    op.drop_table("liquidity_providers")
