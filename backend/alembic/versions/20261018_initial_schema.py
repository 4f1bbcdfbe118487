"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Creates:
- accounts (premium subscription state, balances, referral fields)
- transaction_logs (one row per checkout session or transfer leg)
- referral_earnings (commission ledger with unique dedup key)
- processed_webhook_events (webhook idempotency)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("premium_active", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("premium_plan", sa.String(20), nullable=True),
        sa.Column("premium_start", sa.DateTime(), nullable=True),
        sa.Column("premium_end", sa.DateTime(), nullable=True),
        sa.Column("premium_cancelled", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("gateway_customer_ref", sa.String(255), nullable=True),
        sa.Column("gateway_subscription_ref", sa.String(255), nullable=True),
        sa.Column("coin_balance", sa.Integer(), server_default="0", nullable=False),
        sa.Column("letter_credit_balance", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_monthly_coins_at", sa.DateTime(), nullable=True),
        sa.Column("referred_by_id", sa.Integer(), nullable=True),
        sa.Column("referral_program", sa.String(20), server_default="standard", nullable=False),
        sa.Column("registration_ip", sa.String(45), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["referred_by_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_accounts_email", "accounts", ["email"], unique=True)
    op.create_index("ix_accounts_gateway_customer_ref", "accounts", ["gateway_customer_ref"])
    op.create_index("ix_accounts_gateway_subscription_ref", "accounts", ["gateway_subscription_ref"])
    op.create_index("ix_accounts_referred_by_id", "accounts", ["referred_by_id"])
    op.create_index("ix_accounts_registration_ip", "accounts", ["registration_ip"])

    op.create_table(
        "transaction_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=True),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("item_type", sa.String(20), nullable=True),
        sa.Column("package_type", sa.String(50), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(3), server_default="USD", nullable=False),
        sa.Column("gateway_session_ref", sa.String(255), nullable=True),
        sa.Column("gateway_customer_ref", sa.String(255), nullable=True),
        sa.Column("account_ip", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), server_default="initiated", nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("gateway_session_ref"),
    )
    op.create_index("ix_transaction_logs_account_id", "transaction_logs", ["account_id"])
    op.create_index("ix_transaction_logs_transaction_type", "transaction_logs", ["transaction_type"])
    op.create_index("ix_transaction_logs_account_ip", "transaction_logs", ["account_ip"])
    op.create_index("ix_transaction_logs_status", "transaction_logs", ["status"])
    op.create_index("ix_transaction_logs_created_at", "transaction_logs", ["created_at"])

    op.create_table(
        "referral_earnings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("referrer_id", sa.Integer(), nullable=False),
        sa.Column("referred_id", sa.Integer(), nullable=False),
        sa.Column("earning_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Numeric(12, 4), nullable=False),
        sa.Column("percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("purchase_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("referrer_ip", sa.String(45), nullable=True),
        sa.Column("referred_ip", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("external_transaction_id", sa.String(255), nullable=True),
        sa.Column("dedup_key", sa.String(400), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["referrer_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["referred_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key"),
    )
    op.create_index("ix_referral_earnings_referrer_id", "referral_earnings", ["referrer_id"])
    op.create_index("ix_referral_earnings_referred_id", "referral_earnings", ["referred_id"])
    op.create_index("ix_referral_earnings_status", "referral_earnings", ["status"])
    op.create_index("ix_referral_earnings_external_transaction_id", "referral_earnings", ["external_transaction_id"])
    op.create_index("ix_referral_earnings_created_at", "referral_earnings", ["created_at"])

    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("processed_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_processed_webhook_events_event_id", "processed_webhook_events", ["event_id"], unique=True)


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("ix_processed_webhook_events_event_id", table_name="processed_webhook_events")
    op.drop_table("processed_webhook_events")
    op.drop_table("referral_earnings")
    op.drop_table("transaction_logs")
    op.drop_table("accounts")
