"""Database models for accounts and the transaction audit log."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ReferralProgram(str, Enum):
    """Commission program a referrer is enrolled in."""
    STANDARD = "standard"
    OFFER_5 = "offer_5"
    OFFER_10 = "offer_10"


class TransactionStatus(str, Enum):
    """Lifecycle of a purchase attempt."""
    INITIATED = "initiated"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    SECURITY_VIOLATION = "security_violation"
    TIMEOUT = "timeout"


TERMINAL_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.COMPLETED.value,
    TransactionStatus.FAILED.value,
    TransactionStatus.CANCELLED.value,
    TransactionStatus.REFUNDED.value,
    TransactionStatus.SECURITY_VIOLATION.value,
    TransactionStatus.TIMEOUT.value,
})


class TransactionType(str, Enum):
    """What kind of money movement a log row records."""
    PURCHASE = "purchase"
    REFUND = "refund"
    SUBSCRIPTION = "subscription"
    UPGRADE = "upgrade"
    CANCELLATION = "cancellation"
    TRANSFER = "transfer"


class ItemType(str, Enum):
    """What was bought or moved."""
    COINS = "coins"
    CREDITS = "credits"
    SUBSCRIPTION = "subscription"
    UPGRADE = "upgrade"


class Account(Base):
    """Account with premium subscription state and micro-purchase balances.

    Subscription fields are only written by the webhook reconciler and the
    subscription service; balances only by fulfillment and wallet code.
    """

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True, index=True)

    # Premium subscription
    premium_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    premium_plan: Mapped[str | None] = mapped_column(String(20), nullable=True)
    premium_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    premium_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    premium_cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Gateway references, reused across renewals and upgrades
    gateway_customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    gateway_subscription_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Balances
    coin_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    letter_credit_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_monthly_coins_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Referral
    referred_by_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("accounts.id"), nullable=True, index=True
    )
    referral_program: Mapped[str] = mapped_column(
        String(20), default=ReferralProgram.STANDARD.value, nullable=False
    )
    registration_ip: Mapped[str | None] = mapped_column(String(45), nullable=True, index=True)

    # Timestamps (created_at is the registration date)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def __repr__(self):
        return f"<Account(id={self.id}, premium={self.premium_active}, plan={self.premium_plan})>"


class TransactionLog(Base):
    """Audit row for a purchase, subscription checkout or transfer.

    Created when a purchase is initiated and moved exactly once to a
    terminal status.
    """

    __tablename__ = "transaction_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("accounts.id"), nullable=True, index=True
    )

    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    item_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    package_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Gateway references (one log row per checkout session)
    gateway_session_ref: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    gateway_customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Requester context for fraud review
    account_ip: Mapped[str | None] = mapped_column(String(45), nullable=True, index=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=TransactionStatus.INITIATED.value, nullable=False, index=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSACTION_STATUSES

    def __repr__(self):
        return f"<TransactionLog(id={self.id}, session={self.gateway_session_ref}, status={self.status})>"


class ProcessedWebhookEvent(Base):
    """Tracks processed webhook events for idempotency.

    First line of defence against gateway redelivery; the handlers also
    check persisted business state before writing.
    """

    __tablename__ = "processed_webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ProcessedWebhookEvent(id={self.event_id}, type={self.event_type})>"
