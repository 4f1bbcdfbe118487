"""Referral earning ledger models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text

from premium_ledger.storage.models import Base


class EarningType(str, Enum):
    """How a commission was computed."""
    PERCENTAGE = "percentage"
    SIGNUP_BONUS = "signup_bonus"
    RETENTION_BONUS = "retention_bonus"
    MIXED = "mixed"


class EarningStatus(str, Enum):
    """Payout state of an earning.

    Forward-only: pending -> approved -> paid, or pending/approved -> cancelled.
    """
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: dict[EarningStatus, frozenset[EarningStatus]] = {
    EarningStatus.PENDING: frozenset({EarningStatus.APPROVED, EarningStatus.CANCELLED}),
    EarningStatus.APPROVED: frozenset({EarningStatus.PAID, EarningStatus.CANCELLED}),
    EarningStatus.PAID: frozenset(),
    EarningStatus.CANCELLED: frozenset(),
}


class ReferralEarning(Base):
    """Commission owed to a referrer for a referred account's payment.

    Append-mostly: only ``status`` changes after insert. ``dedup_key`` is
    unique so that a signup bonus exists at most once per pair and a
    gateway transaction pays out at most once per pair.
    """
    __tablename__ = "referral_earnings"

    id = Column(Integer, primary_key=True)
    referrer_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    referred_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    earning_type = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 4), nullable=False)
    percentage = Column(Numeric(5, 2), nullable=True)
    purchase_amount = Column(Numeric(10, 2), nullable=True)
    status = Column(String(20), default=EarningStatus.PENDING.value, nullable=False, index=True)

    # Fraud review context
    referrer_ip = Column(String(45), nullable=True)
    referred_ip = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)

    # Deduplication
    external_transaction_id = Column(String(255), nullable=True, index=True)
    dedup_key = Column(String(400), unique=True, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return (
            f"<ReferralEarning(id={self.id}, referrer={self.referrer_id}, "
            f"referred={self.referred_id}, type={self.earning_type}, amount={self.amount})>"
        )
