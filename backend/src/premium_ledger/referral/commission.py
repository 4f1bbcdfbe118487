"""Referral commission calculation.

Each referral program is a strategy that turns a purchase into at most one
earning descriptor. The calculator resolves the referrer, picks the
strategy, runs the duplicate checks and inserts the pending earning.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from premium_ledger.clock import Clock, SystemClock
from premium_ledger.logging_config import get_logger
from premium_ledger.referral.models import EarningStatus, EarningType, ReferralEarning
from premium_ledger.storage.db import Database, db
from premium_ledger.storage.models import Account, ReferralProgram
from premium_ledger.storage.repo import AccountRepository, ReferralEarningRepository

logger = get_logger(__name__)

STANDARD_RATE = Decimal("5")
OFFER_5_RATE = Decimal("15")
OFFER_5_SIGNUP_BONUS = Decimal("5")
OFFER_5_WINDOW = relativedelta(months=6)
OFFER_10_SIGNUP_BONUS = Decimal("10")


def signup_dedup_key(referrer_id: int, referred_id: int) -> str:
    return f"signup:{referrer_id}:{referred_id}"


def transaction_dedup_key(referrer_id: int, referred_id: int, transaction_id: str) -> str:
    return f"txn:{referrer_id}:{referred_id}:{transaction_id}"


@dataclass(frozen=True)
class Purchase:
    """A payment made by a referred account."""
    amount: Decimal
    occurred_at: datetime
    is_subscription: bool = False
    is_second_month: bool = False
    external_transaction_id: str | None = None


@dataclass(frozen=True)
class EarningDescriptor:
    """What a program awards for one purchase."""
    earning_type: EarningType
    amount: Decimal
    percentage: Decimal | None = None


def _percent(amount: Decimal, rate: Decimal) -> EarningDescriptor:
    return EarningDescriptor(EarningType.PERCENTAGE, amount * rate / 100, rate)


class ProgramStrategy(ABC):
    """Commission rule for one referral program."""

    program: ReferralProgram

    @abstractmethod
    def award(
        self,
        purchase: Purchase,
        referred: Account,
        signup_bonus_paid: bool,
    ) -> EarningDescriptor | None:
        """Return the earning for ``purchase``, or None for no award."""


class StandardProgram(ProgramStrategy):
    program = ReferralProgram.STANDARD

    def award(self, purchase: Purchase, referred: Account, signup_bonus_paid: bool) -> EarningDescriptor | None:
        return _percent(purchase.amount, STANDARD_RATE)


class Offer5Program(ProgramStrategy):
    """15% for six calendar months after the referred account registered,
    with a fixed bonus in place of the first subscription commission."""
    program = ReferralProgram.OFFER_5

    def window_end(self, referred: Account) -> datetime:
        return referred.created_at + OFFER_5_WINDOW

    def award(self, purchase: Purchase, referred: Account, signup_bonus_paid: bool) -> EarningDescriptor | None:
        if purchase.occurred_at > self.window_end(referred):
            return None

        if purchase.is_subscription and not purchase.is_second_month and not signup_bonus_paid:
            return EarningDescriptor(EarningType.SIGNUP_BONUS, OFFER_5_SIGNUP_BONUS)

        return _percent(purchase.amount, OFFER_5_RATE)


class Offer10Program(ProgramStrategy):
    """One fixed bonus on the first subscription payment, nothing after."""
    program = ReferralProgram.OFFER_10

    def award(self, purchase: Purchase, referred: Account, signup_bonus_paid: bool) -> EarningDescriptor | None:
        if not purchase.is_subscription or purchase.is_second_month or signup_bonus_paid:
            return None
        return EarningDescriptor(EarningType.SIGNUP_BONUS, OFFER_10_SIGNUP_BONUS)


PROGRAM_STRATEGIES: dict[ReferralProgram, ProgramStrategy] = {
    strategy.program: strategy
    for strategy in (StandardProgram(), Offer5Program(), Offer10Program())
}


def strategy_for(program: str | None) -> ProgramStrategy | None:
    """Strategy for a stored program value; missing means standard."""
    try:
        return PROGRAM_STRATEGIES[ReferralProgram(program or ReferralProgram.STANDARD.value)]
    except ValueError:
        return None


class CommissionCalculator:
    """Creates pending referral earnings for referred accounts' payments."""

    def __init__(self, database: Database | None = None, clock: Clock | None = None):
        self.db = database or db
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def process(
        self,
        purchaser_id: int,
        purchase_amount: Decimal | float | str,
        *,
        is_subscription: bool = False,
        is_second_month: bool = False,
        external_transaction_id: str | None = None,
        purchaser_ip: str | None = None,
        user_agent: str | None = None,
        occurred_at: datetime | None = None,
    ) -> ReferralEarning | None:
        """Record the commission owed for a purchase, if any.

        Runs in its own unit of work. A concurrent insert of the same
        earning loses on the unique dedup key and is treated as a replay.

        Args:
            purchaser_id: Account that paid
            purchase_amount: Amount paid, in currency units
            is_subscription: Whether the payment is for premium
            is_second_month: Whether it is the subscription's second cycle
            external_transaction_id: Gateway id of the payment
            purchaser_ip: Request IP, defaults to the registration IP
            user_agent: Request user agent
            occurred_at: When the payment happened, defaults to now

        Returns:
            The created earning, or None when nothing is owed
        """
        purchase = Purchase(
            amount=Decimal(str(purchase_amount)),
            occurred_at=occurred_at or self.clock.now(),
            is_subscription=is_subscription,
            is_second_month=is_second_month,
            external_transaction_id=external_transaction_id,
        )

        try:
            with self.db.session() as session:
                return self._record(session, purchaser_id, purchase, purchaser_ip, user_agent)
        except IntegrityError:
            self.logger.info(
                "referral_earning_duplicate",
                purchaser_id=purchaser_id,
                transaction_id=external_transaction_id,
            )
            return None

    def _record(
        self,
        session: Session,
        purchaser_id: int,
        purchase: Purchase,
        purchaser_ip: str | None,
        user_agent: str | None,
    ) -> ReferralEarning | None:
        accounts = AccountRepository(session)
        ledger = ReferralEarningRepository(session)

        referred = accounts.get(purchaser_id)
        if referred is None or referred.referred_by_id is None:
            return None

        referrer = accounts.get(referred.referred_by_id)
        if referrer is None:
            self.logger.warning("referrer_missing", purchaser_id=purchaser_id, referrer_id=referred.referred_by_id)
            return None

        strategy = strategy_for(referrer.referral_program)
        if strategy is None:
            self.logger.warning("referral_program_unknown", referrer_id=referrer.id, program=referrer.referral_program)
            return None

        signup_bonus_paid = ledger.signup_bonus_exists(referrer.id, referred.id)
        descriptor = strategy.award(purchase, referred, signup_bonus_paid)
        if descriptor is None or descriptor.amount <= 0:
            return None

        txid = purchase.external_transaction_id
        if descriptor.earning_type == EarningType.SIGNUP_BONUS:
            dedup_key = signup_dedup_key(referrer.id, referred.id)
        elif txid:
            dedup_key = transaction_dedup_key(referrer.id, referred.id, txid)
        else:
            dedup_key = None

        if txid and ledger.transaction_exists(referrer.id, referred.id, txid):
            self.logger.info("referral_earning_replay", referrer_id=referrer.id, referred_id=referred.id, transaction_id=txid)
            return None

        earning = ledger.add(ReferralEarning(
            referrer_id=referrer.id,
            referred_id=referred.id,
            earning_type=descriptor.earning_type.value,
            amount=descriptor.amount,
            percentage=descriptor.percentage,
            purchase_amount=purchase.amount,
            status=EarningStatus.PENDING.value,
            referrer_ip=referrer.registration_ip or "unknown",
            referred_ip=purchaser_ip or referred.registration_ip or "unknown",
            user_agent=user_agent or "unknown",
            external_transaction_id=txid,
            dedup_key=dedup_key,
            created_at=self.clock.now(),
        ))

        self.logger.info(
            "referral_earning_created",
            earning_id=earning.id,
            referrer_id=referrer.id,
            referred_id=referred.id,
            program=strategy.program.value,
            earning_type=descriptor.earning_type.value,
            amount=str(descriptor.amount),
        )
        return earning
