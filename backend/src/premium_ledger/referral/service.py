"""Administrative actions on referral earnings and programs."""

from decimal import Decimal

from premium_ledger.clock import Clock, SystemClock
from premium_ledger.logging_config import get_logger
from premium_ledger.referral.models import ALLOWED_TRANSITIONS, EarningStatus, ReferralEarning
from premium_ledger.storage.db import Database, db
from premium_ledger.storage.models import ReferralProgram
from premium_ledger.storage.repo import AccountRepository, ReferralEarningRepository

logger = get_logger(__name__)


class EarningNotFoundError(Exception):
    """Raised when an earning id does not exist."""


class InvalidStateTransitionError(Exception):
    """Raised when an earning status change would move backwards."""

    def __init__(self, earning_id: int, current: str, target: str):
        super().__init__(f"Earning {earning_id} cannot move from {current} to {target}")
        self.earning_id = earning_id
        self.current = current
        self.target = target


def _transition(earning: ReferralEarning, target: EarningStatus, now) -> None:
    current = EarningStatus(earning.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransitionError(earning.id, current.value, target.value)
    earning.status = target.value
    earning.updated_at = now


class ReferralAdminService:
    """Moves earnings through pending -> approved -> paid and manages programs."""

    def __init__(self, database: Database | None = None, clock: Clock | None = None):
        self.db = database or db
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def _set_status(self, earning_id: int, target: EarningStatus) -> ReferralEarning:
        with self.db.session() as session:
            earning = ReferralEarningRepository(session).get_for_update(earning_id)
            if earning is None:
                raise EarningNotFoundError(f"Earning {earning_id} not found")
            previous = earning.status
            _transition(earning, target, self.clock.now())

        self.logger.info(
            "referral_earning_status_changed",
            earning_id=earning_id,
            previous=previous,
            status=target.value,
        )
        return earning

    def approve(self, earning_id: int) -> ReferralEarning:
        """Approve a pending earning.

        Raises:
            EarningNotFoundError: If the earning does not exist
            InvalidStateTransitionError: If it is not pending
        """
        return self._set_status(earning_id, EarningStatus.APPROVED)

    def mark_paid(self, earning_id: int) -> ReferralEarning:
        """Mark an approved earning as paid out."""
        return self._set_status(earning_id, EarningStatus.PAID)

    def cancel(self, earning_id: int) -> ReferralEarning:
        """Cancel a pending or approved earning."""
        return self._set_status(earning_id, EarningStatus.CANCELLED)

    def pay_approved(self, referrer_id: int) -> int:
        """Mark every approved earning of a referrer as paid.

        Returns:
            Number of earnings paid
        """
        now = self.clock.now()
        with self.db.session() as session:
            earnings = ReferralEarningRepository(session).list_for_referrer(
                referrer_id, status=EarningStatus.APPROVED.value
            )
            for earning in earnings:
                _transition(earning, EarningStatus.PAID, now)
            paid = len(earnings)

        self.logger.info("referral_earnings_paid", referrer_id=referrer_id, count=paid)
        return paid

    def set_program(self, account_id: int, program: str) -> None:
        """Enrol a referrer in a commission program.

        Raises:
            ValueError: If the program is unknown
            AccountNotFoundError: If the account does not exist
        """
        try:
            program_type = ReferralProgram(program)
        except ValueError:
            raise ValueError(f"Invalid program type: {program}")

        with self.db.session() as session:
            account = AccountRepository(session).require(account_id, for_update=True)
            previous = account.referral_program
            account.referral_program = program_type.value
            account.updated_at = self.clock.now()

        self.logger.info(
            "referral_program_changed",
            account_id=account_id,
            previous=previous,
            program=program_type.value,
        )

    def summary(self, referrer_id: int) -> dict[str, Decimal]:
        """Earning totals per status, plus the overall total excluding cancelled."""
        with self.db.session() as session:
            totals = ReferralEarningRepository(session).totals_by_status(referrer_id)

        totals["total"] = sum(
            (amount for status, amount in totals.items() if status != EarningStatus.CANCELLED.value),
            Decimal("0"),
        )
        return totals
