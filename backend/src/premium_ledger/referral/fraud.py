"""Advisory fraud heuristics for referral earnings.

Read-only: reports reasons for a reviewer, never changes earnings.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from premium_ledger.clock import Clock, SystemClock
from premium_ledger.logging_config import get_logger
from premium_ledger.referral.models import ReferralEarning
from premium_ledger.storage.db import Database, db
from premium_ledger.storage.repo import (
    AccountRepository,
    ReferralEarningRepository,
    TransactionLogRepository,
)

logger = get_logger(__name__)

QUICK_REGISTRATION = timedelta(seconds=60)
SUSPICIOUS_ACTIVITY_WINDOW = timedelta(hours=24)
UNKNOWN_IP = "unknown"


@dataclass
class FraudReport:
    """Review record for one earning."""
    earning_id: int
    referrer_id: int
    referred_id: int
    earning_type: str
    amount: Decimal
    status: str
    created_at: datetime | None
    referrer_ip: str | None
    referred_ip: str | None
    reasons: list[str] = field(default_factory=list)

    @property
    def suspected(self) -> bool:
        return bool(self.reasons)


def _known(ip: str | None) -> str | None:
    return ip if ip and ip != UNKNOWN_IP else None


class FraudHeuristicChecker:
    """Flags referral earnings that look self-referred or scripted."""

    def __init__(self, database: Database | None = None, clock: Clock | None = None):
        self.db = database or db
        self.clock = clock or SystemClock()

    def assess(self, session: Session, earning: ReferralEarning) -> FraudReport:
        """Build the report for one earning within an open session."""
        accounts = AccountRepository(session)
        referrer = accounts.get(earning.referrer_id)
        referred = accounts.get(earning.referred_id)

        referrer_ip = _known(referrer.registration_ip if referrer else None) or _known(earning.referrer_ip)
        referred_ip = _known(referred.registration_ip if referred else None) or _known(earning.referred_ip)

        report = FraudReport(
            earning_id=earning.id,
            referrer_id=earning.referrer_id,
            referred_id=earning.referred_id,
            earning_type=earning.earning_type,
            amount=earning.amount,
            status=earning.status,
            created_at=earning.created_at,
            referrer_ip=referrer_ip,
            referred_ip=referred_ip,
        )

        if referred is not None and earning.created_at is not None:
            if abs(earning.created_at - referred.created_at) < QUICK_REGISTRATION:
                report.reasons.append("Registration and referral within 1 minute")

        if referred_ip:
            shared = accounts.count_sharing_ip(referred_ip, exclude_account_id=earning.referred_id)
            if shared > 0:
                report.reasons.append(f"Referred user IP shared with {shared} other user(s)")
            if referrer_ip and referred_ip == referrer_ip:
                report.reasons.append("Referred user and referrer share the same IP")

        if referrer_ip:
            shared = accounts.count_sharing_ip(referrer_ip, exclude_account_id=earning.referrer_id)
            if shared > 0:
                report.reasons.append(f"Referrer IP shared with {shared} other user(s)")

        return report

    def review(self, status: str | None = None, limit: int = 50, offset: int = 0) -> list[FraudReport]:
        """Reports for a page of earnings, newest first.

        Args:
            status: Only earnings in this status (all when None)
            limit: Page size
            offset: Rows to skip

        Returns:
            One report per earning; ``suspected`` is set when any heuristic fired
        """
        with self.db.session() as session:
            earnings = ReferralEarningRepository(session).list_earnings(status=status, limit=limit, offset=offset)
            reports = [self.assess(session, earning) for earning in earnings]

        flagged = sum(1 for report in reports if report.suspected)
        if flagged:
            logger.info("referral_fraud_flags", reviewed=len(reports), flagged=flagged)
        return reports

    def suspicious_activity(self, since: datetime | None = None) -> list[dict[str, Any]]:
        """IPs with more than 3 failed attempts or any security violation.

        Defaults to the last 24 hours.
        """
        since = since or self.clock.now() - SUSPICIOUS_ACTIVITY_WINDOW
        with self.db.session() as session:
            return TransactionLogRepository(session).suspicious_activity(since)
