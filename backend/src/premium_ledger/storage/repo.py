"""Repository layer for data access."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from premium_ledger.logging_config import get_logger
from premium_ledger.referral.models import EarningStatus, EarningType, ReferralEarning
from premium_ledger.storage.models import (
    Account,
    ProcessedWebhookEvent,
    TransactionLog,
    TransactionStatus,
)

logger = get_logger(__name__)

BALANCE_FIELDS = {
    "coins": Account.coin_balance,
    "credits": Account.letter_credit_balance,
}


class AccountNotFoundError(Exception):
    """Raised when an operation names an account that does not exist."""

    def __init__(self, account_id: int):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class AccountRepository:
    """Repository for Account entities."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, **fields: Any) -> Account:
        """Create a new account."""
        account = Account(**fields)
        self.session.add(account)
        self.session.flush()
        return account

    def get(self, account_id: int) -> Account | None:
        """Get account by ID."""
        return self.session.get(Account, account_id)

    def get_for_update(self, account_id: int) -> Account | None:
        """Get account by ID, locking the row for the rest of the transaction."""
        return self.session.scalars(
            select(Account).where(Account.id == account_id).with_for_update()
        ).first()

    def require(self, account_id: int, for_update: bool = False) -> Account:
        """Get account by ID or raise ``AccountNotFoundError``."""
        account = self.get_for_update(account_id) if for_update else self.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def get_by_email(self, email: str) -> Account | None:
        return self.session.scalars(select(Account).where(Account.email == email)).first()

    def get_by_subscription_ref(self, subscription_ref: str) -> Account | None:
        return self.session.scalars(
            select(Account).where(Account.gateway_subscription_ref == subscription_ref).with_for_update()
        ).first()

    def get_by_customer_ref(self, customer_ref: str) -> Account | None:
        return self.session.scalars(
            select(Account).where(Account.gateway_customer_ref == customer_ref).with_for_update()
        ).first()

    def increment_balance(self, account_id: int, item_type: str, amount: int) -> int:
        """Atomically add ``amount`` to the coin or letter-credit balance.

        The addition happens in SQL so concurrent increments never lose
        updates. Negative amounts only apply when the balance covers them.

        Returns:
            Number of rows changed (0 if the account is missing or the
            balance is insufficient)
        """
        column = BALANCE_FIELDS.get(item_type)
        if column is None:
            raise ValueError(f"Unknown balance type: {item_type}")

        stmt = update(Account).where(Account.id == account_id)
        if amount < 0:
            stmt = stmt.where(column >= -amount)
        result = self.session.execute(
            stmt.values({column.key: column + amount}).execution_options(synchronize_session=False)
        )
        return result.rowcount

    def balance(self, account_id: int, item_type: str) -> int | None:
        """Current coin or letter-credit balance, read from the database."""
        return self.session.scalar(select(BALANCE_FIELDS[item_type]).where(Account.id == account_id))

    def expire_cancelled_legacy(self, plan: str, started_before: datetime) -> int:
        """Clear premium on cancelled accounts of ``plan`` with no explicit end
        whose start is at or before ``started_before``."""
        result = self.session.execute(
            update(Account)
            .where(
                Account.premium_active.is_(True),
                Account.premium_cancelled.is_(True),
                Account.premium_plan == plan,
                Account.premium_start.is_not(None),
                Account.premium_end.is_(None),
                Account.premium_start <= started_before,
            )
            .values(premium_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def expire_cancelled_ended(self, now: datetime) -> int:
        """Clear premium on cancelled accounts whose explicit end has passed."""
        result = self.session.execute(
            update(Account)
            .where(
                Account.premium_active.is_(True),
                Account.premium_cancelled.is_(True),
                Account.premium_end.is_not(None),
                Account.premium_end <= now,
            )
            .values(premium_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def list_monthly_coin_candidates(self, now: datetime) -> list[Account]:
        """Active, non-cancelled premium accounts whose paid window is open."""
        return list(self.session.scalars(
            select(Account).where(
                Account.premium_active.is_(True),
                Account.premium_cancelled.is_(False),
                or_(Account.premium_end.is_(None), Account.premium_end > now),
            ).order_by(Account.id)
        ))

    def claim_monthly_coins(self, account_id: int, month_start: datetime, now: datetime) -> bool:
        """Stamp the monthly grant unless one was already made since ``month_start``."""
        result = self.session.execute(
            update(Account)
            .where(
                Account.id == account_id,
                or_(Account.last_monthly_coins_at.is_(None), Account.last_monthly_coins_at < month_start),
            )
            .values(last_monthly_coins_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def count_sharing_ip(self, ip: str, exclude_account_id: int) -> int:
        """How many other accounts registered from ``ip``."""
        return self.session.scalar(
            select(func.count(Account.id)).where(
                Account.registration_ip == ip,
                Account.id != exclude_account_id,
            )
        ) or 0


class ReferralEarningRepository:
    """Append-mostly ledger of referral earnings."""

    def __init__(self, session: Session):
        self.session = session

    def signup_bonus_exists(self, referrer_id: int, referred_id: int) -> bool:
        return self.session.scalar(
            select(func.count(ReferralEarning.id)).where(
                ReferralEarning.referrer_id == referrer_id,
                ReferralEarning.referred_id == referred_id,
                ReferralEarning.earning_type == EarningType.SIGNUP_BONUS.value,
            )
        ) > 0

    def transaction_exists(self, referrer_id: int, referred_id: int, external_transaction_id: str) -> bool:
        return self.session.scalar(
            select(func.count(ReferralEarning.id)).where(
                ReferralEarning.referrer_id == referrer_id,
                ReferralEarning.referred_id == referred_id,
                ReferralEarning.external_transaction_id == external_transaction_id,
            )
        ) > 0

    def add(self, earning: ReferralEarning) -> ReferralEarning:
        """Insert an earning. Flushes so unique violations surface here."""
        self.session.add(earning)
        self.session.flush()
        return earning

    def get(self, earning_id: int) -> ReferralEarning | None:
        return self.session.get(ReferralEarning, earning_id)

    def get_for_update(self, earning_id: int) -> ReferralEarning | None:
        return self.session.scalars(
            select(ReferralEarning).where(ReferralEarning.id == earning_id).with_for_update()
        ).first()

    def list_earnings(
        self,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ReferralEarning]:
        """List earnings newest first, optionally filtered by status."""
        stmt = select(ReferralEarning)
        if status:
            stmt = stmt.where(ReferralEarning.status == status)
        stmt = stmt.order_by(ReferralEarning.created_at.desc(), ReferralEarning.id.desc())
        return list(self.session.scalars(stmt.offset(offset).limit(limit)))

    def list_for_pair(self, referrer_id: int, referred_id: int) -> list[ReferralEarning]:
        return list(self.session.scalars(
            select(ReferralEarning).where(
                ReferralEarning.referrer_id == referrer_id,
                ReferralEarning.referred_id == referred_id,
            ).order_by(ReferralEarning.id)
        ))

    def list_for_referrer(self, referrer_id: int, status: str | None = None) -> list[ReferralEarning]:
        stmt = select(ReferralEarning).where(ReferralEarning.referrer_id == referrer_id)
        if status:
            stmt = stmt.where(ReferralEarning.status == status)
        return list(self.session.scalars(stmt.order_by(ReferralEarning.id)))

    def totals_by_status(self, referrer_id: int) -> dict[str, Decimal]:
        rows = self.session.execute(
            select(ReferralEarning.status, func.sum(ReferralEarning.amount))
            .where(ReferralEarning.referrer_id == referrer_id)
            .group_by(ReferralEarning.status)
        ).all()
        totals = {status.value: Decimal("0") for status in EarningStatus}
        for status, total in rows:
            totals[status] = Decimal(str(total or 0))
        return totals


class TransactionLogRepository:
    """Repository for the purchase audit log."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, **fields: Any) -> TransactionLog:
        log = TransactionLog(**fields)
        self.session.add(log)
        self.session.flush()
        return log

    def get_by_session_ref(self, session_ref: str, for_update: bool = False) -> TransactionLog | None:
        stmt = select(TransactionLog).where(TransactionLog.gateway_session_ref == session_ref)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def finalize(
        self,
        log: TransactionLog,
        status: TransactionStatus,
        now: datetime,
        failure_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionLog:
        """Move a log row to its terminal status."""
        log.status = status.value
        log.failure_reason = failure_reason
        if metadata is not None:
            log.metadata_json = {**(log.metadata_json or {}), **metadata}
        log.updated_at = now
        if status == TransactionStatus.COMPLETED:
            log.completed_at = now
        self.session.flush()
        return log

    def suspicious_activity(self, since: datetime) -> list[dict[str, Any]]:
        """Per-IP attempt counts since ``since``, flagged when failures pile up
        or any security violation was recorded."""
        failed = func.sum(case((TransactionLog.status == TransactionStatus.FAILED.value, 1), else_=0))
        violations = func.sum(
            case((TransactionLog.status == TransactionStatus.SECURITY_VIOLATION.value, 1), else_=0)
        )
        rows = self.session.execute(
            select(
                TransactionLog.account_ip,
                func.count(TransactionLog.id).label("attempt_count"),
                failed.label("failed_count"),
                violations.label("violation_count"),
            )
            .where(TransactionLog.created_at >= since, TransactionLog.account_ip.is_not(None))
            .group_by(TransactionLog.account_ip)
            .having(or_(failed > 3, violations > 0))
            .order_by(violations.desc(), failed.desc())
        ).all()
        return [
            {
                "ip": row.account_ip,
                "attempt_count": int(row.attempt_count),
                "failed_count": int(row.failed_count or 0),
                "violation_count": int(row.violation_count or 0),
            }
            for row in rows
        ]


class WebhookEventRepository:
    """Processed gateway event ids."""

    def __init__(self, session: Session):
        self.session = session

    def is_processed(self, event_id: str, source: str) -> bool:
        return self.session.scalars(
            select(ProcessedWebhookEvent).where(
                ProcessedWebhookEvent.event_id == event_id,
                ProcessedWebhookEvent.source == source,
            )
        ).first() is not None

    def mark_processed(self, event_id: str, event_type: str, source: str, now: datetime) -> None:
        self.session.add(ProcessedWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            source=source,
            processed_at=now,
        ))
        self.session.flush()

    def cleanup(self, older_than: datetime) -> int:
        result = self.session.execute(
            delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < older_than)
        )
        return result.rowcount
