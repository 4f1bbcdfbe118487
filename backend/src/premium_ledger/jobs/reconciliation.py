"""Periodic account sweeps.

The sweeps only ever move ``premium_active`` from true to false or add
coins behind a per-month stamp, so they are safe to run alongside the
webhook handlers and to re-run after a partial failure.
"""

from datetime import timedelta

from premium_ledger.clock import Clock, SystemClock
from premium_ledger.logging_config import get_logger
from premium_ledger.settings import settings
from premium_ledger.storage.db import Database, db
from premium_ledger.storage.models import ItemType
from premium_ledger.storage.repo import AccountRepository, WebhookEventRepository
from premium_ledger.subscriptions.plans import PLAN_DURATIONS
from premium_ledger.subscriptions.status import is_premium_active

logger = get_logger(__name__)


def expire_cancelled_subscriptions(database: Database | None = None, clock: Clock | None = None) -> dict[str, int]:
    """Clear premium on cancelled accounts whose paid period has elapsed.

    Legacy records without an explicit end expire at start + plan duration;
    records with an end expire once it has passed.

    Returns:
        Number of accounts expired, per plan and for explicit end dates
    """
    database = database or db
    now = (clock or SystemClock()).now()
    expired: dict[str, int] = {}

    with database.session() as session:
        accounts = AccountRepository(session)
        for plan, duration in PLAN_DURATIONS.items():
            expired[plan.value] = accounts.expire_cancelled_legacy(plan.value, now - duration)
        expired["ended"] = accounts.expire_cancelled_ended(now)

    total = sum(expired.values())
    if total:
        logger.info("cancelled_subscriptions_expired", total=total, by_rule=expired)
    else:
        logger.debug("cancelled_subscriptions_none_expired")
    return expired


def distribute_monthly_coins(database: Database | None = None, clock: Clock | None = None) -> int:
    """Grant the monthly premium coin allowance, at most once per calendar month.

    Returns:
        Number of accounts credited
    """
    database = database or db
    now = (clock or SystemClock()).now()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    coins = settings.monthly_premium_coins
    credited = 0

    with database.session() as session:
        accounts = AccountRepository(session)
        for account in accounts.list_monthly_coin_candidates(now):
            if not is_premium_active(account, now):
                continue
            if not accounts.claim_monthly_coins(account.id, month_start, now):
                continue
            accounts.increment_balance(account.id, ItemType.COINS.value, coins)
            credited += 1

    logger.info("monthly_coins_distributed", accounts=credited, coins=coins)
    return credited


def prune_processed_events(
    database: Database | None = None,
    clock: Clock | None = None,
    days: int | None = None,
) -> int:
    """Forget webhook event ids processed more than ``days`` ago.

    Defaults to ``settings.processed_event_retention_days``.

    Returns:
        Number of event ids deleted
    """
    database = database or db
    days = days or settings.processed_event_retention_days
    cutoff = (clock or SystemClock()).now() - timedelta(days=days)
    with database.session() as session:
        deleted = WebhookEventRepository(session).cleanup(cutoff)

    logger.info("processed_webhook_events_pruned", deleted=deleted, older_than_days=days)
    return deleted
