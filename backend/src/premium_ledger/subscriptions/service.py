"""User-initiated subscription changes."""

from typing import Any

from premium_ledger.clock import Clock, SystemClock
from premium_ledger.logging_config import get_logger
from premium_ledger.payments.gateway import GatewayError
from premium_ledger.storage.db import Database, db
from premium_ledger.storage.models import Account
from premium_ledger.storage.repo import AccountRepository
from premium_ledger.subscriptions.status import entitlement_end, is_premium_active

logger = get_logger(__name__)


class SubscriptionStateError(Exception):
    """Raised when a cancel or reactivate request does not fit the account's state."""


class SubscriptionService:
    """Cancel, reactivate and inspect an account's premium subscription.

    Cancellation never shortens the paid period: ``premium_end`` is left
    alone and the entitlement lapses on its own.
    """

    def __init__(self, gateway, database: Database | None = None, clock: Clock | None = None):
        self.gateway = gateway
        self.db = database or db
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def _schedule_at_gateway(self, account: Account, cancel: bool) -> None:
        if not account.gateway_subscription_ref:
            return
        try:
            self.gateway.set_cancel_at_period_end(account.gateway_subscription_ref, cancel)
        except GatewayError as e:
            self.logger.warning(
                "gateway_subscription_update_failed",
                account_id=account.id,
                subscription=account.gateway_subscription_ref,
                cancel=cancel,
                error=str(e),
            )

    def cancel(self, account_id: int) -> dict[str, Any]:
        """Cancel at the end of the paid period.

        Args:
            account_id: Account to cancel

        Returns:
            Subscription details after the change

        Raises:
            AccountNotFoundError: If the account does not exist
            SubscriptionStateError: If there is no active subscription
        """
        now = self.clock.now()
        with self.db.session() as session:
            account = AccountRepository(session).require(account_id, for_update=True)
            if not is_premium_active(account, now):
                raise SubscriptionStateError("No active subscription to cancel")
            if account.premium_cancelled:
                return self._details(account, now)

            self._schedule_at_gateway(account, cancel=True)
            account.premium_cancelled = True
            account.updated_at = now

            self.logger.info(
                "premium_cancelled",
                account_id=account.id,
                source="user",
                premium_end=account.premium_end.isoformat() if account.premium_end else None,
            )
            return self._details(account, now)

    def reactivate(self, account_id: int) -> dict[str, Any]:
        """Undo a pending cancellation while the paid period is still running.

        Raises:
            AccountNotFoundError: If the account does not exist
            SubscriptionStateError: If the subscription is not active and cancelled
        """
        now = self.clock.now()
        with self.db.session() as session:
            account = AccountRepository(session).require(account_id, for_update=True)
            if not is_premium_active(account, now):
                raise SubscriptionStateError("Subscription has already ended")
            if not account.premium_cancelled:
                raise SubscriptionStateError("Subscription is not cancelled")

            self._schedule_at_gateway(account, cancel=False)
            account.premium_cancelled = False
            account.updated_at = now

            self.logger.info("premium_reactivated", account_id=account.id)
            return self._details(account, now)

    def details(self, account_id: int) -> dict[str, Any]:
        with self.db.session() as session:
            account = AccountRepository(session).require(account_id)
            return self._details(account, self.clock.now())

    @staticmethod
    def _details(account: Account, now) -> dict[str, Any]:
        return {
            "account_id": account.id,
            "active": is_premium_active(account, now),
            "plan": account.premium_plan,
            "start": account.premium_start,
            "end": entitlement_end(account),
            "cancelled": account.premium_cancelled,
            "subscription_ref": account.gateway_subscription_ref,
        }
