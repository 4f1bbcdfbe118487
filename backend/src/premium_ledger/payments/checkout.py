"""Checkout initiation for packages, subscriptions and upgrades."""

from decimal import Decimal

from premium_ledger.clock import Clock, SystemClock
from premium_ledger.logging_config import get_logger
from premium_ledger.payments.catalog import (
    LETTER_CREDITS,
    Package,
    PurchaseValidationError,
    expected_price,
    parse_price,
    validate_package,
)
from premium_ledger.payments.gateway import CheckoutSession, GatewayError
from premium_ledger.settings import settings
from premium_ledger.storage.db import Database, db
from premium_ledger.storage.models import Account, ItemType, TransactionStatus, TransactionType
from premium_ledger.storage.repo import AccountRepository, TransactionLogRepository
from premium_ledger.subscriptions.plans import PlanType, is_upgrade, parse_plan
from premium_ledger.subscriptions.status import is_premium_active

logger = get_logger(__name__)

PLAN_NAMES = {
    PlanType.MONTHLY: "Monthly Premium",
    PlanType.HALF_YEAR: "6-Month Premium",
    PlanType.YEARLY: "Yearly Premium",
}


class InvalidUpgradeError(Exception):
    """Raised when an upgrade checkout does not move to a higher plan."""


def _plan_price_id(plan: PlanType) -> str | None:
    return {
        PlanType.MONTHLY: settings.stripe_price_monthly_sub,
        PlanType.HALF_YEAR: settings.stripe_price_half_year_sub,
        PlanType.YEARLY: settings.stripe_price_yearly_sub,
    }[plan]


class CheckoutService:
    """Creates gateway checkout sessions and their transaction log rows."""

    def __init__(self, gateway, database: Database | None = None, clock: Clock | None = None):
        self.gateway = gateway
        self.db = database or db
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def _urls(self, cancel_path: str) -> tuple[str, str]:
        base = settings.public_base_url.rstrip("/")
        return f"{base}/payment-success?session_id={{CHECKOUT_SESSION_ID}}", f"{base}{cancel_path}"

    def create_one_time_checkout(
        self,
        account_id: int,
        package_type: str,
        amount: int,
        price: Decimal | float | str,
        *,
        price_type: str = "regular",
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> CheckoutSession:
        """Start a checkout for a coin or letter-credit package.

        Args:
            account_id: Buyer
            package_type: Catalog package identifier
            amount: Quantity the client displayed
            price: Price the client displayed
            price_type: ``regular`` or ``discount``
            ip: Requester IP
            user_agent: Requester user agent

        Returns:
            The created checkout session

        Raises:
            AccountNotFoundError: If the account does not exist
            PurchaseValidationError: If the request does not match the catalog
            GatewayError: If no price is configured or the gateway call fails
        """
        discounted = price_type == "discount"
        now = self.clock.now()
        violation: PurchaseValidationError | None = None

        with self.db.session() as session:
            account = AccountRepository(session).require(account_id)
            try:
                package = validate_package(package_type, amount, price, discounted=discounted)
                if discounted and not is_premium_active(account, now):
                    raise PurchaseValidationError(
                        "Non-premium account attempted to use discount pricing",
                        "premium_discount_abuse",
                    )
            except PurchaseValidationError as e:
                violation = e
                TransactionLogRepository(session).create(
                    account_id=account.id,
                    transaction_type=TransactionType.PURCHASE.value,
                    package_type=package_type,
                    amount=amount,
                    price=parse_price(price),
                    account_ip=ip,
                    user_agent=user_agent,
                    status=TransactionStatus.SECURITY_VIOLATION.value,
                    failure_reason=e.reason,
                    metadata_json={"security_violation_type": e.violation_type, "price_type": price_type},
                    created_at=now,
                    updated_at=now,
                )
                self.logger.warning(
                    "purchase_security_violation",
                    account_id=account.id,
                    package=package_type,
                    violation_type=e.violation_type,
                    ip=ip,
                )
            customer_ref = account.gateway_customer_ref
            email = account.email

        if violation is not None:
            raise violation

        price_id = self._package_price_id(package, discounted)
        metadata = {
            "accountId": str(account_id),
            "itemType": package.item_type,
            "packageType": package.package_type,
            "amount": str(package.amount),
            "price": str(expected_price(package, discounted)),
            "priceType": price_type,
        }
        success_url, cancel_url = self._urls("/coins")
        checkout = self.gateway.create_checkout_session(
            mode="payment",
            price_id=price_id,
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            customer=customer_ref,
            customer_email=email,
        )

        with self.db.session() as session:
            TransactionLogRepository(session).create(
                account_id=account_id,
                transaction_type=TransactionType.PURCHASE.value,
                item_type=package.item_type,
                package_type=package.package_type,
                amount=package.amount,
                price=expected_price(package, discounted),
                gateway_session_ref=checkout.id,
                account_ip=ip,
                user_agent=user_agent,
                status=TransactionStatus.INITIATED.value,
                metadata_json={"price_type": price_type},
                created_at=now,
                updated_at=now,
            )

        self.logger.info(
            "purchase_checkout_created",
            account_id=account_id,
            package=package.package_type,
            session_id=checkout.id,
        )
        return checkout

    def _package_price_id(self, package: Package, discounted: bool) -> str:
        price_id = package.stripe_price_id
        if discounted and package.package_type == LETTER_CREDITS:
            price_id = settings.stripe_price_letter_credits_discount
        if not price_id:
            raise GatewayError(f"No Stripe price configured for package {package.package_type}")
        return price_id

    def create_subscription_checkout(
        self,
        account_id: int,
        plan: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> CheckoutSession:
        """Start a checkout for a new premium subscription.

        Raises:
            ValueError: If the plan is unknown
            AccountNotFoundError: If the account does not exist
            GatewayError: If no price is configured or the gateway call fails
        """
        plan_type = parse_plan(plan)
        if plan_type is None:
            raise ValueError(f"Unknown plan: {plan}")

        with self.db.session() as session:
            account = AccountRepository(session).require(account_id)
            customer_ref, email = account.gateway_customer_ref, account.email

        return self._subscription_session(
            account_id,
            plan_type,
            upgrade_from=None,
            customer_ref=customer_ref,
            email=email,
            ip=ip,
            user_agent=user_agent,
        )

    def create_upgrade_checkout(
        self,
        account_id: int,
        target_plan: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> CheckoutSession:
        """Start a checkout that moves an active subscriber to a higher plan.

        Raises:
            InvalidUpgradeError: If there is no active plan or the target is not higher
            AccountNotFoundError: If the account does not exist
            GatewayError: If no price is configured or the gateway call fails
        """
        plan_type = parse_plan(target_plan)
        if plan_type is None:
            raise InvalidUpgradeError(f"Unknown plan: {target_plan}")

        with self.db.session() as session:
            account = AccountRepository(session).require(account_id)
            self._check_upgrade(account, plan_type)
            current_plan = account.premium_plan
            customer_ref, email = account.gateway_customer_ref, account.email

        return self._subscription_session(
            account_id,
            plan_type,
            upgrade_from=current_plan,
            customer_ref=customer_ref,
            email=email,
            ip=ip,
            user_agent=user_agent,
        )

    def _check_upgrade(self, account: Account, target: PlanType) -> None:
        if not is_premium_active(account, self.clock.now()):
            raise InvalidUpgradeError("No active subscription to upgrade")
        if not is_upgrade(account.premium_plan, target):
            raise InvalidUpgradeError(
                f"Cannot change plan from {account.premium_plan} to {target.value}: not an upgrade"
            )

    def _subscription_session(
        self,
        account_id: int,
        plan: PlanType,
        *,
        upgrade_from: str | None,
        customer_ref: str | None,
        email: str | None,
        ip: str | None,
        user_agent: str | None,
    ) -> CheckoutSession:
        price_id = _plan_price_id(plan)
        if not price_id:
            raise GatewayError(f"No Stripe price configured for plan {plan.value}")

        upgrading = upgrade_from is not None
        metadata = {
            "accountId": str(account_id),
            "planType": plan.value,
            "planName": PLAN_NAMES[plan],
            "isUpgrade": "true" if upgrading else "false",
        }
        if upgrading:
            metadata["oldPlan"] = upgrade_from

        success_url, cancel_url = self._urls("/premium")
        checkout = self.gateway.create_checkout_session(
            mode="subscription",
            price_id=price_id,
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            customer=customer_ref,
            customer_email=email,
        )

        now = self.clock.now()
        transaction_type = TransactionType.UPGRADE if upgrading else TransactionType.SUBSCRIPTION
        item_type = ItemType.UPGRADE if upgrading else ItemType.SUBSCRIPTION
        with self.db.session() as session:
            TransactionLogRepository(session).create(
                account_id=account_id,
                transaction_type=transaction_type.value,
                item_type=item_type.value,
                package_type=plan.value,
                gateway_session_ref=checkout.id,
                gateway_customer_ref=customer_ref,
                account_ip=ip,
                user_agent=user_agent,
                status=TransactionStatus.INITIATED.value,
                metadata_json={"plan": plan.value, "old_plan": upgrade_from},
                created_at=now,
                updated_at=now,
            )

        self.logger.info(
            "subscription_checkout_created",
            account_id=account_id,
            plan=plan.value,
            upgrade=upgrading,
            session_id=checkout.id,
        )
        return checkout
