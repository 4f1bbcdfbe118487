"""Webhook reconciler.

Applies decoded gateway events to local account state. Each handler checks
persisted state before writing so that redelivered events are no-ops, and
each money-bearing change happens inside one database transaction.
Commissions are recorded afterwards in their own unit of work.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from premium_ledger.clock import Clock, SystemClock
from premium_ledger.logging_config import get_logger
from premium_ledger.payments.catalog import PurchaseValidationError, validate_package
from premium_ledger.payments.events import (
    CheckoutSessionCompleted,
    CheckoutSessionObject,
    GatewayEvent,
    InvoiceObject,
    InvoicePaymentFailed,
    InvoicePaymentPaid,
    InvoicePaymentSucceeded,
    MalformedEventError,
    SubscriptionDeleted,
    UnhandledEvent,
)
from premium_ledger.payments.gateway import GatewayError, from_unix
from premium_ledger.referral.commission import CommissionCalculator
from premium_ledger.storage.db import Database, db
from premium_ledger.storage.models import (
    Account,
    ItemType,
    TransactionLog,
    TransactionStatus,
    TransactionType,
)
from premium_ledger.storage.repo import AccountRepository, TransactionLogRepository
from premium_ledger.subscriptions.plans import (
    PlanType,
    is_upgrade,
    parse_plan,
    plan_duration,
    plan_for_period,
)
from premium_ledger.subscriptions.status import entitlement_end, is_premium_active

logger = get_logger(__name__)

RENEWAL_FALLBACK = timedelta(days=30)
SECOND_MONTH_DAYS = 30
# Invoice created by the subscription's own checkout; already commissioned there
FIRST_INVOICE_REASON = "subscription_create"


@dataclass
class CommissionRequest:
    """Commission to record once the fulfillment transaction has committed."""
    purchaser_id: int
    amount: Decimal
    is_subscription: bool
    is_second_month: bool
    external_transaction_id: str | None
    purchaser_ip: str | None = None
    user_agent: str | None = None
    occurred_at: datetime | None = None


def is_second_month(premium_start: datetime | None, paid_at: datetime) -> bool:
    """Whether a payment falls in the subscription's second billing cycle.

    Months are approximated as 30 days, so payments near a calendar month
    boundary can be misclassified.
    """
    if premium_start is None:
        return False
    months = (paid_at - premium_start).total_seconds() / timedelta(days=SECOND_MONTH_DAYS).total_seconds()
    return 1 <= months < 2


class WebhookReconciler:
    """Dispatches decoded gateway events to their handlers."""

    def __init__(
        self,
        gateway: Any,
        database: Database | None = None,
        clock: Clock | None = None,
        commissions: CommissionCalculator | None = None,
    ):
        self.gateway = gateway
        self.db = database or db
        self.clock = clock or SystemClock()
        self.commissions = commissions or CommissionCalculator(self.db, self.clock)
        self.logger = get_logger(__name__)
        self.handlers: dict[type[GatewayEvent], Callable[[Any], None]] = {
            CheckoutSessionCompleted: self.handle_checkout_completed,
            InvoicePaymentSucceeded: self.handle_payment_succeeded,
            InvoicePaymentPaid: self.handle_invoice_payment_paid,
            SubscriptionDeleted: self.handle_subscription_deleted,
            InvoicePaymentFailed: self.handle_payment_failed,
            UnhandledEvent: self.handle_unhandled,
        }

    def dispatch(self, event: GatewayEvent) -> None:
        """Apply one decoded event."""
        handler = self.handlers.get(type(event), self.handle_unhandled)
        handler(event)

    # ------------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------------

    def handle_checkout_completed(self, event: CheckoutSessionCompleted) -> None:
        checkout = event.data.object
        try:
            with self.db.session() as session:
                if checkout.metadata.is_one_time:
                    request = self._fulfill_one_time(session, checkout)
                else:
                    request = self._activate_subscription(session, checkout)
        except IntegrityError:
            # A concurrent delivery created the log row first
            self.logger.info("checkout_replay_ignored", session_id=checkout.id)
            return

        if request is not None:
            self._record_commission(request)

    def _checkout_log(
        self,
        session: Session,
        checkout: CheckoutSessionObject,
        account: Account,
        transaction_type: TransactionType,
        item_type: str | None,
    ) -> TransactionLog | None:
        """Find or create the log row for a checkout; None if already terminal."""
        logs = TransactionLogRepository(session)
        log = logs.get_by_session_ref(checkout.id, for_update=True)
        if log is not None and log.is_terminal:
            self.logger.info("checkout_already_processed", session_id=checkout.id, status=log.status)
            return None

        meta = checkout.metadata
        if log is None:
            log = logs.create(
                account_id=account.id,
                transaction_type=transaction_type.value,
                item_type=item_type,
                package_type=meta.package_type,
                amount=meta.amount,
                price=meta.price,
                gateway_session_ref=checkout.id,
                gateway_customer_ref=checkout.customer,
                status=TransactionStatus.PROCESSING.value,
                created_at=self.clock.now(),
                updated_at=self.clock.now(),
            )
        else:
            log.status = TransactionStatus.PROCESSING.value
            log.gateway_customer_ref = checkout.customer or log.gateway_customer_ref
        return log

    def _fulfill_one_time(self, session: Session, checkout: CheckoutSessionObject) -> CommissionRequest | None:
        meta = checkout.metadata
        now = self.clock.now()
        accounts = AccountRepository(session)
        logs = TransactionLogRepository(session)

        account = accounts.get_for_update(meta.account_id)
        if account is None:
            self.logger.warning("webhook_account_unresolved", session_id=checkout.id, account_id=meta.account_id)
            return None

        log = self._checkout_log(session, checkout, account, TransactionType.PURCHASE, meta.item_type)
        if log is None:
            return None

        discounted = meta.price_type == "discount"
        try:
            package = validate_package(
                meta.package_type,
                meta.amount,
                meta.price,
                discounted=discounted,
                item_type=meta.item_type,
            )
            if discounted and not is_premium_active(account, now):
                raise PurchaseValidationError(
                    "Non-premium account attempted to use discount pricing",
                    "premium_discount_abuse",
                )
            if checkout.amount_total is not None and Decimal(checkout.amount_total) != meta.price * 100:
                raise PurchaseValidationError(
                    f"Charged total {checkout.amount_total} does not match price {meta.price}",
                    "charged_amount_mismatch",
                )
        except PurchaseValidationError as e:
            logs.finalize(
                log,
                TransactionStatus.SECURITY_VIOLATION,
                now,
                failure_reason=e.reason,
                metadata={"security_violation_type": e.violation_type, "price_type": meta.price_type},
            )
            self.logger.warning(
                "purchase_security_violation",
                account_id=account.id,
                session_id=checkout.id,
                violation_type=e.violation_type,
                reason=e.reason,
            )
            return None

        accounts.increment_balance(account.id, package.item_type, package.amount)
        logs.finalize(
            log,
            TransactionStatus.COMPLETED,
            now,
            metadata={"items_added": f"{package.amount} {package.item_type}"},
        )
        self.logger.info(
            "purchase_fulfilled",
            account_id=account.id,
            session_id=checkout.id,
            package=package.package_type,
            amount=package.amount,
        )

        return CommissionRequest(
            purchaser_id=account.id,
            amount=meta.price,
            is_subscription=False,
            is_second_month=False,
            external_transaction_id=checkout.id,
            purchaser_ip=log.account_ip,
            user_agent=log.user_agent,
            occurred_at=now,
        )

    def _activate_subscription(self, session: Session, checkout: CheckoutSessionObject) -> CommissionRequest | None:
        meta = checkout.metadata
        now = self.clock.now()
        accounts = AccountRepository(session)
        logs = TransactionLogRepository(session)

        account = accounts.get_for_update(meta.account_id)
        if account is None:
            self.logger.warning("webhook_account_unresolved", session_id=checkout.id, account_id=meta.account_id)
            return None

        transaction_type = TransactionType.UPGRADE if meta.is_upgrade else TransactionType.SUBSCRIPTION
        item_type = ItemType.UPGRADE if meta.is_upgrade else ItemType.SUBSCRIPTION
        log = self._checkout_log(session, checkout, account, transaction_type, item_type.value)
        if log is None:
            return None

        plan = parse_plan(meta.plan_type)
        if plan is None:
            self.logger.warning("subscription_plan_unknown", session_id=checkout.id, plan=meta.plan_type)
            plan = PlanType.MONTHLY

        start = now
        if meta.is_upgrade:
            if not is_upgrade(account.premium_plan, plan):
                self.logger.warning(
                    "upgrade_not_higher_tier",
                    account_id=account.id,
                    current_plan=account.premium_plan,
                    target_plan=plan.value,
                )
            old_ref = account.gateway_subscription_ref
            if old_ref and old_ref != checkout.subscription:
                try:
                    self.gateway.cancel_subscription(old_ref)
                    self.logger.info("old_subscription_cancelled", account_id=account.id, subscription=old_ref)
                except GatewayError as e:
                    self.logger.warning(
                        "old_subscription_cancel_failed",
                        account_id=account.id,
                        subscription=old_ref,
                        error=str(e),
                    )
            # Unused paid time carries over to the new plan
            current_end = entitlement_end(account)
            if is_premium_active(account, now) and current_end and current_end > now:
                start = current_end

        account.premium_active = True
        account.premium_plan = plan.value
        account.premium_start = now
        account.premium_end = start + plan_duration(plan)
        account.premium_cancelled = False
        account.gateway_customer_ref = checkout.customer or account.gateway_customer_ref
        account.gateway_subscription_ref = checkout.subscription or account.gateway_subscription_ref
        account.updated_at = now

        paid = Decimal(checkout.amount_total or 0) / 100
        log.price = paid
        logs.finalize(log, TransactionStatus.COMPLETED, now, metadata={"plan": plan.value})

        self.logger.info(
            "premium_activated",
            account_id=account.id,
            plan=plan.value,
            upgrade=meta.is_upgrade,
            premium_end=account.premium_end.isoformat(),
        )

        return CommissionRequest(
            purchaser_id=account.id,
            amount=paid,
            is_subscription=True,
            is_second_month=False,
            external_transaction_id=checkout.id,
            purchaser_ip=log.account_ip,
            user_agent=log.user_agent,
            occurred_at=now,
        )

    # ------------------------------------------------------------------
    # Recurring payments
    # ------------------------------------------------------------------

    def handle_payment_succeeded(self, event: InvoicePaymentSucceeded) -> None:
        self.apply_invoice(event.data.object)

    def handle_invoice_payment_paid(self, event: InvoicePaymentPaid) -> None:
        """Resolve the invoice behind an ``invoice_payment.paid`` event."""
        obj = event.data.object
        if obj.get("object") == "invoice" or "amount_paid" in obj:
            payload = obj
        else:
            invoice_id = obj.get("invoice")
            if not invoice_id:
                self.logger.info("invoice_payment_without_invoice", event_id=event.id)
                return
            payload = self.gateway.retrieve_invoice(invoice_id)

        try:
            invoice = InvoiceObject.model_validate(payload)
        except ValidationError as e:
            raise MalformedEventError(f"Invalid invoice payload: {e.error_count()} error(s)") from e
        self.apply_invoice(invoice)

    def _resolve_account(
        self,
        accounts: AccountRepository,
        subscription_ref: str | None,
        customer_ref: str | None,
        customer_email: str | None = None,
    ) -> Account | None:
        """Find the account behind a gateway subscription or customer.

        Falls back to the payer's email, backfilling the customer reference
        so later events resolve directly.
        """
        account = None
        if subscription_ref:
            account = accounts.get_by_subscription_ref(subscription_ref)
        if account is None and customer_ref:
            account = accounts.get_by_customer_ref(customer_ref)
        if account is not None or not customer_ref:
            return account

        email = customer_email or self.gateway.retrieve_customer_email(customer_ref)
        if not email:
            return None
        account = accounts.get_by_email(email)
        if account is not None:
            account.gateway_customer_ref = customer_ref
            self.logger.info("customer_ref_backfilled", account_id=account.id, customer=customer_ref)
        return account

    def _period_end(self, invoice: InvoiceObject, subscription_ref: str, paid_at: datetime) -> datetime:
        end = from_unix(invoice.period_end_unix())
        if end is None:
            end = self.gateway.retrieve_subscription_period_end(subscription_ref)
        return end or paid_at + RENEWAL_FALLBACK

    def apply_invoice(self, invoice: InvoiceObject) -> None:
        """Extend premium for a paid subscription invoice."""
        subscription_ref = invoice.subscription_ref()
        if not subscription_ref:
            self.logger.info("invoice_without_subscription", invoice_id=invoice.id)
            return

        paid_at = invoice.created_at or self.clock.now()
        with self.db.session() as session:
            accounts = AccountRepository(session)
            account = self._resolve_account(
                accounts, subscription_ref, invoice.customer, invoice.customer_email
            )
            if account is None:
                self.logger.info(
                    "webhook_account_unresolved",
                    invoice_id=invoice.id,
                    subscription=subscription_ref,
                    customer=invoice.customer,
                )
                return

            second_month = is_second_month(account.premium_start, paid_at)
            period_end = self._period_end(invoice, subscription_ref, paid_at)

            account.premium_active = True
            if account.premium_start is None:
                account.premium_start = paid_at
            if parse_plan(account.premium_plan) is None:
                account.premium_plan = plan_for_period(period_end - paid_at).value
            if account.premium_end is None or period_end > account.premium_end:
                account.premium_end = period_end
            if not account.gateway_subscription_ref:
                account.gateway_subscription_ref = subscription_ref
            account.updated_at = self.clock.now()
            account_id = account.id
            premium_end = account.premium_end

        self.logger.info(
            "premium_renewed",
            account_id=account_id,
            invoice_id=invoice.id,
            premium_end=premium_end.isoformat(),
            second_month=second_month,
        )

        if invoice.billing_reason == FIRST_INVOICE_REASON:
            return

        self._record_commission(CommissionRequest(
            purchaser_id=account_id,
            amount=invoice.amount_paid_decimal,
            is_subscription=True,
            is_second_month=second_month,
            external_transaction_id=invoice.id,
            occurred_at=paid_at,
        ))

    # ------------------------------------------------------------------
    # Failures and cancellations
    # ------------------------------------------------------------------

    def handle_payment_failed(self, event: InvoicePaymentFailed) -> None:
        """Log only; entitlement lapses at ``premium_end`` if the gateway gives up."""
        invoice = event.data.object
        self.logger.warning(
            "subscription_payment_failed",
            invoice_id=invoice.id,
            subscription=invoice.subscription_ref(),
            customer=invoice.customer,
            amount_due=invoice.amount_due,
            attempt_count=invoice.attempt_count,
        )

    def handle_subscription_deleted(self, event: SubscriptionDeleted) -> None:
        subscription = event.data.object
        with self.db.session() as session:
            accounts = AccountRepository(session)
            account = None
            if subscription.id:
                account = accounts.get_by_subscription_ref(subscription.id)
            if account is None and subscription.customer:
                account = accounts.get_by_customer_ref(subscription.customer)
            if account is None:
                self.logger.info(
                    "webhook_account_unresolved",
                    subscription=subscription.id,
                    customer=subscription.customer,
                )
                return

            current = account.gateway_subscription_ref
            if subscription.id and current and current != subscription.id:
                # Superseded subscription, e.g. the one an upgrade replaced
                self.logger.info(
                    "stale_subscription_deletion_ignored",
                    account_id=account.id,
                    subscription=subscription.id,
                    current=current,
                )
                return

            account.premium_cancelled = True
            account.updated_at = self.clock.now()
            self.logger.info(
                "premium_cancelled",
                account_id=account.id,
                source="gateway",
                premium_end=account.premium_end.isoformat() if account.premium_end else None,
            )

    def handle_unhandled(self, event: GatewayEvent) -> None:
        self.logger.info("stripe_webhook_unhandled", event_type=event.type, event_id=event.id)

    def _record_commission(self, request: CommissionRequest) -> None:
        self.commissions.process(
            request.purchaser_id,
            request.amount,
            is_subscription=request.is_subscription,
            is_second_month=request.is_second_month,
            external_transaction_id=request.external_transaction_id,
            purchaser_ip=request.purchaser_ip,
            user_agent=request.user_agent,
            occurred_at=request.occurred_at,
        )
