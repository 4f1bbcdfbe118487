from datetime import timedelta

import pytest

from conftest import NOW
from premium_ledger.jobs.reconciliation import (
    distribute_monthly_coins,
    expire_cancelled_subscriptions,
    prune_processed_events,
)
from premium_ledger.payments.events import parse_event
from premium_ledger.payments.reconciler import WebhookReconciler
from premium_ledger.settings import settings
from premium_ledger.storage.repo import AccountNotFoundError, WebhookEventRepository
from premium_ledger.subscriptions.service import SubscriptionService, SubscriptionStateError


@pytest.fixture
def premium(make_account):
    def _make(**fields):
        fields.setdefault("premium_active", True)
        fields.setdefault("premium_plan", "monthly")
        fields.setdefault("premium_start", NOW - timedelta(days=10))
        fields.setdefault("premium_end", NOW + timedelta(days=20))
        fields.setdefault("gateway_customer_ref", "cus_1")
        fields.setdefault("gateway_subscription_ref", "sub_1")
        return make_account(**fields)

    return _make


@pytest.fixture
def service(gateway, database, clock):
    return SubscriptionService(gateway, database=database, clock=clock)


def subscription_deleted(subscription_id, customer="cus_1"):
    return parse_event({
        "id": f"evt_del_{subscription_id}",
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": subscription_id, "object": "subscription", "customer": customer}},
    })


def test_gateway_deletion_keeps_paid_period(gateway, database, clock, premium, load_account):
    account = premium()

    WebhookReconciler(gateway, database=database, clock=clock).dispatch(subscription_deleted("sub_1"))

    reloaded = load_account(account.id)
    assert reloaded.premium_cancelled is True
    assert reloaded.premium_active is True
    assert reloaded.premium_end == NOW + timedelta(days=20)


def test_deletion_of_replaced_subscription_is_ignored(gateway, database, clock, premium, load_account):
    account = premium(gateway_subscription_ref="sub_new")

    WebhookReconciler(gateway, database=database, clock=clock).dispatch(subscription_deleted("sub_old"))

    assert load_account(account.id).premium_cancelled is False


def test_deletion_resolves_by_customer(gateway, database, clock, premium, load_account):
    account = premium(gateway_subscription_ref=None, gateway_customer_ref="cus_9")

    WebhookReconciler(gateway, database=database, clock=clock).dispatch(
        subscription_deleted("sub_unknown", customer="cus_9")
    )

    assert load_account(account.id).premium_cancelled is True


def test_cancel_schedules_end_at_gateway(service, gateway, premium, load_account):
    account = premium()

    details = service.cancel(account.id)

    assert gateway.called("set_cancel_at_period_end") == [("set_cancel_at_period_end", "sub_1", True)]
    assert details["cancelled"] is True
    assert details["active"] is True
    assert details["end"] == NOW + timedelta(days=20)
    assert load_account(account.id).premium_cancelled is True


def test_cancel_survives_gateway_failure(service, gateway, premium, load_account):
    gateway.fail_cancel = True
    account = premium()

    service.cancel(account.id)

    assert load_account(account.id).premium_cancelled is True


def test_cancel_without_subscription(service, make_account):
    account = make_account()
    with pytest.raises(SubscriptionStateError):
        service.cancel(account.id)


def test_cancel_unknown_account(service):
    with pytest.raises(AccountNotFoundError):
        service.cancel(404)


def test_reactivate_undoes_cancellation(service, gateway, premium, load_account):
    account = premium(premium_cancelled=True)

    details = service.reactivate(account.id)

    assert details["cancelled"] is False
    assert gateway.called("set_cancel_at_period_end") == [("set_cancel_at_period_end", "sub_1", False)]
    assert load_account(account.id).premium_cancelled is False


def test_reactivate_requires_cancellation(service, premium):
    account = premium()
    with pytest.raises(SubscriptionStateError):
        service.reactivate(account.id)


def test_reactivate_after_end_is_refused(service, premium):
    account = premium(premium_cancelled=True, premium_end=NOW - timedelta(seconds=1))
    with pytest.raises(SubscriptionStateError):
        service.reactivate(account.id)


def test_details_derive_end_for_legacy_records(service, premium):
    account = premium(premium_plan="half-year", premium_end=None)

    details = service.details(account.id)

    assert details["end"] == NOW - timedelta(days=10) + timedelta(days=180)
    assert details["active"] is True


def test_expiry_waits_for_end_of_paid_period(database, clock, premium, load_account):
    account = premium(premium_cancelled=True)

    clock.set(NOW + timedelta(days=19))
    expire_cancelled_subscriptions(database, clock)
    assert load_account(account.id).premium_active is True

    clock.set(NOW + timedelta(days=20))
    result = expire_cancelled_subscriptions(database, clock)
    assert result["ended"] == 1
    assert load_account(account.id).premium_active is False


def test_expiry_ignores_renewing_subscriptions(database, clock, premium, load_account):
    account = premium(premium_end=NOW - timedelta(days=1))

    expire_cancelled_subscriptions(database, clock)

    assert load_account(account.id).premium_active is True


def test_expiry_of_legacy_records_uses_plan_duration(database, clock, premium, load_account):
    lapsed = premium(premium_cancelled=True, premium_end=None, premium_start=NOW - timedelta(days=31))
    running = premium(premium_cancelled=True, premium_end=None, premium_start=NOW - timedelta(days=29))
    yearly = premium(
        premium_cancelled=True, premium_end=None, premium_plan="yearly", premium_start=NOW - timedelta(days=100)
    )

    result = expire_cancelled_subscriptions(database, clock)

    assert result["monthly"] == 1
    assert result["yearly"] == 0
    assert load_account(lapsed.id).premium_active is False
    assert load_account(running.id).premium_active is True
    assert load_account(yearly.id).premium_active is True


def test_monthly_coins_once_per_month(database, clock, premium, make_account, load_account):
    member = premium(premium_end=NOW + timedelta(days=60))
    cancelled = premium(premium_cancelled=True)
    lapsed = premium(premium_end=NOW - timedelta(days=1))
    free = make_account()

    assert distribute_monthly_coins(database, clock) == 1
    assert distribute_monthly_coins(database, clock) == 0
    assert load_account(member.id).coin_balance == settings.monthly_premium_coins
    for other in (cancelled, lapsed, free):
        assert load_account(other.id).coin_balance == 0

    clock.set(NOW.replace(month=4, day=1, hour=0))
    assert distribute_monthly_coins(database, clock) == 1
    assert load_account(member.id).coin_balance == 2 * settings.monthly_premium_coins


def test_prune_forgets_old_webhook_events(database, clock):
    with database.session() as session:
        events = WebhookEventRepository(session)
        events.mark_processed("evt_old", "invoice.payment_succeeded", "stripe", NOW - timedelta(days=31))
        events.mark_processed("evt_recent", "invoice.payment_succeeded", "stripe", NOW - timedelta(days=2))

    assert prune_processed_events(database, clock, days=30) == 1

    with database.session() as session:
        events = WebhookEventRepository(session)
        assert not events.is_processed("evt_old", "stripe")
        assert events.is_processed("evt_recent", "stripe")
