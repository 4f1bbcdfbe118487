from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW
from factories import checkout_completed, invoice, invoice_succeeded, plan_metadata
from premium_ledger.payments.events import parse_event
from premium_ledger.payments.reconciler import WebhookReconciler, is_second_month
from premium_ledger.referral.models import ReferralEarning


@pytest.fixture
def reconciler(gateway, database, clock):
    return WebhookReconciler(gateway, database=database, clock=clock)


@pytest.fixture
def subscriber(make_account):
    """Monthly subscriber whose first period ends at NOW."""

    def _make(**fields):
        fields.setdefault("premium_active", True)
        fields.setdefault("premium_plan", "monthly")
        fields.setdefault("premium_start", NOW - timedelta(days=30))
        fields.setdefault("premium_end", NOW)
        fields.setdefault("gateway_customer_ref", "cus_1")
        fields.setdefault("gateway_subscription_ref", "sub_1")
        return make_account(**fields)

    return _make


def deliver(reconciler, payload):
    reconciler.dispatch(parse_event(payload))


def earnings(database):
    with database.session() as session:
        return session.query(ReferralEarning).order_by(ReferralEarning.id).all()


def test_renewal_extends_premium_and_pays_commission(reconciler, database, make_account, subscriber, load_account):
    referrer = make_account()
    account = subscriber(referred_by_id=referrer.id)

    deliver(reconciler, invoice_succeeded(invoice("in_renew", created=NOW, period_end=NOW + timedelta(days=30))))

    reloaded = load_account(account.id)
    assert reloaded.premium_active is True
    assert reloaded.premium_end == NOW + timedelta(days=30)
    rows = earnings(database)
    assert len(rows) == 1
    assert rows[0].referrer_id == referrer.id
    assert rows[0].amount == Decimal("0.3495")
    assert rows[0].external_transaction_id == "in_renew"


def test_replayed_invoice_is_idempotent(reconciler, database, make_account, subscriber, load_account):
    referrer = make_account()
    account = subscriber(referred_by_id=referrer.id)
    payload = invoice_succeeded(invoice("in_twice", created=NOW, period_end=NOW + timedelta(days=30)))

    deliver(reconciler, payload)
    deliver(reconciler, payload)

    assert load_account(account.id).premium_end == NOW + timedelta(days=30)
    assert len(earnings(database)) == 1


def test_older_invoice_never_shortens_premium(reconciler, subscriber, load_account):
    account = subscriber(premium_end=NOW + timedelta(days=60))

    deliver(reconciler, invoice_succeeded(invoice("in_old", created=NOW, period_end=NOW + timedelta(days=30))))

    assert load_account(account.id).premium_end == NOW + timedelta(days=60)


def test_subscription_ref_read_from_invoice_line(reconciler, subscriber, load_account):
    account = subscriber(gateway_customer_ref=None)

    deliver(reconciler, invoice_succeeded(invoice(
        "in_nested", subscription="sub_1", customer="cus_other",
        created=NOW, period_end=NOW + timedelta(days=30), nested=True,
    )))

    assert load_account(account.id).premium_end == NOW + timedelta(days=30)


def test_account_found_by_payer_email(reconciler, gateway, make_account, load_account):
    account = make_account(email="payer@example.com")
    gateway.customer_emails["cus_new"] = "payer@example.com"

    deliver(reconciler, invoice_succeeded(invoice(
        "in_email", subscription="sub_new", customer="cus_new",
        created=NOW, period_end=NOW + timedelta(days=30),
    )))

    reloaded = load_account(account.id)
    assert reloaded.premium_active is True
    assert reloaded.premium_start == NOW
    assert reloaded.premium_plan == "monthly"
    assert reloaded.gateway_customer_ref == "cus_new"
    assert reloaded.gateway_subscription_ref == "sub_new"


def test_yearly_invoice_sets_missing_plan(reconciler, gateway, make_account, load_account):
    account = make_account(email="annual@example.com")
    gateway.customer_emails["cus_year"] = "annual@example.com"

    deliver(reconciler, invoice_succeeded(invoice(
        "in_year", subscription="sub_year", customer="cus_year",
        amount_paid=5999, created=NOW, period_end=NOW + timedelta(days=365),
    )))

    reloaded = load_account(account.id)
    assert reloaded.premium_plan == "yearly"
    assert reloaded.premium_end == NOW + timedelta(days=365)


def test_unresolved_account_is_ignored(reconciler, database, gateway):
    deliver(reconciler, invoice_succeeded(invoice(
        "in_orphan", subscription="sub_x", customer="cus_x", created=NOW,
    )))

    assert gateway.called("retrieve_customer_email") == [("retrieve_customer_email", "cus_x")]
    assert earnings(database) == []


def test_invoice_without_subscription_is_noop(reconciler, gateway, subscriber, load_account):
    account = subscriber()

    deliver(reconciler, invoice_succeeded(invoice("in_oneoff", subscription=None, created=NOW)))

    assert load_account(account.id).premium_end == NOW
    assert gateway.calls == []


def test_period_end_from_gateway_when_invoice_has_none(reconciler, gateway, subscriber, load_account):
    account = subscriber()
    gateway.period_ends["sub_1"] = NOW + timedelta(days=31)

    deliver(reconciler, invoice_succeeded(invoice("in_noperiod", created=NOW)))

    assert load_account(account.id).premium_end == NOW + timedelta(days=31)


def test_period_end_falls_back_to_thirty_days(reconciler, subscriber, load_account):
    account = subscriber()

    deliver(reconciler, invoice_succeeded(invoice("in_fallback", created=NOW)))

    assert load_account(account.id).premium_end == NOW + timedelta(days=30)


def test_first_invoice_does_not_pay_commission_twice(reconciler, database, make_account, load_account):
    referrer = make_account()
    account = make_account(referred_by_id=referrer.id)

    deliver(reconciler, checkout_completed(
        "cs_first", plan_metadata(account.id), customer="cus_1", subscription="sub_1", amount_total=699,
    ))
    deliver(reconciler, invoice_succeeded(invoice(
        "in_first", created=NOW, period_end=NOW + timedelta(days=31), billing_reason="subscription_create",
    )))

    assert load_account(account.id).premium_end == NOW + timedelta(days=31)
    assert [row.external_transaction_id for row in earnings(database)] == ["cs_first"]


def test_offer_10_second_payment_earns_nothing(reconciler, database, make_account):
    referrer = make_account(referral_program="offer_10")
    account = make_account(referred_by_id=referrer.id)

    deliver(reconciler, checkout_completed(
        "cs_offer10", plan_metadata(account.id), customer="cus_1", subscription="sub_1", amount_total=699,
    ))
    second = NOW + timedelta(days=30)
    deliver(reconciler, invoice_succeeded(invoice(
        "in_offer10", created=second, period_end=second + timedelta(days=30),
    )))

    rows = earnings(database)
    assert len(rows) == 1
    assert rows[0].earning_type == "signup_bonus"
    assert rows[0].amount == Decimal("10")


def test_invoice_payment_paid_fetches_invoice(reconciler, gateway, subscriber, load_account):
    account = subscriber()
    gateway.invoices["in_fetched"] = invoice("in_fetched", created=NOW, period_end=NOW + timedelta(days=30))

    deliver(reconciler, {
        "id": "evt_inpay",
        "type": "invoice_payment.paid",
        "data": {"object": {"id": "inpay_1", "object": "invoice_payment", "invoice": "in_fetched"}},
    })

    assert gateway.called("retrieve_invoice") == [("retrieve_invoice", "in_fetched")]
    assert load_account(account.id).premium_end == NOW + timedelta(days=30)


def test_payment_failure_leaves_entitlement(reconciler, subscriber, load_account):
    account = subscriber(premium_end=NOW + timedelta(days=2))

    deliver(reconciler, {
        "id": "evt_failed",
        "type": "invoice.payment_failed",
        "data": {"object": {"id": "in_failed", "subscription": "sub_1", "customer": "cus_1",
                            "amount_due": 699, "attempt_count": 2}},
    })

    reloaded = load_account(account.id)
    assert reloaded.premium_active is True
    assert reloaded.premium_end == NOW + timedelta(days=2)


def test_second_month_window():
    start = NOW
    assert not is_second_month(None, NOW)
    assert not is_second_month(start, start + timedelta(days=29))
    assert is_second_month(start, start + timedelta(days=30))
    assert is_second_month(start, start + timedelta(days=59))
    assert not is_second_month(start, start + timedelta(days=60))
