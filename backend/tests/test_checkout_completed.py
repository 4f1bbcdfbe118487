from datetime import timedelta
from decimal import Decimal

import pytest

from factories import checkout_completed, package_metadata, plan_metadata
from premium_ledger.payments.events import parse_event
from premium_ledger.payments.reconciler import WebhookReconciler
from premium_ledger.referral.models import ReferralEarning
from premium_ledger.storage.models import TransactionLog, TransactionStatus
from premium_ledger.storage.repo import TransactionLogRepository


@pytest.fixture
def reconciler(gateway, database, clock):
    return WebhookReconciler(gateway, database=database, clock=clock)


def deliver(reconciler, payload):
    reconciler.dispatch(parse_event(payload))


def log_for(database, session_id) -> TransactionLog:
    with database.session() as session:
        return TransactionLogRepository(session).get_by_session_ref(session_id)


def all_earnings(database):
    with database.session() as session:
        return session.query(ReferralEarning).all()


def test_coin_package_is_credited(reconciler, database, make_account, load_account):
    account = make_account()

    deliver(reconciler, checkout_completed("cs_coins", package_metadata(account.id), amount_total=299))

    assert load_account(account.id).coin_balance == 250
    log = log_for(database, "cs_coins")
    assert log.status == TransactionStatus.COMPLETED.value
    assert log.completed_at is not None


def test_replayed_checkout_credits_once(reconciler, database, make_account, load_account):
    referrer = make_account()
    account = make_account(referred_by_id=referrer.id)
    payload = checkout_completed("cs_replay", package_metadata(account.id, package="mega", amount=3500, price="29.99"))

    deliver(reconciler, payload)
    deliver(reconciler, payload)

    assert load_account(account.id).coin_balance == 3500
    assert len(all_earnings(database)) == 1


def test_letter_credits_go_to_credit_balance(reconciler, make_account, load_account):
    account = make_account()
    metadata = package_metadata(account.id, package="letter-credits", item_type="credits", amount=1, price="2.99")

    deliver(reconciler, checkout_completed("cs_letters", metadata))

    reloaded = load_account(account.id)
    assert reloaded.letter_credit_balance == 1
    assert reloaded.coin_balance == 0


def test_tampered_price_is_a_security_violation(reconciler, database, make_account, load_account):
    referrer = make_account()
    account = make_account(referred_by_id=referrer.id)

    deliver(reconciler, checkout_completed("cs_cheap", package_metadata(account.id, price="0.01")))

    assert load_account(account.id).coin_balance == 0
    log = log_for(database, "cs_cheap")
    assert log.status == TransactionStatus.SECURITY_VIOLATION.value
    assert "Price mismatch" in log.failure_reason
    assert log.metadata_json["security_violation_type"] == "price_mismatch"
    assert all_earnings(database) == []


def test_wrong_amount_is_a_security_violation(reconciler, database, make_account, load_account):
    account = make_account()

    deliver(reconciler, checkout_completed("cs_more", package_metadata(account.id, amount=6000)))

    assert load_account(account.id).coin_balance == 0
    assert log_for(database, "cs_more").status == TransactionStatus.SECURITY_VIOLATION.value


def test_discount_requires_current_premium(reconciler, database, make_account, load_account, clock):
    account = make_account(
        premium_active=True,
        premium_plan="monthly",
        premium_start=clock.now() - timedelta(days=40),
        premium_end=clock.now() - timedelta(days=10),
    )
    metadata = package_metadata(
        account.id, package="letter-credits", item_type="credits", amount=1, price="1.99", price_type="discount"
    )

    deliver(reconciler, checkout_completed("cs_discount", metadata))

    assert load_account(account.id).letter_credit_balance == 0
    log = log_for(database, "cs_discount")
    assert log.status == TransactionStatus.SECURITY_VIOLATION.value
    assert log.metadata_json["security_violation_type"] == "premium_discount_abuse"


def test_discount_honoured_for_premium_account(reconciler, make_account, load_account, clock):
    account = make_account(
        premium_active=True,
        premium_plan="monthly",
        premium_start=clock.now() - timedelta(days=5),
        premium_end=clock.now() + timedelta(days=25),
    )
    metadata = package_metadata(
        account.id, package="letter-credits", item_type="credits", amount=1, price="1.99", price_type="discount"
    )

    deliver(reconciler, checkout_completed("cs_discount_ok", metadata))

    assert load_account(account.id).letter_credit_balance == 1


def test_unknown_account_is_ignored(reconciler, database):
    deliver(reconciler, checkout_completed("cs_ghost", package_metadata(999)))
    assert log_for(database, "cs_ghost") is None


def test_subscription_checkout_activates_premium(reconciler, database, make_account, load_account, clock):
    referrer = make_account()
    account = make_account(referred_by_id=referrer.id)

    deliver(reconciler, checkout_completed(
        "cs_sub", plan_metadata(account.id, "monthly"),
        customer="cus_A", subscription="sub_A", amount_total=699,
    ))

    reloaded = load_account(account.id)
    assert reloaded.premium_active is True
    assert reloaded.premium_cancelled is False
    assert reloaded.premium_plan == "monthly"
    assert reloaded.premium_start == clock.now()
    assert reloaded.premium_end == clock.now() + timedelta(days=30)
    assert reloaded.gateway_customer_ref == "cus_A"
    assert reloaded.gateway_subscription_ref == "sub_A"

    earnings = all_earnings(database)
    assert len(earnings) == 1
    assert earnings[0].amount == Decimal("0.3495")
    assert earnings[0].external_transaction_id == "cs_sub"


def test_replayed_subscription_checkout_is_noop(reconciler, make_account, load_account, clock):
    account = make_account()
    payload = checkout_completed("cs_sub2", plan_metadata(account.id, "monthly"), subscription="sub_B")

    deliver(reconciler, payload)
    clock.advance(days=3)
    deliver(reconciler, payload)

    assert load_account(account.id).premium_end == clock.now() - timedelta(days=3) + timedelta(days=30)


def test_upgrade_cancels_old_subscription_and_keeps_paid_time(
    reconciler, gateway, make_account, load_account, clock
):
    old_end = clock.now() + timedelta(days=20)
    account = make_account(
        premium_active=True,
        premium_plan="monthly",
        premium_start=clock.now() - timedelta(days=10),
        premium_end=old_end,
        gateway_customer_ref="cus_U",
        gateway_subscription_ref="sub_old",
    )

    deliver(reconciler, checkout_completed(
        "cs_up", plan_metadata(account.id, "yearly", upgrade=True),
        customer="cus_U", subscription="sub_new", amount_total=5999,
    ))

    reloaded = load_account(account.id)
    assert gateway.called("cancel_subscription") == [("cancel_subscription", "sub_old")]
    assert reloaded.premium_plan == "yearly"
    assert reloaded.gateway_subscription_ref == "sub_new"
    assert reloaded.premium_end >= old_end
    assert reloaded.premium_end == old_end + timedelta(days=365)


def test_upgrade_keeps_paid_time_of_record_without_end(reconciler, make_account, load_account, clock):
    account = make_account(
        premium_active=True,
        premium_plan="monthly",
        premium_start=clock.now() - timedelta(days=10),
        premium_end=None,
        gateway_subscription_ref="sub_legacy",
    )

    deliver(reconciler, checkout_completed(
        "cs_up_legacy", plan_metadata(account.id, "yearly", upgrade=True), subscription="sub_new",
    ))

    assert load_account(account.id).premium_end == clock.now() + timedelta(days=20) + timedelta(days=365)


def test_upgrade_survives_gateway_cancel_failure(reconciler, gateway, make_account, load_account, clock):
    gateway.fail_cancel = True
    account = make_account(
        premium_active=True,
        premium_plan="monthly",
        premium_start=clock.now() - timedelta(days=1),
        premium_end=clock.now() + timedelta(days=29),
        gateway_subscription_ref="sub_old",
    )

    deliver(reconciler, checkout_completed(
        "cs_up2", plan_metadata(account.id, "half-year", upgrade=True), subscription="sub_new",
    ))

    reloaded = load_account(account.id)
    assert reloaded.premium_plan == "half-year"
    assert reloaded.gateway_subscription_ref == "sub_new"
