import json
from datetime import datetime, timedelta
from itertools import count

import pytest

from premium_ledger.clock import FixedClock
from premium_ledger.payments.gateway import CheckoutSession, GatewayError
from premium_ledger.storage.db import Database
from premium_ledger.storage.repo import AccountRepository

NOW = datetime(2026, 3, 15, 12, 0, 0)


class FakeGateway:
    """Records gateway calls and serves canned lookups."""

    def __init__(self):
        self.calls = []
        self.webhook_secret = "whsec_test"
        self.invoices = {}
        self.customer_emails = {}
        self.period_ends = {}
        self.fail_cancel = False
        self._session_ids = count(1)

    def verify_webhook_signature(self, payload, sig_header):
        if sig_header != "valid":
            raise ValueError("Invalid webhook signature")
        return json.loads(payload)

    def create_checkout_session(self, *, mode, price_id, metadata, success_url, cancel_url,
                                customer=None, customer_email=None):
        session_id = f"cs_test_{next(self._session_ids)}"
        self.calls.append(("create_checkout_session", {
            "mode": mode,
            "price_id": price_id,
            "metadata": metadata,
            "customer": customer,
            "customer_email": customer_email,
        }))
        return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}", customer=customer)

    def cancel_subscription(self, subscription_id):
        self.calls.append(("cancel_subscription", subscription_id))
        if self.fail_cancel:
            raise GatewayError(f"Failed to cancel subscription {subscription_id}")

    def set_cancel_at_period_end(self, subscription_id, cancel):
        self.calls.append(("set_cancel_at_period_end", subscription_id, cancel))
        if self.fail_cancel:
            raise GatewayError(f"Failed to update subscription {subscription_id}")
        return None

    def retrieve_subscription_period_end(self, subscription_id):
        self.calls.append(("retrieve_subscription_period_end", subscription_id))
        return self.period_ends.get(subscription_id)

    def retrieve_customer_email(self, customer_id):
        self.calls.append(("retrieve_customer_email", customer_id))
        return self.customer_emails.get(customer_id)

    def retrieve_invoice(self, invoice_id):
        self.calls.append(("retrieve_invoice", invoice_id))
        return self.invoices[invoice_id]

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def database(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'ledger.db'}")
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_account(database):
    """Create an account; registered ten days before NOW unless given."""
    emails = count(1)

    def _make(**fields):
        fields.setdefault("email", f"user{next(emails)}@example.com")
        fields.setdefault("created_at", NOW - timedelta(days=10))
        with database.session() as session:
            return AccountRepository(session).create(**fields)

    return _make


@pytest.fixture
def load_account(database):
    """Fresh read of an account from the database."""

    def _load(account_id):
        with database.session() as session:
            return AccountRepository(session).get(account_id)

    return _load
