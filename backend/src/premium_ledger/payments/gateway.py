"""Stripe gateway client.

Thin wrapper over the Stripe SDK so the reconciler and services depend on
a small surface that tests can replace with a fake.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import stripe
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from premium_ledger.logging_config import get_logger
from premium_ledger.settings import settings

logger = get_logger(__name__)


class GatewayError(Exception):
    """Raised when a call to the payment gateway fails."""


@dataclass
class CheckoutSession:
    """Gateway checkout session as seen by the checkout service."""
    id: str
    url: str | None
    customer: str | None = None


def from_unix(timestamp: int | float | None) -> datetime | None:
    """Gateway unix seconds -> naive UTC datetime."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


_retry_reads = retry(
    retry=retry_if_exception_type(stripe.APIConnectionError),
    stop=stop_after_attempt(max(settings.gateway_max_retries, 1)),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
    reraise=True,
)


class StripeGateway:
    """Stripe-backed payment gateway."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        if self.api_key:
            stripe.api_key = self.api_key

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def verify_webhook_signature(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify and parse a Stripe webhook event.

        Args:
            payload: Raw request body
            sig_header: Stripe-Signature header value

        Returns:
            Verified event as a plain dict

        Raises:
            ValueError: If the secret is missing or the signature is invalid
        """
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")

        try:
            stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except stripe.SignatureVerificationError:
            raise ValueError("Invalid webhook signature")
        return json.loads(payload)

    def create_checkout_session(
        self,
        *,
        mode: str,
        price_id: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        customer: str | None = None,
        customer_email: str | None = None,
    ) -> CheckoutSession:
        """Create a hosted checkout session for one price."""
        params: dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer:
            params["customer"] = customer
        elif customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise GatewayError(f"Checkout creation failed: {e}") from e

        logger.info("checkout_session_created", session_id=session.id, mode=mode)
        return CheckoutSession(id=session.id, url=session.url, customer=session.get("customer"))

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a subscription immediately."""
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to cancel subscription {subscription_id}: {e}") from e

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> datetime | None:
        """Schedule (or unschedule) cancellation at the end of the paid period.

        Returns:
            The current period end reported by the gateway, if any
        """
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to update subscription {subscription_id}: {e}") from e
        return from_unix(subscription.get("current_period_end"))

    @_retry_reads
    def _retrieve(self, resource: Any, object_id: str) -> Any:
        return resource.retrieve(object_id)

    def retrieve_subscription_period_end(self, subscription_id: str) -> datetime | None:
        try:
            subscription = self._retrieve(stripe.Subscription, subscription_id)
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to retrieve subscription {subscription_id}: {e}") from e
        return from_unix(subscription.get("current_period_end"))

    def retrieve_customer_email(self, customer_id: str) -> str | None:
        try:
            customer = self._retrieve(stripe.Customer, customer_id)
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to retrieve customer {customer_id}: {e}") from e
        return customer.get("email")

    def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        try:
            invoice = self._retrieve(stripe.Invoice, invoice_id)
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to retrieve invoice {invoice_id}: {e}") from e
        return json.loads(str(invoice))
