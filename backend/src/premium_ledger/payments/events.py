"""Gateway webhook event decoding.

The envelope ``{type, data: {object}}`` is decoded once at the boundary
into one typed event class per recognised ``type``. Unknown types decode
to ``UnhandledEvent`` so they can be acknowledged without processing.
"""

from decimal import Decimal
from typing import Any, Generic, Literal, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from premium_ledger.payments.gateway import from_unix

T = TypeVar("T")


class MalformedEventError(Exception):
    """Raised when a webhook payload cannot be decoded."""


# =============================================================================
# PAYLOAD OBJECTS
# =============================================================================

class CheckoutMetadata(BaseModel):
    """Metadata attached by the checkout initiator."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    account_id: int = Field(validation_alias=AliasChoices("accountId", "userId", "account_id"))

    # One-time purchases
    item_type: str | None = Field(default=None, validation_alias=AliasChoices("itemType", "item_type"))
    package_type: str | None = Field(default=None, validation_alias=AliasChoices("packageType", "package_type"))
    amount: int | None = None
    price: Decimal | None = None
    price_type: str = Field(default="regular", validation_alias=AliasChoices("priceType", "price_type"))

    # Subscriptions
    plan_type: str | None = Field(default=None, validation_alias=AliasChoices("planType", "plan_type"))
    plan_name: str | None = Field(default=None, validation_alias=AliasChoices("planName", "plan_name"))
    is_upgrade: bool = Field(default=False, validation_alias=AliasChoices("isUpgrade", "is_upgrade"))
    old_plan: str | None = Field(default=None, validation_alias=AliasChoices("oldPlan", "old_plan"))

    @property
    def is_one_time(self) -> bool:
        return bool(self.item_type)


class CheckoutSessionObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    metadata: CheckoutMetadata
    customer: str | None = None
    subscription: str | None = None
    amount_total: int | None = None
    payment_intent: str | None = None
    customer_email: str | None = None


class InvoiceObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    subscription: str | None = None
    customer: str | None = None
    customer_email: str | None = None
    amount_paid: int = 0
    amount_due: int | None = None
    attempt_count: int | None = None
    billing_reason: str | None = None
    created: int | None = None
    lines: dict[str, Any] | None = None

    def _first_line(self) -> dict[str, Any]:
        data = (self.lines or {}).get("data") or []
        return data[0] if data and isinstance(data[0], dict) else {}

    def subscription_ref(self) -> str | None:
        """Subscription id, falling back to the first line item's reference."""
        if self.subscription:
            return self.subscription
        line = self._first_line()
        details = (line.get("parent") or {}).get("subscription_item_details") or {}
        return details.get("subscription") or line.get("subscription")

    def period_end_unix(self) -> int | None:
        return (self._first_line().get("period") or {}).get("end")

    @property
    def amount_paid_decimal(self) -> Decimal:
        return Decimal(self.amount_paid) / 100

    @property
    def created_at(self):
        return from_unix(self.created)


class SubscriptionObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    customer: str | None = None
    current_period_end: int | None = None


# =============================================================================
# EVENTS
# =============================================================================

class EventData(BaseModel, Generic[T]):
    object: T


class GatewayEvent(BaseModel):
    """Base for decoded events."""
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    type: str


class CheckoutSessionCompleted(GatewayEvent):
    type: Literal["checkout.session.completed"]
    data: EventData[CheckoutSessionObject]


class InvoicePaymentSucceeded(GatewayEvent):
    type: Literal["invoice.payment_succeeded"]
    data: EventData[InvoiceObject]


class InvoicePaymentPaid(GatewayEvent):
    """``invoice_payment.paid``: carries either a full invoice or an
    invoice-payment object that references the invoice by id."""
    type: Literal["invoice_payment.paid"]
    data: EventData[dict[str, Any]]


class SubscriptionDeleted(GatewayEvent):
    type: Literal["customer.subscription.deleted"]
    data: EventData[SubscriptionObject]


class InvoicePaymentFailed(GatewayEvent):
    type: Literal["invoice.payment_failed"]
    data: EventData[InvoiceObject]


class UnhandledEvent(GatewayEvent):
    data: dict[str, Any] = Field(default_factory=dict)


EVENT_TYPES: dict[str, type[GatewayEvent]] = {
    "checkout.session.completed": CheckoutSessionCompleted,
    "invoice.payment_succeeded": InvoicePaymentSucceeded,
    "invoice_payment.paid": InvoicePaymentPaid,
    "customer.subscription.deleted": SubscriptionDeleted,
    "invoice.payment_failed": InvoicePaymentFailed,
}


def parse_event(payload: Any) -> GatewayEvent:
    """Decode a webhook envelope into its typed event.

    Raises:
        MalformedEventError: If the envelope or a recognised payload is invalid
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("Event payload must be a JSON object")

    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Event payload has no type")

    model = EVENT_TYPES.get(event_type, UnhandledEvent)
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid {event_type} payload: {e.error_count()} error(s)") from e
