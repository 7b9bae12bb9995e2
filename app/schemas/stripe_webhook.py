from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class _StripeModel(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


def _object_id(value: Any) -> Any:
    """Expanded references arrive as objects, collapsed ones as ids."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class StripeEventEnvelope(_StripeModel):
    """Minimal shape every delivery must have before it is recorded."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)


# ── Objects ──────────────────────────────────────────────


class StripePrice(_StripeModel):
    id: str = Field(min_length=1)


class StripeSubscriptionItem(_StripeModel):
    id: str = Field(min_length=1)
    price: StripePrice
    # Newer API versions carry the period on the item
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None


class StripeSubscriptionItems(_StripeModel):
    data: list[StripeSubscriptionItem] = Field(min_length=1)


class StripeSubscription(_StripeModel):
    id: str = Field(min_length=1)
    customer: str = Field(min_length=1)
    status: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    items: StripeSubscriptionItems
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at: datetime | None = None

    collapse_customer = field_validator("customer", mode="before")(_object_id)

    @property
    def item(self) -> StripeSubscriptionItem:
        return self.items.data[0]

    @property
    def period_start(self) -> datetime | None:
        return self.current_period_start or self.item.current_period_start

    @property
    def period_end(self) -> datetime | None:
        return self.current_period_end or self.item.current_period_end


class StripeCard(_StripeModel):
    last4: str | None = None
    brand: str | None = None
    exp_month: str | None = None
    exp_year: str | None = None


class StripePaymentMethodDetails(_StripeModel):
    card: StripeCard | None = None


class StripeBillingDetails(_StripeModel):
    email: str | None = None


class StripeCharge(_StripeModel):
    id: str = Field(min_length=1)
    paid: bool
    billing_details: StripeBillingDetails
    payment_method_details: StripePaymentMethodDetails | None = None


class StripeInvoice(_StripeModel):
    id: str = Field(min_length=1)
    customer: str = Field(min_length=1)
    subscription: str | None = None

    collapse_references = field_validator("customer", "subscription", mode="before")(_object_id)


class SubscriptionData(_StripeModel):
    object: StripeSubscription


class ChargeData(_StripeModel):
    object: StripeCharge


class InvoiceData(_StripeModel):
    object: StripeInvoice


# ── Events ───────────────────────────────────────────────


class StripeSubscriptionCreatedEvent(_StripeModel):
    id: str
    type: Literal["customer.subscription.created"]
    data: SubscriptionData


class StripeSubscriptionUpdatedEvent(_StripeModel):
    id: str
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class StripeChargeSucceededEvent(_StripeModel):
    id: str
    type: Literal["charge.succeeded"]
    data: ChargeData


class StripeInvoicePaymentFailedEvent(_StripeModel):
    id: str
    type: Literal["invoice.payment_failed"]
    data: InvoiceData


StripeEvent = Annotated[
    StripeSubscriptionCreatedEvent
    | StripeSubscriptionUpdatedEvent
    | StripeChargeSucceededEvent
    | StripeInvoicePaymentFailedEvent,
    Field(discriminator="type"),
]

stripe_event_adapter: TypeAdapter[StripeEvent] = TypeAdapter(StripeEvent)

KNOWN_STRIPE_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "charge.succeeded",
        "invoice.payment_failed",
    }
)
