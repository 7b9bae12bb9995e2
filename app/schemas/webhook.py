from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# ── Shared payload parts ─────────────────────────────────


class _PayloadModel(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class WebhookCustomer(_PayloadModel):
    email: str = Field(min_length=3)
    customer_code: str | None = None


class CardAuthorization(_PayloadModel):
    authorization_code: str = Field(min_length=1)
    last4: str | None = None
    exp_month: str | None = None
    exp_year: str | None = None
    card_type: str | None = None
    bank: str | None = None


class EventData(_PayloadModel):
    id: str = Field(min_length=1)


class WebhookEnvelope(_PayloadModel):
    """Minimal shape every delivery must have before it is recorded."""

    event: str = Field(min_length=1)
    data: EventData


# ── Event data ───────────────────────────────────────────


class ChargeSuccessData(EventData):
    status: str | None = None
    reference: str | None = None
    customer: WebhookCustomer
    authorization: CardAuthorization


class SubscriptionCreateData(EventData):
    status: str | None = None
    subscription_code: str = Field(min_length=1)
    next_payment_date: datetime | None = None
    customer: WebhookCustomer
    authorization: CardAuthorization | None = None


class SubscriptionStatusData(EventData):
    subscription_code: str = Field(min_length=1)
    next_payment_date: datetime | None = None
    customer: WebhookCustomer


class InvoiceSubscription(_PayloadModel):
    subscription_code: str = Field(min_length=1)
    next_payment_date: datetime | None = None


class InvoiceData(EventData):
    status: str | None = None
    customer: WebhookCustomer
    subscription: InvoiceSubscription
    authorization: CardAuthorization | None = None


# ── Events ───────────────────────────────────────────────


class ChargeSuccessEvent(_PayloadModel):
    event: Literal["charge.success"]
    data: ChargeSuccessData


class SubscriptionCreateEvent(_PayloadModel):
    event: Literal["subscription.create"]
    data: SubscriptionCreateData


class SubscriptionNotRenewEvent(_PayloadModel):
    event: Literal["subscription.not_renew"]
    data: SubscriptionStatusData


class SubscriptionDisableEvent(_PayloadModel):
    event: Literal["subscription.disable"]
    data: SubscriptionStatusData


class InvoiceUpdateEvent(_PayloadModel):
    event: Literal["invoice.update"]
    data: InvoiceData


class InvoicePaymentFailedEvent(_PayloadModel):
    event: Literal["invoice.payment_failed"]
    data: InvoiceData


PaystackEvent = Annotated[
    ChargeSuccessEvent
    | SubscriptionCreateEvent
    | SubscriptionNotRenewEvent
    | SubscriptionDisableEvent
    | InvoiceUpdateEvent
    | InvoicePaymentFailedEvent,
    Field(discriminator="event"),
]

paystack_event_adapter: TypeAdapter[PaystackEvent] = TypeAdapter(PaystackEvent)

KNOWN_EVENTS = frozenset(
    {
        "charge.success",
        "subscription.create",
        "subscription.not_renew",
        "subscription.disable",
        "invoice.update",
        "invoice.payment_failed",
    }
)


class WebhookAck(BaseModel):
    status: Literal["processed", "duplicate", "unhandled"]
    event_id: str
