from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.services.plans import PlanSelection


class PlanChangeRequest(BaseModel):
    payment_plan: str = Field(min_length=1, max_length=40)
    billing_type: str = Field(min_length=1, max_length=20)

    @field_validator("billing_type")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    def selection(self) -> PlanSelection:
        return PlanSelection.parse(self.payment_plan, self.billing_type)


class CompanySubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tier: str
    tier_type: str
    start_date: datetime | None = None
    end_date: datetime | None = None
    paystack_subscription_code: str | None = None
    last4: str | None = None
    card_type: str | None = None
    bank: str | None = None


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_name: str
    company_email: str
    subscription_status: str
    state: str
    can_update: bool
    can_cancel: bool
    pending_plan_update: str | None = None
    next_billing_date: datetime | None = None
    scheduled_deactivation: datetime | None = None
    subscription: CompanySubscriptionRead | None = None


class PaymentResponse(BaseModel):
    msg: str
    success: bool = True
    payment_url: str | None = None
    effective_at: datetime | None = None


class CancellationResponse(BaseModel):
    msg: str
    success: bool = True
    deactivation_date: datetime


class SessionResponse(BaseModel):
    msg: str
    success: bool = True
    url: str


class InvoiceEntry(BaseModel):
    plan_name: str
    start_date: datetime | None = None
    end_date: datetime | None = None
    amount: float
    status: str


class BillingCard(BaseModel):
    last4: str | None = None
    card_type: str | None = None
    exp_month: str | None = None
    exp_year: str | None = None
    company_email: str
    subscription_status: str


class BillingHistoryResponse(BaseModel):
    success: bool = True
    invoices: list[InvoiceEntry]
    card: BillingCard
