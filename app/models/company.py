import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base, TimestampMixin

# ── Enums ────────────────────────────────────────────────


class SubscriptionStatus(str, enum.Enum):
    trial = "TRIAL"
    active = "ACTIVE"
    cancelled = "CANCELLED"
    expired = "EXPIRED"


class Tier(str, enum.Enum):
    free = "FREE"
    personal = "PERSONAL"
    team = "TEAM"
    enterprise = "ENTERPRISE"


class BillingCycle(str, enum.Enum):
    monthly = "MONTHLY"
    yearly = "YEARLY"


# ── Tenant ───────────────────────────────────────────────


class Company(TimestampMixin, Base):
    __tablename__ = "companies"
    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_companies_tenant_id"),
        UniqueConstraint("company_email", name="uq_companies_company_email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(191), nullable=False, index=True)
    company_name: Mapped[str] = mapped_column(String(191), nullable=False)
    company_email: Mapped[str] = mapped_column(String(191), nullable=False, index=True)
    country: Mapped[str | None] = mapped_column(String(80))

    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.trial, nullable=False
    )
    can_update: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_cancel: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # "<tier>_<cycle>", see app.services.plans.PlanSelection
    pending_plan_update: Mapped[str | None] = mapped_column(String(255))
    next_billing_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )
    scheduled_deactivation: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )

    subscription: Mapped["CompanySubscription"] = relationship(
        "CompanySubscription",
        back_populates="company",
        uselist=False,
        cascade="all, delete-orphan",
    )
    stripe_subscription: Mapped["CompanyStripeSubscription"] = relationship(
        "CompanyStripeSubscription",
        back_populates="company",
        uselist=False,
        cascade="all, delete-orphan",
    )


class CompanySubscription(TimestampMixin, Base):
    __tablename__ = "company_subscriptions"
    __table_args__ = (
        UniqueConstraint("company_id", name="uq_company_subscriptions_company_id"),
        UniqueConstraint(
            "paystack_customer_id", name="uq_company_subscriptions_customer_id"
        ),
        UniqueConstraint(
            "paystack_subscription_code",
            name="uq_company_subscriptions_subscription_code",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String(191), nullable=False, index=True)
    paystack_customer_id: Mapped[str | None] = mapped_column(String(191))
    paystack_subscription_code: Mapped[str | None] = mapped_column(String(191))
    authorization_code: Mapped[str | None] = mapped_column(String(191))
    transaction_id: Mapped[str | None] = mapped_column(String(191))
    tier: Mapped[Tier] = mapped_column(Enum(Tier), default=Tier.personal, nullable=False)
    tier_type: Mapped[BillingCycle] = mapped_column(
        Enum(BillingCycle), default=BillingCycle.monthly, nullable=False
    )
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Card on file, captured from charge.success
    last4: Mapped[str | None] = mapped_column(String(4))
    exp_month: Mapped[str | None] = mapped_column(String(2))
    exp_year: Mapped[str | None] = mapped_column(String(4))
    card_type: Mapped[str | None] = mapped_column(String(40))
    bank: Mapped[str | None] = mapped_column(String(120))

    company: Mapped[Company] = relationship("Company", back_populates="subscription")


class CompanyStripeSubscription(TimestampMixin, Base):
    """Stripe side of a company's billing; the hosted checkout and portal own the payment flow."""

    __tablename__ = "company_stripe_subscriptions"
    __table_args__ = (
        UniqueConstraint("company_id", name="uq_company_stripe_subscriptions_company_id"),
        UniqueConstraint(
            "stripe_customer_id", name="uq_company_stripe_subscriptions_customer_id"
        ),
        UniqueConstraint(
            "stripe_subscription_id",
            name="uq_company_stripe_subscriptions_subscription_id",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String(191), nullable=False, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(191))
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(191))
    stripe_subscription_item_id: Mapped[str | None] = mapped_column(String(191))
    tier: Mapped[Tier] = mapped_column(Enum(Tier), default=Tier.free, nullable=False)
    tier_type: Mapped[BillingCycle] = mapped_column(
        Enum(BillingCycle), default=BillingCycle.monthly, nullable=False
    )
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Card on file, captured from charge.succeeded
    last4: Mapped[str | None] = mapped_column(String(4))
    exp_month: Mapped[str | None] = mapped_column(String(2))
    exp_year: Mapped[str | None] = mapped_column(String(4))
    card_type: Mapped[str | None] = mapped_column(String(40))

    company: Mapped[Company] = relationship("Company", back_populates="stripe_subscription")
