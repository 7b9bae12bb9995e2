"""Stripe webhook reconciliation.

Deliveries go through the same audit and transaction protocol as Paystack's;
only event identification and the handlers differ.
"""

import logging
from datetime import datetime
from typing import Any

from pydantic import TypeAdapter

from app.metrics import SUBSCRIPTION_TRANSITIONS
from app.models.company import Company, SubscriptionStatus
from app.schemas.stripe_webhook import (
    KNOWN_STRIPE_EVENTS,
    StripeCharge,
    StripeChargeSucceededEvent,
    StripeEventEnvelope,
    StripeInvoice,
    StripeInvoicePaymentFailedEvent,
    StripeSubscription,
    StripeSubscriptionCreatedEvent,
    StripeSubscriptionUpdatedEvent,
    stripe_event_adapter,
)
from app.services.common import ensure_utc
from app.services.companies import companies
from app.services.plans import plan_for_stripe_price
from app.services.webhooks import ReconciliationError, WebhookReconciler

logger = logging.getLogger(__name__)


class StripeWebhookReconciler(WebhookReconciler):
    provider = "stripe"
    known_events: frozenset[str] = KNOWN_STRIPE_EVENTS
    event_adapter: TypeAdapter = stripe_event_adapter

    def _identify(self, payload: Any) -> tuple[str, str]:
        envelope = StripeEventEnvelope.model_validate(payload)
        return envelope.id, envelope.type

    def _dispatch(self, event: Any) -> None:
        handlers = {
            StripeSubscriptionCreatedEvent: self._on_subscription_created,
            StripeSubscriptionUpdatedEvent: self._on_subscription_updated,
            StripeChargeSucceededEvent: self._on_charge_succeeded,
            StripeInvoicePaymentFailedEvent: self._on_invoice_payment_failed,
        }
        handlers[type(event)](event.data.object)

    def _record_cycle_end(self, company: Company, end_date: datetime) -> None:
        companies.update_stripe(self.db, company, {"end_date": end_date})

    # ── Lookup ───────────────────────────────────────────

    def _subscription_company(self, subscription: StripeSubscription) -> Company:
        """Checkout metadata first, the Stripe customer id for portal-born changes."""
        company = None
        company_id = subscription.metadata.get("company_id")
        if company_id:
            try:
                company = companies.find_by_id(self.db, company_id)
            except ValueError:
                logger.warning("Malformed company_id in Stripe metadata: %s", company_id)
        if company is None:
            company = companies.find_by_stripe_customer(self.db, subscription.customer)
        if company is None:
            raise ReconciliationError(
                f"No company linked to Stripe subscription {subscription.id}"
            )
        return company

    @staticmethod
    def _is_superseded(company: Company, subscription_id: str | None) -> bool:
        record = company.stripe_subscription
        current = record.stripe_subscription_id if record else None
        if not subscription_id or not current or current == subscription_id:
            return False
        logger.info(
            "Ignoring event for superseded Stripe subscription %s",
            subscription_id,
            extra={"company_id": str(company.id)},
        )
        return True

    def _subscription_values(self, subscription: StripeSubscription) -> dict[str, Any]:
        values: dict[str, Any] = {
            "stripe_subscription_id": subscription.id,
            "stripe_customer_id": subscription.customer,
            "stripe_subscription_item_id": subscription.item.id,
            "end_date": subscription.period_end,
        }
        selection = plan_for_stripe_price(subscription.item.price.id)
        if selection is not None:
            values["tier"] = selection.tier
            values["tier_type"] = selection.cycle
        return values

    # ── Handlers ─────────────────────────────────────────

    def _on_subscription_created(self, subscription: StripeSubscription) -> None:
        company = self._subscription_company(subscription)
        if plan_for_stripe_price(subscription.item.price.id) is None:
            raise ReconciliationError(f"Unknown Stripe price {subscription.item.price.id}")
        companies.update_stripe(
            self.db,
            company,
            {**self._subscription_values(subscription), "start_date": subscription.period_start},
        )
        companies.update(
            self.db,
            company,
            {
                "subscription_status": SubscriptionStatus.active,
                "can_update": True,
                "can_cancel": True,
                "scheduled_deactivation": None,
            },
        )
        SUBSCRIPTION_TRANSITIONS.labels("provider_subscription_created").inc()

    def _on_subscription_updated(self, subscription: StripeSubscription) -> None:
        company = self._subscription_company(subscription)
        if self._is_superseded(company, subscription.id):
            return
        record = company.stripe_subscription
        scheduled = ensure_utc(company.scheduled_deactivation)
        cancelled_here = (
            scheduled is not None
            and record is not None
            and ensure_utc(record.end_date) == scheduled
        )
        companies.update_stripe(self.db, company, self._subscription_values(subscription))

        cancel_at = ensure_utc(subscription.cancel_at)
        if cancel_at is not None:
            if scheduled == cancel_at:
                self._record_cycle_end(company, cancel_at)
            else:
                self._schedule_deactivation(company, cancel_at)
            return
        if cancelled_here and company.subscription_status == SubscriptionStatus.active:
            # Cancellation withdrawn in the portal; the registered job finds nothing to do
            companies.update(
                self.db,
                company,
                {"scheduled_deactivation": None, "can_update": True, "can_cancel": True},
            )
            SUBSCRIPTION_TRANSITIONS.labels("cancellation_withdrawn").inc()

    def _on_charge_succeeded(self, charge: StripeCharge) -> None:
        if not charge.paid:
            logger.info("Stripe charge %s not paid, nothing to record", charge.id)
            return
        email = charge.billing_details.email
        if not email:
            raise ReconciliationError(f"Stripe charge {charge.id} carries no billing email")
        company = companies.find_by_email(self.db, email)
        if company is None:
            raise ReconciliationError(f"No company registered with billing email {email}")
        details = charge.payment_method_details
        card = details.card if details else None
        if card is None:
            return
        companies.update_stripe(
            self.db,
            company,
            {
                "last4": card.last4,
                "card_type": card.brand,
                "exp_month": card.exp_month,
                "exp_year": card.exp_year,
            },
        )

    def _on_invoice_payment_failed(self, invoice: StripeInvoice) -> None:
        company = companies.find_by_stripe_customer(self.db, invoice.customer)
        if company is None:
            raise ReconciliationError(f"No company linked to Stripe customer {invoice.customer}")
        if self._is_superseded(company, invoice.subscription):
            return
        companies.update(
            self.db,
            company,
            {
                "subscription_status": SubscriptionStatus.expired,
                "can_update": False,
                "can_cancel": False,
            },
        )
        companies.update_stripe(self.db, company, {"start_date": None, "end_date": None})
        SUBSCRIPTION_TRANSITIONS.labels("expired").inc()
