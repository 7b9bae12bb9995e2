"""Stripe billing for companies that pay through Stripe's hosted pages.

Nothing here writes subscription state: checkout, plan switches and
cancellation all complete on Stripe, and the outcome reaches the company
through the Stripe webhook.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.errors import NotFound, OperationConflict, PaymentGatewayError, ValidationFailed
from app.models.company import Company, CompanyStripeSubscription
from app.services.payment_gateway import GatewayResult
from app.services.plans import PlanSelection, plan_for_stripe_price
from app.services.stripe_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)

INVOICE_STATUS_LABELS = {
    "draft": "Pending",
    "open": "Awaiting Payment",
    "paid": "Successful",
    "void": "Canceled",
    "uncollectible": "Failed",
}


@dataclass
class BillingHistory:
    entries: list[dict[str, Any]]
    card: dict[str, Any] = field(default_factory=dict)


class StripeBilling:
    def __init__(self, db: Session, gateway: StripeGateway | None = None) -> None:
        self.db = db
        self.gateway = gateway or stripe_gateway

    @staticmethod
    def _customer_record(company: Company) -> CompanyStripeSubscription:
        record = company.stripe_subscription
        if record is None or not record.stripe_customer_id:
            raise NotFound("Company has no subscription")
        return record

    @staticmethod
    def _url(result: GatewayResult, message: str) -> str:
        if not result.ok:
            raise PaymentGatewayError(message, details=result.error)
        return result.data["url"]

    def start_checkout(self, company: Company, selection: PlanSelection) -> str:
        """Checkout for a first subscription, a confirm-switch portal flow afterwards."""
        price_id = selection.stripe_price_id
        if not price_id:
            raise ValidationFailed(f"No Stripe price configured for {selection.key}")

        record = company.stripe_subscription
        if record is None or not record.stripe_customer_id:
            result = self.gateway.create_checkout_session(
                company.company_email,
                price_id,
                metadata={"company_id": str(company.id), "tenant_id": company.tenant_id},
            )
        else:
            if not (record.stripe_subscription_id and record.stripe_subscription_item_id):
                raise ValidationFailed("Stripe subscription is incomplete and cannot be changed")
            if not company.can_update:
                raise OperationConflict("Subscription cannot be updated at this time")
            result = self.gateway.create_update_session(
                record.stripe_customer_id,
                record.stripe_subscription_id,
                record.stripe_subscription_item_id,
                price_id,
            )
        url = self._url(result, "Error creating checkout session")
        logger.info(
            "Stripe checkout started for %s", selection.key, extra={"company_id": str(company.id)}
        )
        return url

    def cancel_url(self, company: Company) -> str:
        record = self._customer_record(company)
        if not record.stripe_subscription_id:
            raise NotFound("Company has no subscription")
        if not company.can_cancel:
            raise OperationConflict("Subscription cancellation is already scheduled")
        result = self.gateway.create_cancel_session(
            record.stripe_customer_id, record.stripe_subscription_id
        )
        return self._url(result, "Error creating cancel session")

    def manage_url(self, company: Company) -> str:
        record = self._customer_record(company)
        result = self.gateway.create_portal_session(record.stripe_customer_id)
        return self._url(result, "Error creating manage session")

    def billing_history(self, company: Company) -> BillingHistory:
        record = self._customer_record(company)
        result = self.gateway.list_invoices(record.stripe_customer_id)
        if not result.ok:
            raise PaymentGatewayError("Error getting invoices", details=result.error)

        entries = [
            self._history_entry(invoice, record.start_date, record.end_date)
            for invoice in result.data["invoices"]
        ]
        card = {
            "last4": record.last4,
            "card_type": record.card_type,
            "exp_month": record.exp_month,
            "exp_year": record.exp_year,
            "company_email": company.company_email,
            "subscription_status": company.subscription_status.value,
        }
        return BillingHistory(entries=entries, card=card)

    @staticmethod
    def _history_entry(
        invoice: dict[str, Any], start_date: datetime | None, end_date: datetime | None
    ) -> dict[str, Any]:
        plan_lines = [line for line in invoice["lines"] if line["price_id"]]
        names = []
        for line in plan_lines:
            selection = plan_for_stripe_price(line["price_id"])
            names.append(f"{selection.display_name} Plan" if selection else "Unknown")
        return {
            "plan_name": ", ".join(names) or "Multiple Plans",
            "start_date": start_date,
            "end_date": end_date,
            # Stripe amounts are in the currency's minor unit
            "amount": sum(line["amount"] for line in plan_lines) / 100,
            "status": INVOICE_STATUS_LABELS.get(invoice["status"], "Unknown"),
        }
