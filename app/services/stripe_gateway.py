"""Stripe hosted checkout and billing portal integration.

Same contract as the Paystack gateway: every public call returns a
:class:`GatewayResult`. Stripe owns the payment pages, so the calls here only
mint session URLs and read invoices; subscription state arrives by webhook.
"""

import logging
from collections.abc import Callable
from typing import Any

import stripe

from app.config import settings
from app.services.payment_gateway import GatewayResult

logger = logging.getLogger(__name__)

BILLING_PAGE = "/settings/billing"


def _line_price_id(line: Any) -> str | None:
    """Price of an invoice line across API versions (``price``/``plan`` or ``pricing``)."""
    for attr in ("price", "plan"):
        ref = getattr(line, attr, None)
        if ref is not None and getattr(ref, "id", None):
            return ref.id
    details = getattr(getattr(line, "pricing", None), "price_details", None)
    price = getattr(details, "price", None)
    if isinstance(price, str):
        return price
    return getattr(price, "id", None)


def _invoice_summary(invoice: Any) -> dict[str, Any]:
    lines = getattr(getattr(invoice, "lines", None), "data", None) or []
    return {
        "id": getattr(invoice, "id", None),
        "status": getattr(invoice, "status", None),
        "lines": [
            {"amount": getattr(line, "amount", 0) or 0, "price_id": _line_price_id(line)}
            for line in lines
        ],
    }


class StripeGateway:
    def __init__(self) -> None:
        self._secret_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret
        self._api_version = settings.stripe_api_version

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def accepts_webhooks(self) -> bool:
        return bool(self._webhook_secret)

    def _options(self) -> dict[str, Any]:
        return {"api_key": self._secret_key, "stripe_version": self._api_version}

    def _return_url(self) -> str:
        return f"{settings.stripe_return_url.rstrip('/')}{BILLING_PAGE}"

    def _session(self, operation: str, method: Callable[..., Any], **params: Any) -> GatewayResult:
        if not self.is_configured():
            return GatewayResult.failure("Stripe is not configured")
        try:
            session = method(**params, **self._options())
        except stripe.StripeError as exc:
            message = exc.user_message or str(exc) or "Stripe request failed"
            logger.error("Stripe %s failed: %s", operation, message)
            return GatewayResult.failure(message)
        url = getattr(session, "url", None)
        if not url:
            return GatewayResult.failure(f"Stripe returned no {operation} URL")
        logger.info("Created Stripe %s session", operation)
        return GatewayResult(data={"url": url})

    # ── Sessions ─────────────────────────────────────────

    def create_checkout_session(
        self, email: str, price_id: str, metadata: dict[str, str]
    ) -> GatewayResult:
        """Hosted checkout for a customer Stripe has not seen yet."""
        return self._session(
            "checkout",
            stripe.checkout.Session.create,
            mode="subscription",
            customer_email=email,
            subscription_data={"metadata": metadata},
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=self._return_url(),
            cancel_url=self._return_url(),
        )

    def create_update_session(
        self, customer_id: str, subscription_id: str, item_id: str, price_id: str
    ) -> GatewayResult:
        """Portal flow that confirms a switch of the existing subscription item."""
        return self._session(
            "update",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=self._return_url(),
            flow_data={
                "type": "subscription_update_confirm",
                "subscription_update_confirm": {
                    "subscription": subscription_id,
                    "items": [{"id": item_id, "price": price_id, "quantity": 1}],
                },
            },
        )

    def create_cancel_session(self, customer_id: str, subscription_id: str) -> GatewayResult:
        return self._session(
            "cancel",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=self._return_url(),
            flow_data={
                "type": "subscription_cancel",
                "subscription_cancel": {"subscription": subscription_id},
            },
        )

    def create_portal_session(self, customer_id: str) -> GatewayResult:
        return self._session(
            "portal",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=self._return_url(),
        )

    # ── Invoices ─────────────────────────────────────────

    def list_invoices(self, customer_id: str) -> GatewayResult:
        if not self.is_configured():
            return GatewayResult.failure("Stripe is not configured")
        try:
            invoices = stripe.Invoice.list(customer=customer_id, **self._options())
        except stripe.StripeError as exc:
            message = exc.user_message or str(exc) or "Stripe request failed"
            logger.error("Stripe list_invoices failed: %s", message)
            return GatewayResult.failure(message)
        return GatewayResult(
            data={"invoices": [_invoice_summary(invoice) for invoice in invoices.data]}
        )

    # ── Webhook ──────────────────────────────────────────

    def validate_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Check the ``Stripe-Signature`` header against the endpoint secret."""
        if not self._webhook_secret:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature or "",
                self._webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True


stripe_gateway = StripeGateway()
