"""Paystack payment gateway integration.

Every public call returns a :class:`GatewayResult` instead of raising, so the
lifecycle service can translate provider failures in one place.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from app.config import settings
from app.services.common import ensure_utc
from app.services.plans import known_plan_codes

logger = logging.getLogger(__name__)

PAYSTACK_BASE_URL = "https://api.paystack.co"
NO_ACTIVE_SUBSCRIPTION = "No active subscriptions found"


class PaystackCallError(Exception):
    """A Paystack response with ``status: false``."""


@dataclass
class GatewayResult:
    data: dict[str, Any] | None = None
    error: str | None = None
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: str, not_found: bool = False) -> "GatewayResult":
        return cls(data=None, error=error, not_found=not_found)


def _parse_provider_date(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.warning("Unparseable Paystack date: %s", value)
        return None


class PaystackGateway:
    """Thin wrapper around Paystack REST API."""

    def __init__(self) -> None:
        self._secret_key = settings.paystack_secret_key
        self._timeout = settings.paystack_timeout_seconds

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def _call(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        failure_message: str = "Paystack request failed",
    ) -> Any:
        """Perform one Paystack request and return its ``data`` member."""
        if not self.is_configured():
            raise PaystackCallError("Paystack is not configured")
        with httpx.Client(timeout=self._timeout) as client:
            resp = client.request(
                method,
                f"{PAYSTACK_BASE_URL}{path}",
                json=json,
                params=params,
                headers=self._headers(),
            )
        body = resp.json()
        if not body.get("status"):
            message = body.get("message") or failure_message
            logger.error("Paystack %s %s failed: %s", method, path, message)
            raise PaystackCallError(message)
        return body.get("data")

    def _guard(self, operation: str, exc: Exception) -> GatewayResult:
        if isinstance(exc, PaystackCallError):
            return GatewayResult.failure(str(exc))
        logger.exception("Paystack %s raised", operation)
        return GatewayResult.failure(str(exc) or "Unknown error occurred")

    # ── Transactions ─────────────────────────────────────

    def initialize_transaction(
        self,
        email: str,
        amount: int,
        plan: str | None = None,
    ) -> GatewayResult:
        """Initialize a card transaction, then verify it by reference."""
        payload: dict[str, Any] = {
            "email": email,
            "amount": str(amount),
            "channels": ["card"],
        }
        if settings.paystack_callback_url:
            payload["callback_url"] = settings.paystack_callback_url
        if plan:
            payload["plan"] = plan
        try:
            transaction = self._call(
                "POST",
                "/transaction/initialize",
                json=payload,
                failure_message="Failed to initialize transaction",
            )
            reference = (transaction or {}).get("reference")
            if not reference:
                return GatewayResult.failure("Paystack returned no transaction reference")
            verify = self._call(
                "GET",
                f"/transaction/verify/{reference}",
                failure_message="Failed to verify transaction",
            )
        except (PaystackCallError, httpx.HTTPError, ValueError) as exc:
            return self._guard("initialize_transaction", exc)
        logger.info("Initialized Paystack transaction: %s", reference)
        return GatewayResult(data={"transaction": transaction, "verify": verify})

    def refund_transaction(self, transaction_id: str, amount: int | None = None) -> GatewayResult:
        payload: dict[str, Any] = {"transaction": transaction_id}
        if amount is not None:
            payload["amount"] = amount
        try:
            self._call("POST", "/refund", json=payload, failure_message="Refund failed")
        except (PaystackCallError, httpx.HTTPError, ValueError) as exc:
            return self._guard("refund_transaction", exc)
        logger.info("Refund requested for transaction %s", transaction_id)
        return GatewayResult(data={"message": "Refund has been queued for processing"})

    # ── Subscriptions ────────────────────────────────────

    def create_subscription(
        self,
        plan: str,
        customer: str,
        start_date: datetime,
        authorization: str | None = None,
    ) -> GatewayResult:
        """Create a subscription and resolve its next payment date."""
        payload: dict[str, Any] = {
            "customer": customer,
            "plan": plan,
            "start_date": ensure_utc(start_date).isoformat(),
        }
        if authorization:
            payload["authorization"] = authorization
        try:
            created = self._call(
                "POST",
                "/subscription",
                json=payload,
                failure_message="Failed to create subscription",
            )
            code = (created or {}).get("subscription_code")
            if not code:
                return GatewayResult.failure("Paystack returned no subscription code")
            fetched = self._call(
                "GET",
                f"/subscription/{code}",
                failure_message="Failed to fetch subscription",
            )
        except (PaystackCallError, httpx.HTTPError, ValueError) as exc:
            return self._guard("create_subscription", exc)
        logger.info("Created Paystack subscription: %s", code)
        return GatewayResult(
            data={
                **created,
                "end_date": _parse_provider_date((fetched or {}).get("next_payment_date")),
            }
        )

    def find_customer(self, email: str) -> dict[str, Any] | None:
        customers = self._call(
            "GET", "/customer", params={"perPage": 100}, failure_message="No customer with that email"
        )
        for customer in customers or []:
            if customer.get("email") == email:
                return customer
        return None

    def list_active_subscriptions(self, email: str) -> list[dict[str, Any]]:
        """Active subscriptions of the customer on one of our plans."""
        customer = self.find_customer(email)
        if customer is None:
            return []
        subscriptions = self._call(
            "GET",
            "/subscription",
            params={"customer": customer["id"]},
            failure_message="Something went wrong",
        )
        plan_codes = known_plan_codes()
        return [
            sub
            for sub in subscriptions or []
            if sub.get("status") == "active"
            and (sub.get("plan") or {}).get("plan_code") in plan_codes
        ]

    def cancel_subscription(self, email: str) -> GatewayResult:
        """Disable the customer's first active subscription on a known plan."""
        try:
            subscriptions = self.list_active_subscriptions(email)
            if not subscriptions:
                return GatewayResult.failure(NO_ACTIVE_SUBSCRIPTION, not_found=True)
            current = subscriptions[0]
            self._call(
                "POST",
                "/subscription/disable",
                json={
                    "code": current["subscription_code"],
                    "token": current.get("email_token"),
                },
                failure_message="Failed to disable subscription",
            )
        except (PaystackCallError, httpx.HTTPError, ValueError) as exc:
            return self._guard("cancel_subscription", exc)
        logger.info("Disabled Paystack subscription: %s", current["subscription_code"])
        return GatewayResult(data={"subscription_code": current["subscription_code"]})

    # ── Webhook ──────────────────────────────────────────

    def validate_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Validate Paystack webhook HMAC signature."""
        expected = hmac.new(
            self._secret_key.encode("utf-8"),
            payload,
            hashlib.sha512,
        ).hexdigest()
        return hmac.compare_digest(expected, signature or "")


paystack_gateway = PaystackGateway()
