"""Payment provider webhook reconciliation.

One delivery is handled in one transaction: dedup on the provider event id,
insert the audit row, dispatch, mark processed. Handler failures roll the
whole transaction back (audit row included) so the provider retry is not
mistaken for a duplicate.
"""

import enum
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import WebhookRejected
from app.metrics import SUBSCRIPTION_TRANSITIONS, WEBHOOK_EVENTS
from app.models.billing import WebhookEvent, WebhookEventStatus
from app.models.company import Company, SubscriptionStatus
from app.schemas.webhook import (
    KNOWN_EVENTS,
    CardAuthorization,
    ChargeSuccessEvent,
    InvoicePaymentFailedEvent,
    InvoiceUpdateEvent,
    SubscriptionCreateEvent,
    SubscriptionDisableEvent,
    SubscriptionNotRenewEvent,
    WebhookEnvelope,
    paystack_event_adapter,
)
from app.services.common import atomic, utc_now
from app.services.companies import companies
from app.services.scheduler import DeferredScheduler, JobKind, deferred_scheduler
from app.services.subscription_lifecycle import deactivation_date_for, run_deactivate_company

logger = logging.getLogger(__name__)


class WebhookOutcome(str, enum.Enum):
    processed = "processed"
    duplicate = "duplicate"
    unhandled = "unhandled"


class ReconciliationError(Exception):
    """The event is well formed but cannot be applied (e.g. unknown customer)."""


def _card_fields(authorization: CardAuthorization | None) -> dict[str, Any]:
    if authorization is None:
        return {}
    return {
        "authorization_code": authorization.authorization_code,
        "last4": authorization.last4,
        "exp_month": authorization.exp_month,
        "exp_year": authorization.exp_year,
        "card_type": authorization.card_type,
        "bank": authorization.bank,
    }


def _validation_details(exc: ValidationError) -> list[dict]:
    return exc.errors(include_url=False, include_context=False)


class WebhookReconciler:
    """Paystack reconciler; the delivery protocol is shared with other providers."""

    provider = "paystack"
    known_events: frozenset[str] = KNOWN_EVENTS
    event_adapter: TypeAdapter = paystack_event_adapter

    def __init__(self, db: Session, scheduler: DeferredScheduler | None = None) -> None:
        self.db = db
        self.scheduler = scheduler or deferred_scheduler
        self._after_commit: list[Callable[[], Any]] = []

    def _count(self, event_type: str, outcome: str) -> None:
        WEBHOOK_EVENTS.labels(self.provider, event_type, outcome).inc()

    def _identify(self, payload: Any) -> tuple[str, str]:
        """``(event_id, event_type)`` of a delivery; raises ``ValidationError``."""
        envelope = WebhookEnvelope.model_validate(payload)
        return envelope.data.id, envelope.event

    def handle(self, payload: Any) -> tuple[WebhookOutcome, str]:
        """Reconcile one verified delivery. Returns ``(outcome, event_id)``."""
        try:
            event_id, event_type = self._identify(payload)
        except ValidationError as exc:
            self._count("unknown", "rejected")
            raise WebhookRejected(
                "Invalid payload structure", details=_validation_details(exc)
            ) from exc

        metric_type = event_type if event_type in self.known_events else "other"
        log_extra = {"event_id": event_id, "event_type": event_type}

        if self._find(event_id) is not None:
            logger.info("Duplicate webhook event ignored", extra=log_extra)
            self._count(metric_type, WebhookOutcome.duplicate.value)
            return WebhookOutcome.duplicate, event_id

        if event_type not in self.known_events:
            return self._unhandled(event_id, event_type, payload)

        try:
            event = self.event_adapter.validate_python(payload)
        except ValidationError as exc:
            return self._reject(event_id, event_type, payload, exc)

        return self._apply_once(event_id, event_type, payload, lambda: self._dispatch(event))

    # ── Delivery protocol ────────────────────────────────

    def _unhandled(self, event_id: str, event_type: str, payload: Any) -> tuple[WebhookOutcome, str]:
        recorded = self._record_only(
            event_id, event_type, payload, WebhookEventStatus.unhandled, error=None
        )
        outcome = WebhookOutcome.unhandled if recorded else WebhookOutcome.duplicate
        logger.info(
            "Unhandled webhook event type", extra={"event_id": event_id, "event_type": event_type}
        )
        self._count("other", outcome.value)
        return outcome, event_id

    def _reject(
        self, event_id: str, event_type: str, payload: Any, exc: ValidationError
    ) -> tuple[WebhookOutcome, str]:
        """Store a malformed known event as failed and refuse it.

        A concurrent delivery that already stored the event id is a duplicate.
        """
        if not self._record_only(
            event_id, event_type, payload, WebhookEventStatus.failed, error=str(exc)
        ):
            return WebhookOutcome.duplicate, event_id
        self._count(event_type, "rejected")
        logger.warning(
            "Malformed webhook payload", extra={"event_id": event_id, "event_type": event_type}
        )
        raise WebhookRejected(
            f"Malformed {event_type} payload", details=_validation_details(exc)
        ) from exc

    def _apply_once(
        self, event_id: str, event_type: str, payload: Any, apply: Callable[[], None]
    ) -> tuple[WebhookOutcome, str]:
        log_extra = {"event_id": event_id, "event_type": event_type}
        self._after_commit = []
        try:
            with atomic(self.db):
                record = WebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    provider=self.provider,
                    payload=payload,
                    status=WebhookEventStatus.processing,
                    attempts=1,
                )
                self.db.add(record)
                self.db.flush()
                try:
                    apply()
                except Exception as exc:
                    record.status = WebhookEventStatus.failed
                    record.attempts += 1
                    record.error_message = str(exc)
                    raise
                record.status = WebhookEventStatus.processed
                record.processed_at = utc_now()
        except IntegrityError:
            if self._find(event_id) is None:
                raise
            logger.info("Concurrent delivery already recorded", extra=log_extra)
            self._count(event_type, WebhookOutcome.duplicate.value)
            return WebhookOutcome.duplicate, event_id
        except Exception:
            self._count(event_type, "failed")
            logger.exception("Webhook processing failed", extra=log_extra)
            raise

        for register in self._after_commit:
            register()
        self._after_commit = []
        self._count(event_type, WebhookOutcome.processed.value)
        logger.info("Webhook event processed", extra=log_extra)
        return WebhookOutcome.processed, event_id

    def _find(self, event_id: str) -> WebhookEvent | None:
        return self.db.scalars(
            select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        ).first()

    def _record_only(
        self,
        event_id: str,
        event_type: str,
        payload: Any,
        status: WebhookEventStatus,
        error: str | None,
    ) -> bool:
        """Store an event that is not dispatched, committed on its own.

        Returns False when a concurrent delivery already stored the event id.
        """
        try:
            with atomic(self.db):
                self.db.add(
                    WebhookEvent(
                        event_id=event_id,
                        event_type=event_type,
                        provider=self.provider,
                        payload=payload,
                        status=status,
                        attempts=1,
                        error_message=error,
                        processed_at=utc_now() if status == WebhookEventStatus.unhandled else None,
                    )
                )
        except IntegrityError:
            if self._find(event_id) is None:
                raise
            return False
        return True

    # ── Dispatch ─────────────────────────────────────────

    def _dispatch(self, event: Any) -> None:
        handlers: dict[type, Callable[[Any], None]] = {
            ChargeSuccessEvent: self._charge_success,
            SubscriptionCreateEvent: self._subscription_create,
            SubscriptionNotRenewEvent: self._subscription_not_renew,
            SubscriptionDisableEvent: self._subscription_disable,
            InvoiceUpdateEvent: self._invoice_update,
            InvoicePaymentFailedEvent: self._invoice_payment_failed,
        }
        handlers[type(event)](event)

    def _company(self, email: str) -> Company:
        company = companies.find_by_email(self.db, email)
        if company is None:
            raise ReconciliationError(f"No company registered with billing email {email}")
        return company

    @staticmethod
    def _current_code(company: Company) -> str | None:
        return company.subscription.paystack_subscription_code if company.subscription else None

    def _is_stale(self, company: Company, code: str, event_type: str) -> bool:
        current = self._current_code(company)
        if current == code:
            return False
        logger.info(
            "Ignoring %s for superseded subscription %s",
            event_type,
            code,
            extra={"company_id": str(company.id), "event_type": event_type},
        )
        return True

    def _charge_success(self, event: ChargeSuccessEvent) -> None:
        data = event.data
        company = self._company(data.customer.email)
        if data.status and data.status != "success":
            logger.info(
                "Charge reported status %s, nothing to record", data.status,
                extra={"company_id": str(company.id)},
            )
            return
        values = {"transaction_id": data.id, **_card_fields(data.authorization)}
        if data.customer.customer_code and not (
            company.subscription and company.subscription.paystack_customer_id
        ):
            values["paystack_customer_id"] = data.customer.customer_code
        companies.update(self.db, company, {}, subscription=values)

    def _subscription_create(self, event: SubscriptionCreateEvent) -> None:
        data = event.data
        company = self._company(data.customer.email)
        companies.update(
            self.db,
            company,
            {"can_update": True, "can_cancel": True},
            subscription={
                "paystack_subscription_code": data.subscription_code,
                "start_date": utc_now(),
                "end_date": data.next_payment_date,
                **_card_fields(data.authorization),
            },
        )
        SUBSCRIPTION_TRANSITIONS.labels("provider_subscription_created").inc()

    def _subscription_not_renew(self, event: SubscriptionNotRenewEvent) -> None:
        data = event.data
        company = self._company(data.customer.email)
        if self._is_stale(company, data.subscription_code, event.event):
            return
        if company.scheduled_deactivation is not None:
            return
        cancel_date = data.next_payment_date or (
            company.subscription.end_date if company.subscription else None
        )
        if cancel_date is None:
            raise ReconciliationError("No billing date to schedule deactivation against")
        self._schedule_deactivation(company, deactivation_date_for(cancel_date))

    def _subscription_disable(self, event: SubscriptionDisableEvent) -> None:
        data = event.data
        company = self._company(data.customer.email)
        if self._is_stale(company, data.subscription_code, event.event):
            return
        if company.scheduled_deactivation is not None or company.pending_plan_update:
            return
        companies.update(
            self.db,
            company,
            {
                "subscription_status": SubscriptionStatus.expired,
                "can_update": False,
                "can_cancel": False,
            },
            subscription={"paystack_subscription_code": None},
        )
        SUBSCRIPTION_TRANSITIONS.labels("expired").inc()

    def _invoice_update(self, event: InvoiceUpdateEvent) -> None:
        data = event.data
        company = self._company(data.customer.email)
        current = self._current_code(company)
        if current is not None and self._is_stale(
            company, data.subscription.subscription_code, event.event
        ):
            return
        if data.status and data.status != "success":
            return
        companies.update(
            self.db,
            company,
            {
                "subscription_status": SubscriptionStatus.active,
                "can_update": True,
                "can_cancel": True,
            },
            subscription={
                "paystack_subscription_code": data.subscription.subscription_code,
                "start_date": utc_now(),
                "end_date": data.subscription.next_payment_date,
                **_card_fields(data.authorization),
            },
        )
        SUBSCRIPTION_TRANSITIONS.labels("renewed").inc()

    def _invoice_payment_failed(self, event: InvoicePaymentFailedEvent) -> None:
        data = event.data
        company = self._company(data.customer.email)
        if self._is_stale(company, data.subscription.subscription_code, event.event):
            return
        companies.update(
            self.db,
            company,
            {
                "subscription_status": SubscriptionStatus.expired,
                "can_update": False,
                "can_cancel": False,
            },
            subscription={"start_date": None, "end_date": None},
        )
        SUBSCRIPTION_TRANSITIONS.labels("expired").inc()

    def _schedule_deactivation(self, company: Company, deactivation_date: datetime) -> None:
        companies.update(
            self.db,
            company,
            {
                "can_cancel": False,
                "can_update": False,
                "scheduled_deactivation": deactivation_date,
                "pending_plan_update": None,
                "next_billing_date": None,
            },
        )
        self._record_cycle_end(company, deactivation_date)
        company_id = company.id
        self._after_commit.append(
            lambda: self.scheduler.schedule_at(
                deactivation_date,
                JobKind.deactivate_company,
                company_id,
                run_deactivate_company,
            )
        )
        SUBSCRIPTION_TRANSITIONS.labels("cancellation_scheduled").inc()

    def _record_cycle_end(self, company: Company, end_date: datetime) -> None:
        companies.update(self.db, company, {}, subscription={"end_date": end_date})
