"""Subscription lifecycle: plan changes, cancellation, deactivation, reactivation.

Provider calls always happen before local writes, so a company never records
a change that Paystack rejected. Every local transition runs inside one
``atomic`` block; deferred transitions are re-read under a row lock and are
no-ops once their pending field is gone.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFound, OperationConflict, PaymentGatewayError, ValidationFailed
from app.metrics import SUBSCRIPTION_TRANSITIONS
from app.models.company import (
    BillingCycle,
    Company,
    CompanySubscription,
    SubscriptionStatus,
    Tier,
)
from app.services.common import atomic, ensure_utc, session_scope, utc_now
from app.services.companies import companies
from app.services.payment_gateway import GatewayResult, PaystackGateway, paystack_gateway
from app.services.plans import PlanSelection
from app.services.scheduler import DeferredScheduler, JobKind, deferred_scheduler

logger = logging.getLogger(__name__)

# Cron triggers fire at the start of the matching minute.
DEACTIVATION_TOLERANCE = timedelta(minutes=1)


class LifecycleState(str, enum.Enum):
    trial = "trial"
    active = "active"
    update_pending = "update_pending"
    cancel_pending = "cancel_pending"
    cancelled = "cancelled"
    expired = "expired"


def lifecycle_state(company: Company) -> LifecycleState:
    status = company.subscription_status
    if status == SubscriptionStatus.trial:
        return LifecycleState.trial
    if status == SubscriptionStatus.cancelled:
        return LifecycleState.cancelled
    if status == SubscriptionStatus.expired:
        return LifecycleState.expired
    if company.scheduled_deactivation is not None:
        return LifecycleState.cancel_pending
    if company.pending_plan_update is not None:
        return LifecycleState.update_pending
    return LifecycleState.active


def is_same_utc_day(first: datetime, second: datetime) -> bool:
    return ensure_utc(first).date() == ensure_utc(second).date()


def deactivation_date_for(cancel_date: datetime) -> datetime:
    return ensure_utc(cancel_date) + timedelta(minutes=settings.cancellation_grace_minutes)


@dataclass
class PlanChangeResult:
    immediate: bool
    effective_at: datetime
    payment_url: str | None = None


class SubscriptionLifecycle:
    def __init__(
        self,
        db: Session,
        gateway: PaystackGateway | None = None,
        scheduler: DeferredScheduler | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway or paystack_gateway
        self.scheduler = scheduler or deferred_scheduler

    # ── Helpers ──────────────────────────────────────────

    @staticmethod
    def _raise_for(result: GatewayResult, message: str | None = None) -> None:
        if result.not_found:
            raise NotFound(result.error or "Subscription not found")
        raise PaymentGatewayError(message or result.error, details=result.error if message else None)

    @staticmethod
    def _billing_cycle(company: Company) -> CompanySubscription:
        subscription = company.subscription
        if subscription is None or subscription.end_date is None:
            raise ValidationFailed("Company has no active billing cycle")
        return subscription

    # ── Plan change ──────────────────────────────────────

    def update_plan(
        self, company: Company, selection: PlanSelection, now: datetime | None = None
    ) -> PlanChangeResult:
        """Cancel the provider subscription, then switch now or at the cycle boundary."""
        now = ensure_utc(now) if now else utc_now()
        subscription = self._billing_cycle(company)
        if not company.can_update:
            raise OperationConflict("Subscription cannot be updated at this time")

        next_billing_date = ensure_utc(subscription.end_date)
        immediate = is_same_utc_day(next_billing_date, now)
        if not immediate:
            if not subscription.paystack_customer_id:
                raise ValidationFailed("Company has no Paystack customer on file")
            if not selection.plan_code:
                raise ValidationFailed(f"No Paystack plan configured for {selection.key}")

        cancelled = self.gateway.cancel_subscription(company.company_email)
        if not cancelled.ok:
            self._raise_for(cancelled)

        if immediate:
            return self._apply_immediately(company, selection, now)
        return self._schedule_update(company, selection, next_billing_date)

    def _apply_immediately(
        self, company: Company, selection: PlanSelection, now: datetime
    ) -> PlanChangeResult:
        result = self.gateway.initialize_transaction(
            company.company_email, selection.amount, plan=selection.plan_code
        )
        if not result.ok:
            self._raise_for(result)

        with atomic(self.db):
            companies.guarded_update(
                self.db,
                company,
                "can_update",
                {
                    "subscription_status": SubscriptionStatus.active,
                    "can_update": True,
                    "can_cancel": True,
                    "pending_plan_update": None,
                    "next_billing_date": None,
                    "scheduled_deactivation": None,
                },
                subscription={
                    "tier": selection.tier,
                    "tier_type": selection.cycle,
                    "start_date": now,
                    "paystack_subscription_code": None,
                },
            )
        SUBSCRIPTION_TRANSITIONS.labels("plan_changed_immediately").inc()
        logger.info(
            "Applied plan %s immediately", selection.key, extra={"company_id": str(company.id)}
        )
        transaction = (result.data or {}).get("transaction") or {}
        return PlanChangeResult(
            immediate=True,
            effective_at=now,
            payment_url=transaction.get("authorization_url"),
        )

    def _schedule_update(
        self, company: Company, selection: PlanSelection, next_billing_date: datetime
    ) -> PlanChangeResult:
        subscription = company.subscription
        result = self.gateway.create_subscription(
            plan=selection.plan_code,
            customer=subscription.paystack_customer_id,
            start_date=next_billing_date,
            authorization=subscription.authorization_code,
        )
        if not result.ok:
            self._raise_for(result)

        with atomic(self.db):
            companies.guarded_update(
                self.db,
                company,
                "can_update",
                {
                    "pending_plan_update": selection.encode(),
                    "next_billing_date": next_billing_date,
                },
                subscription={
                    "paystack_subscription_code": (result.data or {}).get(
                        "subscription_code"
                    ),
                },
            )
        self.scheduler.schedule_at(
            next_billing_date,
            JobKind.apply_pending_plan,
            company.id,
            run_apply_pending_subscription,
        )
        SUBSCRIPTION_TRANSITIONS.labels("plan_change_scheduled").inc()
        return PlanChangeResult(immediate=False, effective_at=next_billing_date)

    def apply_pending_subscription(self, company_id) -> Company | None:
        """Apply the stored plan change.

        A no-op when nothing is pending or a cancellation has been scheduled since.
        """
        with atomic(self.db):
            company = companies.find_by_id(self.db, company_id, for_update=True)
            if company is None:
                logger.warning("Pending update target vanished", extra={"company_id": str(company_id)})
                return None
            if not company.pending_plan_update:
                logger.info(
                    "No pending subscription update found", extra={"company_id": str(company_id)}
                )
                return None
            if company.scheduled_deactivation is not None:
                logger.info(
                    "Cancellation pending, plan update skipped",
                    extra={"company_id": str(company_id)},
                )
                return None
            selection = PlanSelection.decode(company.pending_plan_update)
            companies.update(
                self.db,
                company,
                {
                    "pending_plan_update": None,
                    "next_billing_date": None,
                    "scheduled_deactivation": None,
                    "can_update": True,
                    "can_cancel": True,
                    "subscription_status": SubscriptionStatus.active,
                },
                subscription={
                    "tier": selection.tier,
                    "tier_type": selection.cycle,
                    "start_date": ensure_utc(company.next_billing_date) or utc_now(),
                },
            )
        SUBSCRIPTION_TRANSITIONS.labels("plan_applied").inc()
        logger.info("Applied pending plan %s", selection.key, extra={"company_id": str(company_id)})
        return company

    # ── Cancellation ─────────────────────────────────────

    def cancel_subscription(
        self, company: Company, cancel_date: datetime | None = None
    ) -> datetime:
        """Disable at Paystack now; deactivate locally after the grace window."""
        subscription = self._billing_cycle(company)
        if not company.can_cancel:
            raise OperationConflict("Subscription cancellation is already scheduled")
        cancel_date = cancel_date or subscription.end_date

        cancelled = self.gateway.cancel_subscription(company.company_email)
        if not cancelled.ok:
            self._raise_for(cancelled)

        deactivation_date = deactivation_date_for(cancel_date)
        with atomic(self.db):
            companies.guarded_update(
                self.db,
                company,
                "can_cancel",
                {
                    "can_cancel": False,
                    "can_update": False,
                    "scheduled_deactivation": deactivation_date,
                    "pending_plan_update": None,
                    "next_billing_date": None,
                },
                subscription={"end_date": deactivation_date},
            )
        self.scheduler.schedule_at(
            deactivation_date,
            JobKind.deactivate_company,
            company.id,
            run_deactivate_company,
        )
        SUBSCRIPTION_TRANSITIONS.labels("cancellation_scheduled").inc()
        return deactivation_date

    def deactivate_company(self, company_id, now: datetime | None = None) -> Company | None:
        now = ensure_utc(now) if now else utc_now()
        with atomic(self.db):
            company = companies.find_by_id(self.db, company_id, for_update=True)
            if company is None:
                logger.warning("Deactivation target vanished", extra={"company_id": str(company_id)})
                return None
            scheduled = ensure_utc(company.scheduled_deactivation)
            if scheduled is None:
                logger.info("No deactivation scheduled", extra={"company_id": str(company_id)})
                return company
            if scheduled - now > DEACTIVATION_TOLERANCE:
                logger.info(
                    "Deactivation not due until %s", scheduled.isoformat(),
                    extra={"company_id": str(company_id)},
                )
                return company
            companies.update(
                self.db,
                company,
                {
                    "subscription_status": SubscriptionStatus.cancelled,
                    "scheduled_deactivation": None,
                    "pending_plan_update": None,
                    "next_billing_date": None,
                    "can_update": False,
                    "can_cancel": False,
                },
                subscription={
                    "tier": Tier.free,
                    "tier_type": BillingCycle.monthly,
                    "paystack_subscription_code": None,
                },
            )
            if company.stripe_subscription is not None:
                companies.update_stripe(
                    self.db, company, {"tier": Tier.free, "tier_type": BillingCycle.monthly}
                )
        SUBSCRIPTION_TRANSITIONS.labels("deactivated").inc()
        logger.info("Company deactivated", extra={"company_id": str(company_id)})
        return company

    # ── Reactivation ─────────────────────────────────────

    def reactivate_subscription(
        self, company: Company, selection: PlanSelection, now: datetime | None = None
    ) -> str | None:
        """Start a fresh paid plan right away. Returns the Paystack checkout URL."""
        now = ensure_utc(now) if now else utc_now()
        if lifecycle_state(company) in (LifecycleState.active, LifecycleState.update_pending):
            raise OperationConflict("Subscription is already active")

        result = self.gateway.initialize_transaction(
            company.company_email, selection.amount, plan=selection.plan_code
        )
        if not result.ok:
            self._raise_for(result, "Payment gateway initialization failed")

        with atomic(self.db):
            companies.update(
                self.db,
                company,
                {
                    "subscription_status": SubscriptionStatus.active,
                    "can_update": True,
                    "can_cancel": True,
                    "scheduled_deactivation": None,
                    "pending_plan_update": None,
                    "next_billing_date": None,
                },
                subscription={
                    "tier": selection.tier,
                    "tier_type": selection.cycle,
                    "start_date": now,
                },
            )
        SUBSCRIPTION_TRANSITIONS.labels("reactivated").inc()
        transaction = (result.data or {}).get("transaction") or {}
        return transaction.get("authorization_url")


# ── Deferred job entry points ────────────────────────────


def run_apply_pending_subscription(company_id: str) -> None:
    with session_scope() as db:
        SubscriptionLifecycle(db).apply_pending_subscription(company_id)


def run_deactivate_company(company_id: str) -> None:
    with session_scope() as db:
        SubscriptionLifecycle(db).deactivate_company(company_id)
