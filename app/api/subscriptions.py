import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.errors import ValidationFailed
from app.models.company import Company
from app.schemas.subscription import (
    BillingCard,
    BillingHistoryResponse,
    CancellationResponse,
    CompanySubscriptionRead,
    InvoiceEntry,
    PaymentResponse,
    PlanChangeRequest,
    SessionResponse,
    SubscriptionRead,
)
from app.services.auth_dependencies import require_company_admin
from app.services.plans import PlanSelection
from app.services.stripe_billing import StripeBilling
from app.services.subscription_lifecycle import SubscriptionLifecycle, lifecycle_state

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/subscription", tags=["subscription"])


def _selection(payload: PlanChangeRequest) -> PlanSelection:
    try:
        return payload.selection()
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from exc


def _subscription_view(company: Company) -> SubscriptionRead:
    subscription = company.subscription
    return SubscriptionRead(
        id=company.id,
        company_name=company.company_name,
        company_email=company.company_email,
        subscription_status=company.subscription_status.value,
        state=lifecycle_state(company).value,
        can_update=company.can_update,
        can_cancel=company.can_cancel,
        pending_plan_update=company.pending_plan_update,
        next_billing_date=company.next_billing_date,
        scheduled_deactivation=company.scheduled_deactivation,
        subscription=CompanySubscriptionRead(
            tier=subscription.tier.value,
            tier_type=subscription.tier_type.value,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            paystack_subscription_code=subscription.paystack_subscription_code,
            last4=subscription.last4,
            card_type=subscription.card_type,
            bank=subscription.bank,
        )
        if subscription
        else None,
    )


@router.get("", response_model=SubscriptionRead)
def get_subscription(company: Company = Depends(require_company_admin)):
    return _subscription_view(company)


@router.post("/update", response_model=PaymentResponse)
def update_subscription(
    payload: PlanChangeRequest,
    company: Company = Depends(require_company_admin),
    db: Session = Depends(get_db),
):
    selection = _selection(payload)
    result = SubscriptionLifecycle(db).update_plan(company, selection)
    if result.immediate:
        msg = "Subscription updated successfully"
    else:
        msg = "Subscription update scheduled for the next billing date"
    return PaymentResponse(
        msg=msg,
        payment_url=result.payment_url,
        effective_at=result.effective_at,
    )


@router.post("/cancel", response_model=CancellationResponse)
def cancel_subscription(
    company: Company = Depends(require_company_admin),
    db: Session = Depends(get_db),
):
    deactivation_date = SubscriptionLifecycle(db).cancel_subscription(company)
    return CancellationResponse(
        msg="Subscription cancelled, access ends at the end of the billing period",
        deactivation_date=deactivation_date,
    )


@router.post("/reactivate", response_model=PaymentResponse)
def reactivate_subscription(
    payload: PlanChangeRequest,
    company: Company = Depends(require_company_admin),
    db: Session = Depends(get_db),
):
    selection = _selection(payload)
    payment_url = SubscriptionLifecycle(db).reactivate_subscription(company, selection)
    return PaymentResponse(msg="Subscription reactivated", payment_url=payment_url)


# ── Stripe ───────────────────────────────────────────────


@router.post("/create", response_model=SessionResponse)
def create_stripe_subscription(
    payload: PlanChangeRequest,
    company: Company = Depends(require_company_admin),
    db: Session = Depends(get_db),
):
    url = StripeBilling(db).start_checkout(company, _selection(payload))
    return SessionResponse(msg="Checkout session created", url=url)


@router.post("/cancel/stripe", response_model=SessionResponse)
def cancel_stripe_subscription(
    company: Company = Depends(require_company_admin),
    db: Session = Depends(get_db),
):
    url = StripeBilling(db).cancel_url(company)
    return SessionResponse(msg="Cancel session created", url=url)


@router.post("/manage", response_model=SessionResponse)
def manage_stripe_subscription(
    company: Company = Depends(require_company_admin),
    db: Session = Depends(get_db),
):
    url = StripeBilling(db).manage_url(company)
    return SessionResponse(msg="Billing portal session created", url=url)


@router.get("/all", response_model=BillingHistoryResponse)
def billing_history(
    company: Company = Depends(require_company_admin),
    db: Session = Depends(get_db),
):
    history = StripeBilling(db).billing_history(company)
    return BillingHistoryResponse(
        invoices=[InvoiceEntry(**entry) for entry in history.entries],
        card=BillingCard(**history.card),
    )
