from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from app.errors import NotFound, OperationConflict, PaymentGatewayError, ValidationFailed
from app.models.company import BillingCycle, Company, SubscriptionStatus, Tier
from app.services import subscription_lifecycle
from app.services.common import ensure_utc
from app.services.companies import companies
from app.services.payment_gateway import NO_ACTIVE_SUBSCRIPTION, GatewayResult
from app.services.plans import PlanSelection
from app.services.scheduler import JobKind
from app.services.subscription_lifecycle import (
    LifecycleState,
    SubscriptionLifecycle,
    deactivation_date_for,
    lifecycle_state,
    run_apply_pending_subscription,
)

TEAM_YEAR = PlanSelection(tier=Tier.team, cycle=BillingCycle.yearly)


@pytest.fixture()
def lifecycle(db_session, fake_gateway, scheduler):
    return SubscriptionLifecycle(db_session, gateway=fake_gateway, scheduler=scheduler)


def _snapshot(company: Company) -> dict:
    return {
        "status": company.subscription_status,
        "pending": company.pending_plan_update,
        "next_billing_date": company.next_billing_date,
        "scheduled_deactivation": company.scheduled_deactivation,
        "can_update": company.can_update,
        "can_cancel": company.can_cancel,
        "tier": company.subscription.tier,
        "code": company.subscription.paystack_subscription_code,
    }


class TestUpdatePlan:
    def test_same_utc_day_applies_immediately(self, lifecycle, make_company, fake_gateway, scheduler):
        now = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)
        company = make_company(end_date=datetime(2024, 5, 1, 18, 0, tzinfo=UTC))

        result = lifecycle.update_plan(company, TEAM_YEAR, now=now)

        assert result.immediate is True
        assert result.payment_url == "https://checkout.paystack.com/ref_123"
        assert fake_gateway.called("initialize_transaction") == [
            ((company.company_email, 14_400_000), {"plan": "PLN_team_year"})
        ]
        assert fake_gateway.called("create_subscription") == []
        assert scheduler.jobs() == []
        assert company.subscription_status == SubscriptionStatus.active
        assert company.subscription.tier == Tier.team
        assert company.subscription.tier_type == BillingCycle.yearly
        assert ensure_utc(company.subscription.start_date) == now
        assert company.subscription.paystack_subscription_code is None
        assert company.pending_plan_update is None

    def test_next_day_boundary_is_deferred(self, lifecycle, make_company, fake_gateway, scheduler):
        now = datetime(2024, 5, 1, 23, 0, tzinfo=UTC)
        boundary = datetime(2024, 5, 2, 0, 30, tzinfo=UTC)
        company = make_company(end_date=boundary, customer_id="CUS_abc")

        result = lifecycle.update_plan(company, TEAM_YEAR, now=now)

        assert result.immediate is False
        assert result.effective_at == boundary
        assert fake_gateway.called("initialize_transaction") == []
        ((_, kwargs),) = fake_gateway.called("create_subscription")
        assert kwargs == {
            "plan": "PLN_team_year",
            "customer": "CUS_abc",
            "start_date": boundary,
            "authorization": "AUTH_existing",
        }
        assert company.pending_plan_update == "team_year"
        assert ensure_utc(company.next_billing_date) == boundary
        assert company.subscription.paystack_subscription_code == "SUB_next"
        assert company.subscription.tier == Tier.personal
        (job,) = scheduler.jobs()
        assert job.kind == JobKind.apply_pending_plan
        assert job.company_id == str(company.id)
        assert job.run_at == boundary

    def test_requires_can_update(self, lifecycle, make_company, fake_gateway):
        company = make_company(can_update=False)

        with pytest.raises(OperationConflict):
            lifecycle.update_plan(company, TEAM_YEAR)

        assert fake_gateway.calls == []

    def test_requires_billing_cycle(self, lifecycle, make_company, db_session):
        company = make_company()
        company.subscription.end_date = None
        db_session.commit()

        with pytest.raises(ValidationFailed):
            lifecycle.update_plan(company, TEAM_YEAR)

    def test_no_active_provider_subscription_is_not_found(self, lifecycle, company, fake_gateway):
        fake_gateway.cancel_result = GatewayResult.failure(NO_ACTIVE_SUBSCRIPTION, not_found=True)
        before = _snapshot(company)

        with pytest.raises(NotFound, match=NO_ACTIVE_SUBSCRIPTION):
            lifecycle.update_plan(company, TEAM_YEAR)

        assert _snapshot(company) == before
        assert fake_gateway.called("create_subscription") == []

    def test_provider_cancel_failure_leaves_state_untouched(self, lifecycle, company, fake_gateway, scheduler):
        fake_gateway.cancel_result = GatewayResult.failure("Failed to disable subscription")
        before = _snapshot(company)

        with pytest.raises(PaymentGatewayError) as excinfo:
            lifecycle.update_plan(company, TEAM_YEAR)

        assert excinfo.value.status_code == 502
        assert _snapshot(company) == before
        assert scheduler.jobs() == []

    def test_create_subscription_failure_stores_nothing(self, lifecycle, company, fake_gateway, scheduler):
        fake_gateway.create_result = GatewayResult.failure("Invalid plan")

        with pytest.raises(PaymentGatewayError, match="Invalid plan"):
            lifecycle.update_plan(company, TEAM_YEAR)

        assert company.pending_plan_update is None
        assert scheduler.jobs() == []


class TestApplyPendingSubscription:
    def test_applies_then_is_a_no_op(self, lifecycle, make_company):
        boundary = datetime(2024, 6, 1, 0, 0, tzinfo=UTC)
        company = make_company(pending_plan_update="enterprise_month", next_billing_date=boundary)

        applied = lifecycle.apply_pending_subscription(company.id)

        assert applied is not None
        assert company.pending_plan_update is None
        assert company.next_billing_date is None
        assert company.subscription.tier == Tier.enterprise
        assert company.subscription.tier_type == BillingCycle.monthly
        assert company.subscription_status == SubscriptionStatus.active
        assert company.can_update is True and company.can_cancel is True

        assert lifecycle.apply_pending_subscription(company.id) is None
        assert company.subscription.tier == Tier.enterprise

    def test_failure_mid_transaction_keeps_pending_fields(self, lifecycle, make_company, monkeypatch):
        boundary = datetime(2024, 6, 1, 0, 0, tzinfo=UTC)
        company = make_company(pending_plan_update="team_month", next_billing_date=boundary)

        def failing_update(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(companies, "update", failing_update)

        with pytest.raises(RuntimeError):
            lifecycle.apply_pending_subscription(company.id)

        monkeypatch.undo()
        assert company.pending_plan_update == "team_month"
        assert ensure_utc(company.next_billing_date) == boundary
        assert company.subscription.tier == Tier.personal

    def test_pending_cancellation_blocks_the_change(self, lifecycle, make_company):
        deactivation = datetime(2024, 6, 1, 0, 10, tzinfo=UTC)
        company = make_company(
            pending_plan_update="team_month",
            next_billing_date=datetime(2024, 6, 1, tzinfo=UTC),
            scheduled_deactivation=deactivation,
            can_update=False,
            can_cancel=False,
        )

        assert lifecycle.apply_pending_subscription(company.id) is None

        assert company.pending_plan_update == "team_month"
        assert ensure_utc(company.scheduled_deactivation) == deactivation
        assert company.subscription.tier == Tier.personal
        assert company.can_cancel is False

    def test_unknown_company_is_ignored(self, lifecycle):
        assert lifecycle.apply_pending_subscription("00000000-0000-0000-0000-000000000000") is None

    def test_job_entrypoint_uses_its_own_session(self, db_session, make_company):
        company = make_company(
            pending_plan_update="team_year",
            next_billing_date=datetime(2024, 6, 1, tzinfo=UTC),
        )

        run_apply_pending_subscription(str(company.id))

        db_session.expire_all()
        assert company.pending_plan_update is None
        assert company.subscription.tier == Tier.team


class TestCancelSubscription:
    def test_deactivation_is_cycle_end_plus_grace(self, lifecycle, make_company, fake_gateway, scheduler):
        cycle_end = datetime(2024, 7, 1, 12, 0, tzinfo=UTC)
        company = make_company(end_date=cycle_end)

        deactivation = lifecycle.cancel_subscription(company)

        assert deactivation == cycle_end + timedelta(minutes=10)
        assert deactivation_date_for(cycle_end) == deactivation
        assert fake_gateway.called("cancel_subscription") == [((company.company_email,), {})]
        assert company.can_cancel is False
        assert company.can_update is False
        assert ensure_utc(company.scheduled_deactivation) == deactivation
        assert ensure_utc(company.subscription.end_date) == deactivation
        (job,) = scheduler.jobs()
        assert job.kind == JobKind.deactivate_company
        assert job.run_at == deactivation

    def test_second_cancel_conflicts(self, lifecycle, company, fake_gateway):
        lifecycle.cancel_subscription(company)
        fake_gateway.calls.clear()

        with pytest.raises(OperationConflict):
            lifecycle.cancel_subscription(company)

        assert fake_gateway.calls == []

    def test_concurrent_claim_of_the_flag_conflicts(self, lifecycle, company, fake_gateway, db_session, scheduler):
        def racing_cancel(email):
            db_session.execute(
                update(Company).where(Company.id == company.id).values(can_cancel=False)
            )
            return GatewayResult(data={"subscription_code": "SUB_current"})

        fake_gateway.cancel_subscription = racing_cancel

        with pytest.raises(OperationConflict):
            lifecycle.cancel_subscription(company)

        assert scheduler.jobs() == []
        assert company.scheduled_deactivation is None

    def test_cancel_supersedes_a_deferred_plan_change(self, lifecycle, make_company, scheduler):
        cycle_end = datetime.now(UTC) + timedelta(days=5)
        company = make_company(end_date=cycle_end)
        lifecycle.update_plan(company, TEAM_YEAR)
        assert company.pending_plan_update == "team_year"

        deactivation = lifecycle.cancel_subscription(company)
        assert company.pending_plan_update is None
        assert company.next_billing_date is None

        assert lifecycle.apply_pending_subscription(company.id) is None

        assert ensure_utc(company.scheduled_deactivation) == deactivation
        assert company.subscription_status == SubscriptionStatus.active
        assert company.subscription.tier == Tier.personal
        assert company.can_update is False and company.can_cancel is False
        assert lifecycle_state(company) == LifecycleState.cancel_pending

    def test_provider_failure_aborts(self, lifecycle, company, fake_gateway, scheduler):
        fake_gateway.cancel_result = GatewayResult.failure("Paystack is not configured")

        with pytest.raises(PaymentGatewayError):
            lifecycle.cancel_subscription(company)

        assert company.can_cancel is True
        assert scheduler.jobs() == []


class TestDeactivateCompany:
    def test_deactivates_when_due(self, lifecycle, make_company):
        due = datetime(2024, 7, 1, 12, 10, tzinfo=UTC)
        company = make_company(scheduled_deactivation=due, can_cancel=False, can_update=False)

        lifecycle.deactivate_company(company.id, now=due)

        assert company.subscription_status == SubscriptionStatus.cancelled
        assert company.scheduled_deactivation is None
        assert company.subscription.tier == Tier.free
        assert company.subscription.tier_type == BillingCycle.monthly
        assert company.subscription.paystack_subscription_code is None

    def test_repeat_is_harmless(self, lifecycle, make_company):
        due = datetime(2024, 7, 1, 12, 10, tzinfo=UTC)
        company = make_company(scheduled_deactivation=due)
        lifecycle.deactivate_company(company.id, now=due)

        lifecycle.deactivate_company(company.id, now=due + timedelta(hours=1))

        assert company.subscription_status == SubscriptionStatus.cancelled
        assert company.subscription.tier == Tier.free

    def test_fires_early_within_the_trigger_minute(self, lifecycle, make_company):
        due = datetime(2024, 7, 1, 12, 10, 45, tzinfo=UTC)
        company = make_company(scheduled_deactivation=due)

        lifecycle.deactivate_company(company.id, now=datetime(2024, 7, 1, 12, 10, tzinfo=UTC))

        assert company.subscription_status == SubscriptionStatus.cancelled

    def test_not_yet_due_is_left_alone(self, lifecycle, make_company):
        due = datetime(2024, 7, 1, 12, 10, tzinfo=UTC)
        company = make_company(scheduled_deactivation=due)

        lifecycle.deactivate_company(company.id, now=due - timedelta(days=3))

        assert company.subscription_status == SubscriptionStatus.active
        assert ensure_utc(company.scheduled_deactivation) == due


class TestReactivateSubscription:
    def test_reactivates_cancelled_company(self, lifecycle, make_company, fake_gateway):
        company = make_company(status=SubscriptionStatus.cancelled, tier=Tier.free, can_update=False, can_cancel=False)

        url = lifecycle.reactivate_subscription(company, TEAM_YEAR)

        assert url == "https://checkout.paystack.com/ref_123"
        assert fake_gateway.called("initialize_transaction") == [
            ((company.company_email, 14_400_000), {"plan": "PLN_team_year"})
        ]
        assert company.subscription_status == SubscriptionStatus.active
        assert company.subscription.tier == Tier.team
        assert company.can_update is True and company.can_cancel is True

    def test_active_company_conflicts(self, lifecycle, company, fake_gateway):
        with pytest.raises(OperationConflict):
            lifecycle.reactivate_subscription(company, TEAM_YEAR)
        assert fake_gateway.calls == []

    def test_cancel_pending_company_keeps_its_subscription(self, lifecycle, make_company):
        due = datetime(2024, 7, 1, 12, 10, tzinfo=UTC)
        company = make_company(scheduled_deactivation=due, can_cancel=False, can_update=False)

        lifecycle.reactivate_subscription(company, TEAM_YEAR)
        lifecycle.deactivate_company(company.id, now=due)

        assert company.subscription_status == SubscriptionStatus.active
        assert company.scheduled_deactivation is None
        assert company.can_cancel is True

    def test_gateway_failure_is_reported(self, lifecycle, make_company, fake_gateway):
        company = make_company(status=SubscriptionStatus.expired)
        fake_gateway.initialize_result = GatewayResult.failure("Invalid amount")

        with pytest.raises(PaymentGatewayError, match="Payment gateway initialization failed") as excinfo:
            lifecycle.reactivate_subscription(company, TEAM_YEAR)

        assert excinfo.value.detail["details"] == "Invalid amount"
        assert company.subscription_status == SubscriptionStatus.expired


@pytest.mark.parametrize(
    ("fields", "expected"),
    [
        ({}, LifecycleState.active),
        ({"pending_plan_update": "team_year"}, LifecycleState.update_pending),
        ({"scheduled_deactivation": datetime(2030, 1, 1, tzinfo=UTC)}, LifecycleState.cancel_pending),
        ({"status": SubscriptionStatus.cancelled}, LifecycleState.cancelled),
        ({"status": SubscriptionStatus.trial}, LifecycleState.trial),
        ({"status": SubscriptionStatus.expired}, LifecycleState.expired),
    ],
)
def test_lifecycle_state(make_company, fields, expected):
    assert lifecycle_state(make_company(**fields)) == expected


def test_module_singletons_are_used_by_default(db_session, wired_services):
    fake_gateway, scheduler = wired_services
    lifecycle = SubscriptionLifecycle(db_session)
    assert lifecycle.gateway is fake_gateway
    assert lifecycle.scheduler is scheduler
    assert subscription_lifecycle.paystack_gateway is fake_gateway
