import os
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import ModuleType
from typing import Any

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Create a mock for the app.db module that uses our test engine
class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    redis_url = "redis://localhost:6379/0"
    secret_key = "test-secret-key"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    paystack_secret_key = "sk_test_webhook"
    paystack_public_key = ""
    paystack_callback_url = ""
    paystack_timeout_seconds = 5
    plan_personal_month = "PLN_personal_month"
    plan_personal_year = "PLN_personal_year"
    plan_team_month = "PLN_team_month"
    plan_team_year = "PLN_team_year"
    plan_enterprise_month = "PLN_enterprise_month"
    plan_enterprise_year = "PLN_enterprise_year"
    billing_currency = "NGN"
    cancellation_grace_minutes = 10
    stale_pending_days = 180
    scheduler_enabled = False
    scheduler_tick_seconds = 15
    cors_origins = ""
    stripe_secret_key = "sk_test_stripe"
    stripe_webhook_secret = "whsec_test"
    stripe_api_version = "2025-02-24.acacia"
    stripe_return_url = "https://app.cauntr.test"
    stripe_price_personal_month = "price_personal_month"
    stripe_price_personal_year = "price_personal_year"
    stripe_price_team_month = "price_team_month"
    stripe_price_team_year = "price_team_year"
    stripe_price_enterprise_month = "price_enterprise_month"
    stripe_price_enterprise_year = ""

    def plan_codes(self) -> dict[str, str]:
        return {
            "personal_month": self.plan_personal_month,
            "personal_year": self.plan_personal_year,
            "team_month": self.plan_team_month,
            "team_year": self.plan_team_year,
            "enterprise_month": self.plan_enterprise_month,
            "enterprise_year": self.plan_enterprise_year,
        }

    def stripe_price_ids(self) -> dict[str, str]:
        return {
            "personal_month": self.stripe_price_personal_month,
            "personal_year": self.stripe_price_personal_year,
            "team_month": self.stripe_price_team_month,
            "team_year": self.stripe_price_team_year,
            "enterprise_month": self.stripe_price_enterprise_month,
            "enterprise_year": self.stripe_price_enterprise_year,
        }


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"

# Now import the models - they'll use our mocked db module
from app.models.billing import WebhookEvent  # noqa: E402,F401
from app.models.company import (  # noqa: E402
    BillingCycle,
    Company,
    CompanyStripeSubscription,
    CompanySubscription,
    SubscriptionStatus,
    Tier,
)
from app.services.payment_gateway import GatewayResult  # noqa: E402
from app.services.scheduler import DeferredScheduler  # noqa: E402

TestBase.metadata.create_all(_test_engine)

Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    yield
    with engine.begin() as conn:
        for table in reversed(TestBase.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


def _unique_email() -> str:
    return f"billing-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def make_company(db_session):
    """Factory for a company with a paid subscription row."""

    def _make(
        *,
        status: SubscriptionStatus = SubscriptionStatus.active,
        tier: Tier = Tier.personal,
        cycle: BillingCycle = BillingCycle.monthly,
        end_date: datetime | None = None,
        subscription_code: str | None = "SUB_current",
        customer_id: str | None = None,
        stripe: dict[str, Any] | None = None,
        **company_fields: Any,
    ) -> Company:
        email = company_fields.pop("company_email", None) or _unique_email()
        tenant_id = uuid.uuid4().hex
        company = Company(
            tenant_id=tenant_id,
            company_name="Acme Stores",
            company_email=email,
            country="NG",
            subscription_status=status,
            **company_fields,
        )
        company.subscription = CompanySubscription(
            tenant_id=tenant_id,
            tier=tier,
            tier_type=cycle,
            start_date=datetime.now(UTC) - timedelta(days=20),
            end_date=end_date if end_date is not None else datetime.now(UTC) + timedelta(days=10),
            paystack_subscription_code=subscription_code,
            paystack_customer_id=customer_id or f"CUS_{uuid.uuid4().hex[:10]}",
            authorization_code="AUTH_existing",
        )
        if stripe is not None:
            company.stripe_subscription = CompanyStripeSubscription(
                tenant_id=tenant_id, tier=tier, tier_type=cycle, **stripe
            )
        db_session.add(company)
        db_session.commit()
        db_session.refresh(company)
        return company

    return _make


@pytest.fixture()
def company(make_company):
    return make_company()


# ============ Collaborator doubles ============


@dataclass
class FakeGateway:
    """Records Paystack calls and answers with canned results."""

    cancel_result: GatewayResult = field(
        default_factory=lambda: GatewayResult(data={"subscription_code": "SUB_current"})
    )
    initialize_result: GatewayResult = field(
        default_factory=lambda: GatewayResult(
            data={
                "transaction": {
                    "reference": "ref_123",
                    "authorization_url": "https://checkout.paystack.com/ref_123",
                },
                "verify": {"status": "abandoned"},
            }
        )
    )
    create_result: GatewayResult = field(
        default_factory=lambda: GatewayResult(
            data={"subscription_code": "SUB_next", "end_date": None}
        )
    )
    calls: list[tuple[str, tuple, dict]] = field(default_factory=list)

    def _record(self, name: str, *args: Any, **kwargs: Any) -> None:
        self.calls.append((name, args, kwargs))

    def called(self, name: str) -> list[tuple[tuple, dict]]:
        return [(args, kwargs) for call, args, kwargs in self.calls if call == name]

    def is_configured(self) -> bool:
        return True

    def cancel_subscription(self, email: str) -> GatewayResult:
        self._record("cancel_subscription", email)
        return self.cancel_result

    def initialize_transaction(self, email: str, amount: int, plan: str | None = None) -> GatewayResult:
        self._record("initialize_transaction", email, amount, plan=plan)
        return self.initialize_result

    def create_subscription(
        self,
        plan: str,
        customer: str,
        start_date: datetime,
        authorization: str | None = None,
    ) -> GatewayResult:
        self._record(
            "create_subscription",
            plan=plan,
            customer=customer,
            start_date=start_date,
            authorization=authorization,
        )
        return self.create_result


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@dataclass
class FakeStripeGateway:
    """Records Stripe session calls and answers with canned URLs."""

    session_result: GatewayResult = field(
        default_factory=lambda: GatewayResult(data={"url": "https://billing.stripe.test/session"})
    )
    invoices_result: GatewayResult = field(
        default_factory=lambda: GatewayResult(data={"invoices": []})
    )
    calls: list[tuple[str, tuple, dict]] = field(default_factory=list)

    def called(self, name: str) -> list[tuple[tuple, dict]]:
        return [(args, kwargs) for call, args, kwargs in self.calls if call == name]

    def create_checkout_session(self, *args: Any, **kwargs: Any) -> GatewayResult:
        self.calls.append(("create_checkout_session", args, kwargs))
        return self.session_result

    def create_update_session(self, *args: Any, **kwargs: Any) -> GatewayResult:
        self.calls.append(("create_update_session", args, kwargs))
        return self.session_result

    def create_cancel_session(self, *args: Any, **kwargs: Any) -> GatewayResult:
        self.calls.append(("create_cancel_session", args, kwargs))
        return self.session_result

    def create_portal_session(self, *args: Any, **kwargs: Any) -> GatewayResult:
        self.calls.append(("create_portal_session", args, kwargs))
        return self.session_result

    def list_invoices(self, *args: Any, **kwargs: Any) -> GatewayResult:
        self.calls.append(("list_invoices", args, kwargs))
        return self.invoices_result


@pytest.fixture()
def fake_stripe() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture()
def scheduler() -> DeferredScheduler:
    return DeferredScheduler(tick_seconds=1)


@pytest.fixture()
def wired_services(monkeypatch, fake_gateway, fake_stripe, scheduler):
    """Point the module-level singletons at the test doubles."""
    from app.services import stripe_billing, subscription_lifecycle, webhooks

    monkeypatch.setattr(stripe_billing, "stripe_gateway", fake_stripe)

    monkeypatch.setattr(subscription_lifecycle, "paystack_gateway", fake_gateway)
    monkeypatch.setattr(subscription_lifecycle, "deferred_scheduler", scheduler)
    monkeypatch.setattr(webhooks, "deferred_scheduler", scheduler)
    return fake_gateway, scheduler


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, wired_services):
    """Create a test client with database dependency override."""
    from app.api.deps import get_db as api_get_db
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_access_token(
    user_id: str, company_id: str, email: str, role: str = "ADMIN"
) -> str:
    """Create a JWT access token for testing."""
    secret = os.getenv("JWT_SECRET", "test-secret")
    algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    now = datetime.now(UTC)
    expire = now + timedelta(minutes=15)
    payload = {
        "sub": user_id,
        "company_id": company_id,
        "email": email,
        "role": role,
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


@pytest.fixture()
def auth_headers_for():
    def _headers(company: Company, role: str = "ADMIN") -> dict[str, str]:
        token = _create_access_token(
            str(uuid.uuid4()), str(company.id), company.company_email, role=role
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def auth_headers(company, auth_headers_for):
    """Return admin authorization headers for the default company."""
    return auth_headers_for(company)
