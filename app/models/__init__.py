from app.models.billing import WebhookEvent, WebhookEventStatus  # noqa: F401
from app.models.company import (  # noqa: F401
    BillingCycle,
    Company,
    CompanyStripeSubscription,
    CompanySubscription,
    SubscriptionStatus,
    Tier,
)
