"""Plan catalog: purchasable tier/cycle pairs, prices, Paystack plan codes and Stripe prices."""

from __future__ import annotations

from dataclasses import dataclass

from app.config import settings
from app.models.company import BillingCycle, Tier

_CYCLE_TOKENS: dict[str, BillingCycle] = {
    "month": BillingCycle.monthly,
    "monthly": BillingCycle.monthly,
    "year": BillingCycle.yearly,
    "yearly": BillingCycle.yearly,
}
_CYCLE_KEYS: dict[BillingCycle, str] = {
    BillingCycle.monthly: "month",
    BillingCycle.yearly: "year",
}

# Amounts in kobo
PLAN_PRICES: dict[str, int] = {
    "personal_month": 1_000_000,
    "personal_year": 10_200_000,
    "team_month": 1_450_000,
    "team_year": 14_400_000,
    "enterprise_month": 17_000_000,
    "enterprise_year": 17_400_000,
}

PAID_TIERS = (Tier.personal, Tier.team, Tier.enterprise)


@dataclass(frozen=True)
class PlanSelection:
    """A purchasable tier on a billing cycle.

    Persisted on ``Company.pending_plan_update`` as ``"<tier>_<cycle>"``,
    e.g. ``"team_year"``.
    """

    tier: Tier
    cycle: BillingCycle

    @property
    def key(self) -> str:
        return f"{self.tier.value.lower()}_{_CYCLE_KEYS[self.cycle]}"

    def encode(self) -> str:
        return self.key

    @classmethod
    def decode(cls, text: str) -> PlanSelection:
        tier_token, sep, cycle_token = (text or "").strip().partition("_")
        if not sep:
            raise ValueError(f"Invalid plan encoding: {text!r}")
        return cls.parse(tier_token, cycle_token)

    @classmethod
    def parse(cls, tier: str, cycle: str) -> PlanSelection:
        """Build a selection from request values such as ``("Team", "year")``."""
        try:
            parsed_tier = Tier(str(tier).strip().upper())
        except ValueError as exc:
            raise ValueError(f"Unknown payment plan: {tier!r}") from exc
        if parsed_tier not in PAID_TIERS:
            raise ValueError(f"Payment plan {tier!r} cannot be purchased")
        cycle_key = str(cycle).strip().lower()
        if cycle_key not in _CYCLE_TOKENS:
            try:
                parsed_cycle = BillingCycle(cycle_key.upper())
            except ValueError as exc:
                raise ValueError(f"Unknown billing type: {cycle!r}") from exc
        else:
            parsed_cycle = _CYCLE_TOKENS[cycle_key]
        return cls(tier=parsed_tier, cycle=parsed_cycle)

    @property
    def display_name(self) -> str:
        return f"{self.tier.value.title()}({self.cycle.value.lower()})"

    @property
    def amount(self) -> int:
        return PLAN_PRICES[self.key]

    @property
    def plan_code(self) -> str | None:
        return settings.plan_codes().get(self.key) or None

    @property
    def stripe_price_id(self) -> str | None:
        return settings.stripe_price_ids().get(self.key) or None


def known_plan_codes() -> set[str]:
    return {code for code in settings.plan_codes().values() if code}


def plan_for_stripe_price(price_id: str | None) -> PlanSelection | None:
    """Reverse lookup of a configured Stripe price id."""
    if not price_id:
        return None
    for key, configured in settings.stripe_price_ids().items():
        if configured and configured == price_id:
            return PlanSelection.decode(key)
    return None
