"""Periodic safety nets for the in-process scheduler.

Each company is processed in isolation: a failure is logged against the
company and the sweep carries on with the rest of the batch.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import SWEEP_RESULTS
from app.services.common import atomic, ensure_utc, utc_now
from app.services.companies import companies
from app.services.subscription_lifecycle import SubscriptionLifecycle

logger = logging.getLogger(__name__)


def _run_isolated(
    sweep: str,
    company_ids: list[Any],
    action: Callable[[Any], Any],
    processed: list[str],
    failed: list[str],
) -> None:
    for company_id in company_ids:
        try:
            action(company_id)
        except Exception:
            logger.exception(
                "%s failed for company", sweep, extra={"company_id": str(company_id)}
            )
            failed.append(str(company_id))
            SWEEP_RESULTS.labels(sweep, "failed").inc()
            continue
        processed.append(str(company_id))
        SWEEP_RESULTS.labels(sweep, "processed").inc()


def process_pending_subscriptions(
    db: Session,
    now: datetime | None = None,
    lifecycle: SubscriptionLifecycle | None = None,
) -> dict[str, list[str]]:
    """Apply overdue plan changes and finalize overdue deactivations."""
    now = ensure_utc(now) if now else utc_now()
    lifecycle = lifecycle or SubscriptionLifecycle(db)
    processed: list[str] = []
    failed: list[str] = []

    due_updates = [company.id for company in companies.due_plan_updates(db, now)]
    _run_isolated(
        "pending_plan_updates",
        due_updates,
        lifecycle.apply_pending_subscription,
        processed,
        failed,
    )

    due_deactivations = [company.id for company in companies.due_deactivations(db, now)]
    _run_isolated(
        "overdue_deactivations",
        due_deactivations,
        lambda company_id: lifecycle.deactivate_company(company_id, now=now),
        processed,
        failed,
    )

    logger.info(
        "Processed %s pending subscriptions, %s failed", len(processed), len(failed)
    )
    return {"processed": processed, "failed": failed}


def clear_stale_pending_updates(
    db: Session, now: datetime | None = None
) -> dict[str, int]:
    """Drop pending plan changes whose billing date is long gone."""
    now = ensure_utc(now) if now else utc_now()
    cutoff = now - timedelta(days=settings.stale_pending_days)
    with atomic(db):
        cleared = companies.clear_stale_plan_updates(db, cutoff)
    if cleared:
        logger.warning("Cleared %s stale pending plan updates", cleared)
    SWEEP_RESULTS.labels("stale_pending_cleanup", "cleared").inc(cleared)
    return {"cleared": cleared}
