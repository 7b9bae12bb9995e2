"""In-process deferred execution for subscription transitions.

Jobs are one-shot callbacks bound to a wall-clock instant. Each instant is
turned into a five-field cron expression (``"<minute> <hour> <day> <month> *"``,
UTC) that only matches that calendar minute; the job is dropped once it fires.

Nothing here is durable. The pending fields on ``companies`` are the source of
truth and :func:`initialize_scheduled_jobs` rebuilds the job table from them
at startup; the daily sweep covers anything that still slips through.
"""

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any

from croniter import croniter
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import DEFERRED_JOBS
from app.services.common import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class JobKind(str, enum.Enum):
    apply_pending_plan = "apply_pending_plan"
    deactivate_company = "deactivate_company"


def generate_trigger_expression(instant: datetime) -> str:
    """Cron expression matching only the UTC minute of ``instant`` (within its year)."""
    at = ensure_utc(instant)
    return f"{at.minute} {at.hour} {at.day} {at.month} *"


@dataclass
class DeferredJob:
    kind: JobKind
    company_id: str
    run_at: datetime
    callback: Callable[[str], Any]
    expression: str = field(init=False)

    def __post_init__(self) -> None:
        self.run_at = ensure_utc(self.run_at)
        self.expression = generate_trigger_expression(self.run_at)

    @property
    def name(self) -> str:
        return f"{self.kind.value}:{self.company_id}:{self.run_at:%Y%m%d%H%M}"

    def is_due(self, now: datetime) -> bool:
        now = ensure_utc(now)
        if self.run_at <= now:
            return True
        # the expression has no year field
        return now.year == self.run_at.year and croniter.match(self.expression, now)


class DeferredScheduler:
    """Process-wide job table plus the asyncio loop that fires due jobs."""

    def __init__(self, tick_seconds: int = 15) -> None:
        self.tick_seconds = max(tick_seconds, 1)
        self._jobs: dict[str, DeferredJob] = {}
        self._lock = Lock()
        self._task: asyncio.Task | None = None
        self.running = False

    def schedule_at(
        self,
        run_at: datetime,
        kind: JobKind,
        company_id: Any,
        callback: Callable[[str], Any],
    ) -> DeferredJob:
        job = DeferredJob(
            kind=kind, company_id=str(company_id), run_at=run_at, callback=callback
        )
        with self._lock:
            replaced = job.name in self._jobs
            self._jobs[job.name] = job
            DEFERRED_JOBS.set(len(self._jobs))
        logger.info(
            "%s %s at %s (%s)",
            "Rescheduled" if replaced else "Scheduled",
            kind.value,
            job.run_at.isoformat(),
            job.expression,
            extra={"company_id": job.company_id, "job": job.name},
        )
        return job

    def jobs(self) -> list[DeferredJob]:
        with self._lock:
            return list(self._jobs.values())

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()
            DEFERRED_JOBS.set(0)

    def run_due(self, now: datetime | None = None) -> list[str]:
        """Fire every due job once; a failing job is logged and still dropped."""
        now = ensure_utc(now) if now else utc_now()
        with self._lock:
            due = [job for job in self._jobs.values() if job.is_due(now)]
            for job in due:
                del self._jobs[job.name]
            DEFERRED_JOBS.set(len(self._jobs))
        fired: list[str] = []
        for job in due:
            try:
                job.callback(job.company_id)
            except Exception:
                logger.exception(
                    "Deferred job failed",
                    extra={"company_id": job.company_id, "job": job.name},
                )
                continue
            fired.append(job.name)
        return fired

    async def start(self) -> None:
        if self.running:
            logger.warning("Deferred scheduler is already running")
            return
        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Deferred scheduler started (tick=%ss)", self.tick_seconds)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Deferred scheduler stopped")

    async def _loop(self) -> None:
        while self.running:
            try:
                await asyncio.to_thread(self.run_due)
            except Exception:
                logger.exception("Error in deferred scheduler loop")
            await asyncio.sleep(self.tick_seconds)


deferred_scheduler = DeferredScheduler(settings.scheduler_tick_seconds)


def initialize_scheduled_jobs(
    db: Session,
    scheduler: DeferredScheduler,
    *,
    apply_pending: Callable[[str], Any] | None = None,
    deactivate: Callable[[str], Any] | None = None,
) -> int:
    """Re-register a job for every persisted pending operation. Returns the job count."""
    from app.services import subscription_lifecycle
    from app.services.companies import companies

    apply_pending = apply_pending or subscription_lifecycle.run_apply_pending_subscription
    deactivate = deactivate or subscription_lifecycle.run_deactivate_company

    registered = 0
    pending = companies.with_pending_operations(db)
    for company in pending:
        if company.pending_plan_update and company.next_billing_date:
            scheduler.schedule_at(
                company.next_billing_date,
                JobKind.apply_pending_plan,
                company.id,
                apply_pending,
            )
            registered += 1
        if company.scheduled_deactivation:
            scheduler.schedule_at(
                company.scheduled_deactivation,
                JobKind.deactivate_company,
                company.id,
                deactivate,
            )
            registered += 1
    logger.info(
        "Initialized %s scheduled jobs for %s companies", registered, len(pending)
    )
    return registered
