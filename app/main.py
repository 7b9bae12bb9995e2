from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import redis
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import JSONResponse, Response

from app.api.payments import router as payments_router
from app.api.subscriptions import router as subscriptions_router
from app.config import settings, validate_settings
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware
from app.services.common import session_scope
from app.services.scheduler import deferred_scheduler, initialize_scheduled_jobs

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[arg-type]
    # ── Startup ──────────────────────────────────────────
    warnings = validate_settings(settings)
    for w in warnings:
        logger.warning("Config warning: %s", w)

    if settings.scheduler_enabled:
        try:
            with session_scope() as db:
                initialize_scheduled_jobs(db, deferred_scheduler)
        except Exception:
            logger.exception("Failed to rebuild deferred jobs, the daily sweep will catch up")
        await deferred_scheduler.start()

    logger.info("Application started (pid=%s)", os.getpid())
    yield

    # ── Shutdown ─────────────────────────────────────────
    await deferred_scheduler.stop()
    logger.info("Application shutting down")


app = FastAPI(title="Cauntr Billing API", lifespan=lifespan)

configure_logging()

# ── Middleware (order matters: last added = first executed) ──
register_error_handlers(app)

cors_origins = [
    o.strip()
    for o in settings.cors_origins.split(",")
    if o.strip()
]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )

app.add_middleware(ObservabilityMiddleware)


def _mount(router: APIRouter) -> None:
    for prefix in ("", "/api/v1"):
        app.include_router(router, prefix=prefix)


_mount(subscriptions_router)
_mount(payments_router)


# ── Health Checks ────────────────────────────────────────


@app.get("/health")
def health_check() -> dict[str, str]:
    """Liveness probe, always ok while the process is running."""
    return {"status": "ok"}


def _probe_database() -> str:
    with session_scope() as db:
        db.execute(text("SELECT 1"))
    return "ok"


def _probe_redis() -> str:
    client = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
    client.ping()
    return "ok"


@app.get("/health/ready")
def readiness_check() -> JSONResponse:
    """Database and Redis reachability, plus the size of the deferred job table."""
    checks: dict[str, str] = {}
    for name, probe in (("database", _probe_database), ("redis", _probe_redis)):
        try:
            checks[name] = probe()
        except Exception as exc:
            logger.warning("Readiness probe %s failed: %s", name, exc)
            checks[name] = f"error: {exc}"
    ready = set(checks.values()) == {"ok"}
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ok" if ready else "degraded",
            "checks": checks,
            "deferred_jobs": len(deferred_scheduler.jobs()),
        },
    )


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
