import logging
import os

from celery.schedules import crontab

logger = logging.getLogger(__name__)

PROCESS_PENDING_TASK = "app.tasks.process_pending_subscriptions"
CLEAR_STALE_TASK = "app.tasks.clear_stale_pending_updates"


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str) -> int | None:
    raw = _env_value(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return None


def get_celery_config() -> dict:
    broker = (
        _env_value("CELERY_BROKER_URL")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    timezone = _env_value("CELERY_TIMEZONE") or "UTC"
    beat_max_loop_interval = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL")
    config = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": timezone,
        "enable_utc": True,
    }
    config["beat_max_loop_interval"] = (
        beat_max_loop_interval if beat_max_loop_interval is not None else 5
    )
    return config


def build_beat_schedule() -> dict:
    """Daily catch-up at 00:00 and stale-pending cleanup every hour (UTC)."""
    schedule: dict[str, dict] = {
        "process_pending_subscriptions": {
            "task": PROCESS_PENDING_TASK,
            "schedule": crontab(minute=0, hour=0),
        },
        "clear_stale_pending_updates": {
            "task": CLEAR_STALE_TASK,
            "schedule": crontab(minute=0),
        },
    }
    if _env_value("SUBSCRIPTION_SWEEPS_ENABLED") in {"0", "false", "no", "off"}:
        logger.info("Subscription sweeps disabled, beat schedule is empty")
        return {}
    return schedule
