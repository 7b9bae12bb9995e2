import logging

from app.celery_app import celery_app
from app.services import sweeps
from app.services.common import session_scope

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.process_pending_subscriptions")
def process_pending_subscriptions() -> dict:
    with session_scope() as db:
        return sweeps.process_pending_subscriptions(db)


@celery_app.task(name="app.tasks.clear_stale_pending_updates")
def clear_stale_pending_updates() -> dict:
    with session_scope() as db:
        return sweeps.clear_stale_pending_updates(db)
