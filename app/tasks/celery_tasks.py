"""
Allotment - Celery Tasks

Background tasks for webhook delivery and the scheduled entitlement sweeps.
"""

import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

from app.celery_app import celery_app  # noqa: F401
from app.config import settings
from app.database import async_session_factory, engine
from app.services.cache_service import close_cache_service
from app.tasks import scheduled_tasks

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _run_with_session(task_func, *args, **kwargs):
    """Run a scheduled task function with a fresh session on the current loop."""
    try:
        async with async_session_factory() as db:
            return await task_func(db, *args, **kwargs)
    finally:
        # Pooled connections and the Redis client are bound to this loop
        await close_cache_service()
        await engine.dispose()


def retry_countdown(attempts: int) -> int:
    """Exponential backoff: base, 2x base, 4x base, ..."""
    return settings.webhook_retry_backoff_seconds * (2 ** max(attempts - 1, 0))


# ===========================================
# WEBHOOK DELIVERY
# ===========================================

@shared_task(name='app.tasks.celery_tasks.deliver_entitlement_webhook_task', bind=True)
def deliver_entitlement_webhook_task(self, delivery_id: str) -> Dict[str, Any]:
    """
    Deliver one queued entitlement webhook.

    Each Celery retry re-attempts the same delivery row. Retries stop at the
    webhook's max_attempts, or as soon as its circuit opens.
    """
    outcome = run_async(_run_with_session(scheduled_tasks.deliver_entitlement_webhook, delivery_id))

    if outcome.get("retry"):
        countdown = retry_countdown(outcome["attempts"])
        logger.info(
            f"Webhook delivery {delivery_id} failed (attempt {outcome['attempts']}), retrying in {countdown}s"
        )
        raise self.retry(countdown=countdown, max_retries=outcome["max_attempts"] - 1)

    return outcome


@shared_task(name='app.tasks.celery_tasks.requeue_stale_webhook_deliveries_task')
def requeue_stale_webhook_deliveries_task() -> Dict[str, Any]:
    """Hand deliveries that never reached the queue back to it."""
    return run_async(_run_with_session(scheduled_tasks.requeue_stale_webhook_deliveries))


# ===========================================
# SCHEDULED SWEEPS
# ===========================================

@shared_task(name='app.tasks.celery_tasks.check_usage_alerts_task')
def check_usage_alerts_task() -> Dict[str, Any]:
    """
    Check usage across all workspaces and send alerts.

    This task monitors usage against limits and sends in-app notifications
    and webhooks when thresholds (80%, 90%, 100%) are reached.
    """
    return run_async(_run_with_session(scheduled_tasks.check_usage_alerts))


@shared_task(name='app.tasks.celery_tasks.reset_billing_cycles_task')
def reset_billing_cycles_task() -> Dict[str, Any]:
    """Expire cycle-bound and timed boosts (daily)."""
    return run_async(_run_with_session(scheduled_tasks.reset_billing_cycles))


@shared_task(name='app.tasks.celery_tasks.prune_usage_records_task')
def prune_usage_records_task() -> Dict[str, Any]:
    """Delete usage records past the retention window (weekly)."""
    return run_async(_run_with_session(scheduled_tasks.prune_usage_records))
