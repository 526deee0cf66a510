"""
Allotment - Celery Configuration

Celery configuration for background task processing.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab

from app.config import settings


# Create Celery app
celery_app = Celery(
    'allotment',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['app.tasks.celery_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,  # 4 minutes (warning before hard limit)

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Result backend settings
    result_expires=86400,  # 24 hours

    # Retry settings
    task_default_retry_delay=settings.webhook_retry_backoff_seconds,
    task_max_retries=settings.webhook_default_max_attempts - 1,  # First attempt is not a retry

    # Beat schedule for periodic tasks
    beat_schedule={
        # Usage threshold alerts every hour
        'check-usage-alerts': {
            'task': 'app.tasks.celery_tasks.check_usage_alerts_task',
            'schedule': crontab(minute=0),
        },

        # Billing cycle reset every day at 00:05 UTC
        'reset-billing-cycles': {
            'task': 'app.tasks.celery_tasks.reset_billing_cycles_task',
            'schedule': crontab(hour=0, minute=5),
        },

        # Prune old usage records weekly
        'prune-usage-records': {
            'task': 'app.tasks.celery_tasks.prune_usage_records_task',
            'schedule': crontab(day_of_week=0, hour=2, minute=0),  # Sunday 2 AM
        },

        # Pick up webhook deliveries that never reached the queue
        'requeue-stale-webhook-deliveries': {
            'task': 'app.tasks.celery_tasks.requeue_stale_webhook_deliveries_task',
            'schedule': crontab(minute='*/10'),
        },
    },
)


# Webhook deliveries run on a dedicated queue
celery_app.conf.task_routes = {
    'app.tasks.celery_tasks.deliver_entitlement_webhook_task': {'queue': 'webhooks'},
    'app.tasks.celery_tasks.*': {'queue': 'default'},
}
