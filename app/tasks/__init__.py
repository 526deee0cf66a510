"""
Allotment - Background Tasks Package

Celery background tasks.
"""

from app.tasks.scheduled_tasks import (
    check_usage_alerts,
    reset_billing_cycles,
    prune_usage_records,
    deliver_entitlement_webhook,
    requeue_stale_webhook_deliveries,
)

__all__ = [
    "check_usage_alerts",
    "reset_billing_cycles",
    "prune_usage_records",
    "deliver_entitlement_webhook",
    "requeue_stale_webhook_deliveries",
]
