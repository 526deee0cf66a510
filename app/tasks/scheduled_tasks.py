"""
Allotment - Background Tasks

Celery-compatible background task definitions.
Each task takes a database session, so it can run either synchronously
(development, tests) or via Celery (production).
"""

import logging
import uuid
from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.services.billing_cycle_service import BillingCycleService
from app.services.usage_alert_service import UsageAlertService
from app.services.usage_ledger import UsageLedger
from app.services.webhook_service import EntitlementWebhookService

logger = logging.getLogger(__name__)


# ===========================================
# SCHEDULED TASK: USAGE ALERT SWEEP
# ===========================================

async def check_usage_alerts(db: AsyncSession) -> dict:
    """
    Check every active workspace against the 80/90/100% thresholds.
    Should run hourly.
    """
    stats = await UsageAlertService(db).check_all_workspaces()
    await db.commit()
    return stats


# ===========================================
# SCHEDULED TASK: BILLING CYCLE RESET
# ===========================================

async def reset_billing_cycles(db: AsyncSession) -> dict:
    """
    Expire cycle-bound boosts from finished cycles and lapsed duration boosts.
    Should run daily.
    """
    stats = await BillingCycleService(db).run_daily_reset()
    await db.commit()
    return stats


# ===========================================
# SCHEDULED TASK: USAGE RECORD RETENTION
# ===========================================

async def prune_usage_records(db: AsyncSession, retention_days: Optional[int] = None) -> dict:
    """
    Delete usage records past the retention window.
    Should run weekly.
    """
    if not settings.enable_data_retention_cleanup:
        logger.info("Usage record pruning disabled")
        return {"deleted": 0, "skipped": True}

    deleted = await UsageLedger(db).prune(retention_days or settings.usage_records_retention_days)
    await db.commit()
    return {"deleted": deleted, "skipped": False}


# ===========================================
# WEBHOOK DELIVERY
# ===========================================

async def deliver_entitlement_webhook(db: AsyncSession, delivery_id: Union[str, uuid.UUID]) -> Dict[str, Any]:
    """One attempt at a queued webhook delivery."""
    if isinstance(delivery_id, str):
        delivery_id = uuid.UUID(delivery_id)
    outcome = await EntitlementWebhookService(db).deliver_queued(delivery_id)
    await db.commit()
    return outcome


async def requeue_stale_webhook_deliveries(db: AsyncSession, older_than_minutes: int = 15) -> dict:
    """
    Re-enqueue deliveries that were written but never reached the queue.
    Should run every few minutes.
    """
    requeued = await EntitlementWebhookService(db).requeue_stale_deliveries(older_than_minutes)
    return {"requeued": requeued}

