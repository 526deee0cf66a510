"""
Allotment - Billing Cycle Service

Daily reset sweep: expires cycle-bound boosts that belong to a finished
billing cycle and duration boosts whose expiry has passed, then tells the
owners what lapsed.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.entitlement import Boost
from app.models.entitlement_enums import BoostDurationType, BoostStatus, Principal
from app.services.cache_service import CacheService, get_cache_service
from app.services.grant_ledger import GrantLedger
from app.services.notification_service import NotificationService
from app.services.tenant_directory import TenantDirectory
from app.services.usage_ledger import UsageLedger
from app.services.webhook_service import EntitlementWebhookService
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class BillingCycleService:
    """
    Boost expiry at billing cycle boundaries.

    Usage:
        service = BillingCycleService(db)
        stats = await service.run_daily_reset()
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        webhooks: Optional[EntitlementWebhookService] = None,
    ):
        self.db = db
        self.cache = cache or get_cache_service()
        self.grants = GrantLedger(db, self.cache, webhooks)
        self.usage = UsageLedger(db, self.cache, self.grants)
        self.directory = TenantDirectory(db)
        self.notifications = NotificationService(db)

    async def principals_with_expiring_boosts(self) -> List[Principal]:
        result = await self.db.execute(
            select(Boost.principal_type, Boost.principal_id)
            .where(
                Boost.status == BoostStatus.ACTIVE,
                Boost.duration_type.in_([BoostDurationType.CYCLE_BOUND, BoostDurationType.DURATION]),
            )
            .distinct()
        )
        return [Principal(kind, principal_id) for kind, principal_id in result.all()]

    async def reset_principal(
        self,
        principal: Principal,
        now: Optional[datetime] = None,
    ) -> Dict[str, List[Boost]]:
        """Expire the principal's lapsed boosts and notify its owner."""
        now = now or utcnow()
        cycle_start = await self.usage.current_cycle_start(principal, now)

        cycle_bound = await self.grants.expire_cycle_bound_boosts(principal, cycle_start, now)
        timed = await self.grants.expire_timed_boosts(principal, now)

        expired = cycle_bound + timed
        if expired:
            owner = await self.directory.owner_of(principal)
            if owner is not None:
                await self.notifications.notify_boosts_expired(
                    owner.id, [boost.feature_code for boost in expired]
                )
            else:
                logger.warning(f"Boosts expired for {principal} but it has no owner to notify")

        return {"cycle_bound": cycle_bound, "timed": timed}

    async def run_daily_reset(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Returns:
            {"principals_checked", "cycle_bound_expired", "timed_expired"}
        """
        now = now or utcnow()
        stats: Dict[str, int] = defaultdict(int)

        for principal in await self.principals_with_expiring_boosts():
            expired = await self.reset_principal(principal, now)
            stats["principals_checked"] += 1
            stats["cycle_bound_expired"] += len(expired["cycle_bound"])
            stats["timed_expired"] += len(expired["timed"])

        logger.info(
            f"Billing cycle reset: {stats['principals_checked']} principals, "
            f"{stats['cycle_bound_expired']} cycle-bound and {stats['timed_expired']} timed boosts expired"
        )
        return {
            "principals_checked": stats["principals_checked"],
            "cycle_bound_expired": stats["cycle_bound_expired"],
            "timed_expired": stats["timed_expired"],
        }
