"""
Allotment - Usage Ledger

Append-only usage records, aggregated over each feature's window.

Windows:
- none: lifetime
- monthly: since the current billing cycle start, anchored on the base
  package's billing_cycle_anchor (calendar month when there is none)
- rolling: the trailing N days

Window starts are inclusive. Workspace usage counts every record carrying
the workspace id, including records written by its namespaces; namespace
usage counts only the namespace's own records.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from app.config import settings
from app.models.entitlement import Feature, UsageRecord
from app.models.entitlement_enums import Principal, PrincipalType, ResetType
from app.schemas.metadata import UsageContext
from app.services.cache_service import CacheService, get_cache_service
from app.services.feature_catalog import FeatureCatalog
from app.services.grant_ledger import GrantLedger
from app.services.tenant_directory import TenantDirectory
from app.utils.clock import as_naive_utc, utcnow
from app.utils.error_handling import InvalidQuantityException

logger = logging.getLogger(__name__)


# Longest monthly window (31 days); monthly records younger than this may
# still be inside the current cycle.
MAX_MONTHLY_WINDOW_DAYS = 31


def cycle_start(anchor: datetime, now: datetime) -> datetime:
    """
    Most recent anchor + k months that is not after now.

    Always computed from the anchor itself, so a day-31 anchor lands on the
    last day of shorter months without drifting in later months.
    """
    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    candidate = anchor + relativedelta(months=months)
    if candidate > now:
        candidate = anchor + relativedelta(months=months - 1)
    return candidate


def calendar_month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def usage_scope_clause(principal: Principal) -> ColumnElement[bool]:
    if principal.kind == PrincipalType.WORKSPACE:
        return UsageRecord.workspace_id == principal.id
    return UsageRecord.namespace_id == principal.id


class UsageLedger:
    """
    Service for recording and aggregating feature usage.

    Usage:
        ledger = UsageLedger(db)

        # Record a usage event
        await ledger.record_usage(Principal.workspace(ws_id), "ai.credits", quantity=5)

        # Usage in the feature's current window
        used = await ledger.current_usage(Principal.workspace(ws_id), "ai.credits", feature)
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        grants: Optional[GrantLedger] = None,
    ):
        self.db = db
        self.cache = cache or get_cache_service()
        self.catalog = FeatureCatalog(db, self.cache)
        self.directory = TenantDirectory(db)
        self.grants = grants or GrantLedger(db, self.cache)

    # ===========================================
    # WINDOWS
    # ===========================================

    async def current_cycle_start(
        self,
        principal: Principal,
        now: Optional[datetime] = None,
    ) -> datetime:
        """Start of the principal's current billing cycle."""
        now = now or utcnow()
        base = await self.grants.base_assignment(principal, now)
        if base is None or base.billing_cycle_anchor is None:
            return calendar_month_start(now)
        return cycle_start(base.billing_cycle_anchor, now)

    async def window_start(
        self,
        principal: Principal,
        feature: Feature,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Inclusive start of the feature's usage window; None for lifetime usage."""
        now = now or utcnow()
        if feature.reset_type == ResetType.MONTHLY:
            return await self.current_cycle_start(principal, now)
        if feature.reset_type == ResetType.ROLLING:
            return now - timedelta(days=feature.window_days)
        return None

    # ===========================================
    # USAGE RETRIEVAL
    # ===========================================

    async def current_usage(
        self,
        principal: Principal,
        pool_code: str,
        feature: Feature,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Sum of usage in the feature's current window.

        Point-in-time queries (explicit now) bypass the cache.
        """
        use_cache = now is None
        if use_cache:
            cached = await self.cache.get_usage(principal, pool_code)
            if cached is not None:
                return cached

        now = now or utcnow()
        conditions = [usage_scope_clause(principal), UsageRecord.feature_code == pool_code]
        start = await self.window_start(principal, feature, now)
        if start is not None:
            conditions.append(UsageRecord.recorded_at >= start)

        result = await self.db.execute(
            select(func.coalesce(func.sum(UsageRecord.quantity), 0)).where(*conditions)
        )
        used = int(result.scalar_one())

        if use_cache:
            await self.cache.set_usage(principal, pool_code, used)
        return used

    async def usage_history(
        self,
        principal: Principal,
        feature_code: str,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> List[UsageRecord]:
        """Raw records for a feature over the past N days, newest first."""
        since = (now or utcnow()) - timedelta(days=days)
        pool_code = await self.catalog.pool_code(feature_code)
        result = await self.db.execute(
            select(UsageRecord)
            .where(
                usage_scope_clause(principal),
                UsageRecord.feature_code == pool_code,
                UsageRecord.recorded_at >= since,
            )
            .order_by(UsageRecord.recorded_at.desc())
        )
        return list(result.scalars().all())

    # ===========================================
    # USAGE RECORDING
    # ===========================================

    async def record_usage(
        self,
        principal: Principal,
        feature_code: str,
        quantity: int = 1,
        user_id: Optional[uuid.UUID] = None,
        context: Optional[Union[UsageContext, Dict[str, Any]]] = None,
        recorded_at: Optional[datetime] = None,
    ) -> UsageRecord:
        """
        Append a usage record under the feature's pool code.

        Does not check entitlement; callers check first (the check and the
        write are deliberately not atomic).
        """
        if not isinstance(quantity, int) or quantity < 1:
            raise InvalidQuantityException(quantity)

        pool_code = await self.catalog.pool_code(feature_code)

        if isinstance(context, dict):
            context = UsageContext.model_validate(context)
        if pool_code != feature_code:
            context = (context or UsageContext()).model_copy(update={"requested_feature": feature_code})

        workspace_id = await self.directory.parent_workspace_id(principal)
        namespace_id = principal.id if principal.kind == PrincipalType.NAMESPACE else None

        record = UsageRecord(
            workspace_id=workspace_id,
            namespace_id=namespace_id,
            feature_code=pool_code,
            quantity=quantity,
            user_id=user_id,
            context=context.to_column() if context else None,
            recorded_at=as_naive_utc(recorded_at) if recorded_at else utcnow(),
        )
        self.db.add(record)
        await self.db.flush()

        affected = [principal]
        if namespace_id is not None and workspace_id is not None:
            affected.append(Principal.workspace(workspace_id))
        await self.cache.forget_usage(affected, pool_code)

        return record

    # ===========================================
    # RETENTION
    # ===========================================

    async def prune(
        self,
        older_than_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Delete records older than the retention window.

        Lifetime features are never pruned, and neither is any feature whose
        window could still reach back past the cutoff.
        """
        older_than_days = older_than_days or settings.usage_records_retention_days
        now = now or utcnow()
        cutoff = now - timedelta(days=older_than_days)

        prunable: List[str] = []
        for feature in await self.catalog.all_active():
            if feature.parent_code:
                continue
            if feature.reset_type == ResetType.MONTHLY and older_than_days > MAX_MONTHLY_WINDOW_DAYS:
                prunable.append(feature.code)
            elif feature.reset_type == ResetType.ROLLING and older_than_days > feature.window_days:
                prunable.append(feature.code)

        if not prunable:
            return 0

        result = await self.db.execute(
            delete(UsageRecord)
            .where(UsageRecord.feature_code.in_(prunable), UsageRecord.recorded_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0

        logger.info(
            f"Pruned {deleted} usage records older than {older_than_days} days",
            extra={"cutoff": cutoff.isoformat(), "features": prunable},
        )
        return deleted
