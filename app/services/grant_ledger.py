"""
Allotment - Grant Ledger

Package assignments and boosts held by workspaces and namespaces, and the
aggregation of those grants into a single limit per pool feature.

Every writer records an EntitlementLog entry, forgets the cache keys it
affected and emits the matching webhook event before returning.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from app.models.entitlement import Boost, EntitlementLog, Package, PackageAssignment, PackageFeature
from app.models.entitlement_enums import (
    AssignmentStatus,
    BoostDurationType,
    BoostStatus,
    BoostType,
    LogAction,
    LogSource,
    Principal,
    WebhookEvent,
)
from app.schemas.metadata import AuditMetadata
from app.services.cache_service import CacheService, get_cache_service
from app.services.entitlement_types import LimitValue
from app.services.feature_catalog import FeatureCatalog
from app.services.webhook_service import EntitlementWebhookService
from app.utils.clock import as_naive_utc, utcnow
from app.utils.error_handling import PackageNotFoundException, ValidationException

logger = logging.getLogger(__name__)


# ===========================================
# NAMED FILTER PREDICATES
# ===========================================

def principal_clause(model, principal: Principal) -> ColumnElement[bool]:
    return and_(model.principal_type == principal.kind, model.principal_id == principal.id)


def active_assignment_clause(principal: Principal, now: datetime) -> ColumnElement[bool]:
    """Assignment is active, has started and has not passed its expiry."""
    return and_(
        principal_clause(PackageAssignment, principal),
        PackageAssignment.status == AssignmentStatus.ACTIVE,
        or_(PackageAssignment.starts_at.is_(None), PackageAssignment.starts_at <= now),
        or_(PackageAssignment.expires_at.is_(None), PackageAssignment.expires_at > now),
    )


def usable_boost_clause(principal: Principal, now: datetime) -> ColumnElement[bool]:
    """Boost is active, has started and has not passed its expiry."""
    return and_(
        principal_clause(Boost, principal),
        Boost.status == BoostStatus.ACTIVE,
        or_(Boost.starts_at.is_(None), Boost.starts_at <= now),
        or_(Boost.expires_at.is_(None), Boost.expires_at > now),
    )


def _assignment_values(assignment: PackageAssignment) -> Dict[str, Any]:
    return {
        "id": str(assignment.id) if assignment.id else None,
        "package_id": str(assignment.package_id),
        "status": assignment.status.value if assignment.status else None,
        "starts_at": assignment.starts_at.isoformat() if assignment.starts_at else None,
        "expires_at": assignment.expires_at.isoformat() if assignment.expires_at else None,
        "billing_cycle_anchor": (
            assignment.billing_cycle_anchor.isoformat() if assignment.billing_cycle_anchor else None
        ),
    }


def _boost_values(boost: Boost) -> Dict[str, Any]:
    return {
        "id": str(boost.id) if boost.id else None,
        "feature_code": boost.feature_code,
        "boost_type": boost.boost_type.value,
        "duration_type": boost.duration_type.value,
        "limit_value": boost.limit_value,
        "consumed_quantity": boost.consumed_quantity,
        "status": boost.status.value,
        "expires_at": boost.expires_at.isoformat() if boost.expires_at else None,
    }


class GrantLedger:
    """
    Packages and boosts per principal.

    Usage:
        ledger = GrantLedger(db)

        await ledger.provision_package(Principal.workspace(ws_id), "pro")
        limit = await ledger.total_limit(Principal.workspace(ws_id), "ai.credits")
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        webhooks: Optional[EntitlementWebhookService] = None,
    ):
        self.db = db
        self.cache = cache or get_cache_service()
        self.catalog = FeatureCatalog(db, self.cache)
        self.webhooks = webhooks or EntitlementWebhookService(db)

    # ===========================================
    # AGGREGATION
    # ===========================================

    async def total_limit(
        self,
        principal: Principal,
        pool_code: str,
        now: Optional[datetime] = None,
    ) -> LimitValue:
        """
        Sum every grant the principal holds for a pool feature.

        Returns absent when no package or boost mentions the feature,
        unlimited when any source is uncapped, otherwise the finite sum.
        Point-in-time queries (explicit now) bypass the cache.
        """
        if now is not None:
            return await self._compute_total_limit(principal, pool_code, now)

        cached = await self.cache.get_limit(principal, pool_code)
        if cached is not None:
            return cached

        limit = await self._compute_total_limit(principal, pool_code, utcnow())
        await self.cache.set_limit(principal, pool_code, limit)
        return limit

    async def _compute_total_limit(
        self,
        principal: Principal,
        pool_code: str,
        now: datetime,
    ) -> LimitValue:
        feature = await self.catalog.get(pool_code)
        feature_is_unlimited = feature is not None and feature.is_unlimited

        present = False
        total = 0

        result = await self.db.execute(
            select(PackageFeature.limit_value)
            .join(PackageAssignment, PackageAssignment.package_id == PackageFeature.package_id)
            .where(
                active_assignment_clause(principal, now),
                PackageFeature.feature_code == pool_code,
            )
        )
        for limit_value in result.scalars().all():
            if feature_is_unlimited:
                return LimitValue.infinite()
            present = True
            if limit_value is not None:
                total += limit_value

        boosts = await self.db.execute(
            select(Boost).where(
                usable_boost_clause(principal, now),
                Boost.feature_code == pool_code,
            )
        )
        for boost in boosts.scalars().all():
            if boost.boost_type == BoostType.UNLIMITED:
                return LimitValue.infinite()
            present = True
            if boost.boost_type == BoostType.ADD_LIMIT and boost.limit_value is not None:
                total += boost.remaining

        if not present:
            return LimitValue.absent()
        return LimitValue.finite(total)

    # ===========================================
    # READERS
    # ===========================================

    async def active_packages(
        self,
        principal: Principal,
        now: Optional[datetime] = None,
    ) -> List[PackageAssignment]:
        result = await self.db.execute(
            select(PackageAssignment)
            .where(active_assignment_clause(principal, now or utcnow()))
            .order_by(PackageAssignment.created_at)
        )
        return list(result.scalars().all())

    async def active_boosts(
        self,
        principal: Principal,
        now: Optional[datetime] = None,
    ) -> List[Boost]:
        result = await self.db.execute(
            select(Boost)
            .where(usable_boost_clause(principal, now or utcnow()))
            .order_by(Boost.expires_at, Boost.created_at)
        )
        return list(result.scalars().all())

    async def base_assignment(
        self,
        principal: Principal,
        now: Optional[datetime] = None,
    ) -> Optional[PackageAssignment]:
        """The principal's active base package, which anchors its billing cycle."""
        result = await self.db.execute(
            select(PackageAssignment)
            .join(Package, Package.id == PackageAssignment.package_id)
            .where(
                active_assignment_clause(principal, now or utcnow()),
                Package.is_base_package.is_(True),
            )
            .order_by(PackageAssignment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ===========================================
    # PACKAGE WRITERS
    # ===========================================

    async def provision_package(
        self,
        principal: Principal,
        package_code: str,
        starts_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        billing_cycle_anchor: Optional[datetime] = None,
        source: LogSource = LogSource.SYSTEM,
        user_id: Optional[uuid.UUID] = None,
    ) -> PackageAssignment:
        """
        Assign a package to a principal.

        Provisioning a base package cancels the principal's current base
        package, so at most one is ever active.
        """
        now = utcnow()
        package = await self._get_package(package_code)
        affected_codes: Set[str] = set(package.feature_codes)

        replaced: Optional[PackageAssignment] = None
        if package.is_base_package:
            replaced = await self.base_assignment(principal, now)
            if replaced is not None:
                old_values = _assignment_values(replaced)
                replaced.status = AssignmentStatus.CANCELLED
                replaced.expires_at = now
                affected_codes.update(replaced.package.feature_codes)
                self._log(
                    principal,
                    LogAction.PACKAGE_CANCELLED,
                    "package_assignment",
                    replaced.id,
                    source=source,
                    user_id=user_id,
                    old_values=old_values,
                    new_values=_assignment_values(replaced),
                    metadata=AuditMetadata(
                        package_code=replaced.package.code,
                        reason="Replaced by new base package",
                    ),
                )

        assignment = PackageAssignment(
            principal_type=principal.kind,
            principal_id=principal.id,
            package_id=package.id,
            package=package,
            status=AssignmentStatus.ACTIVE,
            starts_at=as_naive_utc(starts_at) if starts_at else now,
            expires_at=as_naive_utc(expires_at) if expires_at else None,
            billing_cycle_anchor=as_naive_utc(billing_cycle_anchor) if billing_cycle_anchor else now,
        )
        self.db.add(assignment)
        await self.db.flush()

        self._log(
            principal,
            LogAction.PACKAGE_PROVISIONED,
            "package_assignment",
            assignment.id,
            source=source,
            user_id=user_id,
            new_values=_assignment_values(assignment),
            metadata=AuditMetadata(
                package_code=package.code,
                replaced_assignment_id=replaced.id if replaced else None,
            ),
        )
        await self.db.flush()

        # A new base package moves the billing anchor, so usage windows change too
        await self.invalidate(principal, affected_codes, usage=package.is_base_package)

        logger.info(
            f"Package {package.code} provisioned for {principal}",
            extra={"principal": str(principal), "package_code": package.code},
        )
        await self.webhooks.dispatch(principal, WebhookEvent.PACKAGE_CHANGED, {
            "action": "provisioned",
            "package_code": package.code,
            "assignment_id": str(assignment.id),
            "replaced_assignment_id": str(replaced.id) if replaced else None,
        })
        return assignment

    async def suspend(
        self,
        principal: Principal,
        source: LogSource = LogSource.BILLING,
    ) -> List[PackageAssignment]:
        """Suspend every active assignment (non-payment)."""
        result = await self.db.execute(
            select(PackageAssignment).where(
                principal_clause(PackageAssignment, principal),
                PackageAssignment.status == AssignmentStatus.ACTIVE,
            )
        )
        return await self._transition(
            principal,
            list(result.scalars().all()),
            AssignmentStatus.SUSPENDED,
            LogAction.PACKAGE_SUSPENDED,
            source,
        )

    async def reactivate(
        self,
        principal: Principal,
        source: LogSource = LogSource.BILLING,
    ) -> List[PackageAssignment]:
        """Reactivate every suspended assignment."""
        result = await self.db.execute(
            select(PackageAssignment).where(
                principal_clause(PackageAssignment, principal),
                PackageAssignment.status == AssignmentStatus.SUSPENDED,
            )
        )
        return await self._transition(
            principal,
            list(result.scalars().all()),
            AssignmentStatus.ACTIVE,
            LogAction.PACKAGE_REACTIVATED,
            source,
        )

    async def revoke_package(
        self,
        principal: Principal,
        package_code: str,
        source: LogSource = LogSource.SYSTEM,
    ) -> Optional[PackageAssignment]:
        """Cancel the principal's active assignment of a package, effective now."""
        now = utcnow()
        result = await self.db.execute(
            select(PackageAssignment)
            .join(Package, Package.id == PackageAssignment.package_id)
            .where(active_assignment_clause(principal, now), Package.code == package_code)
            .limit(1)
        )
        assignment = result.scalar_one_or_none()
        if assignment is None:
            return None

        old_values = _assignment_values(assignment)
        assignment.status = AssignmentStatus.CANCELLED
        assignment.expires_at = now

        self._log(
            principal,
            LogAction.PACKAGE_REVOKED,
            "package_assignment",
            assignment.id,
            source=source,
            old_values=old_values,
            new_values=_assignment_values(assignment),
            metadata=AuditMetadata(package_code=package_code, reason="Package revoked"),
        )
        await self.db.flush()

        is_base = assignment.package.is_base_package
        await self.invalidate(principal, assignment.package.feature_codes, usage=is_base)

        logger.info(f"Package {package_code} revoked for {principal}")
        await self.webhooks.dispatch(principal, WebhookEvent.PACKAGE_CHANGED, {
            "action": "revoked",
            "package_code": package_code,
            "assignment_id": str(assignment.id),
        })
        return assignment

    async def _transition(
        self,
        principal: Principal,
        assignments: List[PackageAssignment],
        status: AssignmentStatus,
        action: LogAction,
        source: LogSource,
    ) -> List[PackageAssignment]:
        if not assignments:
            return []

        affected_codes: Set[str] = set()
        for assignment in assignments:
            old_values = _assignment_values(assignment)
            assignment.status = status
            affected_codes.update(assignment.package.feature_codes)
            self._log(
                principal,
                action,
                "package_assignment",
                assignment.id,
                source=source,
                old_values=old_values,
                new_values=_assignment_values(assignment),
                metadata=AuditMetadata(package_code=assignment.package.code),
            )
        await self.db.flush()
        await self.invalidate(principal, affected_codes, usage=True)

        logger.info(f"{len(assignments)} package(s) moved to {status.value} for {principal}")
        await self.webhooks.dispatch(principal, WebhookEvent.PACKAGE_CHANGED, {
            "action": status.value,
            "package_codes": sorted({a.package.code for a in assignments}),
        })
        return assignments

    async def _get_package(self, package_code: str) -> Package:
        result = await self.db.execute(
            select(Package).where(Package.code == package_code, Package.is_active.is_(True))
        )
        package = result.scalar_one_or_none()
        if package is None:
            raise PackageNotFoundException(package_code)
        return package

    # ===========================================
    # BOOST WRITERS
    # ===========================================

    async def provision_boost(
        self,
        principal: Principal,
        feature_code: str,
        boost_type: BoostType = BoostType.ADD_LIMIT,
        duration_type: BoostDurationType = BoostDurationType.CYCLE_BOUND,
        limit_value: Optional[int] = None,
        starts_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        source: LogSource = LogSource.SYSTEM,
        user_id: Optional[uuid.UUID] = None,
    ) -> Boost:
        """Grant a single-feature top-up, stored under the feature's pool code."""
        if boost_type == BoostType.ADD_LIMIT and (limit_value is None or limit_value < 1):
            raise ValidationException(
                "add_limit boosts need a limit_value of at least 1",
                field="limit_value",
            )
        if duration_type == BoostDurationType.DURATION and expires_at is None:
            raise ValidationException(
                "duration boosts need an expires_at",
                field="expires_at",
            )

        pool_code = await self.catalog.pool_code(feature_code)
        now = utcnow()

        boost = Boost(
            principal_type=principal.kind,
            principal_id=principal.id,
            feature_code=pool_code,
            boost_type=boost_type,
            duration_type=duration_type,
            limit_value=limit_value,
            consumed_quantity=0,
            status=BoostStatus.ACTIVE,
            starts_at=as_naive_utc(starts_at) if starts_at else now,
            expires_at=as_naive_utc(expires_at) if expires_at else None,
        )
        self.db.add(boost)
        await self.db.flush()

        self._log(
            principal,
            LogAction.BOOST_PROVISIONED,
            "boost",
            boost.id,
            source=source,
            user_id=user_id,
            new_values=_boost_values(boost),
            metadata=AuditMetadata(feature_code=pool_code),
        )
        await self.db.flush()
        await self.invalidate(principal, [pool_code])

        logger.info(f"Boost {boost_type.value} on {pool_code} provisioned for {principal}")
        await self.webhooks.dispatch(principal, WebhookEvent.BOOST_ACTIVATED, {
            "boost_id": str(boost.id),
            "feature_code": pool_code,
            "boost_type": boost_type.value,
            "duration_type": duration_type.value,
            "limit_value": limit_value,
            "expires_at": boost.expires_at.isoformat() if boost.expires_at else None,
        })
        return boost

    async def consume_boost(self, boost_id: uuid.UUID, quantity: int) -> bool:
        """
        Atomically draw down an add_limit boost.

        Returns False, without raising, when the quantity does not fit in the
        remaining capacity or the boost is no longer active.
        """
        if quantity < 1:
            return False

        result = await self.db.execute(
            update(Boost)
            .where(
                Boost.id == boost_id,
                Boost.status == BoostStatus.ACTIVE,
                Boost.boost_type == BoostType.ADD_LIMIT,
                Boost.limit_value.is_not(None),
                Boost.consumed_quantity + quantity <= Boost.limit_value,
            )
            .values(consumed_quantity=Boost.consumed_quantity + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Boost {boost_id} cannot absorb {quantity}")
            return False

        exhausted = await self.db.execute(
            update(Boost)
            .where(
                Boost.id == boost_id,
                Boost.status == BoostStatus.ACTIVE,
                Boost.consumed_quantity >= Boost.limit_value,
            )
            .values(status=BoostStatus.EXHAUSTED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        boost = await self.db.get(Boost, boost_id)
        await self.db.refresh(boost)
        principal = Principal(boost.principal_type, boost.principal_id)
        if exhausted.rowcount == 1:
            self._log(
                principal,
                LogAction.BOOST_EXHAUSTED,
                "boost",
                boost.id,
                new_values=_boost_values(boost),
                metadata=AuditMetadata(feature_code=boost.feature_code),
            )
            await self.db.flush()

        await self.invalidate(principal, [boost.feature_code])
        return True

    async def expire_cycle_bound_boosts(
        self,
        principal: Principal,
        cycle_start: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> List[Boost]:
        """
        Expire cycle-bound boosts at a billing cycle reset.

        With cycle_start, only boosts that started before it (or whose own
        expiry has passed) are expired; without it, every active
        cycle-bound boost is.
        """
        now = now or utcnow()
        conditions = [
            principal_clause(Boost, principal),
            Boost.duration_type == BoostDurationType.CYCLE_BOUND,
            Boost.status == BoostStatus.ACTIVE,
        ]
        if cycle_start is not None:
            conditions.append(or_(
                Boost.starts_at < cycle_start,
                and_(Boost.starts_at.is_(None), Boost.created_at < cycle_start),
                Boost.expires_at <= now,
            ))
        result = await self.db.execute(select(Boost).where(*conditions))
        return await self._expire(principal, list(result.scalars().all()), "Billing cycle ended")

    async def expire_timed_boosts(
        self,
        principal: Principal,
        now: Optional[datetime] = None,
    ) -> List[Boost]:
        """Expire duration boosts whose expiry has passed."""
        now = now or utcnow()
        result = await self.db.execute(
            select(Boost).where(
                principal_clause(Boost, principal),
                Boost.duration_type == BoostDurationType.DURATION,
                Boost.status == BoostStatus.ACTIVE,
                Boost.expires_at <= now,
            )
        )
        return await self._expire(principal, list(result.scalars().all()), "Duration expired")

    async def _expire(self, principal: Principal, boosts: List[Boost], reason: str) -> List[Boost]:
        if not boosts:
            return []

        for boost in boosts:
            old_values = _boost_values(boost)
            boost.status = BoostStatus.EXPIRED
            self._log(
                principal,
                LogAction.BOOST_EXPIRED,
                "boost",
                boost.id,
                old_values=old_values,
                new_values=_boost_values(boost),
                metadata=AuditMetadata(feature_code=boost.feature_code, reason=reason),
            )
        await self.db.flush()
        await self.invalidate(principal, [boost.feature_code for boost in boosts])

        logger.info(
            f"Expired {len(boosts)} boost(s) for {principal}: {reason}",
            extra={"principal": str(principal), "boost_ids": [str(b.id) for b in boosts]},
        )
        for boost in boosts:
            await self.webhooks.dispatch(principal, WebhookEvent.BOOST_EXPIRED, {
                "boost_id": str(boost.id),
                "feature_code": boost.feature_code,
                "boost_type": boost.boost_type.value,
                "reason": reason,
            })
        return boosts

    # ===========================================
    # CACHE + AUDIT
    # ===========================================

    async def invalidate(
        self,
        principal: Principal,
        feature_codes: Iterable[str],
        usage: bool = False,
    ) -> None:
        """Forget cached limits (and optionally usage) for the affected pool codes."""
        pool_codes: Set[str] = set()
        for code in feature_codes:
            pool_codes.add(code)
            pool_codes.add(await self.catalog.pool_code(code))

        await self.cache.forget_limits(principal, pool_codes)
        if usage:
            for code in pool_codes:
                await self.cache.forget_usage([principal], code)

    def _log(
        self,
        principal: Principal,
        action: LogAction,
        entity_type: str,
        entity_id: Optional[uuid.UUID],
        source: LogSource = LogSource.SYSTEM,
        user_id: Optional[uuid.UUID] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        metadata: Optional[AuditMetadata] = None,
    ) -> EntitlementLog:
        entry = EntitlementLog(
            principal_type=principal.kind,
            principal_id=principal.id,
            action=action.value,
            entity_type=entity_type,
            entity_id=entity_id,
            source=source,
            user_id=user_id,
            old_values=old_values,
            new_values=new_values,
            event_metadata=metadata.to_column() if metadata else None,
        )
        self.db.add(entry)
        return entry

    async def history(self, principal: Principal, limit: int = 50) -> List[EntitlementLog]:
        """Most recent audit entries for a principal."""
        result = await self.db.execute(
            select(EntitlementLog)
            .where(principal_clause(EntitlementLog, principal))
            .order_by(EntitlementLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
