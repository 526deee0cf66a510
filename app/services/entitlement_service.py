"""
Allotment - Entitlement Service

The resolution engine: answers "may this principal use N of this feature
right now?" by combining the grant ledger and the usage ledger.

Namespace cascade:
1. Grants held by the namespace itself
2. Grants held by the namespace's workspace (usage measured at workspace scope)
3. The owner's user tier, for user-owned namespaces (boolean features only)

Business denials come back as a denied EntitlementResult; nothing here
raises for them and nothing here consumes usage.
"""

import logging
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.entitlement import Feature, UsageRecord
from app.models.entitlement_enums import USER_TIER_FEATURES, DenialCode, Principal
from app.schemas.metadata import UsageContext
from app.services.cache_service import CacheService, get_cache_service
from app.services.entitlement_types import EntitlementResult, LimitValue
from app.services.feature_catalog import FeatureCatalog
from app.services.grant_ledger import GrantLedger
from app.services.tenant_directory import TenantDirectory
from app.services.usage_ledger import UsageLedger
from app.services.webhook_service import EntitlementWebhookService
from app.utils.clock import utcnow
from app.utils.error_handling import InvalidQuantityException, PrincipalNotFoundException

logger = logging.getLogger(__name__)


DEFAULT_CATEGORY = "general"


class EntitlementService:
    """
    Allow/deny decisions for workspaces and namespaces.

    Usage:
        service = EntitlementService(db)

        result = await service.can(workspace_id, "ai.credits", quantity=5)
        if result.allowed:
            await service.record_usage(Principal.workspace(workspace_id), "ai.credits", quantity=5)
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        webhooks: Optional[EntitlementWebhookService] = None,
    ):
        self.db = db
        self.cache = cache or get_cache_service()
        self.webhooks = webhooks or EntitlementWebhookService(db)
        self.catalog = FeatureCatalog(db, self.cache)
        self.directory = TenantDirectory(db)
        self.grants = GrantLedger(db, self.cache, self.webhooks)
        self.usage = UsageLedger(db, self.cache, self.grants)

    # ===========================================
    # RESOLUTION
    # ===========================================

    async def can(
        self,
        workspace_id: uuid.UUID,
        feature_code: str,
        quantity: int = 1,
        now: Optional[datetime] = None,
    ) -> EntitlementResult:
        """Check whether a workspace may use `quantity` of a feature."""
        self._validate_quantity(quantity)

        feature = await self.catalog.get(feature_code)
        if feature is None:
            return self._unknown_feature(feature_code)

        principal = Principal.workspace(workspace_id)
        limit = await self.grants.total_limit(principal, feature.pool_code, now)
        if limit.is_absent:
            return self._not_entitled(feature, feature_code)

        return await self._decide(principal, feature, feature_code, limit, quantity, now)

    async def can_for_namespace(
        self,
        namespace_id: uuid.UUID,
        feature_code: str,
        quantity: int = 1,
        now: Optional[datetime] = None,
    ) -> EntitlementResult:
        """Check whether a namespace may use `quantity` of a feature, cascading upward."""
        self._validate_quantity(quantity)

        feature = await self.catalog.get(feature_code)
        if feature is None:
            return self._unknown_feature(feature_code)

        namespace = await self.directory.get_namespace(namespace_id)
        if namespace is None:
            raise PrincipalNotFoundException("namespace", namespace_id)

        pool_code = feature.pool_code
        holder = Principal.namespace(namespace_id)
        limit = await self.grants.total_limit(holder, pool_code, now)

        if limit.is_absent and namespace.workspace_id is not None:
            holder = Principal.workspace(namespace.workspace_id)
            limit = await self.grants.total_limit(holder, pool_code, now)

        if limit.is_absent and namespace.is_user_owned and feature.is_boolean:
            owner = await self.directory.get_user(namespace.owner_user_id)
            if owner is not None:
                tier = owner.effective_tier(now)
                if feature_code in USER_TIER_FEATURES.get(tier, frozenset()):
                    return EntitlementResult.allow(feature_code)

        if limit.is_absent:
            return self._not_entitled(feature, feature_code)

        return await self._decide(holder, feature, feature_code, limit, quantity, now)

    async def check(
        self,
        principal: Principal,
        feature_code: str,
        quantity: int = 1,
        now: Optional[datetime] = None,
    ) -> EntitlementResult:
        """Dispatch to can() or can_for_namespace() by principal kind."""
        if principal.is_namespace:
            return await self.can_for_namespace(principal.id, feature_code, quantity, now)
        return await self.can(principal.id, feature_code, quantity, now)

    async def _decide(
        self,
        holder: Principal,
        feature: Feature,
        feature_code: str,
        limit: LimitValue,
        quantity: int,
        now: Optional[datetime],
    ) -> EntitlementResult:
        if limit.unlimited:
            return EntitlementResult.allow(feature_code, unlimited=True)

        if feature.is_boolean:
            return EntitlementResult.allow(feature_code)

        # The usage window follows the pool feature, not the child
        pool_feature = feature
        if feature.parent_code:
            pool_feature = await self.catalog.get(feature.pool_code) or feature

        used = await self.usage.current_usage(holder, feature.pool_code, pool_feature, now)
        if used + quantity > limit.value:
            return EntitlementResult.deny(
                feature_code,
                f"You've reached your {feature.name} limit ({limit.value}).",
                DenialCode.LIMIT_EXCEEDED,
                limit=limit.value,
                used=used,
            )

        return EntitlementResult.allow(feature_code, limit=limit.value, used=used)

    @staticmethod
    def _validate_quantity(quantity: int) -> None:
        if not isinstance(quantity, int) or quantity < 1:
            raise InvalidQuantityException(quantity)

    @staticmethod
    def _unknown_feature(feature_code: str) -> EntitlementResult:
        return EntitlementResult.deny(
            feature_code,
            f"Feature '{feature_code}' does not exist.",
            DenialCode.FEATURE_NOT_FOUND,
        )

    @staticmethod
    def _not_entitled(feature: Feature, feature_code: str) -> EntitlementResult:
        return EntitlementResult.deny(
            feature_code,
            f"Your plan does not include {feature.name}.",
            DenialCode.NOT_ENTITLED,
        )

    # ===========================================
    # USAGE
    # ===========================================

    async def record_usage(
        self,
        principal: Principal,
        feature_code: str,
        quantity: int = 1,
        user_id: Optional[uuid.UUID] = None,
        context: Optional[Union[UsageContext, Dict[str, Any]]] = None,
    ) -> UsageRecord:
        """Append usage; callers are expected to have checked first."""
        return await self.usage.record_usage(principal, feature_code, quantity, user_id, context)

    async def usage_summary(self, principal: Principal) -> Dict[str, List[Dict[str, Any]]]:
        """
        One entry per active feature, grouped by category.

        Each entry reflects a quantity-1 check, so `allowed` answers
        "could one more unit be used right now?".
        """
        summary: Dict[str, List[Dict[str, Any]]] = OrderedDict()

        for feature in await self.catalog.all_active():
            result = await self.check(principal, feature.code)
            percentage = result.usage_percentage
            summary.setdefault(feature.category or DEFAULT_CATEGORY, []).append({
                "code": feature.code,
                "name": feature.name,
                "category": feature.category,
                "type": feature.type.value,
                "allowed": result.allowed,
                "limit": result.limit,
                "used": result.used,
                "remaining": result.remaining,
                "unlimited": result.unlimited,
                "percentage": round(percentage, 2) if percentage is not None else None,
                "near_limit": result.is_near_limit,
            })

        return summary

    async def status_snapshot(self, principal: Principal) -> Dict[str, Any]:
        """Packages and boosts currently in force, for the summary endpoint."""
        now = utcnow()
        packages = await self.grants.active_packages(principal, now)
        boosts = await self.grants.active_boosts(principal, now)
        return {
            "principal_type": principal.kind.value,
            "principal_id": str(principal.id),
            "packages": [
                {
                    "code": assignment.package.code,
                    "name": assignment.package.name,
                    "is_base_package": assignment.package.is_base_package,
                    "status": assignment.status.value,
                    "expires_at": assignment.expires_at.isoformat() if assignment.expires_at else None,
                }
                for assignment in packages
            ],
            "boosts": [
                {
                    "id": str(boost.id),
                    "feature_code": boost.feature_code,
                    "boost_type": boost.boost_type.value,
                    "duration_type": boost.duration_type.value,
                    "remaining": boost.remaining,
                    "expires_at": boost.expires_at.isoformat() if boost.expires_at else None,
                }
                for boost in boosts
            ],
        }
