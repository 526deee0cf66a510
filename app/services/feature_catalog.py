"""
Allotment - Feature Catalog

Lookup of feature definitions by code, with Redis caching.
Child features resolve under their parent's pool code for both grants and
usage.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.entitlement import Feature
from app.models.entitlement_enums import FeatureType, ResetType
from app.services.cache_service import CacheService, get_cache_service
from app.utils.error_handling import ConflictException, FeatureNotFoundException

logger = logging.getLogger(__name__)


def _feature_to_cache(feature: Feature) -> Dict[str, Any]:
    return {
        "id": str(feature.id),
        "code": feature.code,
        "name": feature.name,
        "description": feature.description,
        "category": feature.category,
        "type": feature.type.value,
        "reset_type": feature.reset_type.value,
        "rolling_window_days": feature.rolling_window_days,
        "parent_code": feature.parent_code,
        "sort_order": feature.sort_order,
        "is_active": feature.is_active,
    }


def _feature_from_cache(data: Dict[str, Any]) -> Feature:
    # Detached instance; never added to a session
    return Feature(
        id=uuid.UUID(data["id"]),
        code=data["code"],
        name=data["name"],
        description=data.get("description"),
        category=data.get("category"),
        type=FeatureType(data["type"]),
        reset_type=ResetType(data["reset_type"]),
        rolling_window_days=data.get("rolling_window_days"),
        parent_code=data.get("parent_code"),
        sort_order=data.get("sort_order", 0),
        is_active=data.get("is_active", True),
    )


class FeatureCatalog:
    """Feature definitions: type, reset policy, pool parent."""

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache or get_cache_service()

    async def get(self, code: str) -> Optional[Feature]:
        """Get an active feature by code, or None when it does not exist."""
        cached = await self.cache.get_feature(code)
        if cached is not None:
            try:
                return _feature_from_cache(cached)
            except (KeyError, ValueError) as e:
                logger.warning(f"Discarding malformed cached feature {code}: {e}")
                await self.cache.forget_feature(code)

        result = await self.db.execute(
            select(Feature).where(Feature.code == code, Feature.is_active.is_(True))
        )
        feature = result.scalar_one_or_none()
        if feature is not None:
            await self.cache.set_feature(code, _feature_to_cache(feature))
        return feature

    async def require(self, code: str) -> Feature:
        feature = await self.get(code)
        if feature is None:
            raise FeatureNotFoundException(code)
        return feature

    async def pool_code(self, code: str) -> str:
        """The code grants and usage are stored under."""
        feature = await self.get(code)
        if feature is None:
            return code
        return feature.pool_code

    async def active_limit_features(self) -> List[Feature]:
        """Active metered features, used by the alert sweep."""
        result = await self.db.execute(
            select(Feature)
            .where(Feature.is_active.is_(True), Feature.type == FeatureType.LIMIT)
            .order_by(Feature.category, Feature.sort_order, Feature.code)
        )
        return list(result.scalars().all())

    async def all_active(self) -> List[Feature]:
        result = await self.db.execute(
            select(Feature)
            .where(Feature.is_active.is_(True))
            .order_by(Feature.category, Feature.sort_order, Feature.code)
        )
        return list(result.scalars().all())

    # =========================================================================
    # ADMIN CRUD
    # =========================================================================

    async def create_feature(
        self,
        code: str,
        name: str,
        type: FeatureType = FeatureType.BOOLEAN,
        reset_type: ResetType = ResetType.NONE,
        rolling_window_days: Optional[int] = None,
        parent_code: Optional[str] = None,
        category: Optional[str] = None,
        description: Optional[str] = None,
        sort_order: int = 0,
    ) -> Feature:
        existing = await self.db.execute(select(Feature.id).where(Feature.code == code))
        if existing.scalar_one_or_none() is not None:
            raise ConflictException(f"Feature '{code}' already exists", resource_type="Feature")

        feature = Feature(
            code=code,
            name=name,
            type=type,
            reset_type=reset_type,
            rolling_window_days=rolling_window_days,
            parent_code=parent_code,
            category=category,
            description=description,
            sort_order=sort_order,
            is_active=True,
        )
        self.db.add(feature)
        await self.db.flush()
        await self.cache.forget_feature(code)

        logger.info(f"Feature created: {code} ({type.value}, reset={reset_type.value})")
        return feature

    async def update_feature(self, code: str, **changes: Any) -> Feature:
        result = await self.db.execute(select(Feature).where(Feature.code == code))
        feature = result.scalar_one_or_none()
        if feature is None:
            raise FeatureNotFoundException(code)

        for field, value in changes.items():
            if hasattr(feature, field):
                setattr(feature, field, value)

        await self.db.flush()
        await self.cache.forget_feature(code)
        return feature
