"""
Allotment - Feature Catalog Tests

Tests for feature lookup, pool codes and catalog caching.
"""

import pytest

from app.models.entitlement_enums import FeatureType, ResetType
from app.services.feature_catalog import FeatureCatalog
from app.utils.error_handling import ConflictException, FeatureNotFoundException


class TestFeatureLookup:
    """Test feature lookup by code."""

    async def test_get_returns_active_feature(self, db_session, cache, make_feature):
        await make_feature("ai.credits", name="AI Credits", reset_type=ResetType.MONTHLY)

        feature = await FeatureCatalog(db_session, cache).get("ai.credits")

        assert feature is not None
        assert feature.name == "AI Credits"
        assert feature.type == FeatureType.LIMIT
        assert feature.reset_type == ResetType.MONTHLY

    async def test_unknown_feature_is_none(self, db_session, cache):
        assert await FeatureCatalog(db_session, cache).get("missing") is None

    async def test_require_raises_for_unknown_feature(self, db_session, cache):
        with pytest.raises(FeatureNotFoundException):
            await FeatureCatalog(db_session, cache).require("missing")

    async def test_inactive_feature_is_hidden(self, db_session, cache, make_feature):
        await make_feature("legacy.export", type=FeatureType.BOOLEAN)
        catalog = FeatureCatalog(db_session, cache)
        await catalog.update_feature("legacy.export", is_active=False)

        assert await catalog.get("legacy.export") is None

    async def test_duplicate_code_conflicts(self, db_session, cache, make_feature):
        await make_feature("seats")
        with pytest.raises(ConflictException):
            await make_feature("seats")


class TestPoolCodes:
    """Child features draw from their parent's pool."""

    async def test_child_resolves_to_parent(self, db_session, cache, make_feature):
        await make_feature("ai.credits")
        await make_feature("ai.credits.images", parent_code="ai.credits")
        catalog = FeatureCatalog(db_session, cache)

        assert await catalog.pool_code("ai.credits.images") == "ai.credits"
        assert await catalog.pool_code("ai.credits") == "ai.credits"

    async def test_unknown_code_is_its_own_pool(self, db_session, cache):
        assert await FeatureCatalog(db_session, cache).pool_code("unknown") == "unknown"


class TestCatalogCaching:
    """Feature definitions are cached in Redis."""

    async def test_second_lookup_is_served_from_cache(self, db_session, cache, make_feature):
        created = await make_feature("api.calls", reset_type=ResetType.ROLLING, rolling_window_days=7)
        catalog = FeatureCatalog(db_session, cache)

        await catalog.get("api.calls")
        cached = await cache.get_feature("api.calls")
        assert cached["code"] == "api.calls"
        assert cached["rolling_window_days"] == 7

        feature = await catalog.get("api.calls")
        assert feature.id == created.id
        assert feature.window_days == 7
        assert feature.reset_type == ResetType.ROLLING

    async def test_update_forgets_cached_definition(self, db_session, cache, make_feature):
        await make_feature("api.calls")
        catalog = FeatureCatalog(db_session, cache)
        await catalog.get("api.calls")

        await catalog.update_feature("api.calls", name="API Requests")

        assert await cache.get_feature("api.calls") is None
        assert (await catalog.get("api.calls")).name == "API Requests"

    async def test_malformed_cache_entry_falls_back_to_database(self, db_session, cache, make_feature):
        await make_feature("api.calls")
        await cache.set_feature("api.calls", {"code": "api.calls"})

        feature = await FeatureCatalog(db_session, cache).get("api.calls")

        assert feature is not None
        assert feature.code == "api.calls"


class TestActiveLimitFeatures:
    async def test_only_metered_features_are_listed(self, db_session, cache, make_feature):
        await make_feature("seats")
        await make_feature("custom_domains", type=FeatureType.BOOLEAN)
        await make_feature("storage", type=FeatureType.UNLIMITED)

        features = await FeatureCatalog(db_session, cache).active_limit_features()

        assert [f.code for f in features] == ["seats"]
