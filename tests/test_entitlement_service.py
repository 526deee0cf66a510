"""
Allotment - Entitlement Service Tests

Tests for the resolution engine: workspace checks, the namespace cascade,
the user tier fallback and the usage summary.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from app.models.entitlement_enums import DenialCode, FeatureType, Principal, ResetType, UserTier
from app.utils.clock import utcnow
from app.utils.error_handling import InvalidQuantityException, PrincipalNotFoundException


class TestWorkspaceChecks:
    """Test can() against a single workspace."""

    async def test_limit_check_against_usage(self, entitlements, make_workspace, make_feature, make_package, provision):
        workspace = await make_workspace()
        principal = Principal.workspace(workspace.id)
        await make_feature("widgets", name="Widgets")
        await make_package("starter", {"widgets": 100}, is_base=True)
        await provision(principal, "starter")
        await entitlements.record_usage(principal, "widgets", 30)

        denied = await entitlements.can(workspace.id, "widgets", 80)
        assert denied.allowed is False
        assert denied.denial_code == DenialCode.LIMIT_EXCEEDED
        assert denied.reason == "You've reached your Widgets limit (100)."
        assert denied.used == 30
        assert denied.limit == 100

        allowed = await entitlements.can(workspace.id, "widgets", 50)
        assert allowed.allowed is True
        assert allowed.remaining == 70
        assert allowed.usage_percentage == 30.0

    async def test_exact_fit_is_allowed(self, entitlements, make_workspace, make_feature, make_package, provision):
        workspace = await make_workspace()
        principal = Principal.workspace(workspace.id)
        await make_feature("widgets")
        await make_package("starter", {"widgets": 10}, is_base=True)
        await provision(principal, "starter")
        await entitlements.record_usage(principal, "widgets", 4)

        assert (await entitlements.can(workspace.id, "widgets", 6)).allowed is True
        assert (await entitlements.can(workspace.id, "widgets", 7)).allowed is False

    async def test_unknown_feature(self, entitlements, make_workspace):
        workspace = await make_workspace()

        result = await entitlements.can(workspace.id, "teleport")

        assert result.allowed is False
        assert result.denial_code == DenialCode.FEATURE_NOT_FOUND
        assert result.reason == "Feature 'teleport' does not exist."

    async def test_not_entitled(self, entitlements, make_workspace, make_feature):
        workspace = await make_workspace()
        await make_feature("custom_domains", name="Custom Domains", type=FeatureType.BOOLEAN)

        result = await entitlements.can(workspace.id, "custom_domains")

        assert result.allowed is False
        assert result.denial_code == DenialCode.NOT_ENTITLED
        assert result.reason == "Your plan does not include Custom Domains."

    async def test_boolean_grant(self, entitlements, make_workspace, make_feature, make_package, provision):
        workspace = await make_workspace()
        await make_feature("custom_domains", type=FeatureType.BOOLEAN)
        await make_package("pro", {"custom_domains": None}, is_base=True)
        await provision(Principal.workspace(workspace.id), "pro")

        result = await entitlements.can(workspace.id, "custom_domains")

        assert result.allowed is True
        assert result.limit is None
        assert result.remaining is None

    async def test_unlimited_grant(self, entitlements, make_workspace, make_feature, make_package, provision):
        workspace = await make_workspace()
        principal = Principal.workspace(workspace.id)
        await make_feature("storage", type=FeatureType.UNLIMITED)
        await make_package("pro", {"storage": None}, is_base=True)
        await provision(principal, "pro")
        await entitlements.record_usage(principal, "storage", 10_000)

        result = await entitlements.can(workspace.id, "storage", 1_000_000)

        assert result.allowed is True
        assert result.unlimited is True
        assert result.remaining is None

    async def test_zero_limit_denies(self, entitlements, make_workspace, make_feature, make_package, provision):
        workspace = await make_workspace()
        await make_feature("widgets")
        await make_package("free", {"widgets": 0}, is_base=True)
        await provision(Principal.workspace(workspace.id), "free")

        result = await entitlements.can(workspace.id, "widgets")

        assert result.allowed is False
        assert result.limit == 0
        assert result.usage_percentage is None

    async def test_child_feature_shares_parent_pool(self, entitlements, make_workspace, make_feature, make_package, provision):
        workspace = await make_workspace()
        principal = Principal.workspace(workspace.id)
        await make_feature("ai.credits", reset_type=ResetType.MONTHLY)
        await make_feature("ai.credits.images", parent_code="ai.credits")
        await make_package("pro", {"ai.credits": 100}, is_base=True)
        await provision(principal, "pro")

        await entitlements.record_usage(principal, "ai.credits.images", 60)

        parent = await entitlements.can(workspace.id, "ai.credits", 41)
        child = await entitlements.can(workspace.id, "ai.credits.images", 40)
        assert parent.allowed is False
        assert parent.used == 60
        assert child.allowed is True
        assert child.feature_code == "ai.credits.images"

    @pytest.mark.parametrize("quantity", [0, -1])
    async def test_invalid_quantity(self, entitlements, make_workspace, quantity):
        workspace = await make_workspace()
        with pytest.raises(InvalidQuantityException):
            await entitlements.can(workspace.id, "widgets", quantity)


class TestNamespaceCascade:
    """Namespace grants, then workspace grants, then the owner's tier."""

    async def test_falls_back_to_workspace_grants(
        self, entitlements, make_workspace, make_namespace, make_feature, make_package, provision
    ):
        workspace = await make_workspace()
        namespace = await make_namespace(workspace)
        await make_feature("widgets")
        await make_package("team", {"widgets": 200}, is_base=True)
        await provision(Principal.workspace(workspace.id), "team")
        await entitlements.record_usage(Principal.namespace(namespace.id), "widgets", 150)

        allowed = await entitlements.can_for_namespace(namespace.id, "widgets", 40)
        denied = await entitlements.can_for_namespace(namespace.id, "widgets", 60)

        assert allowed.allowed is True
        assert allowed.limit == 200
        assert allowed.used == 150
        assert denied.allowed is False
        assert denied.denial_code == DenialCode.LIMIT_EXCEEDED

    async def test_workspace_usage_counts_all_namespaces(
        self, entitlements, make_workspace, make_namespace, make_feature, make_package, provision
    ):
        workspace = await make_workspace()
        first = await make_namespace(workspace)
        second = await make_namespace(workspace)
        await make_feature("widgets")
        await make_package("team", {"widgets": 200}, is_base=True)
        await provision(Principal.workspace(workspace.id), "team")
        await entitlements.record_usage(Principal.namespace(first.id), "widgets", 120)
        await entitlements.record_usage(Principal.namespace(second.id), "widgets", 50)

        result = await entitlements.can_for_namespace(second.id, "widgets", 40)

        assert result.allowed is False
        assert result.used == 170

    async def test_own_grants_take_precedence(
        self, entitlements, make_workspace, make_namespace, make_feature, make_package, provision
    ):
        workspace = await make_workspace()
        namespace = await make_namespace(workspace)
        await make_feature("widgets")
        await make_package("team", {"widgets": 200}, is_base=True)
        await make_package("namespace-pack", {"widgets": 10})
        await provision(Principal.workspace(workspace.id), "team")
        await provision(Principal.namespace(namespace.id), "namespace-pack")
        await entitlements.record_usage(Principal.namespace(namespace.id), "widgets", 8)

        result = await entitlements.can_for_namespace(namespace.id, "widgets", 3)

        assert result.allowed is False
        assert result.limit == 10
        assert result.used == 8

    async def test_user_tier_fallback(self, entitlements, make_user, make_namespace, make_feature):
        owner = await make_user(tier=UserTier.APOLLO)
        namespace = await make_namespace(owner=owner)
        await make_feature("bio.custom_domains", name="Custom Domains", type=FeatureType.BOOLEAN)

        result = await entitlements.can_for_namespace(namespace.id, "bio.custom_domains")

        assert result.allowed is True

    async def test_free_tier_lacks_paid_feature(self, entitlements, make_user, make_namespace, make_feature):
        owner = await make_user(tier=UserTier.FREE)
        namespace = await make_namespace(owner=owner)
        await make_feature("bio.custom_domains", name="Custom Domains", type=FeatureType.BOOLEAN)

        result = await entitlements.can_for_namespace(namespace.id, "bio.custom_domains")

        assert result.allowed is False
        assert result.denial_code == DenialCode.NOT_ENTITLED

    async def test_lapsed_tier_falls_back_to_free(self, entitlements, make_user, make_namespace, make_feature):
        owner = await make_user(tier=UserTier.HADES, tier_expires_at=utcnow() - timedelta(days=1))
        namespace = await make_namespace(owner=owner)
        await make_feature("api.access", type=FeatureType.BOOLEAN)
        await make_feature("bio.pages", type=FeatureType.BOOLEAN)

        assert (await entitlements.can_for_namespace(namespace.id, "api.access")).allowed is False
        assert (await entitlements.can_for_namespace(namespace.id, "bio.pages")).allowed is True

    async def test_tier_does_not_grant_limit_features(self, entitlements, make_user, make_namespace, make_feature):
        owner = await make_user(tier=UserTier.HADES)
        namespace = await make_namespace(owner=owner)
        await make_feature("social.scheduling")

        result = await entitlements.can_for_namespace(namespace.id, "social.scheduling")

        assert result.allowed is False

    async def test_workspace_namespace_ignores_owner_tier(
        self, entitlements, make_user, make_workspace, make_namespace, make_feature
    ):
        owner = await make_user(tier=UserTier.HADES)
        workspace = await make_workspace(owner=owner)
        namespace = await make_namespace(workspace, owner=owner)
        await make_feature("api.access", type=FeatureType.BOOLEAN)

        assert (await entitlements.can_for_namespace(namespace.id, "api.access")).allowed is False

    async def test_unknown_namespace_raises(self, entitlements, make_feature):
        await make_feature("widgets")
        with pytest.raises(PrincipalNotFoundException):
            await entitlements.can_for_namespace(uuid4(), "widgets")

    async def test_check_dispatches_by_principal(
        self, entitlements, make_workspace, make_namespace, make_feature, make_package, provision
    ):
        workspace = await make_workspace()
        namespace = await make_namespace(workspace)
        await make_feature("widgets")
        await make_package("team", {"widgets": 5}, is_base=True)
        await provision(Principal.workspace(workspace.id), "team")

        assert (await entitlements.check(Principal.workspace(workspace.id), "widgets", 5)).allowed is True
        assert (await entitlements.check(Principal.namespace(namespace.id), "widgets", 6)).allowed is False


class TestUsageSummary:
    async def test_summary_groups_by_category(
        self, entitlements, make_workspace, make_feature, make_package, provision
    ):
        workspace = await make_workspace()
        principal = Principal.workspace(workspace.id)
        await make_feature("ai.credits", category="ai")
        await make_feature("custom_domains", type=FeatureType.BOOLEAN, category="branding")
        await make_feature("exports", type=FeatureType.BOOLEAN)
        await make_package("pro", {"ai.credits": 200, "custom_domains": None}, is_base=True)
        await provision(principal, "pro")
        await entitlements.record_usage(principal, "ai.credits", 170)

        summary = await entitlements.usage_summary(principal)

        assert set(summary) == {"ai", "branding", "general"}
        credits = summary["ai"][0]
        assert credits["used"] == 170
        assert credits["remaining"] == 30
        assert credits["percentage"] == 85.0
        assert credits["near_limit"] is True
        assert summary["branding"][0]["allowed"] is True
        assert summary["general"][0]["allowed"] is False

    async def test_status_snapshot(self, entitlements, make_workspace, make_feature, make_package, provision):
        workspace = await make_workspace()
        principal = Principal.workspace(workspace.id)
        await make_feature("widgets")
        await make_package("starter", {"widgets": 100}, is_base=True)
        await provision(principal, "starter")
        await entitlements.grants.provision_boost(principal, "widgets", limit_value=25)

        snapshot = await entitlements.status_snapshot(principal)

        assert snapshot["principal_type"] == "workspace"
        assert [p["code"] for p in snapshot["packages"]] == ["starter"]
        assert snapshot["packages"][0]["is_base_package"] is True
        assert snapshot["boosts"][0]["remaining"] == 25
