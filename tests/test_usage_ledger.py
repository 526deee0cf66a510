"""
Allotment - Usage Ledger Tests

Tests for billing cycle windows, usage aggregation per scope and the
retention sweep.
"""

from datetime import datetime, timedelta

import pytest

from app.models.entitlement_enums import Principal, ResetType
from app.schemas.metadata import UsageContext
from app.services.usage_ledger import calendar_month_start, cycle_start
from app.utils.error_handling import InvalidQuantityException


class TestCycleStart:
    """Cycle starts are always computed from the anchor itself."""

    def test_same_month_after_anchor_day(self):
        assert cycle_start(datetime(2026, 1, 15), datetime(2026, 3, 20)) == datetime(2026, 3, 15)

    def test_before_anchor_day_uses_previous_month(self):
        assert cycle_start(datetime(2026, 1, 15), datetime(2026, 3, 10)) == datetime(2026, 2, 15)

    def test_exact_anchor_instant_starts_new_cycle(self):
        assert cycle_start(datetime(2026, 1, 15), datetime(2026, 3, 15)) == datetime(2026, 3, 15)

    def test_day_31_anchor_clamps_to_month_end(self):
        anchor = datetime(2026, 1, 31, 10, 0)
        assert cycle_start(anchor, datetime(2026, 2, 28, 12, 0)) == datetime(2026, 2, 28, 10, 0)

    def test_day_31_anchor_does_not_drift(self):
        anchor = datetime(2026, 1, 31, 10, 0)
        assert cycle_start(anchor, datetime(2026, 3, 31, 12, 0)) == datetime(2026, 3, 31, 10, 0)

    def test_day_31_anchor_before_clamped_day(self):
        anchor = datetime(2026, 1, 31, 10, 0)
        assert cycle_start(anchor, datetime(2026, 2, 27)) == datetime(2026, 1, 31, 10, 0)

    def test_calendar_month_start(self):
        assert calendar_month_start(datetime(2026, 7, 19, 13, 45, 12)) == datetime(2026, 7, 1)


@pytest.fixture
async def workspace(make_workspace):
    return await make_workspace()


@pytest.fixture
async def emails(make_feature, make_package, workspace, provision):
    feature = await make_feature("emails", reset_type=ResetType.MONTHLY)
    await make_package("starter", {"emails": 1000}, is_base=True)
    await provision(
        Principal.workspace(workspace.id),
        "starter",
        billing_cycle_anchor=datetime(2026, 1, 15),
    )
    return feature


class TestMonthlyWindow:
    """Monthly usage is counted from the current cycle start, inclusive."""

    async def test_boundary_is_inclusive(self, entitlements, workspace, emails):
        principal = Principal.workspace(workspace.id)
        usage = entitlements.usage

        await usage.record_usage(principal, "emails", 10, recorded_at=datetime(2026, 3, 14, 23, 59, 59))
        assert await usage.current_usage(principal, "emails", emails, now=datetime(2026, 3, 14, 23, 59, 59)) == 10
        assert await usage.current_usage(principal, "emails", emails, now=datetime(2026, 3, 15)) == 0

        await usage.record_usage(principal, "emails", 5, recorded_at=datetime(2026, 3, 15))
        assert await usage.current_usage(principal, "emails", emails, now=datetime(2026, 3, 15, 0, 0, 1)) == 5

    async def test_current_cycle_start_uses_base_anchor(self, entitlements, workspace, emails):
        start = await entitlements.usage.current_cycle_start(
            Principal.workspace(workspace.id), datetime(2026, 5, 2)
        )
        assert start == datetime(2026, 4, 15)

    async def test_no_base_package_uses_calendar_month(self, entitlements, make_workspace, emails):
        other = await make_workspace()
        start = await entitlements.usage.current_cycle_start(
            Principal.workspace(other.id), datetime(2026, 5, 20, 8)
        )
        assert start == datetime(2026, 5, 1)


class TestRollingAndLifetimeWindows:
    async def test_rolling_window(self, entitlements, workspace, make_feature):
        feature = await make_feature("api.calls", reset_type=ResetType.ROLLING, rolling_window_days=7)
        principal = Principal.workspace(workspace.id)
        now = datetime(2026, 6, 10, 12)

        await entitlements.usage.record_usage(principal, "api.calls", 3, recorded_at=now - timedelta(days=8))
        await entitlements.usage.record_usage(principal, "api.calls", 4, recorded_at=now - timedelta(days=6))
        await entitlements.usage.record_usage(principal, "api.calls", 2, recorded_at=now - timedelta(days=1))

        assert await entitlements.usage.current_usage(principal, "api.calls", feature, now=now) == 6

    async def test_rolling_window_defaults_to_30_days(self, entitlements, workspace, make_feature):
        feature = await make_feature("exports", reset_type=ResetType.ROLLING)
        principal = Principal.workspace(workspace.id)
        now = datetime(2026, 6, 10, 12)

        await entitlements.usage.record_usage(principal, "exports", 1, recorded_at=now - timedelta(days=31))
        await entitlements.usage.record_usage(principal, "exports", 1, recorded_at=now - timedelta(days=29))

        assert await entitlements.usage.current_usage(principal, "exports", feature, now=now) == 1

    async def test_lifetime_counts_everything(self, entitlements, workspace, make_feature):
        feature = await make_feature("seats")
        principal = Principal.workspace(workspace.id)

        await entitlements.usage.record_usage(principal, "seats", 2, recorded_at=datetime(2024, 1, 1))
        await entitlements.usage.record_usage(principal, "seats", 3)

        assert await entitlements.usage.current_usage(principal, "seats", feature) == 5


class TestUsageScopes:
    """Workspace usage includes its namespaces; namespace usage is its own."""

    async def test_workspace_includes_namespace_usage(self, entitlements, workspace, make_namespace, make_feature):
        feature = await make_feature("seats")
        first = await make_namespace(workspace)
        second = await make_namespace(workspace)

        await entitlements.usage.record_usage(Principal.workspace(workspace.id), "seats", 3)
        await entitlements.usage.record_usage(Principal.namespace(first.id), "seats", 4)
        await entitlements.usage.record_usage(Principal.namespace(second.id), "seats", 5)

        usage = entitlements.usage
        assert await usage.current_usage(Principal.workspace(workspace.id), "seats", feature) == 12
        assert await usage.current_usage(Principal.namespace(first.id), "seats", feature) == 4
        assert await usage.current_usage(Principal.namespace(second.id), "seats", feature) == 5

    async def test_namespace_write_forgets_workspace_usage(
        self, entitlements, cache, workspace, make_namespace, make_feature
    ):
        feature = await make_feature("seats")
        namespace = await make_namespace(workspace)
        ws = Principal.workspace(workspace.id)

        await entitlements.usage.record_usage(ws, "seats", 3)
        assert await entitlements.usage.current_usage(ws, "seats", feature) == 3
        assert await cache.get_usage(ws, "seats") == 3

        await entitlements.usage.record_usage(Principal.namespace(namespace.id), "seats", 4)

        assert await cache.get_usage(ws, "seats") is None
        assert await entitlements.usage.current_usage(ws, "seats", feature) == 7

    async def test_record_stores_workspace_and_namespace(self, entitlements, workspace, make_namespace, make_feature):
        await make_feature("seats")
        namespace = await make_namespace(workspace)

        record = await entitlements.usage.record_usage(Principal.namespace(namespace.id), "seats")

        assert record.workspace_id == workspace.id
        assert record.namespace_id == namespace.id
        assert record.quantity == 1

    async def test_child_usage_is_recorded_under_pool(self, entitlements, workspace, make_feature):
        await make_feature("ai.credits")
        await make_feature("ai.credits.images", parent_code="ai.credits")

        record = await entitlements.usage.record_usage(
            Principal.workspace(workspace.id), "ai.credits.images", 5, context={"source": "editor"}
        )

        assert record.feature_code == "ai.credits"
        assert record.context["requested_feature"] == "ai.credits.images"
        assert record.context["source"] == "editor"

    async def test_caller_context_is_not_modified(self, entitlements, workspace, make_feature):
        await make_feature("ai.credits")
        await make_feature("ai.credits.images", parent_code="ai.credits")
        context = UsageContext(source="editor")

        record = await entitlements.usage.record_usage(
            Principal.workspace(workspace.id), "ai.credits.images", 1, context=context
        )

        assert record.context["requested_feature"] == "ai.credits.images"
        assert context.requested_feature is None

    @pytest.mark.parametrize("quantity", [0, -3])
    async def test_invalid_quantity_raises(self, entitlements, workspace, make_feature, quantity):
        await make_feature("seats")
        with pytest.raises(InvalidQuantityException):
            await entitlements.usage.record_usage(Principal.workspace(workspace.id), "seats", quantity)

    async def test_usage_history_newest_first(self, entitlements, workspace, make_feature):
        await make_feature("seats")
        principal = Principal.workspace(workspace.id)
        now = datetime(2026, 6, 10)

        await entitlements.usage.record_usage(principal, "seats", 1, recorded_at=now - timedelta(days=40))
        older = await entitlements.usage.record_usage(principal, "seats", 1, recorded_at=now - timedelta(days=5))
        newer = await entitlements.usage.record_usage(principal, "seats", 1, recorded_at=now - timedelta(days=1))

        history = await entitlements.usage.usage_history(principal, "seats", days=30, now=now)

        assert [r.id for r in history] == [newer.id, older.id]


class TestRetention:
    """Only windowed features are pruned, and only past their window."""

    async def test_prune(self, entitlements, workspace, make_feature):
        await make_feature("emails", reset_type=ResetType.MONTHLY)
        await make_feature("api.calls", reset_type=ResetType.ROLLING, rolling_window_days=7)
        await make_feature("seats")
        principal = Principal.workspace(workspace.id)
        now = datetime(2026, 6, 10)
        old = now - timedelta(days=800)

        for code in ("emails", "api.calls", "seats"):
            await entitlements.usage.record_usage(principal, code, 1, recorded_at=old)
            await entitlements.usage.record_usage(principal, code, 1, recorded_at=now - timedelta(days=1))

        deleted = await entitlements.usage.prune(730, now=now)

        assert deleted == 2
        remaining = {
            code: len(await entitlements.usage.usage_history(principal, code, days=1000, now=now))
            for code in ("emails", "api.calls", "seats")
        }
        assert remaining == {"emails": 1, "api.calls": 1, "seats": 2}

    async def test_short_retention_keeps_monthly_records(self, entitlements, workspace, make_feature):
        await make_feature("emails", reset_type=ResetType.MONTHLY)
        await make_feature("api.calls", reset_type=ResetType.ROLLING, rolling_window_days=7)
        principal = Principal.workspace(workspace.id)
        now = datetime(2026, 6, 10)

        await entitlements.usage.record_usage(principal, "emails", 1, recorded_at=now - timedelta(days=25))
        await entitlements.usage.record_usage(principal, "api.calls", 1, recorded_at=now - timedelta(days=25))

        assert await entitlements.usage.prune(20, now=now) == 1
