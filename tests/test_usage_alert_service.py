"""
Allotment - Usage Alert Service Tests

Tests for threshold detection, alert deduplication, resolution and the
notifications and webhook events an alert produces.
"""

from uuid import uuid4

import pytest

from app.models.entitlement import UsageAlert
from app.models.entitlement_enums import (
    AlertThreshold,
    BoostDurationType,
    BoostType,
    Principal,
    WebhookEvent,
)
from app.models.notification import NotificationType
from app.services.notification_service import NotificationService
from app.services.usage_alert_service import UsageAlertService, applicable_threshold
from app.utils.clock import utcnow
from app.utils.error_handling import AlertNotFoundException


class TestApplicableThreshold:
    @pytest.mark.parametrize(
        "percentage,expected",
        [
            (None, None),
            (0, None),
            (79.99, None),
            (80, AlertThreshold.WARNING),
            (89.5, AlertThreshold.WARNING),
            (90, AlertThreshold.CRITICAL),
            (100, AlertThreshold.LIMIT_REACHED),
            (140, AlertThreshold.LIMIT_REACHED),
        ],
    )
    def test_highest_threshold_met(self, percentage, expected):
        assert applicable_threshold(percentage) == expected


@pytest.fixture
async def owner(make_user):
    return await make_user()


@pytest.fixture
async def workspace(make_workspace, owner):
    return await make_workspace(owner=owner)


@pytest.fixture
async def emails(make_feature, make_package, workspace, provision):
    feature = await make_feature("emails", name="Emails")
    await make_package("starter", {"emails": 100}, is_base=True)
    await provision(Principal.workspace(workspace.id), "starter")
    return feature


@pytest.fixture
def alerts(db_session, cache, entitlements) -> UsageAlertService:
    return UsageAlertService(db_session, cache, entitlements=entitlements)


class TestCheckFeature:
    """Test threshold crossings for one principal and feature."""

    async def test_warning_then_dedup_then_critical(self, alerts, entitlements, workspace, emails):
        principal = Principal.workspace(workspace.id)

        await entitlements.record_usage(principal, "emails", 85)
        first = await alerts.check_feature(principal, emails)
        assert first["alert_sent"] is True
        assert first["threshold"] == 80
        assert first["percentage"] == 85.0

        await entitlements.record_usage(principal, "emails", 2)
        second = await alerts.check_feature(principal, emails)
        assert second["alert_sent"] is False
        assert second["threshold"] == 80

        await entitlements.record_usage(principal, "emails", 8)
        third = await alerts.check_feature(principal, emails)
        assert third["alert_sent"] is True
        assert third["threshold"] == 90

        active = await alerts.active_alerts(principal)
        assert [a.threshold for a in active] == [90, 80]

    async def test_alert_notifies_owner(self, db_session, alerts, entitlements, owner, workspace, emails):
        principal = Principal.workspace(workspace.id)
        await entitlements.record_usage(principal, "emails", 95)

        await alerts.check_feature(principal, emails)

        notifications = await NotificationService(db_session).get_user_notifications(owner.id)
        assert len(notifications) == 1
        assert notifications[0].notification_type == NotificationType.USAGE_CRITICAL
        assert notifications[0].extra_data["threshold"] == 90
        assert notifications[0].title == "Nearly at limit: Emails"

    async def test_alert_snapshot(self, alerts, entitlements, owner, workspace, emails):
        principal = Principal.workspace(workspace.id)
        await entitlements.record_usage(principal, "emails", 100)

        await alerts.check_feature(principal, emails)

        alert = (await alerts.active_alerts(principal))[0]
        assert alert.threshold == AlertThreshold.LIMIT_REACHED.value
        assert alert.snapshot["used"] == 100
        assert alert.snapshot["limit"] == 100
        assert alert.snapshot["notified_user_id"] == str(owner.id)

    async def test_below_thresholds_resolves_open_alerts(self, db_session, alerts, entitlements, workspace, emails):
        principal = Principal.workspace(workspace.id)
        await entitlements.record_usage(principal, "emails", 85)
        await alerts.check_feature(principal, emails)

        # An upgrade moves usage back to 60%
        await entitlements.grants.provision_boost(principal, "emails", limit_value=42)
        outcome = await alerts.check_feature(principal, emails)

        assert outcome["resolved"] is True
        assert outcome["threshold"] is None
        assert await alerts.active_alerts(principal) == []

        history = await alerts.alert_history(principal)
        await db_session.refresh(history[0])
        assert history[0].resolved_at is not None

    async def test_resolved_alert_can_fire_again(self, alerts, entitlements, workspace, emails):
        principal = Principal.workspace(workspace.id)
        await entitlements.record_usage(principal, "emails", 85)
        await alerts.check_feature(principal, emails)
        boost = await entitlements.grants.provision_boost(principal, "emails", limit_value=100)
        await alerts.check_feature(principal, emails)

        await entitlements.grants.consume_boost(boost.id, 100)
        outcome = await alerts.check_feature(principal, emails)

        assert outcome["alert_sent"] is True
        assert len(await alerts.alert_history(principal)) == 2

    async def test_unlimited_grant_resolves(self, alerts, entitlements, workspace, emails):
        principal = Principal.workspace(workspace.id)
        await entitlements.record_usage(principal, "emails", 90)
        await alerts.check_feature(principal, emails)

        await entitlements.grants.provision_boost(
            principal, "emails", boost_type=BoostType.UNLIMITED, duration_type=BoostDurationType.PERMANENT
        )
        outcome = await alerts.check_feature(principal, emails)

        assert outcome["resolved"] is True
        assert outcome["percentage"] is None

    async def test_no_owner_skips_alert(self, alerts, entitlements, make_workspace, emails, provision):
        orphan = await make_workspace()
        principal = Principal.workspace(orphan.id)
        await provision(principal, "starter")
        await entitlements.record_usage(principal, "emails", 90)

        outcome = await alerts.check_feature(principal, emails)

        assert outcome["alert_sent"] is False
        assert outcome["threshold"] == 90
        assert await alerts.active_alerts(principal) == []

    async def test_concurrent_duplicate_is_ignored(self, db_session, alerts, owner, workspace, emails):
        principal = Principal.workspace(workspace.id)
        db_session.add(UsageAlert(
            principal_type=principal.kind,
            principal_id=principal.id,
            feature_code="emails",
            threshold=80,
            notified_at=utcnow(),
        ))
        await db_session.flush()

        sent = await alerts._send_alert(principal, emails, AlertThreshold.WARNING, 85, 100)

        assert sent is False
        assert len(await alerts.active_alerts(principal)) == 1


class TestAlertWebhooks:
    async def test_threshold_events(self, db_session, alerts, entitlements, webhooks, enqueued, workspace, emails):
        principal = Principal.workspace(workspace.id)
        webhook = await webhooks.register(
            principal,
            "Usage hook",
            "https://hooks.example.com/usage",
            [WebhookEvent.LIMIT_WARNING.value, WebhookEvent.LIMIT_REACHED.value],
        )

        await entitlements.record_usage(principal, "emails", 80)
        await alerts.check_feature(principal, emails)
        await entitlements.record_usage(principal, "emails", 20)
        await alerts.check_feature(principal, emails)

        deliveries = await webhooks.delivery_history(webhook.id)
        events = sorted(d.event for d in deliveries)
        assert events == ["limit_reached", "limit_warning"]

        reached = next(d for d in deliveries if d.event == "limit_reached")
        assert reached.payload["data"]["threshold"] == 100
        assert reached.payload["data"]["feature_code"] == "emails"
        assert reached.payload["data"]["principal_id"] == str(workspace.id)

        assert enqueued == []
        await db_session.commit()
        assert sorted(enqueued) == sorted(str(d.id) for d in deliveries)


class TestSweep:
    async def test_check_all_workspaces(self, alerts, entitlements, make_user, make_workspace, workspace, emails, provision):
        principal = Principal.workspace(workspace.id)
        await entitlements.record_usage(principal, "emails", 92)

        idle = await make_workspace(owner=await make_user())
        await provision(Principal.workspace(idle.id), "starter")
        inactive = await make_workspace(owner=await make_user(), is_active=False)
        await provision(Principal.workspace(inactive.id), "starter")
        await make_workspace(owner=await make_user())

        stats = await alerts.check_all_workspaces()

        assert stats == {"checked": 2, "alerts_sent": 1, "alerts_resolved": 0}

    async def test_check_principal_details(self, alerts, entitlements, workspace, emails, make_feature, make_package, provision):
        principal = Principal.workspace(workspace.id)
        await make_feature("seats")
        await make_package("seat-pack", {"seats": 10})
        await provision(principal, "seat-pack")
        await entitlements.record_usage(principal, "emails", 81)
        await entitlements.record_usage(principal, "seats", 2)

        outcome = await alerts.check_principal(principal)

        assert outcome["alerts_sent"] == 1
        assert [d["feature"] for d in outcome["details"]] == ["emails"]


class TestAlertQueries:
    async def test_resolve_alert(self, alerts, entitlements, workspace, emails):
        principal = Principal.workspace(workspace.id)
        await entitlements.record_usage(principal, "emails", 85)
        await alerts.check_feature(principal, emails)
        alert = (await alerts.active_alerts(principal))[0]

        assert await alerts.resolve_alert(alert.id) is True
        assert await alerts.resolve_alert(alert.id) is False
        assert await alerts.active_alerts(principal) == []

    async def test_resolve_unknown_alert(self, alerts):
        with pytest.raises(AlertNotFoundException):
            await alerts.resolve_alert(uuid4())

    async def test_usage_status(self, alerts, entitlements, workspace, emails):
        principal = Principal.workspace(workspace.id)
        await entitlements.record_usage(principal, "emails", 91)
        await alerts.check_feature(principal, emails)

        status = await alerts.usage_status(principal)

        assert status == [{
            "code": "emails",
            "name": "Emails",
            "used": 91,
            "limit": 100,
            "percentage": 91.0,
            "near_limit": True,
            "at_limit": False,
            "alert_threshold": 90,
        }]
