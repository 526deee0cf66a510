"""
Allotment - Background Task Tests

Tests for the scheduled task functions and the Celery wrappers around them.
"""

from datetime import datetime, timedelta

import httpx
import pytest
import respx
from celery.exceptions import Retry

from app.celery_app import celery_app
from app.config import settings
from app.models.entitlement_enums import DeliveryStatus, Principal, ResetType, WebhookEvent
from app.tasks import celery_tasks, scheduled_tasks
from app.utils.clock import utcnow

HOOK_URL = "https://hooks.example.com/entitlements"


class TestRetryBackoff:
    @pytest.mark.parametrize("attempts,expected", [(0, 30), (1, 30), (2, 60), (3, 120)])
    def test_exponential_countdown(self, monkeypatch, attempts, expected):
        monkeypatch.setattr(settings, "webhook_retry_backoff_seconds", 30)
        assert celery_tasks.retry_countdown(attempts) == expected


class TestBeatSchedule:
    def test_sweeps_are_scheduled(self):
        tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert tasks == {
            "app.tasks.celery_tasks.check_usage_alerts_task",
            "app.tasks.celery_tasks.reset_billing_cycles_task",
            "app.tasks.celery_tasks.prune_usage_records_task",
            "app.tasks.celery_tasks.requeue_stale_webhook_deliveries_task",
        }

    def test_webhooks_have_their_own_queue(self):
        routes = celery_app.conf.task_routes
        assert routes["app.tasks.celery_tasks.deliver_entitlement_webhook_task"] == {"queue": "webhooks"}


class TestDeliverTask:
    @staticmethod
    def _stub_outcome(monkeypatch, outcome):
        def fake_run_async(coro):
            coro.close()
            return outcome

        monkeypatch.setattr(celery_tasks, "run_async", fake_run_async)

    def test_returns_outcome_when_done(self, monkeypatch):
        outcome = {"delivered": True, "retry": False, "attempts": 1}
        self._stub_outcome(monkeypatch, outcome)

        assert celery_tasks.deliver_entitlement_webhook_task("delivery-id") == outcome

    def test_failed_attempt_requests_retry(self, monkeypatch):
        self._stub_outcome(monkeypatch, {"delivered": False, "retry": True, "attempts": 1, "max_attempts": 3})

        with pytest.raises(Retry):
            celery_tasks.deliver_entitlement_webhook_task("delivery-id")

    def test_exhausted_delivery_is_not_retried(self, monkeypatch):
        outcome = {"delivered": False, "retry": False, "attempts": 3, "max_attempts": 3}
        self._stub_outcome(monkeypatch, outcome)

        assert celery_tasks.deliver_entitlement_webhook_task("delivery-id") == outcome


@pytest.fixture
async def principal(make_workspace, make_user):
    workspace = await make_workspace(owner=await make_user())
    return Principal.workspace(workspace.id)


class TestScheduledTasks:
    async def test_check_usage_alerts(self, db_session, cache, make_feature, make_package, provision, principal, entitlements):
        await make_feature("emails")
        await make_package("starter", {"emails": 100}, is_base=True)
        await provision(principal, "starter")
        await entitlements.record_usage(principal, "emails", 95)

        stats = await scheduled_tasks.check_usage_alerts(db_session)

        assert stats == {"checked": 1, "alerts_sent": 1, "alerts_resolved": 0}

    async def test_reset_billing_cycles(self, db_session, cache, make_feature, principal, entitlements):
        await make_feature("emails")
        await entitlements.grants.provision_boost(
            principal, "emails", limit_value=10, starts_at=utcnow() - timedelta(days=62)
        )

        stats = await scheduled_tasks.reset_billing_cycles(db_session)

        assert stats["principals_checked"] == 1
        assert stats["cycle_bound_expired"] == 1

    async def test_prune_usage_records(self, db_session, cache, make_feature, principal, entitlements):
        await make_feature("emails", reset_type=ResetType.MONTHLY)
        await entitlements.usage.record_usage(principal, "emails", 1, recorded_at=utcnow() - timedelta(days=900))
        await entitlements.usage.record_usage(principal, "emails", 1)

        assert await scheduled_tasks.prune_usage_records(db_session) == {"deleted": 1, "skipped": False}

    async def test_prune_disabled(self, db_session, cache, monkeypatch):
        monkeypatch.setattr(settings, "enable_data_retention_cleanup", False)

        assert await scheduled_tasks.prune_usage_records(db_session) == {"deleted": 0, "skipped": True}

    @respx.mock
    async def test_deliver_entitlement_webhook(self, db_session, cache, webhooks, principal):
        respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        webhook = await webhooks.register(principal, "Hook", HOOK_URL, [WebhookEvent.LIMIT_REACHED.value])
        await webhooks.dispatch(principal, WebhookEvent.LIMIT_REACHED, {"feature_code": "emails"})
        delivery = (await webhooks.delivery_history(webhook.id))[0]

        outcome = await scheduled_tasks.deliver_entitlement_webhook(db_session, str(delivery.id))

        assert outcome["delivered"] is True
        await db_session.refresh(delivery)
        assert delivery.status == DeliveryStatus.SUCCESS

    async def test_requeue_stale_webhook_deliveries(self, db_session, cache, webhooks, principal, monkeypatch):
        requeued = []
        monkeypatch.setattr(
            "app.services.webhook_service._enqueue_with_celery", requeued.append
        )
        webhook = await webhooks.register(principal, "Hook", HOOK_URL, [WebhookEvent.LIMIT_REACHED.value])
        await webhooks.dispatch(principal, WebhookEvent.LIMIT_REACHED, {})
        delivery = (await webhooks.delivery_history(webhook.id))[0]
        delivery.created_at = datetime(2026, 1, 1)
        delivery.queued_at = datetime(2026, 1, 1)
        await db_session.flush()

        assert await scheduled_tasks.requeue_stale_webhook_deliveries(db_session) == {"requeued": 1}
        assert requeued == [str(delivery.id)]
