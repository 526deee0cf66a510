"""
Allotment - Entitlement Webhook Service

Delivers entitlement events (usage thresholds, package and boost changes)
to subscriber endpoints.

Delivery rules:
- The JSON body is serialized once and the exact bytes are signed
  (X-Signature: hex HMAC-SHA256 with the webhook secret)
- 200, 201, 202 and 204 count as success
- Every attempt updates the delivery row and the webhook's failure counter;
  a success resets the counter, reaching the threshold deactivates the
  webhook (circuit open) and no further attempts are made
- Queued deliveries are handed to Celery only after the outermost
  transaction commits (releasing a savepoint is not enough), so the worker
  always finds the delivery row; a rollback drops them
"""

import hashlib
import hmac
import ipaddress
import json
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlsplit

import httpx
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.entitlement_enums import DeliveryStatus, Principal, WebhookEvent
from app.models.webhook import EntitlementWebhook, EntitlementWebhookDelivery
from app.utils.clock import utcnow
from app.utils.error_handling import (
    DeliveryNotFoundException,
    InvalidWebhookUrlException,
    WebhookInactiveException,
    WebhookNotFoundException,
)

logger = logging.getLogger(__name__)


SUCCESS_STATUSES = frozenset({200, 201, 202, 204})

EVENT_DESCRIPTIONS: Dict[WebhookEvent, str] = {
    WebhookEvent.LIMIT_WARNING: "Usage crossed 80% or 90% of a feature limit",
    WebhookEvent.LIMIT_REACHED: "Usage reached 100% of a feature limit",
    WebhookEvent.PACKAGE_CHANGED: "A package was provisioned, suspended, reactivated or revoked",
    WebhookEvent.BOOST_ACTIVATED: "A boost was added",
    WebhookEvent.BOOST_EXPIRED: "A boost expired",
    WebhookEvent.TEST: "Test delivery sent from the webhook settings",
}

SUBSCRIBABLE_EVENTS = [e.value for e in WebhookEvent if e != WebhookEvent.TEST]

PENDING_DELIVERIES_KEY = "pending_entitlement_webhook_deliveries"

EventName = Union[WebhookEvent, str]


def _enqueue_with_celery(delivery_id: str) -> None:
    from app.tasks.celery_tasks import deliver_entitlement_webhook_task

    deliver_entitlement_webhook_task.delay(delivery_id)


def filter_events(events: List[str]) -> List[str]:
    """Keep only known, subscribable event names (order preserved, no duplicates)."""
    allowed = []
    for name in events or []:
        value = name.value if isinstance(name, WebhookEvent) else str(name)
        if value in SUBSCRIBABLE_EVENTS and value not in allowed:
            allowed.append(value)
    return allowed


def validate_webhook_url(url: str) -> str:
    """
    Reject URLs that are not http(s) or that point at loopback, private,
    link-local or reserved addresses.
    """
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise InvalidWebhookUrlException(url, "scheme must be http or https")
    host = parts.hostname
    if not host:
        raise InvalidWebhookUrlException(url, "missing host")

    if settings.webhook_allow_private_urls:
        return url

    lowered = host.lower()
    if lowered == "localhost" or lowered.endswith(".localhost") or lowered.endswith(".local"):
        raise InvalidWebhookUrlException(url, "host resolves to a local address")

    try:
        address = ipaddress.ip_address(lowered)
    except ValueError:
        return url

    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    ):
        raise InvalidWebhookUrlException(url, "private or loopback addresses are not allowed")
    return url


class EntitlementWebhookService:
    """
    Webhook registration and delivery for entitlement events.

    Usage:
        service = EntitlementWebhookService(db)
        await service.register(Principal.workspace(ws_id), "Billing", url, ["limit_reached"])
        await service.dispatch(Principal.workspace(ws_id), WebhookEvent.LIMIT_REACHED, data)
    """

    def __init__(
        self,
        db: AsyncSession,
        enqueue: Optional[Callable[[str], Any]] = None,
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.enqueue = enqueue or _enqueue_with_celery
        self.timeout = timeout or settings.webhook_timeout_seconds
        self.failure_threshold = settings.webhook_failure_threshold

    # ===========================================
    # SIGNING
    # ===========================================

    @staticmethod
    def sign(body: Union[bytes, str], secret: str) -> str:
        """Hex HMAC-SHA256 of the exact request body."""
        if isinstance(body, str):
            body = body.encode("utf-8")
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    @classmethod
    def verify_signature(cls, body: Union[bytes, str], signature: str, secret: str) -> bool:
        if not signature or not secret:
            return False
        # Constant-time comparison
        return hmac.compare_digest(cls.sign(body, secret), signature)

    @staticmethod
    def encode_payload(payload: Dict[str, Any]) -> bytes:
        return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")

    @staticmethod
    def build_payload(event_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "event": event_name,
            "data": data,
            "timestamp": utcnow().isoformat() + "Z",
        }

    # ===========================================
    # DISPATCH
    # ===========================================

    async def dispatch(
        self,
        principal: Principal,
        event_name: EventName,
        data: Optional[Dict[str, Any]] = None,
        asynchronous: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        """
        Send an event to every active webhook of the principal subscribed to it.

        Returns one summary per webhook; delivery failures are recorded,
        never raised.
        """
        name = event_name.value if isinstance(event_name, WebhookEvent) else event_name
        if asynchronous is None:
            asynchronous = settings.webhook_dispatch_async

        payload_data = {
            "principal_type": principal.kind.value,
            "principal_id": str(principal.id),
            **(data or {}),
        }

        results: List[Dict[str, Any]] = []
        for webhook in await self._subscribers(principal, name):
            delivery = self._new_delivery(webhook, name, payload_data)
            if asynchronous:
                delivery.queued_at = utcnow()
            await self.db.flush()

            if asynchronous:
                self._enqueue_after_commit(delivery.id)
                results.append({"webhook_id": str(webhook.id), "success": True, "queued": True})
                continue

            success = await self._attempt(webhook, delivery)
            result = {
                "webhook_id": str(webhook.id),
                "success": success,
                "delivery_id": str(delivery.id),
            }
            if not success and delivery.error_message:
                result["error"] = delivery.error_message
            results.append(result)

        return results

    async def trigger(
        self,
        webhook: EntitlementWebhook,
        event_name: EventName,
        data: Dict[str, Any],
    ) -> EntitlementWebhookDelivery:
        """Send one event to one webhook right now and return the delivery row."""
        name = event_name.value if isinstance(event_name, WebhookEvent) else event_name
        delivery = self._new_delivery(webhook, name, data)
        await self.db.flush()
        await self._attempt(webhook, delivery)
        return delivery

    async def deliver_queued(self, delivery_id: uuid.UUID) -> Dict[str, Any]:
        """
        One attempt at a queued delivery (called by the Celery worker).

        The result tells the worker whether to schedule another attempt.
        """
        delivery = await self.db.get(EntitlementWebhookDelivery, delivery_id)
        if delivery is None:
            logger.warning(f"Queued webhook delivery {delivery_id} no longer exists")
            return {"delivered": False, "retry": False, "attempts": 0}

        webhook = await self.db.get(EntitlementWebhook, delivery.webhook_id)
        if delivery.status == DeliveryStatus.SUCCESS:
            return {"delivered": True, "retry": False, "attempts": delivery.attempts}

        if webhook is None or not webhook.is_active:
            delivery.status = DeliveryStatus.FAILED
            delivery.error_message = "Webhook inactive (circuit open)"
            await self.db.flush()
            logger.info(f"Skipping delivery {delivery_id}: webhook inactive")
            return {"delivered": False, "retry": False, "attempts": delivery.attempts}

        success = await self._attempt(webhook, delivery)
        retry = (
            not success
            and webhook.is_active
            and delivery.attempts < webhook.max_attempts
        )
        return {
            "delivered": success,
            "retry": retry,
            "attempts": delivery.attempts,
            "max_attempts": webhook.max_attempts,
        }

    async def retry_delivery(self, delivery_id: uuid.UUID) -> EntitlementWebhookDelivery:
        """Manually resend a stored delivery payload."""
        delivery = await self.db.get(EntitlementWebhookDelivery, delivery_id)
        if delivery is None:
            raise DeliveryNotFoundException(delivery_id)

        webhook = await self.db.get(EntitlementWebhook, delivery.webhook_id)
        if webhook is None or not webhook.is_active:
            raise WebhookInactiveException(delivery.webhook_id)

        delivery.resent_manually = True
        await self._attempt(
            webhook,
            delivery,
            extra_headers={"X-Retry-Attempt": str(delivery.attempts + 1)},
        )
        return delivery

    async def test_webhook(self, webhook_id: uuid.UUID) -> EntitlementWebhookDelivery:
        """Send a test event, regardless of the webhook's subscriptions."""
        webhook = await self.get_webhook(webhook_id)
        data = {
            "webhook_id": str(webhook.id),
            "webhook_name": webhook.name,
            "message": f"This is a test webhook delivery from {settings.app_name}",
            "subscribed_events": list(webhook.events or []),
        }
        delivery = self._new_delivery(webhook, WebhookEvent.TEST.value, data)
        await self.db.flush()
        await self._attempt(webhook, delivery, extra_headers={"X-Test-Webhook": "true"})
        return delivery

    # ===========================================
    # REGISTRATION
    # ===========================================

    async def register(
        self,
        principal: Principal,
        name: str,
        url: str,
        events: List[str],
        secret: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> EntitlementWebhook:
        validate_webhook_url(url)
        webhook = EntitlementWebhook(
            principal_type=principal.kind,
            principal_id=principal.id,
            name=name,
            url=url,
            secret=secret or secrets.token_hex(32),
            events=filter_events(events),
            is_active=True,
            failure_count=0,
            max_attempts=max_attempts or settings.webhook_default_max_attempts,
        )
        self.db.add(webhook)
        await self.db.flush()

        logger.info(f"Webhook {webhook.id} registered for {principal}: {webhook.events}")
        return webhook

    async def update(self, webhook_id: uuid.UUID, **changes: Any) -> EntitlementWebhook:
        webhook = await self.get_webhook(webhook_id)

        if "url" in changes and changes["url"] is not None:
            validate_webhook_url(changes["url"])
        if "events" in changes and changes["events"] is not None:
            changes["events"] = filter_events(changes["events"])

        for field in ("name", "url", "secret", "events", "is_active", "max_attempts"):
            if field in changes and changes[field] is not None:
                setattr(webhook, field, changes[field])

        await self.db.flush()
        return webhook

    async def unregister(self, webhook_id: uuid.UUID) -> bool:
        webhook = await self.get_webhook(webhook_id)
        await self.db.delete(webhook)
        await self.db.flush()
        logger.info(f"Webhook {webhook_id} unregistered")
        return True

    async def reset_circuit_breaker(self, webhook_id: uuid.UUID) -> EntitlementWebhook:
        """Re-enable a webhook after its endpoint has been fixed."""
        webhook = await self.get_webhook(webhook_id)
        webhook.is_active = True
        webhook.failure_count = 0
        await self.db.flush()
        logger.info(f"Circuit breaker reset for webhook {webhook_id}")
        return webhook

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_webhook(self, webhook_id: uuid.UUID) -> EntitlementWebhook:
        webhook = await self.db.get(EntitlementWebhook, webhook_id)
        if webhook is None:
            raise WebhookNotFoundException(webhook_id)
        return webhook

    async def webhooks_for(self, principal: Principal) -> List[EntitlementWebhook]:
        result = await self.db.execute(
            select(EntitlementWebhook)
            .where(
                EntitlementWebhook.principal_type == principal.kind,
                EntitlementWebhook.principal_id == principal.id,
            )
            .order_by(EntitlementWebhook.created_at.desc())
        )
        return list(result.scalars().all())

    async def delivery_history(
        self,
        webhook_id: uuid.UUID,
        limit: int = 50,
    ) -> List[EntitlementWebhookDelivery]:
        result = await self.db.execute(
            select(EntitlementWebhookDelivery)
            .where(EntitlementWebhookDelivery.webhook_id == webhook_id)
            .order_by(EntitlementWebhookDelivery.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def available_events() -> List[Dict[str, str]]:
        return [
            {"event": e.value, "description": EVENT_DESCRIPTIONS[e]}
            for e in WebhookEvent
            if e != WebhookEvent.TEST
        ]

    async def _subscribers(self, principal: Principal, event_name: str) -> List[EntitlementWebhook]:
        result = await self.db.execute(
            select(EntitlementWebhook).where(
                EntitlementWebhook.principal_type == principal.kind,
                EntitlementWebhook.principal_id == principal.id,
                EntitlementWebhook.is_active.is_(True),
            )
        )
        return [w for w in result.scalars().all() if w.subscribes_to(event_name)]

    # ===========================================
    # DELIVERY INTERNALS
    # ===========================================

    def _new_delivery(
        self,
        webhook: EntitlementWebhook,
        event_name: str,
        data: Dict[str, Any],
    ) -> EntitlementWebhookDelivery:
        delivery = EntitlementWebhookDelivery(
            webhook_id=webhook.id,
            event=event_name,
            attempts=0,
            status=DeliveryStatus.PENDING,
            payload=self.build_payload(event_name, data),
            resent_manually=False,
        )
        self.db.add(delivery)
        return delivery

    async def _attempt(
        self,
        webhook: EntitlementWebhook,
        delivery: EntitlementWebhookDelivery,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> bool:
        body = self.encode_payload(delivery.payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.webhook_user_agent,
            "X-Request-Source": settings.app_name,
            "X-Webhook-Event": delivery.event,
            "X-Delivery-Id": str(delivery.id),
        }
        if webhook.secret:
            headers["X-Signature"] = self.sign(body, webhook.secret)
        if extra_headers:
            headers.update(extra_headers)

        delivery.attempts = (delivery.attempts or 0) + 1
        error: Optional[str] = None
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(webhook.url, content=body, headers=headers)

            success = response.status_code in SUCCESS_STATUSES
            delivery.http_status = response.status_code
            delivery.response = self._response_body(response)
            if not success:
                error = f"HTTP {response.status_code}"

        except httpx.TimeoutException:
            success = False
            error = "Request timeout - endpoint did not respond in time"
            delivery.response = {"error": error}
        except httpx.RequestError as e:
            success = False
            error = f"Network error: {str(e)}"
            delivery.response = {"error": error}

        self._record_outcome(webhook, delivery, success, error)
        await self.db.flush()
        return success

    @staticmethod
    def _response_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            parsed = response.json()
        except ValueError:
            return {"body": response.text[:2000]}
        if isinstance(parsed, dict):
            return parsed
        return {"data": parsed}

    def _record_outcome(
        self,
        webhook: EntitlementWebhook,
        delivery: EntitlementWebhookDelivery,
        success: bool,
        error: Optional[str],
    ) -> None:
        now = utcnow()
        webhook.last_triggered_at = now

        if success:
            delivery.status = DeliveryStatus.SUCCESS
            delivery.delivered_at = now
            delivery.error_message = None
            webhook.failure_count = 0
            webhook.last_delivery_status = DeliveryStatus.SUCCESS.value
            return

        delivery.status = DeliveryStatus.FAILED
        delivery.error_message = error
        webhook.failure_count = (webhook.failure_count or 0) + 1
        webhook.last_delivery_status = DeliveryStatus.FAILED.value

        logger.warning(
            f"Webhook delivery failed: {error}",
            extra={
                "webhook_id": str(webhook.id),
                "delivery_id": str(delivery.id),
                "event": delivery.event,
                "failure_count": webhook.failure_count,
            },
        )

        if webhook.is_active and webhook.failure_count >= self.failure_threshold:
            webhook.is_active = False
            logger.warning(
                f"Circuit opened for webhook {webhook.id} after {webhook.failure_count} consecutive failures",
                extra={"webhook_id": str(webhook.id), "url": webhook.url},
            )

    # ===========================================
    # QUEUEING
    # ===========================================

    def _enqueue_after_commit(self, delivery_id: uuid.UUID) -> None:
        session = self.db.sync_session
        if not event.contains(session, "after_commit", _release_pending):
            event.listen(session, "after_commit", _release_pending)
            event.listen(session, "after_soft_rollback", _discard_pending)
        # Each entry keeps the enqueue callable of the service that queued it
        session.info.setdefault(PENDING_DELIVERIES_KEY, []).append((str(delivery_id), self.enqueue))

    async def requeue_stale_deliveries(self, older_than_minutes: int = 15) -> int:
        """
        Hand pending deliveries back to the queue when they were never
        queued, or were queued longer ago than the cutoff without an attempt.
        """
        now = utcnow()
        cutoff = now - timedelta(minutes=older_than_minutes)
        last_queued = func.coalesce(EntitlementWebhookDelivery.queued_at, EntitlementWebhookDelivery.created_at)
        result = await self.db.execute(
            select(EntitlementWebhookDelivery).where(
                EntitlementWebhookDelivery.status == DeliveryStatus.PENDING,
                EntitlementWebhookDelivery.attempts == 0,
                last_queued < cutoff,
            )
        )
        deliveries = list(result.scalars().all())
        for delivery in deliveries:
            delivery.queued_at = now
        await self.db.flush()

        for delivery in deliveries:
            self.enqueue(str(delivery.id))

        if deliveries:
            logger.info(f"Requeued {len(deliveries)} stale webhook deliveries")
        return len(deliveries)


def _release_pending(session) -> None:
    # Releasing a savepoint fires after_commit too; only the outermost commit hands off
    if session.in_nested_transaction():
        return
    for delivery_id, enqueue in session.info.pop(PENDING_DELIVERIES_KEY, []):
        try:
            enqueue(delivery_id)
        except Exception as e:
            # Delivery row stays pending; requeue_stale_deliveries picks it up
            logger.error(
                f"Failed to enqueue webhook delivery {delivery_id}: {e}",
                extra={"delivery_id": delivery_id},
            )


def _discard_pending(session, previous_transaction) -> None:
    # A rolled back savepoint leaves the outer transaction open
    if previous_transaction.nested:
        return
    dropped = session.info.pop(PENDING_DELIVERIES_KEY, [])
    if dropped:
        logger.info(f"Dropped {len(dropped)} queued webhook deliveries after rollback")
