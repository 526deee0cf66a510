"""
Allotment - Usage Alert Service

Service for monitoring usage limits and sending alerts when approaching or
exceeding limits.

Thresholds: 80% (warning), 90% (critical), 100% (limit reached). Only the
highest threshold met is acted on, and at most one unresolved alert exists
per (principal, feature, threshold). Usage dropping below every threshold
resolves the feature's open alerts, which re-arms them for the next cycle.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.entitlement import Feature, PackageAssignment, UsageAlert
from app.models.entitlement_enums import (
    AlertThreshold,
    AssignmentStatus,
    Principal,
    PrincipalType,
    WebhookEvent,
)
from app.models.tenant import Workspace
from app.schemas.metadata import AlertSnapshot
from app.services.cache_service import CacheService
from app.services.entitlement_service import EntitlementService
from app.services.grant_ledger import principal_clause
from app.services.notification_service import NotificationService
from app.services.webhook_service import EntitlementWebhookService
from app.utils.clock import utcnow
from app.utils.error_handling import AlertNotFoundException

logger = logging.getLogger(__name__)


def applicable_threshold(percentage: Optional[float]) -> Optional[AlertThreshold]:
    """Highest threshold met by a usage percentage, or None."""
    if percentage is None:
        return None
    for threshold in AlertThreshold.descending():
        if percentage >= threshold.value:
            return threshold
    return None


def unresolved_alert_clause(principal: Principal, feature_code: str):
    return and_(
        principal_clause(UsageAlert, principal),
        UsageAlert.feature_code == feature_code,
        UsageAlert.resolved_at.is_(None),
    )


class UsageAlertService:
    """
    Service for monitoring usage limits and sending alerts.

    Usage:
        service = UsageAlertService(db)

        # Sweep every active workspace (scheduled hourly)
        stats = await service.check_all_workspaces()

        # Check one principal inline after recording usage
        result = await service.check_principal(Principal.workspace(ws_id))

        # Get active alerts
        alerts = await service.active_alerts(Principal.workspace(ws_id))
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        webhooks: Optional[EntitlementWebhookService] = None,
        entitlements: Optional[EntitlementService] = None,
    ):
        self.db = db
        self.entitlements = entitlements or EntitlementService(db, cache, webhooks)
        self.webhooks = self.entitlements.webhooks
        self.catalog = self.entitlements.catalog
        self.directory = self.entitlements.directory
        self.notifications = NotificationService(db)

    # ===========================================
    # ALERT CHECKING
    # ===========================================

    async def check_all_workspaces(self) -> Dict[str, int]:
        """
        Check every active workspace holding an active package.

        Returns:
            {"checked", "alerts_sent", "alerts_resolved"}
        """
        stats = {"checked": 0, "alerts_sent": 0, "alerts_resolved": 0}

        result = await self.db.execute(
            select(Workspace.id)
            .where(
                Workspace.is_active.is_(True),
                Workspace.id.in_(
                    select(PackageAssignment.principal_id).where(
                        PackageAssignment.principal_type == PrincipalType.WORKSPACE,
                        PackageAssignment.status == AssignmentStatus.ACTIVE,
                    )
                ),
            )
            .order_by(Workspace.created_at)
        )
        features = await self.catalog.active_limit_features()

        for workspace_id in result.scalars().all():
            outcome = await self.check_principal(Principal.workspace(workspace_id), features)
            stats["checked"] += 1
            stats["alerts_sent"] += outcome["alerts_sent"]
            stats["alerts_resolved"] += outcome["alerts_resolved"]

        logger.info(
            f"Usage alert sweep: {stats['checked']} workspaces, "
            f"{stats['alerts_sent']} sent, {stats['alerts_resolved']} resolved"
        )
        return stats

    async def check_principal(
        self,
        principal: Principal,
        features: Optional[List[Feature]] = None,
    ) -> Dict[str, Any]:
        """Check every active limit feature for one principal."""
        alerts_sent = 0
        alerts_resolved = 0
        details = []

        for feature in features if features is not None else await self.catalog.active_limit_features():
            result = await self.check_feature(principal, feature)
            if result["alert_sent"]:
                alerts_sent += 1
            if result["resolved"]:
                alerts_resolved += 1
            if result["alert_sent"] or result["resolved"]:
                details.append(result)

        return {
            "alerts_sent": alerts_sent,
            "alerts_resolved": alerts_resolved,
            "details": details,
        }

    async def check_feature(self, principal: Principal, feature: Feature) -> Dict[str, Any]:
        """
        Check usage of one feature and send an alert if a new threshold was crossed.

        Returns:
            {"feature", "percentage", "threshold", "alert_sent", "resolved"}
        """
        outcome: Dict[str, Any] = {
            "feature": feature.code,
            "percentage": None,
            "threshold": None,
            "alert_sent": False,
            "resolved": False,
        }

        entitlement = await self.entitlements.check(principal, feature.code)

        if entitlement.unlimited or entitlement.limit is None or entitlement.limit == 0:
            outcome["resolved"] = await self._resolve_all_for_feature(principal, feature.code) > 0
            return outcome

        percentage = entitlement.usage_percentage
        outcome["percentage"] = percentage

        threshold = applicable_threshold(percentage)
        if threshold is None:
            outcome["resolved"] = await self._resolve_all_for_feature(principal, feature.code) > 0
            return outcome

        outcome["threshold"] = threshold.value

        if await self._has_active_alert(principal, feature.code, threshold):
            return outcome

        outcome["alert_sent"] = await self._send_alert(
            principal, feature, threshold, entitlement.used or 0, entitlement.limit
        )
        return outcome

    async def _has_active_alert(
        self,
        principal: Principal,
        feature_code: str,
        threshold: AlertThreshold,
    ) -> bool:
        result = await self.db.execute(
            select(UsageAlert.id).where(
                unresolved_alert_clause(principal, feature_code),
                UsageAlert.threshold == threshold.value,
            )
        )
        return result.first() is not None

    async def _resolve_all_for_feature(self, principal: Principal, feature_code: str) -> int:
        result = await self.db.execute(
            update(UsageAlert)
            .where(unresolved_alert_clause(principal, feature_code))
            .values(resolved_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _send_alert(
        self,
        principal: Principal,
        feature: Feature,
        threshold: AlertThreshold,
        used: int,
        limit: int,
    ) -> bool:
        """Record the alert, notify the owner and fire the webhook event."""
        owner = await self.directory.owner_of(principal)
        if owner is None:
            logger.warning(
                f"Cannot send usage alert: {principal} has no owner",
                extra={
                    "principal": str(principal),
                    "feature_code": feature.code,
                    "threshold": threshold.value,
                },
            )
            return False

        percentage = used / limit * 100
        snapshot = AlertSnapshot(
            used=used,
            limit=limit,
            percentage=round(percentage, 2),
            notified_user_id=owner.id,
            feature_name=feature.name,
        )

        try:
            async with self.db.begin_nested():
                self.db.add(UsageAlert(
                    principal_type=principal.kind,
                    principal_id=principal.id,
                    feature_code=feature.code,
                    threshold=threshold.value,
                    notified_at=utcnow(),
                    snapshot=snapshot.to_column(),
                ))
        except IntegrityError:
            # A concurrent sweep recorded the same crossing first
            logger.info(f"Usage alert already recorded for {principal} {feature.code} at {threshold.value}%")
            return False

        await self.notifications.notify_usage_threshold(
            user_id=owner.id,
            feature_code=feature.code,
            feature_name=feature.name,
            threshold=threshold,
            used=used,
            limit=limit,
            percentage=percentage,
        )

        event = (
            WebhookEvent.LIMIT_REACHED
            if threshold == AlertThreshold.LIMIT_REACHED
            else WebhookEvent.LIMIT_WARNING
        )
        await self.webhooks.dispatch(principal, event, {
            "feature_code": feature.code,
            "feature_name": feature.name,
            "threshold": threshold.value,
            "used": used,
            "limit": limit,
            "percentage": round(percentage, 2),
        })

        logger.info(
            f"Usage alert sent for {principal}: {feature.code} at {threshold.value}%",
            extra={
                "principal": str(principal),
                "feature_code": feature.code,
                "threshold": threshold.value,
                "used": used,
                "limit": limit,
                "user_id": str(owner.id),
            },
        )
        return True

    # ===========================================
    # ALERT QUERIES
    # ===========================================

    async def active_alerts(self, principal: Principal) -> List[UsageAlert]:
        result = await self.db.execute(
            select(UsageAlert)
            .where(principal_clause(UsageAlert, principal), UsageAlert.resolved_at.is_(None))
            .order_by(UsageAlert.threshold.desc(), UsageAlert.notified_at.desc())
        )
        return list(result.scalars().all())

    async def alert_history(
        self,
        principal: Principal,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[UsageAlert]:
        since = (now or utcnow()) - timedelta(days=days or settings.alert_history_days)
        result = await self.db.execute(
            select(UsageAlert)
            .where(principal_clause(UsageAlert, principal), UsageAlert.notified_at >= since)
            .order_by(UsageAlert.notified_at.desc())
        )
        return list(result.scalars().all())

    async def resolve_alert(self, alert_id: uuid.UUID) -> bool:
        """Manually resolve an alert (e.g. after an upgrade). False if already resolved."""
        alert = await self.db.get(UsageAlert, alert_id)
        if alert is None:
            raise AlertNotFoundException(alert_id)
        if alert.is_resolved:
            return False

        alert.resolved_at = utcnow()
        await self.db.flush()

        logger.info(
            f"Usage alert {alert_id} manually resolved",
            extra={"principal_id": str(alert.principal_id), "feature_code": alert.feature_code},
        )
        return True

    async def usage_status(self, principal: Principal) -> List[Dict[str, Any]]:
        """Metered features with a finite limit, and the alert currently open on each."""
        active = {}
        for alert in await self.active_alerts(principal):
            active.setdefault(alert.feature_code, alert)

        status = []
        for feature in await self.catalog.active_limit_features():
            entitlement = await self.entitlements.check(principal, feature.code)
            if entitlement.limit is None or entitlement.unlimited:
                continue
            alert = active.get(feature.code)
            percentage = entitlement.usage_percentage
            status.append({
                "code": feature.code,
                "name": feature.name,
                "used": entitlement.used,
                "limit": entitlement.limit,
                "percentage": round(percentage, 2) if percentage is not None else None,
                "near_limit": entitlement.is_near_limit,
                "at_limit": entitlement.is_at_limit,
                "alert_threshold": alert.threshold if alert else None,
            })
        return status
