"""
Allotment - Notification Service

In-app notifications for workspace and namespace owners: usage threshold
crossings and boost expiry.
"""

import uuid
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.entitlement_enums import AlertThreshold
from app.models.notification import (
    Notification as NotificationModel,
    NotificationType,
    NotificationPriority,
)

logger = logging.getLogger(__name__)


THRESHOLD_NOTIFICATIONS = {
    AlertThreshold.WARNING: (NotificationType.USAGE_WARNING, NotificationPriority.NORMAL, "Approaching limit"),
    AlertThreshold.CRITICAL: (NotificationType.USAGE_CRITICAL, NotificationPriority.HIGH, "Nearly at limit"),
    AlertThreshold.LIMIT_REACHED: (NotificationType.LIMIT_REACHED, NotificationPriority.URGENT, "Limit reached"),
}


class NotificationService:
    """Service for creating in-app notifications. Callers own the transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_notification(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        notification_type: NotificationType = NotificationType.INFO,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        action_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> NotificationModel:
        """
        Create a new notification for a user.

        Args:
            user_id: The user to notify
            title: Notification title
            message: Notification message
            notification_type: Type of notification
            priority: Priority level
            action_url: Optional URL for action button
            metadata: Additional data to store
        """
        notification = NotificationModel(
            user_id=user_id,
            title=title,
            message=message,
            notification_type=notification_type,
            priority=priority,
            action_url=action_url,
            extra_data=metadata,
            is_read=False,
        )

        self.db.add(notification)
        await self.db.flush()

        logger.info(f"Notification created for user {user_id}: {title}")
        return notification

    async def get_user_notifications(
        self,
        user_id: uuid.UUID,
        limit: int = 50,
    ) -> List[NotificationModel]:
        """Newest first."""
        result = await self.db.execute(
            select(NotificationModel)
            .where(NotificationModel.user_id == user_id)
            .order_by(NotificationModel.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ===========================================
    # CONVENIENCE METHODS FOR SPECIFIC NOTIFICATIONS
    # ===========================================

    async def notify_usage_threshold(
        self,
        user_id: uuid.UUID,
        feature_code: str,
        feature_name: str,
        threshold: AlertThreshold,
        used: int,
        limit: int,
        percentage: float,
    ) -> NotificationModel:
        """Send a usage threshold notification (80 / 90 / 100%)."""
        notification_type, priority, title = THRESHOLD_NOTIFICATIONS[threshold]
        if threshold == AlertThreshold.LIMIT_REACHED:
            message = f"You've used all {limit} of your {feature_name} allowance."
        else:
            message = f"You've used {used} of {limit} {feature_name} ({percentage:.0f}%)."

        return await self.create_notification(
            user_id=user_id,
            notification_type=notification_type,
            priority=priority,
            title=f"{title}: {feature_name}",
            message=message,
            action_url="/usage",
            metadata={
                "feature_code": feature_code,
                "threshold": threshold.value,
                "used": used,
                "limit": limit,
                "percentage": round(percentage, 2),
            },
        )

    async def notify_boosts_expired(
        self,
        user_id: uuid.UUID,
        feature_codes: List[str],
    ) -> NotificationModel:
        """Tell an owner that boosts ended with the billing cycle or their duration."""
        count = len(feature_codes)
        return await self.create_notification(
            user_id=user_id,
            notification_type=NotificationType.BOOST_EXPIRED,
            priority=NotificationPriority.LOW,
            title="Boosts expired",
            message=f"{count} boost{'s' if count != 1 else ''} expired: {', '.join(sorted(set(feature_codes)))}.",
            action_url="/usage",
            metadata={"feature_codes": sorted(set(feature_codes))},
        )
