"""
Allotment - Notification Model

In-app notifications delivered to workspace and namespace owners.

Notification Types:
- Usage warnings (80% / 90% of a limit)
- Limit reached
- Boost expiry at the end of a cycle or duration
"""

import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, String, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel
from app.models.entitlement import JSONType


class NotificationType(str, Enum):
    """Types of notifications."""
    USAGE_WARNING = "usage_warning"
    USAGE_CRITICAL = "usage_critical"
    LIMIT_REACHED = "limit_reached"
    BOOST_EXPIRED = "boost_expired"
    INFO = "info"


class NotificationPriority(str, Enum):
    """Priority levels for notifications."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Notification(BaseModel):
    """Notification stored for a user."""

    __tablename__ = "notifications"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    notification_type: Mapped[NotificationType] = mapped_column(
        SQLEnum(NotificationType, values_callable=lambda x: [e.value for e in x]),
        default=NotificationType.INFO,
        nullable=False,
        index=True,
    )
    priority: Mapped[NotificationPriority] = mapped_column(
        SQLEnum(NotificationPriority, values_callable=lambda x: [e.value for e in x]),
        default=NotificationPriority.NORMAL,
        nullable=False,
    )

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)

    action_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="URL for notification action button",
    )

    extra_data: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Additional notification data",
    )

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, type={self.notification_type}, user={self.user_id})>"
