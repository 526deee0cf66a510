"""
Allotment - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin
from app.models.entitlement_enums import (
    AlertThreshold,
    AssignmentStatus,
    BoostDurationType,
    BoostStatus,
    BoostType,
    DeliveryStatus,
    DenialCode,
    FeatureType,
    LogAction,
    LogSource,
    Principal,
    PrincipalType,
    ResetType,
    UserTier,
    WebhookEvent,
    USER_TIER_FEATURES,
)
from app.models.user import User
from app.models.tenant import Workspace, Namespace
from app.models.entitlement import (
    Feature,
    Package,
    PackageFeature,
    PackageAssignment,
    Boost,
    UsageRecord,
    UsageAlert,
    EntitlementLog,
)
from app.models.webhook import EntitlementWebhook, EntitlementWebhookDelivery
from app.models.notification import Notification, NotificationType, NotificationPriority

__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    # Enums
    "AlertThreshold",
    "AssignmentStatus",
    "BoostDurationType",
    "BoostStatus",
    "BoostType",
    "DeliveryStatus",
    "DenialCode",
    "FeatureType",
    "LogAction",
    "LogSource",
    "Principal",
    "PrincipalType",
    "ResetType",
    "UserTier",
    "WebhookEvent",
    "USER_TIER_FEATURES",
    # Tenant directory
    "User",
    "Workspace",
    "Namespace",
    # Entitlements
    "Feature",
    "Package",
    "PackageFeature",
    "PackageAssignment",
    "Boost",
    "UsageRecord",
    "UsageAlert",
    "EntitlementLog",
    # Webhooks
    "EntitlementWebhook",
    "EntitlementWebhookDelivery",
    # Notifications
    "Notification",
    "NotificationType",
    "NotificationPriority",
]
