"""
Allotment - Services Package

Business logic services.
"""

from app.services.cache_service import CacheService, get_cache_service
from app.services.feature_catalog import FeatureCatalog
from app.services.tenant_directory import TenantDirectory
from app.services.grant_ledger import GrantLedger
from app.services.usage_ledger import UsageLedger
from app.services.entitlement_service import EntitlementService
from app.services.entitlement_types import EntitlementResult
from app.services.usage_alert_service import UsageAlertService
from app.services.billing_cycle_service import BillingCycleService
from app.services.notification_service import NotificationService
from app.services.webhook_service import EntitlementWebhookService

__all__ = [
    # Infrastructure
    "CacheService",
    "get_cache_service",
    # Entitlement core
    "FeatureCatalog",
    "TenantDirectory",
    "GrantLedger",
    "UsageLedger",
    "EntitlementService",
    "EntitlementResult",
    # Alerts and cycles
    "UsageAlertService",
    "BillingCycleService",
    "NotificationService",
    # Webhooks
    "EntitlementWebhookService",
]
