"""
Allotment - Schemas Package

Pydantic schemas for request/response validation and typed JSON metadata.
"""

from app.schemas.metadata import (
    VersionedMetadata,
    UsageContext,
    AlertSnapshot,
    AuditMetadata,
)
from app.schemas.entitlement import (
    EntitlementResultResponse,
    UsageRecordRequest,
    UsageRecordResponse,
    RecordUsageResponse,
    FeatureUsageEntry,
    UsageSummaryResponse,
    UsageStatusEntry,
    PackageProvisionRequest,
    PackageAssignmentResponse,
    BoostProvisionRequest,
    BoostResponse,
    EntitlementLogResponse,
    UsageAlertResponse,
    MessageResponse,
)
from app.schemas.webhook import (
    WebhookCreateRequest,
    WebhookUpdateRequest,
    WebhookResponse,
    WebhookCreatedResponse,
    DeliveryResponse,
    AvailableEventResponse,
)

__all__ = [
    # Metadata
    "VersionedMetadata",
    "UsageContext",
    "AlertSnapshot",
    "AuditMetadata",
    # Entitlements
    "EntitlementResultResponse",
    "UsageRecordRequest",
    "UsageRecordResponse",
    "RecordUsageResponse",
    "FeatureUsageEntry",
    "UsageSummaryResponse",
    "UsageStatusEntry",
    "PackageProvisionRequest",
    "PackageAssignmentResponse",
    "BoostProvisionRequest",
    "BoostResponse",
    "EntitlementLogResponse",
    "UsageAlertResponse",
    "MessageResponse",
    # Webhooks
    "WebhookCreateRequest",
    "WebhookUpdateRequest",
    "WebhookResponse",
    "WebhookCreatedResponse",
    "DeliveryResponse",
    "AvailableEventResponse",
]
