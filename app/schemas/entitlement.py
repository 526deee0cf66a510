"""
Allotment - Entitlement Schemas

Pydantic schemas for entitlement checks, usage recording, grant
provisioning and usage alerts.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.entitlement_enums import (
    AssignmentStatus,
    BoostDurationType,
    BoostStatus,
    BoostType,
    LogSource,
)
from app.schemas.metadata import UsageContext


# ===========================================
# ENTITLEMENT CHECKS
# ===========================================

class EntitlementResultResponse(BaseModel):
    """Allow/deny decision for one feature and quantity."""
    allowed: bool
    reason: Optional[str] = None
    limit: Optional[int] = None
    used: Optional[int] = None
    remaining: Optional[int] = None
    feature_code: str
    unlimited: bool = False
    usage_percentage: Optional[float] = None


# ===========================================
# USAGE
# ===========================================

class UsageRecordRequest(BaseModel):
    """Schema for recording feature usage."""
    feature_code: str = Field(..., min_length=1, max_length=100)
    quantity: int = Field(1, ge=1, description="Units consumed; must be at least 1")
    user_id: Optional[UUID] = Field(None, description="User who triggered the usage")
    context: Optional[UsageContext] = None


class UsageRecordResponse(BaseModel):
    """Schema for a stored usage record."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: Optional[UUID] = None
    namespace_id: Optional[UUID] = None
    feature_code: str
    quantity: int
    user_id: Optional[UUID] = None
    recorded_at: datetime


class RecordUsageResponse(BaseModel):
    """Entitlement decision plus the record it allowed."""
    result: EntitlementResultResponse
    record: UsageRecordResponse


class FeatureUsageEntry(BaseModel):
    code: str
    name: str
    category: Optional[str] = None
    type: str
    allowed: bool
    limit: Optional[int] = None
    used: Optional[int] = None
    remaining: Optional[int] = None
    unlimited: bool = False
    percentage: Optional[float] = None
    near_limit: bool = False


class UsageSummaryResponse(BaseModel):
    """Per-feature usage grouped by category, with the grants in force."""
    principal_type: str
    principal_id: UUID
    categories: Dict[str, List[FeatureUsageEntry]]
    packages: List[Dict[str, Any]] = []
    boosts: List[Dict[str, Any]] = []


class UsageStatusEntry(BaseModel):
    code: str
    name: str
    used: Optional[int] = None
    limit: Optional[int] = None
    percentage: Optional[float] = None
    near_limit: bool
    at_limit: bool
    alert_threshold: Optional[int] = None


# ===========================================
# GRANTS (billing collaborator hooks)
# ===========================================

class PackageProvisionRequest(BaseModel):
    """Schema for assigning a package to a workspace."""
    package_code: str = Field(..., min_length=1, max_length=100)
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    billing_cycle_anchor: Optional[datetime] = Field(
        None, description="Start of the first billing cycle; defaults to now"
    )
    source: LogSource = LogSource.API


class PackageAssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    package_id: UUID
    status: AssignmentStatus
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    billing_cycle_anchor: Optional[datetime] = None


class BoostProvisionRequest(BaseModel):
    """Schema for granting a single-feature boost."""
    feature_code: str = Field(..., min_length=1, max_length=100)
    boost_type: BoostType = BoostType.ADD_LIMIT
    duration_type: BoostDurationType = BoostDurationType.CYCLE_BOUND
    limit_value: Optional[int] = Field(None, ge=1, description="Required for add_limit boosts")
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = Field(None, description="Required for duration boosts")
    source: LogSource = LogSource.API


class BoostResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    feature_code: str
    boost_type: BoostType
    duration_type: BoostDurationType
    limit_value: Optional[int] = None
    consumed_quantity: int
    status: BoostStatus
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class EntitlementLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action: str
    entity_type: str
    entity_id: Optional[UUID] = None
    source: LogSource
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    event_metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


# ===========================================
# ALERTS
# ===========================================

class UsageAlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    feature_code: str
    threshold: int
    notified_at: datetime
    resolved_at: Optional[datetime] = None
    snapshot: Optional[Dict[str, Any]] = None


class MessageResponse(BaseModel):
    message: str
    success: bool = True
