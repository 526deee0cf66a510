"""
Allotment - JSON Metadata Schemas

Typed shapes for the JSON columns on usage records, usage alerts and the
entitlement audit trail. Each carries a schema_version so stored rows can be
read back after the shape changes.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class VersionedMetadata(BaseModel):
    """Base for stored JSON metadata."""
    model_config = ConfigDict(extra="allow")

    schema_version: int = 1

    def to_column(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_column(cls, value: Optional[Dict[str, Any]]):
        return cls.model_validate(value or {})


class UsageContext(VersionedMetadata):
    """Context attached to a usage record by the product that consumed it."""
    source: Optional[str] = Field(None, max_length=100, description="Product surface that recorded usage")
    requested_feature: Optional[str] = Field(None, description="Child feature code when recorded under a pool")
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class AlertSnapshot(VersionedMetadata):
    """Usage figures captured when an alert was raised."""
    used: int
    limit: int
    percentage: float
    notified_user_id: Optional[UUID] = None
    feature_name: Optional[str] = None


class AuditMetadata(VersionedMetadata):
    """Extra context stored with an entitlement audit entry."""
    package_code: Optional[str] = None
    feature_code: Optional[str] = None
    reason: Optional[str] = None
    replaced_assignment_id: Optional[UUID] = None
    effective_at: Optional[datetime] = None
