"""
Allotment - Entitlement Webhook Schemas
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from app.models.entitlement_enums import DeliveryStatus, PrincipalType


class WebhookCreateRequest(BaseModel):
    """Schema for registering a webhook. Unknown event names are dropped."""
    principal_type: PrincipalType = PrincipalType.WORKSPACE
    principal_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    url: HttpUrl
    events: List[str] = Field(..., min_length=1)
    secret: Optional[str] = Field(None, min_length=16, max_length=255, description="Generated when omitted")
    max_attempts: Optional[int] = Field(None, ge=1, le=10)


class WebhookUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    url: Optional[HttpUrl] = None
    events: Optional[List[str]] = None
    secret: Optional[str] = Field(None, min_length=16, max_length=255)
    is_active: Optional[bool] = None
    max_attempts: Optional[int] = Field(None, ge=1, le=10)


class WebhookResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    principal_type: PrincipalType
    principal_id: UUID
    name: str
    url: str
    events: List[str]
    is_active: bool
    failure_count: int
    max_attempts: int
    last_delivery_status: Optional[str] = None
    last_triggered_at: Optional[datetime] = None
    created_at: datetime


class WebhookCreatedResponse(WebhookResponse):
    """Returned once on registration; the only response that carries the secret."""
    secret: str


class DeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    webhook_id: UUID
    event: str
    attempts: int
    status: DeliveryStatus
    http_status: Optional[int] = None
    payload: Dict[str, Any]
    response: Optional[Dict[str, Any]] = None
    resent_manually: bool
    error_message: Optional[str] = None
    delivered_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None
    created_at: datetime


class AvailableEventResponse(BaseModel):
    event: str
    description: str
