"""
Allotment - Entitlement Webhook Models

Webhook subscriptions for entitlement events and their delivery log.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel
from app.models.entitlement import JSONType, PrincipalMixin
from app.models.entitlement_enums import DeliveryStatus


class EntitlementWebhook(PrincipalMixin, BaseModel):
    """
    Endpoint subscribed to a subset of the entitlement event vocabulary.

    failure_count counts consecutive failed attempts; it resets on any
    success and deactivates the webhook when it reaches the threshold.
    """

    __tablename__ = "entitlement_webhooks"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    events: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_delivery_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    deliveries: Mapped[List["EntitlementWebhookDelivery"]] = relationship(
        "EntitlementWebhookDelivery",
        back_populates="webhook",
        cascade="all, delete-orphan",
        order_by="EntitlementWebhookDelivery.created_at.desc()",
    )

    def subscribes_to(self, event: str) -> bool:
        return event in (self.events or [])

    def __repr__(self) -> str:
        return f"<EntitlementWebhook(id={self.id}, url={self.url}, active={self.is_active})>"


class EntitlementWebhookDelivery(BaseModel):
    """
    One dispatch of one event to one webhook. Retries update the same row.
    """

    __tablename__ = "entitlement_webhook_deliveries"

    webhook_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("entitlement_webhooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, values_callable=lambda x: [e.value for e in x]),
        default=DeliveryStatus.PENDING,
        nullable=False,
    )
    http_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    resent_manually: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Last hand-off to the queue; null for synchronous deliveries
    queued_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    webhook: Mapped["EntitlementWebhook"] = relationship(
        "EntitlementWebhook",
        back_populates="deliveries",
    )

    @property
    def is_succeeded(self) -> bool:
        return self.status == DeliveryStatus.SUCCESS
