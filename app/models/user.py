"""
Allotment - User Model

Platform users. The entitlement core only reads users: to find who owns a
workspace or namespace when an alert fires, and to resolve the static
tier fallback for user-owned namespaces.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, String, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel
from app.models.entitlement_enums import UserTier
from app.utils.clock import utcnow


class User(BaseModel):
    """Platform user with a personal subscription tier."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    tier: Mapped[UserTier] = mapped_column(
        SQLEnum(UserTier, values_callable=lambda x: [e.value for e in x]),
        default=UserTier.FREE,
        nullable=False,
    )
    tier_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def effective_tier(self, now: Optional[datetime] = None) -> UserTier:
        """The user's tier, falling back to FREE once a paid tier has lapsed."""
        now = now or utcnow()
        if self.tier_expires_at is not None and self.tier_expires_at <= now:
            return UserTier.FREE
        return self.tier or UserTier.FREE

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, tier={self.tier})>"
