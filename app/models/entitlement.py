"""
Allotment - Entitlement Models

Feature catalog, grant ledger (packages, assignments, boosts), usage ledger,
usage alerts and the entitlement audit trail.

Every grant and alert row is scoped to a principal through the
(principal_type, principal_id) pair; usage rows carry both the workspace and
the namespace they were recorded under so that workspace usage includes the
usage of its namespaces.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    JSON, String, Text, Uuid, Enum as SQLEnum, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel
from app.models.entitlement_enums import (
    AssignmentStatus,
    BoostDurationType,
    BoostStatus,
    BoostType,
    FeatureType,
    LogSource,
    PrincipalType,
    ResetType,
    DEFAULT_ROLLING_WINDOW_DAYS,
)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls):
    return SQLEnum(enum_cls, values_callable=lambda x: [e.value for e in x])


class PrincipalMixin:
    """Scopes a row to a workspace or a namespace."""

    principal_type: Mapped[PrincipalType] = mapped_column(
        _enum(PrincipalType),
        nullable=False,
    )
    principal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )


# ===========================================
# FEATURE CATALOG
# ===========================================

class Feature(BaseModel):
    """
    A named capability that can be granted.

    Child features (parent_code set) draw from their parent's pool: grants and
    usage are always resolved under `pool_code`.
    """

    __tablename__ = "features"

    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    type: Mapped[FeatureType] = mapped_column(
        _enum(FeatureType),
        default=FeatureType.BOOLEAN,
        nullable=False,
    )
    reset_type: Mapped[ResetType] = mapped_column(
        _enum(ResetType),
        default=ResetType.NONE,
        nullable=False,
    )
    rolling_window_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    parent_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def pool_code(self) -> str:
        return self.parent_code or self.code

    @property
    def window_days(self) -> int:
        return self.rolling_window_days or DEFAULT_ROLLING_WINDOW_DAYS

    @property
    def is_boolean(self) -> bool:
        return self.type == FeatureType.BOOLEAN

    @property
    def is_unlimited(self) -> bool:
        return self.type == FeatureType.UNLIMITED

    def __repr__(self) -> str:
        return f"<Feature(code={self.code}, type={self.type})>"


# ===========================================
# PACKAGES
# ===========================================

class Package(BaseModel):
    """A bundle of feature grants sold or assigned as a unit."""

    __tablename__ = "packages"

    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_base_package: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    features: Mapped[List["PackageFeature"]] = relationship(
        "PackageFeature",
        back_populates="package",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def feature_codes(self) -> List[str]:
        return [pf.feature_code for pf in self.features]


class PackageFeature(BaseModel):
    """
    One feature grant inside a package.

    limit_value is None for boolean grants (and for features whose type is
    unlimited); the unlimited sentinel lives on Feature.type.
    """

    __tablename__ = "package_features"
    __table_args__ = (
        Index("ix_package_features_package_feature", "package_id", "feature_code", unique=True),
    )

    package_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("packages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature_code: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    limit_value: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    package: Mapped["Package"] = relationship("Package", back_populates="features")


class PackageAssignment(PrincipalMixin, BaseModel):
    """
    A package held by a principal.

    Lifecycle: active on provisioning, suspended on non-payment, cancelled
    with an expires_at grace boundary, expired (terminal).
    """

    __tablename__ = "package_assignments"
    __table_args__ = (
        Index("ix_package_assignments_principal_status", "principal_type", "principal_id", "status"),
    )

    package_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("packages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[AssignmentStatus] = mapped_column(
        _enum(AssignmentStatus),
        default=AssignmentStatus.ACTIVE,
        nullable=False,
    )
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    billing_cycle_anchor: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    package: Mapped["Package"] = relationship("Package", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<PackageAssignment(id={self.id}, {self.principal_type.value}={self.principal_id}, "
            f"status={self.status})>"
        )


# ===========================================
# BOOSTS
# ===========================================

class Boost(PrincipalMixin, BaseModel):
    """
    A single-feature top-up.

    consumed_quantity only grows and never passes limit_value; the status
    flips to exhausted exactly when nothing remains.
    """

    __tablename__ = "boosts"
    __table_args__ = (
        Index("ix_boosts_principal_feature", "principal_type", "principal_id", "feature_code"),
        CheckConstraint("consumed_quantity >= 0", name="consumed_non_negative"),
    )

    feature_code: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    boost_type: Mapped[BoostType] = mapped_column(_enum(BoostType), nullable=False)
    duration_type: Mapped[BoostDurationType] = mapped_column(
        _enum(BoostDurationType),
        default=BoostDurationType.CYCLE_BOUND,
        nullable=False,
    )
    limit_value: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    consumed_quantity: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    status: Mapped[BoostStatus] = mapped_column(
        _enum(BoostStatus),
        default=BoostStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def remaining(self) -> Optional[int]:
        if self.limit_value is None:
            return None
        return max(0, self.limit_value - (self.consumed_quantity or 0))

    def __repr__(self) -> str:
        return f"<Boost(id={self.id}, feature={self.feature_code}, type={self.boost_type})>"


# ===========================================
# USAGE LEDGER
# ===========================================

class UsageRecord(BaseModel):
    """
    Immutable usage event, always stored under the pool feature code.
    Only the retention sweep deletes rows.
    """

    __tablename__ = "entitlement_usage_records"
    __table_args__ = (
        Index("ix_usage_records_workspace_feature_time", "workspace_id", "feature_code", "recorded_at"),
        Index("ix_usage_records_namespace_feature_time", "namespace_id", "feature_code", "recorded_at"),
        CheckConstraint("quantity >= 1", name="quantity_positive"),
    )

    workspace_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=True,
    )
    namespace_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("namespaces.id", ondelete="CASCADE"),
        nullable=True,
    )
    feature_code: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(BigInteger, default=1, nullable=False)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Serialized UsageContext (metadata is reserved in SQLAlchemy)
    context: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# ===========================================
# USAGE ALERTS
# ===========================================

class UsageAlert(PrincipalMixin, BaseModel):
    """
    One notification per unresolved threshold crossing.

    The partial unique index keeps at most one unresolved alert per
    (principal, feature, threshold).
    """

    __tablename__ = "entitlement_usage_alerts"
    __table_args__ = (
        Index(
            "uq_usage_alerts_unresolved",
            "principal_type",
            "principal_id",
            "feature_code",
            "threshold",
            unique=True,
            sqlite_where=text("resolved_at IS NULL"),
            postgresql_where=text("resolved_at IS NULL"),
        ),
    )

    feature_code: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    notified_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Serialized AlertSnapshot
    snapshot: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def __repr__(self) -> str:
        return f"<UsageAlert(feature={self.feature_code}, threshold={self.threshold}, resolved={self.is_resolved})>"


# ===========================================
# AUDIT TRAIL
# ===========================================

class EntitlementLog(PrincipalMixin, BaseModel):
    """Append-only record of every grant mutation."""

    __tablename__ = "entitlement_logs"

    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    source: Mapped[LogSource] = mapped_column(
        _enum(LogSource),
        default=LogSource.SYSTEM,
        nullable=False,
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    old_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Serialized AuditMetadata (metadata is reserved in SQLAlchemy)
    event_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
