"""
Allotment - Entitlement Enums

Enums shared by the entitlement models, services and API schemas, plus the
principal value type that every ledger query is scoped by.

Grant sources:
- Packages: bundles of feature grants assigned to a workspace or namespace
- Boosts: temporary or permanent top-ups for a single feature
- User tiers: static fallback for user-owned namespaces with no workspace
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet


class PrincipalType(str, Enum):
    """Kinds of principal that hold grants and consume features."""
    WORKSPACE = "workspace"
    NAMESPACE = "namespace"


@dataclass(frozen=True)
class Principal:
    """
    A grant holder. Passed explicitly to every ledger and resolution call;
    there is no implicit "current workspace".
    """
    kind: PrincipalType
    id: uuid.UUID

    @classmethod
    def workspace(cls, workspace_id: uuid.UUID) -> "Principal":
        return cls(PrincipalType.WORKSPACE, workspace_id)

    @classmethod
    def namespace(cls, namespace_id: uuid.UUID) -> "Principal":
        return cls(PrincipalType.NAMESPACE, namespace_id)

    @property
    def is_namespace(self) -> bool:
        return self.kind == PrincipalType.NAMESPACE

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


class FeatureType(str, Enum):
    """How a feature is granted."""
    BOOLEAN = "boolean"      # Presence of a grant is enough
    LIMIT = "limit"          # Numeric allowance metered against usage
    UNLIMITED = "unlimited"  # Any grant means no cap


class ResetType(str, Enum):
    """Usage window for limit features."""
    NONE = "none"        # Lifetime usage
    MONTHLY = "monthly"  # Since the current billing cycle start
    ROLLING = "rolling"  # Trailing N days


DEFAULT_ROLLING_WINDOW_DAYS = 30


class AssignmentStatus(str, Enum):
    """Package assignment lifecycle."""
    ACTIVE = "active"
    SUSPENDED = "suspended"  # Non-payment
    CANCELLED = "cancelled"  # Grace period until expires_at
    EXPIRED = "expired"      # Terminal


class BoostType(str, Enum):
    ADD_LIMIT = "add_limit"
    ENABLE = "enable"
    UNLIMITED = "unlimited"


class BoostDurationType(str, Enum):
    CYCLE_BOUND = "cycle_bound"  # Expires at the next billing cycle reset
    DURATION = "duration"        # Expires at expires_at
    PERMANENT = "permanent"


class BoostStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class AlertThreshold(int, Enum):
    """Usage alert threshold percentages."""
    WARNING = 80
    CRITICAL = 90
    LIMIT_REACHED = 100

    @classmethod
    def descending(cls):
        return sorted(cls, key=lambda t: t.value, reverse=True)


class WebhookEvent(str, Enum):
    """Closed vocabulary of entitlement webhook events."""
    LIMIT_WARNING = "limit_warning"
    LIMIT_REACHED = "limit_reached"
    PACKAGE_CHANGED = "package_changed"
    BOOST_ACTIVATED = "boost_activated"
    BOOST_EXPIRED = "boost_expired"
    TEST = "test"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class LogAction(str, Enum):
    """Grant mutations recorded in the entitlement audit trail."""
    PACKAGE_PROVISIONED = "package.provisioned"
    PACKAGE_CANCELLED = "package.cancelled"
    PACKAGE_SUSPENDED = "package.suspended"
    PACKAGE_REACTIVATED = "package.reactivated"
    PACKAGE_REVOKED = "package.revoked"
    BOOST_PROVISIONED = "boost.provisioned"
    BOOST_EXHAUSTED = "boost.exhausted"
    BOOST_EXPIRED = "boost.expired"


class LogSource(str, Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    BILLING = "billing"
    API = "api"


class DenialCode(str, Enum):
    """Machine-readable reasons attached to a denied entitlement result."""
    FEATURE_NOT_FOUND = "feature_not_found"
    NOT_ENTITLED = "not_entitled"
    LIMIT_EXCEEDED = "limit_exceeded"


class UserTier(str, Enum):
    FREE = "free"
    APOLLO = "apollo"
    HADES = "hades"


# Boolean features granted by a user's own tier. Only consulted for
# namespaces owned directly by a user with no workspace grants behind them.
USER_TIER_FEATURES: Dict[UserTier, FrozenSet[str]] = {
    UserTier.FREE: frozenset({
        "bio.pages",
        "bio.basic_themes",
    }),
    UserTier.APOLLO: frozenset({
        "bio.pages",
        "bio.basic_themes",
        "bio.custom_domains",
        "bio.analytics",
        "social.scheduling",
    }),
    UserTier.HADES: frozenset({
        "bio.pages",
        "bio.basic_themes",
        "bio.custom_domains",
        "bio.analytics",
        "social.scheduling",
        "api.access",
        "support.priority",
    }),
}
