"""
Allotment - Entitlement Value Types

LimitValue is the sum of every grant a principal holds for one pool feature;
EntitlementResult is what the resolution engine hands back to callers.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from app.models.entitlement_enums import AlertThreshold, DenialCode


@dataclass(frozen=True)
class LimitValue:
    """
    Aggregated grant for one pool feature.

    absent: no source mentions the feature.
    unlimited: at least one source grants it without a cap.
    finite: the summed limit (0 is a valid limit).
    """
    present: bool
    unlimited: bool = False
    value: int = 0

    @classmethod
    def absent(cls) -> "LimitValue":
        return cls(present=False)

    @classmethod
    def infinite(cls) -> "LimitValue":
        return cls(present=True, unlimited=True)

    @classmethod
    def finite(cls, value: int) -> "LimitValue":
        return cls(present=True, value=int(value))

    @property
    def is_absent(self) -> bool:
        return not self.present

    def to_cache(self) -> Dict[str, Any]:
        if not self.present:
            return {"kind": "absent"}
        if self.unlimited:
            return {"kind": "unlimited"}
        return {"kind": "finite", "value": self.value}

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "LimitValue":
        kind = data.get("kind")
        if kind == "unlimited":
            return cls.infinite()
        if kind == "finite":
            return cls.finite(data.get("value", 0))
        return cls.absent()


@dataclass
class EntitlementResult:
    """Allow/deny decision for one feature and quantity."""
    allowed: bool
    feature_code: str
    reason: Optional[str] = None
    limit: Optional[int] = None
    used: Optional[int] = None
    unlimited: bool = False
    denial_code: Optional[DenialCode] = None

    @classmethod
    def allow(
        cls,
        feature_code: str,
        limit: Optional[int] = None,
        used: Optional[int] = None,
        unlimited: bool = False,
    ) -> "EntitlementResult":
        return cls(allowed=True, feature_code=feature_code, limit=limit, used=used, unlimited=unlimited)

    @classmethod
    def deny(
        cls,
        feature_code: str,
        reason: str,
        denial_code: DenialCode,
        limit: Optional[int] = None,
        used: Optional[int] = None,
    ) -> "EntitlementResult":
        return cls(
            allowed=False,
            feature_code=feature_code,
            reason=reason,
            denial_code=denial_code,
            limit=limit,
            used=used,
        )

    @property
    def denied(self) -> bool:
        return not self.allowed

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited or self.limit is None:
            return None
        return max(0, self.limit - (self.used or 0))

    @property
    def usage_percentage(self) -> Optional[float]:
        if self.unlimited or self.limit is None or self.limit == 0:
            return None
        return (self.used or 0) / self.limit * 100

    @property
    def is_near_limit(self) -> bool:
        percentage = self.usage_percentage
        return percentage is not None and percentage >= AlertThreshold.WARNING.value

    @property
    def is_at_limit(self) -> bool:
        percentage = self.usage_percentage
        return percentage is not None and percentage >= AlertThreshold.LIMIT_REACHED.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "feature_code": self.feature_code,
            "unlimited": self.unlimited,
            "usage_percentage": round(self.usage_percentage, 2) if self.usage_percentage is not None else None,
        }
