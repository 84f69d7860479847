"""
Data models for the Entitlements service.

Domain objects (snapshots, records, decisions) are frozen dataclasses so a
record handed to a reader can never change underneath it. API payloads are
pydantic models.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from shared.errors import EntitlementError


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states the service understands."""
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "SubscriptionStatus":
        """Map a platform status string onto the enum; anything unrecognised is UNKNOWN."""
        if not raw:
            return cls.UNKNOWN
        normalized = raw.strip()
        if not normalized.isupper():
            # camelCase ("pastDue") -> snake_case
            normalized = re.sub(r"(?<!^)(?=[A-Z])", "_", normalized)
        normalized = normalized.lower()
        if normalized == cls.UNKNOWN.value:
            return cls.UNKNOWN
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN


class DecisionSource(str, Enum):
    """Where an access decision came from."""
    CACHE = "cache"
    REFRESH = "refresh"
    FALLBACK = "fallback"
    DENIED = "denied"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """One subscription as last reported by the platform.

    ``status`` keeps the platform's string verbatim; ``state`` is the parsed
    enum. Only ACTIVE grants access; a subscription cancelled at period end
    is still reported as active by the platform until the period closes.
    """
    subscription_id: str
    product_id: str
    status: str
    cancel_at_period_end: bool = False

    @property
    def state(self) -> SubscriptionStatus:
        return SubscriptionStatus.parse(self.status)

    def grants(self, product_id: str) -> bool:
        return self.product_id == product_id and self.state == SubscriptionStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "product_id": self.product_id,
            "status": self.status,
            "state": self.state.value,
            "cancel_at_period_end": self.cancel_at_period_end,
        }


@dataclass(frozen=True)
class EntitlementRecord:
    """Cached subscription set for one customer.

    ``fetched_at`` is a reading of the cache's clock (monotonic seconds).
    """
    customer_id: str
    subscriptions: Tuple[SubscriptionSnapshot, ...]
    fetched_at: float
    ttl: float
    invalidated: bool = False

    def age(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)

    def is_stale(self, now: float) -> bool:
        return self.invalidated or self.age(now) > self.ttl

    def grants(self, product_id: str) -> bool:
        return any(snapshot.grants(product_id) for snapshot in self.subscriptions)

    def mark_invalidated(self) -> "EntitlementRecord":
        if self.invalidated:
            return self
        return replace(self, invalidated=True)


@dataclass(frozen=True)
class AccessDecision:
    """Result of an access check.

    ``error`` is set whenever the platform could not be consulted, even if a
    fallback record still allowed a decision to be made.
    """
    customer_id: str
    product_id: str
    granted: bool
    source: DecisionSource
    record: Optional[EntitlementRecord] = None
    error: Optional[EntitlementError] = field(default=None, compare=False)


@dataclass
class CacheStats:
    """Counters describing cache behaviour since start-up."""
    hits: int = 0
    misses: int = 0
    refreshes: int = 0
    refresh_failures: int = 0
    fallbacks: int = 0
    denials: int = 0
    invalidations: int = 0
    evictions: int = 0


class SnapshotResponse(BaseModel):
    """API view of a subscription snapshot."""
    subscription_id: str
    product_id: str
    status: str
    state: SubscriptionStatus
    cancel_at_period_end: bool


class RecordResponse(BaseModel):
    """API view of a cached entitlement record."""
    customer_id: str
    subscriptions: List[SnapshotResponse] = Field(default_factory=list)
    age_seconds: float = Field(..., description="Seconds since the last successful refresh")
    ttl_seconds: float
    stale: bool
    invalidated: bool

    @classmethod
    def from_record(cls, record: EntitlementRecord, now: float) -> "RecordResponse":
        return cls(
            customer_id=record.customer_id,
            subscriptions=[SnapshotResponse(**s.to_dict()) for s in record.subscriptions],
            age_seconds=round(record.age(now), 3),
            ttl_seconds=record.ttl,
            stale=record.is_stale(now),
            invalidated=record.invalidated,
        )


class AccessCheckResponse(BaseModel):
    """Response model for an access check."""
    customer_id: str
    product_id: str
    granted: bool = Field(..., description="Whether access is granted")
    source: DecisionSource
    error_code: Optional[str] = Field(None, description="Set when the platform could not be consulted")
    error_message: Optional[str] = None
    retry_after: Optional[float] = None

    @classmethod
    def from_decision(cls, decision: AccessDecision) -> "AccessCheckResponse":
        error = decision.error
        return cls(
            customer_id=decision.customer_id,
            product_id=decision.product_id,
            granted=decision.granted,
            source=decision.source,
            error_code=error.code if error else None,
            error_message=error.message if error else None,
            retry_after=getattr(error, "retry_after", None),
        )


class WebhookAck(BaseModel):
    """Response model for webhook deliveries."""
    event_type: Optional[str]
    customer_id: Optional[str] = None
    action: str
