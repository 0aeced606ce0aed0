"""
Subscription and Usage Models

Data models for:
- Subscription tiers (ordered), statuses and billing cycles
- The per-user subscription record
- Per-period usage metric rows
- Partial updates applied by the subscription service
"""

from __future__ import annotations

import calendar
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Enumerations
# =============================================================================

class SubscriptionTier(str, Enum):
    """
    Subscription tiers, totally ordered STARTER < GROWTH < PRO.

    Comparison operators follow the plan order, not the string value.
    """
    STARTER = "STARTER"
    GROWTH = "GROWTH"
    PRO = "PRO"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SubscriptionTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, SubscriptionTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, SubscriptionTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, SubscriptionTier):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def from_string(cls, value: str) -> "SubscriptionTier":
        """Parse tier from string, case-insensitive."""
        try:
            return cls(value.upper())
        except ValueError:
            raise ValueError(f"Unknown subscription tier: {value}") from None


TIER_ORDER: List[SubscriptionTier] = [
    SubscriptionTier.STARTER,
    SubscriptionTier.GROWTH,
    SubscriptionTier.PRO,
]


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    CANCELED = "CANCELED"
    PAST_DUE = "PAST_DUE"
    UNPAID = "UNPAID"

    @property
    def is_entitled(self) -> bool:
        """Whether the subscription currently grants its tier's features."""
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class BillingCycle(str, Enum):
    """Billing cycle options."""
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

    def period_end(self, start: datetime) -> datetime:
        """
        End of a billing period starting at start.

        Adds calendar months, so anniversaries keep their day of month.
        Days that do not exist in the target month clamp to its last day.
        """
        months = 1 if self == BillingCycle.MONTHLY else 12
        return add_months(start, months)


class UsageMetricType(str, Enum):
    """Meterable resources."""
    CONNECTED_ACCOUNTS = "CONNECTED_ACCOUNTS"
    TOTAL_BALANCE = "TOTAL_BALANCE"
    TRANSACTION_EXPORTS = "TRANSACTION_EXPORTS"
    API_CALLS = "API_CALLS"
    SYNC_REQUESTS = "SYNC_REQUESTS"

    @property
    def is_live(self) -> bool:
        """Derived from resource tables rather than counted by event."""
        return self in (UsageMetricType.CONNECTED_ACCOUNTS, UsageMetricType.TOTAL_BALANCE)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


# =============================================================================
# Records
# =============================================================================

@dataclass
class Subscription:
    """One subscription record per user."""
    user_id: str
    tier: SubscriptionTier
    current_period_start: datetime
    current_period_end: datetime
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self) -> "Subscription":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tier": self.tier.value,
            "status": self.status.value,
            "billing_cycle": self.billing_cycle.value,
            "current_period_start": self.current_period_start.isoformat(),
            "current_period_end": self.current_period_end.isoformat(),
            "cancel_at_period_end": self.cancel_at_period_end,
            "trial_end": self.trial_end.isoformat() if self.trial_end else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class UsageMetric:
    """
    Usage counter for one (user, metric type, period start).

    limit_value of -1 means unlimited.
    """
    subscription_id: str
    user_id: str
    metric_type: UsageMetricType
    period_start: datetime
    period_end: datetime
    current_value: float = 0
    limit_value: float = 0

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def unlimited(self) -> bool:
        return self.limit_value == -1

    def copy(self) -> "UsageMetric":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "metric_type": self.metric_type.value,
            "current_value": self.current_value,
            "limit_value": self.limit_value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class SubscriptionUpdate(BaseModel):
    """
    Partial update to a subscription record.

    Only fields explicitly set are applied.
    """
    model_config = ConfigDict(extra="forbid")

    tier: Optional[SubscriptionTier] = None
    status: Optional[SubscriptionStatus] = None
    billing_cycle: Optional[BillingCycle] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    trial_end: Optional[datetime] = None

    def changes(self) -> Dict[str, Any]:
        """Fields set by the caller, with their values. Only trial_end may be cleared."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if getattr(self, name) is not None or name in NULLABLE_FIELDS
        }


NULLABLE_FIELDS = frozenset({"trial_end"})


# =============================================================================
# Reporting
# =============================================================================

@dataclass
class UsageLimitStatus:
    """Current consumption of one metric against its limit."""
    current: float
    limit: float
    percentage: float

    @property
    def unlimited(self) -> bool:
        return self.limit == -1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "limit": self.limit,
            "percentage": round(self.percentage, 1),
        }


@dataclass
class UsageCalculationResult:
    """A metric value computed from the resource tables."""
    metric_type: UsageMetricType
    current_value: float
    calculated_at: datetime = field(default_factory=utcnow)
