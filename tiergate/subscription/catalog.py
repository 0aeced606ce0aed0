"""
Tier Catalog

Static table mapping each subscription tier to:
- Quotas (accounts, tracked balance, transaction history)
- Sync frequency class and support level
- Unlocked feature set
- Monthly and yearly pricing

Pure lookups only. None in a quota means unlimited; stored usage rows use
the UNLIMITED sentinel instead (see metric_limit).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from tiergate.subscription.models import (
    TIER_ORDER as _TIER_ORDER,
    BillingCycle,
    SubscriptionTier,
    UsageMetricType,
)


UNLIMITED = -1

# Usage percentage at which a limited metric counts as "approaching" its cap.
APPROACHING_LIMIT_PERCENT = 80.0


# =============================================================================
# Features
# =============================================================================

class Feature(str, Enum):
    """Feature identifiers gated by tier."""
    BASIC_BUDGETING = "basic_budgeting"
    GOAL_TRACKING = "goal_tracking"
    MOBILE_WEB_ACCESS = "mobile_web_access"
    CSV_EXPORT = "csv_export"
    SPENDING_INSIGHTS = "spending_insights"
    TRENDS_ANALYSIS = "trends_analysis"
    INVESTMENT_TRACKING = "investment_tracking"
    TAX_REPORTS = "tax_reports"
    AI_INSIGHTS = "ai_insights"
    MULTI_CURRENCY = "multi_currency"

    @classmethod
    def from_string(cls, value: str) -> Optional["Feature"]:
        """Parse a feature identifier; None when it is not a known feature."""
        try:
            return cls(value.lower())
        except ValueError:
            return None


class SyncFrequency(str, Enum):
    """How often connected institutions are refreshed."""
    DAILY = "daily"
    REALTIME = "realtime"
    PRIORITY = "priority"


class SupportLevel(str, Enum):
    NONE = "none"
    EMAIL = "email"
    PRIORITY_CHAT = "priority_chat"


# =============================================================================
# Tier Limits
# =============================================================================

@dataclass(frozen=True)
class TierLimits:
    """Quota and entitlement entry for one tier."""
    tier: SubscriptionTier
    accounts: Optional[int]                      # None = unlimited
    balance_limit: Optional[Decimal]             # None = unlimited
    transaction_history_months: Optional[int]    # None = unlimited
    sync_frequency: SyncFrequency
    features: FrozenSet[Feature] = field(default_factory=frozenset)
    support: SupportLevel = SupportLevel.NONE

    @property
    def unlimited_accounts(self) -> bool:
        return self.accounts is None

    @property
    def unlimited_balance(self) -> bool:
        return self.balance_limit is None

    def to_dict(self) -> Dict[str, object]:
        return {
            "tier": self.tier.value,
            "accounts": self.accounts if self.accounts is not None else "unlimited",
            "balance_limit": (
                int(self.balance_limit) if self.balance_limit is not None else "unlimited"
            ),
            "transaction_history_months": (
                self.transaction_history_months
                if self.transaction_history_months is not None
                else "unlimited"
            ),
            "sync_frequency": self.sync_frequency.value,
            "features": sorted(f.value for f in self.features),
            "support": self.support.value,
        }


@dataclass(frozen=True)
class TierPricing:
    """Price per billing cycle, in whole currency units."""
    monthly: Decimal
    yearly: Decimal


_STARTER_FEATURES = frozenset({
    Feature.BASIC_BUDGETING,
    Feature.GOAL_TRACKING,
    Feature.MOBILE_WEB_ACCESS,
})

_GROWTH_FEATURES = _STARTER_FEATURES | {
    Feature.CSV_EXPORT,
    Feature.SPENDING_INSIGHTS,
    Feature.TRENDS_ANALYSIS,
}

_PRO_FEATURES = _GROWTH_FEATURES | {
    Feature.INVESTMENT_TRACKING,
    Feature.TAX_REPORTS,
    Feature.AI_INSIGHTS,
    Feature.MULTI_CURRENCY,
}


TIER_CONFIGURATIONS: Dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.STARTER: TierLimits(
        tier=SubscriptionTier.STARTER,
        accounts=3,
        balance_limit=Decimal("15000"),
        transaction_history_months=12,
        sync_frequency=SyncFrequency.DAILY,
        features=_STARTER_FEATURES,
        support=SupportLevel.NONE,
    ),
    SubscriptionTier.GROWTH: TierLimits(
        tier=SubscriptionTier.GROWTH,
        accounts=10,
        balance_limit=Decimal("100000"),
        transaction_history_months=None,
        sync_frequency=SyncFrequency.REALTIME,
        features=_GROWTH_FEATURES,
        support=SupportLevel.EMAIL,
    ),
    SubscriptionTier.PRO: TierLimits(
        tier=SubscriptionTier.PRO,
        accounts=None,
        balance_limit=None,
        transaction_history_months=None,
        sync_frequency=SyncFrequency.PRIORITY,
        features=_PRO_FEATURES,
        support=SupportLevel.PRIORITY_CHAT,
    ),
}

TIER_PRICING: Dict[SubscriptionTier, TierPricing] = {
    SubscriptionTier.STARTER: TierPricing(monthly=Decimal("0"), yearly=Decimal("0")),
    SubscriptionTier.GROWTH: TierPricing(monthly=Decimal("5"), yearly=Decimal("50")),
    SubscriptionTier.PRO: TierPricing(monthly=Decimal("15"), yearly=Decimal("150")),
}


def _assert_monotonic_features() -> None:
    for lower, higher in zip(_TIER_ORDER, _TIER_ORDER[1:]):
        assert TIER_CONFIGURATIONS[lower].features <= TIER_CONFIGURATIONS[higher].features, (
            f"{higher.value} must unlock every feature of {lower.value}"
        )


_assert_monotonic_features()


# =============================================================================
# Lookups
# =============================================================================

def all_tiers() -> List[SubscriptionTier]:
    """Tiers in ascending order."""
    return list(_TIER_ORDER)


def get_tier_limits(tier: SubscriptionTier) -> TierLimits:
    """Get the catalog entry for a tier."""
    return TIER_CONFIGURATIONS[tier]


def get_tier_pricing(tier: SubscriptionTier, cycle: BillingCycle) -> Decimal:
    """Get the price of a tier for a billing cycle."""
    pricing = TIER_PRICING[tier]
    return pricing.monthly if cycle == BillingCycle.MONTHLY else pricing.yearly


def is_feature_available(tier: SubscriptionTier, feature: Feature) -> bool:
    """Check whether a tier unlocks a feature."""
    return feature in TIER_CONFIGURATIONS[tier].features


def can_access_feature(user_tier: SubscriptionTier, required_tier: SubscriptionTier) -> bool:
    """Check whether a tier is at or above another tier."""
    return user_tier >= required_tier


def next_tier(tier: SubscriptionTier) -> Optional[SubscriptionTier]:
    """The tier directly above, or None at the top."""
    index = tier.rank + 1
    return _TIER_ORDER[index] if index < len(_TIER_ORDER) else None


def previous_tier(tier: SubscriptionTier) -> Optional[SubscriptionTier]:
    """The tier directly below, or None at the bottom."""
    index = tier.rank - 1
    return _TIER_ORDER[index] if index >= 0 else None


def minimum_tier_for_feature(feature: Feature) -> SubscriptionTier:
    """Lowest tier unlocking a feature (PRO when none does)."""
    for tier in _TIER_ORDER:
        if is_feature_available(tier, feature):
            return tier
    return SubscriptionTier.PRO


def metric_limit(tier: SubscriptionTier, metric_type: UsageMetricType) -> int:
    """
    Limit value stored on a usage row for a tier.

    Exports are blocked unless the tier unlocks CSV export, in which case
    they are unlimited. API calls and sync requests are not capped.
    """
    limits = TIER_CONFIGURATIONS[tier]

    if metric_type == UsageMetricType.CONNECTED_ACCOUNTS:
        return UNLIMITED if limits.accounts is None else limits.accounts
    if metric_type == UsageMetricType.TOTAL_BALANCE:
        return UNLIMITED if limits.balance_limit is None else int(limits.balance_limit)
    if metric_type == UsageMetricType.TRANSACTION_EXPORTS:
        return UNLIMITED if Feature.CSV_EXPORT in limits.features else 0
    return UNLIMITED


def minimum_tier_for_usage(
    metric_type: UsageMetricType,
    required_value: float,
    start: SubscriptionTier = SubscriptionTier.STARTER,
) -> SubscriptionTier:
    """
    Walk the tier order upward from start and return the first tier whose
    limit admits required_value. Falls back to PRO.
    """
    for tier in _TIER_ORDER[start.rank:]:
        limit = metric_limit(tier, metric_type)
        if limit == UNLIMITED or required_value <= limit:
            return tier
    return SubscriptionTier.PRO
