"""
Subscription, usage metering and tier enforcement.

- Tier catalog: quotas, features and pricing per tier
- Subscription lifecycle with usage limit re-basing
- Per-period usage counters with atomic increments
- Policy checks for accounts, balances and features
"""

from tiergate.subscription.models import (
    SubscriptionTier,
    SubscriptionStatus,
    BillingCycle,
    UsageMetricType,
    Subscription,
    UsageMetric,
    SubscriptionUpdate,
    UsageLimitStatus,
    UsageCalculationResult,
)
from tiergate.subscription.catalog import (
    UNLIMITED,
    APPROACHING_LIMIT_PERCENT,
    Feature,
    SyncFrequency,
    SupportLevel,
    TierLimits,
    TIER_CONFIGURATIONS,
    TIER_PRICING,
    get_tier_limits,
    get_tier_pricing,
    is_feature_available,
    can_access_feature,
    next_tier,
    previous_tier,
)
from tiergate.subscription.errors import (
    SubscriptionError,
    TierLimitExceededError,
    FeatureNotAvailableError,
    SubscriptionNotFoundError,
    SubscriptionUpdateError,
    DuplicateSubscriptionError,
    InvalidUsageIncrementError,
)
from tiergate.subscription.storage import (
    SubscriptionStore,
    MemorySubscriptionStore,
    SQLiteSubscriptionStore,
    PostgresSubscriptionStore,
    create_subscription_store,
)
from tiergate.subscription.resources import (
    ResourceSource,
    MemoryResourceSource,
    PostgresResourceSource,
    create_resource_source,
)
from tiergate.subscription.calculator import UsageMetricsCalculator
from tiergate.subscription.tracking import UsageTrackingService
from tiergate.subscription.service import SubscriptionService
from tiergate.subscription.enforcement import (
    TierEnforcementService,
    LimitCheckResult,
    UpgradeSuggestion,
    UsageSummary,
    ApproachingLimits,
)
from tiergate.subscription.system import SubscriptionSystem

__all__ = [
    # Models
    "SubscriptionTier",
    "SubscriptionStatus",
    "BillingCycle",
    "UsageMetricType",
    "Subscription",
    "UsageMetric",
    "SubscriptionUpdate",
    "UsageLimitStatus",
    "UsageCalculationResult",
    # Catalog
    "UNLIMITED",
    "APPROACHING_LIMIT_PERCENT",
    "Feature",
    "SyncFrequency",
    "SupportLevel",
    "TierLimits",
    "TIER_CONFIGURATIONS",
    "TIER_PRICING",
    "get_tier_limits",
    "get_tier_pricing",
    "is_feature_available",
    "can_access_feature",
    "next_tier",
    "previous_tier",
    # Errors
    "SubscriptionError",
    "TierLimitExceededError",
    "FeatureNotAvailableError",
    "SubscriptionNotFoundError",
    "SubscriptionUpdateError",
    "DuplicateSubscriptionError",
    "InvalidUsageIncrementError",
    # Storage
    "SubscriptionStore",
    "MemorySubscriptionStore",
    "SQLiteSubscriptionStore",
    "PostgresSubscriptionStore",
    "create_subscription_store",
    # Resources
    "ResourceSource",
    "MemoryResourceSource",
    "PostgresResourceSource",
    "create_resource_source",
    # Services
    "UsageMetricsCalculator",
    "UsageTrackingService",
    "SubscriptionService",
    "TierEnforcementService",
    "LimitCheckResult",
    "UpgradeSuggestion",
    "UsageSummary",
    "ApproachingLimits",
    "SubscriptionSystem",
]
