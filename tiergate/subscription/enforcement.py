"""
Tier Enforcement Service

Policy layer turning "may this user do X" into decisions:
- Non-throwing checks returning LimitCheckResult
- Boolean enforce_* predicates and *_with_throw wrappers raising typed errors
- Advisory views (upgrade suggestions, usage summary, approaching limits)

Boundary policies differ by resource: connected accounts allow another one
only while current < limit, whereas a proposed total balance is allowed up
to and including the limit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

import structlog

from tiergate.subscription.catalog import (
    APPROACHING_LIMIT_PERCENT,
    UNLIMITED,
    Feature,
    SyncFrequency,
    TierLimits,
    get_tier_limits,
    is_feature_available,
    minimum_tier_for_feature,
    next_tier,
)
from tiergate.subscription.errors import FeatureNotAvailableError, TierLimitExceededError
from tiergate.subscription.models import (
    SubscriptionTier,
    UsageLimitStatus,
    UsageMetricType,
)
from tiergate.subscription.service import SubscriptionService
from tiergate.subscription.tracking import UsageTrackingService, required_tier_for

logger = structlog.get_logger(__name__)

ACCOUNTS_LIMIT_TYPE = "Connected accounts"
BALANCE_LIMIT_TYPE = "Total balance tracking"

METRIC_LABELS: Dict[UsageMetricType, str] = {
    UsageMetricType.CONNECTED_ACCOUNTS: "Account",
    UsageMetricType.TOTAL_BALANCE: "Balance",
    UsageMetricType.TRANSACTION_EXPORTS: "Export",
    UsageMetricType.API_CALLS: "API call",
    UsageMetricType.SYNC_REQUESTS: "Sync request",
}


# =============================================================================
# Results
# =============================================================================

@dataclass
class LimitCheckResult:
    """Outcome of a quota check."""
    allowed: bool
    limit_type: str
    current_value: float
    limit_value: Optional[float]  # None = unlimited
    tier: SubscriptionTier
    required_tier: Optional[SubscriptionTier] = None

    def to_error(self) -> TierLimitExceededError:
        return TierLimitExceededError(
            self.limit_type,
            self.current_value,
            self.limit_value if self.limit_value is not None else UNLIMITED,
            self.required_tier or SubscriptionTier.PRO,
        )

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise self.to_error()


@dataclass
class UpgradeSuggestion:
    should_upgrade: bool
    reasons: List[str] = field(default_factory=list)
    suggested_tier: Optional[SubscriptionTier] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_upgrade": self.should_upgrade,
            "reasons": self.reasons,
            "suggested_tier": self.suggested_tier.value if self.suggested_tier else None,
        }


@dataclass
class UsageSummary:
    """Tier, its catalog entry and current consumption of every metric."""
    tier: SubscriptionTier
    limits: TierLimits
    usage: Dict[UsageMetricType, UsageLimitStatus]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "limits": self.limits.to_dict(),
            "usage": {m.value: s.to_dict() for m, s in self.usage.items()},
        }


@dataclass
class ApproachingLimits:
    approaching: bool
    warnings: List[str] = field(default_factory=list)


def _amount(value: float, currency: bool) -> str:
    text = f"{value:,.0f}" if float(value).is_integer() else f"{value:,.2f}"
    return f"${text}" if currency else text


# =============================================================================
# Service
# =============================================================================

class TierEnforcementService:
    """
    Composes subscription, usage tracking and the tier catalog into
    allow/deny decisions.

    Users without a subscription are treated as STARTER for tier lookups,
    but checks that read usage rows raise SubscriptionNotFoundError.
    """

    def __init__(
        self,
        subscriptions: SubscriptionService,
        tracking: UsageTrackingService,
        approaching_limit_percent: float = APPROACHING_LIMIT_PERCENT,
    ):
        self.subscriptions = subscriptions
        self.tracking = tracking
        self.approaching_limit_percent = approaching_limit_percent

    # =========================================================================
    # Quota checks
    # =========================================================================

    async def check_account_limit(self, user_id: str) -> LimitCheckResult:
        tier = await self.subscriptions.get_user_tier(user_id)
        limit = get_tier_limits(tier).accounts

        if limit is None:
            return LimitCheckResult(True, ACCOUNTS_LIMIT_TYPE, 0, None, tier)

        usage = await self.tracking.get_usage_metric(user_id, UsageMetricType.CONNECTED_ACCOUNTS)
        if usage is None:
            return LimitCheckResult(True, ACCOUNTS_LIMIT_TYPE, 0, limit, tier)

        current = usage.current_value
        if current < limit:
            return LimitCheckResult(True, ACCOUNTS_LIMIT_TYPE, current, limit, tier)

        return LimitCheckResult(
            allowed=False,
            limit_type=ACCOUNTS_LIMIT_TYPE,
            current_value=current,
            limit_value=limit,
            tier=tier,
            required_tier=required_tier_for(UsageMetricType.CONNECTED_ACCOUNTS, current + 1, tier),
        )

    async def check_balance_limit(
        self,
        user_id: str,
        proposed_total_balance: Union[Decimal, float],
    ) -> LimitCheckResult:
        tier = await self.subscriptions.get_user_tier(user_id)
        limit = get_tier_limits(tier).balance_limit

        if limit is None:
            return LimitCheckResult(True, BALANCE_LIMIT_TYPE, proposed_total_balance, None, tier)

        proposed = Decimal(str(proposed_total_balance))
        if proposed <= limit:
            return LimitCheckResult(True, BALANCE_LIMIT_TYPE, proposed_total_balance, limit, tier)

        return LimitCheckResult(
            allowed=False,
            limit_type=BALANCE_LIMIT_TYPE,
            current_value=proposed_total_balance,
            limit_value=limit,
            tier=tier,
            required_tier=required_tier_for(UsageMetricType.TOTAL_BALANCE, proposed, tier),
        )

    async def enforce_account_limit(self, user_id: str) -> bool:
        """Whether the user may connect one more account."""
        return (await self.check_account_limit(user_id)).allowed

    async def enforce_balance_limit(
        self,
        user_id: str,
        proposed_total_balance: Union[Decimal, float],
    ) -> bool:
        """Whether a total tracked balance is within the tier (inclusive)."""
        return (await self.check_balance_limit(user_id, proposed_total_balance)).allowed

    async def check_account_limit_with_throw(self, user_id: str) -> None:
        (await self.check_account_limit(user_id)).raise_for_denial()

    async def check_balance_limit_with_throw(
        self,
        user_id: str,
        proposed_total_balance: Union[Decimal, float],
    ) -> None:
        (await self.check_balance_limit(user_id, proposed_total_balance)).raise_for_denial()

    async def can_add_account(self, user_id: str) -> bool:
        return await self.enforce_account_limit(user_id)

    async def can_track_balance(
        self,
        user_id: str,
        additional_balance: Union[Decimal, float],
    ) -> bool:
        """Whether the stored total balance plus additional_balance stays within the tier."""
        usage = await self.tracking.get_usage_metric(user_id, UsageMetricType.TOTAL_BALANCE)
        current = Decimal(str(usage.current_value)) if usage else Decimal("0")
        return await self.enforce_balance_limit(user_id, current + Decimal(str(additional_balance)))

    # =========================================================================
    # Features
    # =========================================================================

    async def enforce_feature_access(self, user_id: str, feature: Union[Feature, str]) -> bool:
        parsed = feature if isinstance(feature, Feature) else Feature.from_string(feature)
        if parsed is None:
            return False
        tier = await self.subscriptions.get_user_tier(user_id)
        return is_feature_available(tier, parsed)

    async def check_feature_access_with_throw(self, user_id: str, feature: Union[Feature, str]) -> None:
        if await self.enforce_feature_access(user_id, feature):
            return

        parsed = feature if isinstance(feature, Feature) else Feature.from_string(feature)
        required = minimum_tier_for_feature(parsed) if parsed else SubscriptionTier.PRO
        name = parsed.value if parsed else str(feature)
        raise FeatureNotAvailableError(name, required)

    async def get_available_features(self, user_id: str) -> List[Feature]:
        tier = await self.subscriptions.get_user_tier(user_id)
        return sorted(get_tier_limits(tier).features, key=lambda f: f.value)

    async def can_perform_actions(
        self,
        user_id: str,
        features: Sequence[Union[Feature, str]],
    ) -> Dict[str, bool]:
        """Feature access for several features at once, keyed by identifier."""
        tier = await self.subscriptions.get_user_tier(user_id)
        results: Dict[str, bool] = {}
        for feature in features:
            parsed = feature if isinstance(feature, Feature) else Feature.from_string(feature)
            key = feature.value if isinstance(feature, Feature) else feature
            results[key] = parsed is not None and is_feature_available(tier, parsed)
        return results

    # =========================================================================
    # Tier properties
    # =========================================================================

    async def get_user_tier_limits(self, user_id: str) -> TierLimits:
        return get_tier_limits(await self.subscriptions.get_user_tier(user_id))

    async def enforce_sync_frequency(self, user_id: str) -> SyncFrequency:
        return (await self.get_user_tier_limits(user_id)).sync_frequency

    async def enforce_transaction_history(self, user_id: str) -> int:
        """Months of transaction history available; -1 for unlimited."""
        months = (await self.get_user_tier_limits(user_id)).transaction_history_months
        return UNLIMITED if months is None else months

    # =========================================================================
    # Advisory views
    # =========================================================================

    def _is_approaching(self, status: UsageLimitStatus) -> bool:
        return not status.unlimited and status.percentage >= self.approaching_limit_percent

    async def get_upgrade_suggestions(self, user_id: str) -> UpgradeSuggestion:
        """Suggest the next tier when any limited metric is near its cap. Never raises denials."""
        tier = await self.subscriptions.get_user_tier(user_id)
        status = await self.tracking.get_usage_limit_status(user_id)

        reasons: List[str] = []
        for metric_type, entry in status.items():
            if not self._is_approaching(entry):
                continue
            pct = round(entry.percentage)
            if metric_type == UsageMetricType.CONNECTED_ACCOUNTS:
                reasons.append(
                    f"You're using {_amount(entry.current, False)}/{_amount(entry.limit, False)} accounts ({pct}%)"
                )
            elif metric_type == UsageMetricType.TOTAL_BALANCE:
                reasons.append(f"Your tracked balance is {pct}% of your limit")
            else:
                reasons.append(f"{METRIC_LABELS[metric_type]} usage is at {pct}% of your limit")

        should_upgrade = bool(reasons)
        suggestion = UpgradeSuggestion(
            should_upgrade=should_upgrade,
            reasons=reasons,
            suggested_tier=next_tier(tier) if should_upgrade else None,
        )
        if should_upgrade:
            logger.info(
                "Upgrade suggested",
                user_id=user_id,
                tier=tier.value,
                suggested_tier=suggestion.suggested_tier.value if suggestion.suggested_tier else None,
            )
        return suggestion

    async def get_usage_summary(self, user_id: str) -> UsageSummary:
        tier = await self.subscriptions.get_user_tier(user_id)
        return UsageSummary(
            tier=tier,
            limits=get_tier_limits(tier),
            usage=await self.tracking.get_usage_limit_status(user_id),
        )

    async def is_approaching_limits(self, user_id: str) -> ApproachingLimits:
        summary = await self.get_usage_summary(user_id)

        warnings: List[str] = []
        for metric_type, entry in summary.usage.items():
            if not self._is_approaching(entry):
                continue
            currency = metric_type == UsageMetricType.TOTAL_BALANCE
            warnings.append(
                f"{METRIC_LABELS[metric_type]} limit: "
                f"{_amount(entry.current, currency)}/{_amount(entry.limit, currency)} "
                f"({round(entry.percentage)}%)"
            )

        return ApproachingLimits(approaching=bool(warnings), warnings=warnings)
