"""
Usage Tracking Service

Increment, read and limit-check API over the usage metric rows of the
subscription's open billing period. Rows are created lazily, seeded with
the tier's limit at the moment of creation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

import structlog

from tiergate.subscription.calculator import UsageMetricsCalculator
from tiergate.subscription.catalog import (
    UNLIMITED,
    metric_limit,
    minimum_tier_for_usage,
    next_tier,
)
from tiergate.subscription.errors import (
    InvalidUsageIncrementError,
    SubscriptionNotFoundError,
    TierLimitExceededError,
)
from tiergate.subscription.models import (
    Subscription,
    SubscriptionTier,
    UsageLimitStatus,
    UsageMetric,
    UsageMetricType,
)
from tiergate.subscription.storage import SubscriptionStore

logger = structlog.get_logger(__name__)


def usage_percentage(current: float, limit: float) -> float:
    """
    Share of a limit consumed, capped at 100.

    Unlimited yields 0. A zero limit yields 100 once anything is consumed.
    """
    if limit == UNLIMITED:
        return 0.0
    if limit <= 0:
        return 100.0 if current > 0 else 0.0
    return min(float(current) / float(limit) * 100, 100.0)


def seed_metric(subscription: Subscription, metric_type: UsageMetricType) -> UsageMetric:
    """A zeroed row for the subscription's open period, limited by its tier."""
    return UsageMetric(
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        metric_type=metric_type,
        current_value=0,
        limit_value=metric_limit(subscription.tier, metric_type),
        period_start=subscription.current_period_start,
        period_end=subscription.current_period_end,
    )


class UsageTrackingService:
    """
    Metering over the usage metric store.

    Sole writer of usage rows. Counters only grow; increments are applied
    atomically by the store.
    """

    def __init__(self, store: SubscriptionStore, calculator: UsageMetricsCalculator):
        self.store = store
        self.calculator = calculator

    async def _require_subscription(self, user_id: str) -> Subscription:
        subscription = await self.store.get_subscription_for_user(user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)
        return subscription

    # =========================================================================
    # Metering
    # =========================================================================

    async def track_usage(
        self,
        user_id: str,
        metric_type: UsageMetricType,
        increment: float = 1,
    ) -> UsageMetric:
        """Add increment to the open-period counter, creating the row if needed."""
        if increment < 0:
            raise InvalidUsageIncrementError(metric_type, increment)

        subscription = await self._require_subscription(user_id)
        metric = await self.store.increment_metric(seed_metric(subscription, metric_type), increment)

        logger.debug(
            "Usage tracked",
            user_id=user_id,
            metric=metric_type.value,
            increment=increment,
            current=metric.current_value,
        )
        return metric

    async def check_usage_limit(self, user_id: str, metric_type: UsageMetricType) -> bool:
        """
        Whether one more unit may be consumed.

        True when no row exists yet or the row is unlimited, otherwise
        current < limit. Being exactly at the limit returns False.
        """
        metric = await self.get_usage_metric(user_id, metric_type)
        if metric is None:
            return True
        return metric.limit_value == UNLIMITED or metric.current_value < metric.limit_value

    async def enforce_usage_limit(
        self,
        user_id: str,
        metric_type: UsageMetricType,
        increment: float = 1,
    ) -> None:
        """
        Raise TierLimitExceededError if adding increment would pass the
        tier's limit. Does not record usage.
        """
        subscription = await self._require_subscription(user_id)
        limit = metric_limit(subscription.tier, metric_type)
        if limit == UNLIMITED:
            return

        metric = await self.store.get_metric(user_id, metric_type, subscription.current_period_start)
        current = metric.current_value if metric else 0

        if current + increment > limit:
            raise TierLimitExceededError(
                metric_type.value,
                current,
                limit,
                required_tier_for(metric_type, current + increment, subscription.tier),
            )

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_current_usage(self, user_id: str) -> List[UsageMetric]:
        """Open-period rows. Metrics never tracked are absent."""
        subscription = await self._require_subscription(user_id)
        return await self.store.list_metrics(user_id, subscription.current_period_start)

    async def get_usage_metric(
        self,
        user_id: str,
        metric_type: UsageMetricType,
    ) -> Optional[UsageMetric]:
        subscription = await self._require_subscription(user_id)
        return await self.store.get_metric(user_id, metric_type, subscription.current_period_start)

    async def aggregate_usage_for_period(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[UsageMetric]:
        """Rows (open and historical) whose period starts within [start, end]."""
        return await self.store.list_metrics_between(user_id, start, end)

    async def get_usage_limit_status(self, user_id: str) -> Dict[UsageMetricType, UsageLimitStatus]:
        """
        Consumption of every metric type against the tier's limits.

        Connected accounts and total balance are computed live; the other
        metrics come from the stored counters (0 when no row exists). The
        result always holds all five metric types.
        """
        subscription = await self._require_subscription(user_id)
        stored = {
            m.metric_type: m.current_value
            for m in await self.store.list_metrics(user_id, subscription.current_period_start)
        }
        live = await self.calculator.calculate_live_metrics(user_id)

        status: Dict[UsageMetricType, UsageLimitStatus] = {}
        for metric_type in UsageMetricType:
            current = live[metric_type] if metric_type.is_live else stored.get(metric_type, 0)
            limit = metric_limit(subscription.tier, metric_type)
            status[metric_type] = UsageLimitStatus(
                current=current,
                limit=limit,
                percentage=usage_percentage(current, limit),
            )
        return status

    async def refresh_live_metrics(self, user_id: str) -> List[UsageMetric]:
        """Write live account count and total balance into the open-period rows."""
        subscription = await self._require_subscription(user_id)
        live = await self.calculator.calculate_live_metrics(user_id)

        rows = [
            await self.store.set_metric_value(seed_metric(subscription, metric_type), value)
            for metric_type, value in live.items()
        ]
        logger.info(
            "Live usage metrics refreshed",
            user_id=user_id,
            **{m.metric_type.value.lower(): m.current_value for m in rows},
        )
        return rows


def required_tier_for(
    metric_type: UsageMetricType,
    required_value: float,
    current_tier: SubscriptionTier,
) -> SubscriptionTier:
    """Lowest tier strictly above current_tier admitting required_value."""
    start = next_tier(current_tier) or SubscriptionTier.PRO
    return minimum_tier_for_usage(metric_type, required_value, start=start)
