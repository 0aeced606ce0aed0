"""
Subscription Service

Owns the subscription lifecycle:
- Creation (with reactivation of canceled records)
- Partial updates, re-basing open-period usage limits on tier change
- Cancellation, immediately or at period end
- Tier and entitlement lookups
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from tiergate.subscription.catalog import Feature, is_feature_available, metric_limit
from tiergate.subscription.errors import DuplicateSubscriptionError, SubscriptionUpdateError
from tiergate.subscription.models import (
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    SubscriptionUpdate,
    UsageMetric,
    UsageMetricType,
    utcnow,
)
from tiergate.subscription.storage import SubscriptionStore
from tiergate.subscription.tracking import UsageTrackingService, seed_metric

logger = structlog.get_logger(__name__)

PERIOD_FIELDS = frozenset({"current_period_start", "current_period_end"})


class SubscriptionService:
    """Single writer of subscription records."""

    def __init__(self, store: SubscriptionStore, tracking: UsageTrackingService):
        self.store = store
        self.tracking = tracking

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_subscription(
        self,
        user_id: str,
        tier: SubscriptionTier,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        trial_end: Optional[datetime] = None,
    ) -> Subscription:
        """
        Create the user's subscription and zeroed usage rows for every metric.

        A CANCELED record is reopened in place (same id) with a fresh
        period. Any other existing record raises DuplicateSubscriptionError.
        """
        existing = await self.store.get_subscription_for_user(user_id)
        reactivate = existing is not None and existing.status == SubscriptionStatus.CANCELED
        if existing is not None and not reactivate:
            raise DuplicateSubscriptionError(user_id)

        now = utcnow()
        subscription = Subscription(
            user_id=user_id,
            tier=tier,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=billing_cycle,
            current_period_start=now,
            current_period_end=billing_cycle.period_end(now),
            cancel_at_period_end=False,
            trial_end=trial_end,
            created_at=now,
            updated_at=now,
        )
        if reactivate:
            subscription.id = existing.id
            subscription.created_at = existing.created_at

        metrics = [seed_metric(subscription, m) for m in UsageMetricType]
        created = await self.store.create_subscription(subscription, metrics, reactivate=reactivate)

        logger.info(
            "Subscription reactivated" if reactivate else "Subscription created",
            user_id=user_id,
            subscription_id=created.id,
            tier=tier.value,
            billing_cycle=billing_cycle.value,
            period_end=created.current_period_end.isoformat(),
        )
        return created

    async def update_subscription(
        self,
        subscription_id: str,
        updates: Union[SubscriptionUpdate, Mapping[str, Any]],
    ) -> Subscription:
        """
        Apply a partial update.

        Whenever the update names a tier, the limit of every open-period
        usage row is recomputed from that tier in the same transaction.
        Moving the period seeds zeroed rows for the new open period.
        Consumption is left untouched.
        """
        if not isinstance(updates, SubscriptionUpdate):
            updates = SubscriptionUpdate(**updates)
        changes = updates.changes()

        existing = await self.store.get_subscription(subscription_id)
        if existing is None:
            raise SubscriptionUpdateError("Subscription not found", subscription_id)

        limits = self._limits_for(changes["tier"]) if "tier" in changes else None

        seeds: List[UsageMetric] = []
        if PERIOD_FIELDS & changes.keys():
            moved = replace(existing, **changes)
            seeds = [seed_metric(moved, m) for m in UsageMetricType]

        updated = await self.store.update_subscription(
            subscription_id, changes, limits=limits, seed_metrics=seeds
        )
        if updated is None:
            raise SubscriptionUpdateError("Subscription not found", subscription_id)

        if seeds and limits is None and updated.tier != existing.tier:
            # Tier changed between the read and the write; the seeded rows
            # carry the old tier's limits.
            updated = await self.store.update_subscription(
                subscription_id, {}, limits=self._limits_for(updated.tier)
            )

        logger.info(
            "Subscription updated",
            subscription_id=subscription_id,
            user_id=updated.user_id,
            fields=sorted(changes),
        )
        if updated.tier != existing.tier:
            logger.info(
                "Subscription tier changed",
                user_id=updated.user_id,
                from_tier=existing.tier.value,
                to_tier=updated.tier.value,
                period_start=updated.current_period_start.isoformat(),
            )
        return updated

    @staticmethod
    def _limits_for(tier: SubscriptionTier) -> Dict[UsageMetricType, float]:
        return {m: metric_limit(tier, m) for m in UsageMetricType}

    async def cancel_subscription(
        self,
        subscription_id: str,
        cancel_at_period_end: bool,
    ) -> Subscription:
        """
        Cancel a subscription.

        At period end only the flag is set. Otherwise status becomes
        CANCELED and the tier drops to STARTER in a single update.
        """
        if cancel_at_period_end:
            updates = SubscriptionUpdate(cancel_at_period_end=True)
        else:
            updates = SubscriptionUpdate(
                cancel_at_period_end=False,
                status=SubscriptionStatus.CANCELED,
                tier=SubscriptionTier.STARTER,
            )

        canceled = await self.update_subscription(subscription_id, updates)
        logger.info(
            "Subscription canceled",
            subscription_id=subscription_id,
            user_id=canceled.user_id,
            at_period_end=cancel_at_period_end,
        )
        return canceled

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        return await self.store.get_subscription_for_user(user_id)

    async def get_subscription_by_id(self, subscription_id: str) -> Optional[Subscription]:
        return await self.store.get_subscription(subscription_id)

    async def get_user_tier(self, user_id: str) -> SubscriptionTier:
        """The user's tier; STARTER when the user has no subscription."""
        subscription = await self.store.get_subscription_for_user(user_id)
        return subscription.tier if subscription else SubscriptionTier.STARTER

    async def can_perform_action(self, user_id: str, feature: Union[Feature, str]) -> bool:
        """
        Whether the user's subscription entitles them to a feature.

        Never raises: no subscription, an inactive status or an unknown
        feature identifier all yield False.
        """
        if not isinstance(feature, Feature):
            feature = Feature.from_string(feature)
            if feature is None:
                return False

        subscription = await self.store.get_subscription_for_user(user_id)
        if subscription is None or not subscription.status.is_entitled:
            return False
        return is_feature_available(subscription.tier, feature)

    # =========================================================================
    # Usage delegation
    # =========================================================================

    async def track_usage(
        self,
        user_id: str,
        metric_type: UsageMetricType,
        increment: float = 1,
    ) -> UsageMetric:
        return await self.tracking.track_usage(user_id, metric_type, increment)

    async def check_usage_limit(self, user_id: str, metric_type: UsageMetricType) -> bool:
        return await self.tracking.check_usage_limit(user_id, metric_type)

    async def get_current_usage(self, user_id: str) -> List[UsageMetric]:
        return await self.tracking.get_current_usage(user_id)
