"""
Subscription Errors

Typed failures surfaced to callers. Each carries the structured data a
caller needs to render a response (current and limit values, required
tier) without querying again.
"""

from __future__ import annotations

from typing import Any, Dict

from tiergate.subscription.models import SubscriptionTier, UsageMetricType


def _num(value: float) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else f"{number:.2f}"


class SubscriptionError(Exception):
    """Base class for subscription core errors."""

    code = "subscription_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class TierLimitExceededError(SubscriptionError):
    """A quota would be exceeded by the requested action."""

    code = "tier_limit_exceeded"

    def __init__(
        self,
        limit_type: str,
        current_value: float,
        limit_value: float,
        required_tier: SubscriptionTier,
    ):
        self.limit_type = limit_type
        self.current_value = current_value
        self.limit_value = limit_value
        self.required_tier = required_tier
        super().__init__(
            f"{limit_type} limit exceeded: {_num(current_value)}/{_num(limit_value)}. "
            f"Upgrade to {required_tier.value} required."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "limit_type": self.limit_type,
            "current_value": self.current_value,
            "limit_value": self.limit_value,
            "required_tier": self.required_tier.value,
        }


class FeatureNotAvailableError(SubscriptionError):
    """The user's tier does not unlock a feature."""

    code = "feature_not_available"

    def __init__(self, feature: str, required_tier: SubscriptionTier):
        self.feature = feature
        self.required_tier = required_tier
        super().__init__(f"Feature '{feature}' requires {required_tier.value} tier.")

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "feature": self.feature,
            "required_tier": self.required_tier.value,
        }


class SubscriptionNotFoundError(SubscriptionError):
    """A subscription was required but the user has none."""

    code = "subscription_not_found"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Subscription not found for user: {user_id}")

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "user_id": self.user_id}


class SubscriptionUpdateError(SubscriptionError):
    """An update or cancel targeted a subscription id that does not resolve."""

    code = "subscription_update_failed"

    def __init__(self, message: str, subscription_id: str):
        self.subscription_id = subscription_id
        self.reason = message
        super().__init__(f"Subscription update failed for {subscription_id}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "subscription_id": self.subscription_id}


class DuplicateSubscriptionError(SubscriptionError):
    """The user already holds a subscription."""

    code = "duplicate_subscription"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Subscription already exists for user: {user_id}")

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "user_id": self.user_id}


class InvalidUsageIncrementError(SubscriptionError, ValueError):
    """Usage increments must be non-negative."""

    code = "invalid_usage_increment"

    def __init__(self, metric_type: UsageMetricType, increment: float):
        self.metric_type = metric_type
        self.increment = increment
        super().__init__(
            f"Usage increment for {metric_type.value} must be >= 0, got {_num(increment)}"
        )
