"""
Usage Metrics Calculator

Derives current usage values from source-of-truth tables:
- Connected accounts and total balance are computed live
- Exports and API calls come from the persisted counters
- Sync requests count connections synced since the period start

Nothing computed here is written back.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

import structlog

from tiergate.subscription.models import (
    UsageCalculationResult,
    UsageMetricType,
    utcnow,
)
from tiergate.subscription.resources import ResourceSource
from tiergate.subscription.storage import SubscriptionStore

logger = structlog.get_logger(__name__)


def month_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the month containing now."""
    now = now or utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class UsageMetricsCalculator:
    """Stateless read-only aggregations over resources and stored counters."""

    def __init__(self, resources: ResourceSource, store: SubscriptionStore):
        self.resources = resources
        self.store = store

    async def calculate_connected_accounts(self, user_id: str) -> int:
        return await self.resources.count_accounts(user_id)

    async def calculate_total_balance(self, user_id: str) -> int:
        """Sum of absolute balances, rounded half-up to a whole currency unit."""
        balances = await self.resources.list_account_balances(user_id)
        total = sum((abs(b) for b in balances if b is not None), Decimal("0"))
        return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    async def _stored_counter(
        self,
        user_id: str,
        metric_type: UsageMetricType,
        period_start: datetime,
    ) -> float:
        metric = await self.store.get_metric(user_id, metric_type, period_start)
        return metric.current_value if metric else 0

    async def calculate_transaction_exports(self, user_id: str, period_start: datetime) -> float:
        return await self._stored_counter(user_id, UsageMetricType.TRANSACTION_EXPORTS, period_start)

    async def calculate_api_calls(self, user_id: str, period_start: datetime) -> float:
        return await self._stored_counter(user_id, UsageMetricType.API_CALLS, period_start)

    async def calculate_sync_requests(self, user_id: str, period_start: datetime) -> int:
        return await self.resources.count_synced_connections(user_id, period_start)

    async def calculate_all_metrics(
        self,
        user_id: str,
        period_start: Optional[datetime] = None,
    ) -> List[UsageCalculationResult]:
        """
        Compute every metric type for a user.

        period_start defaults to the start of the current month.
        """
        period_start = period_start or month_start()

        values = await asyncio.gather(
            self.calculate_connected_accounts(user_id),
            self.calculate_total_balance(user_id),
            self.calculate_transaction_exports(user_id, period_start),
            self.calculate_api_calls(user_id, period_start),
            self.calculate_sync_requests(user_id, period_start),
        )
        order = [
            UsageMetricType.CONNECTED_ACCOUNTS,
            UsageMetricType.TOTAL_BALANCE,
            UsageMetricType.TRANSACTION_EXPORTS,
            UsageMetricType.API_CALLS,
            UsageMetricType.SYNC_REQUESTS,
        ]
        calculated_at = utcnow()

        logger.debug("Usage metrics calculated", user_id=user_id, period_start=period_start.isoformat())

        return [
            UsageCalculationResult(metric_type=m, current_value=v, calculated_at=calculated_at)
            for m, v in zip(order, values)
        ]

    async def calculate_live_metrics(self, user_id: str) -> Dict[UsageMetricType, float]:
        """Connected accounts and total balance, computed concurrently."""
        accounts, balance = await asyncio.gather(
            self.calculate_connected_accounts(user_id),
            self.calculate_total_balance(user_id),
        )
        return {
            UsageMetricType.CONNECTED_ACCOUNTS: accounts,
            UsageMetricType.TOTAL_BALANCE: balance,
        }
