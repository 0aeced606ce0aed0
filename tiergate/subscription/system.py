"""
Subscription System wiring.

Builds the store, resource source and services from configuration with
explicit constructor injection. Nothing here is a module-level singleton.
"""

from __future__ import annotations

from typing import Optional

import structlog

from tiergate.core.config import TierGateConfig, get_config
from tiergate.subscription.catalog import APPROACHING_LIMIT_PERCENT
from tiergate.subscription.calculator import UsageMetricsCalculator
from tiergate.subscription.enforcement import TierEnforcementService
from tiergate.subscription.resources import ResourceSource, create_resource_source
from tiergate.subscription.service import SubscriptionService
from tiergate.subscription.storage import SubscriptionStore, create_subscription_store
from tiergate.subscription.tracking import UsageTrackingService

logger = structlog.get_logger(__name__)


class SubscriptionSystem:
    """The assembled subscription core."""

    def __init__(
        self,
        store: SubscriptionStore,
        resources: ResourceSource,
        approaching_limit_percent: float = APPROACHING_LIMIT_PERCENT,
    ):
        self.store = store
        self.resources = resources

        self.calculator = UsageMetricsCalculator(resources, store)
        self.tracking = UsageTrackingService(store, self.calculator)
        self.subscriptions = SubscriptionService(store, self.tracking)
        self.enforcement = TierEnforcementService(
            self.subscriptions,
            self.tracking,
            approaching_limit_percent=approaching_limit_percent,
        )

    @classmethod
    def from_config(cls, config: Optional[TierGateConfig] = None) -> "SubscriptionSystem":
        config = config or get_config()
        storage = config.storage

        if storage.backend == "sqlite":
            store = create_subscription_store(
                "sqlite",
                path=storage.sqlite_path,
                busy_timeout_ms=storage.busy_timeout_ms,
            )
        elif storage.backend == "postgresql":
            store = create_subscription_store(
                "postgresql",
                dsn=storage.dsn,
                min_size=storage.pool_min_size,
                max_size=storage.pool_max_size,
            )
        else:
            store = create_subscription_store("memory")

        if config.resources.backend == "postgresql":
            resources = create_resource_source(
                "postgresql",
                dsn=config.resource_dsn,
                accounts_table=config.resources.accounts_table,
                connections_table=config.resources.connections_table,
            )
        else:
            resources = create_resource_source("memory")

        logger.info(
            "Subscription system configured",
            storage_backend=storage.backend,
            resource_backend=config.resources.backend,
        )
        return cls(
            store,
            resources,
            approaching_limit_percent=config.enforcement.approaching_limit_percent,
        )

    async def start(self) -> None:
        await self.store.connect()
        await self.resources.connect()

    async def stop(self) -> None:
        await self.resources.disconnect()
        await self.store.disconnect()

    async def __aenter__(self) -> "SubscriptionSystem":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
