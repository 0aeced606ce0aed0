"""
Tests for configuration, logging setup and system assembly.
"""

import json

import pytest
import structlog
from pydantic import ValidationError

from tiergate.core.config import (
    LogLevel,
    StorageConfig,
    TierGateConfig,
    get_config,
    reset_config,
    set_config,
)
from tiergate.core.logging import setup_logging
from tiergate.subscription import SubscriptionTier, UsageMetricType
from tiergate.subscription.resources import MemoryResourceSource
from tiergate.subscription.storage import MemorySubscriptionStore, SQLiteSubscriptionStore
from tiergate.subscription.system import SubscriptionSystem


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Isolate tests from ambient TIERGATE_ variables and the cached config."""
    import os

    for key in list(os.environ):
        if key.upper().startswith("TIERGATE_"):
            monkeypatch.delenv(key)
    reset_config()
    yield
    reset_config()


# =============================================================================
# Test Settings
# =============================================================================

class TestTierGateConfig:
    """Tests for TierGateConfig."""

    def test_defaults(self):
        config = TierGateConfig()

        assert config.environment == "development"
        assert config.storage.backend == "memory"
        assert config.resources.backend == "memory"
        assert config.enforcement.approaching_limit_percent == 80.0
        assert config.logging.level == LogLevel.INFO
        assert config.resource_dsn == config.storage.dsn

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("TIERGATE_ENVIRONMENT", "production")
        monkeypatch.setenv("TIERGATE_STORAGE__BACKEND", "sqlite")
        monkeypatch.setenv("TIERGATE_STORAGE__SQLITE_PATH", "/tmp/tg.db")
        monkeypatch.setenv("TIERGATE_ENFORCEMENT__APPROACHING_LIMIT_PERCENT", "90")
        monkeypatch.setenv("TIERGATE_RESOURCES__DSN", "postgresql://db/app")

        config = TierGateConfig()

        assert config.environment == "production"
        assert config.storage.backend == "sqlite"
        assert str(config.storage.sqlite_path) == "/tmp/tg.db"
        assert config.enforcement.approaching_limit_percent == 90.0
        assert config.resource_dsn == "postgresql://db/app"

    def test_invalid_backend(self):
        with pytest.raises(ValidationError):
            StorageConfig(backend="mongodb")

    def test_pool_bounds(self):
        with pytest.raises(ValidationError):
            StorageConfig(pool_min_size=20, pool_max_size=5)

    @pytest.mark.parametrize("percent", [0, -5, 150])
    def test_threshold_bounds(self, percent):
        with pytest.raises(ValidationError):
            TierGateConfig(enforcement={"approaching_limit_percent": percent})

    def test_table_names_are_validated(self):
        with pytest.raises(ValidationError):
            TierGateConfig(resources={"accounts_table": "accounts; DROP TABLE x"})

    def test_from_file(self, tmp_path):
        path = tmp_path / "tiergate.json"
        path.write_text(json.dumps({
            "storage": {"backend": "sqlite", "sqlite_path": str(tmp_path / "db.sqlite")},
            "logging": {"level": "DEBUG", "format": "console"},
        }))

        config = TierGateConfig.from_file(path)

        assert config.storage.backend == "sqlite"
        assert config.logging.level == LogLevel.DEBUG
        assert config.logging.format == "console"

    def test_from_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            TierGateConfig.from_file(tmp_path / "absent.json")

    def test_process_config(self):
        first = get_config()
        assert get_config() is first

        custom = TierGateConfig(environment="staging")
        set_config(custom)
        assert get_config() is custom

        reset_config()
        assert get_config() is not custom


# =============================================================================
# Test Logging
# =============================================================================

class TestLogging:
    """Tests for setup_logging."""

    @pytest.mark.parametrize("fmt", ["json", "console"])
    def test_setup_logging(self, fmt):
        setup_logging("DEBUG", fmt)
        try:
            assert structlog.is_configured()
            config = structlog.get_config()
            renderer = config["processors"][-1]
            expected = (
                structlog.dev.ConsoleRenderer
                if fmt == "console"
                else structlog.processors.JSONRenderer
            )
            assert isinstance(renderer, expected)
            structlog.get_logger("tiergate.test").info("Configured", fmt=fmt)
        finally:
            structlog.reset_defaults()


# =============================================================================
# Test System Assembly
# =============================================================================

class TestSubscriptionSystem:
    """Tests for SubscriptionSystem.from_config."""

    def test_memory_backends(self):
        system = SubscriptionSystem.from_config(TierGateConfig())

        assert isinstance(system.store, MemorySubscriptionStore)
        assert isinstance(system.resources, MemoryResourceSource)
        assert system.enforcement.approaching_limit_percent == 80.0

    def test_threshold_from_config(self):
        config = TierGateConfig(enforcement={"approaching_limit_percent": 65})

        system = SubscriptionSystem.from_config(config)

        assert system.enforcement.approaching_limit_percent == 65

    @pytest.mark.asyncio
    async def test_sqlite_round_trip(self, tmp_path):
        config = TierGateConfig(
            storage={"backend": "sqlite", "sqlite_path": str(tmp_path / "tiergate.db")}
        )

        async with SubscriptionSystem.from_config(config) as system:
            assert isinstance(system.store, SQLiteSubscriptionStore)

            await system.subscriptions.create_subscription("user-1", SubscriptionTier.GROWTH)
            await system.tracking.track_usage("user-1", UsageMetricType.API_CALLS, 3)
            metric = await system.tracking.get_usage_metric("user-1", UsageMetricType.API_CALLS)

        assert metric.current_value == 3
        assert (tmp_path / "tiergate.db").exists()
