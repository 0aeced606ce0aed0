"""
tiergate Configuration

Type-safe settings for the subscription core with:
- Environment-based configuration (TIERGATE_ prefix, "__" for nesting)
- Nested sections for storage, resource tables, enforcement and logging
- JSON file loading for deployments that ship a config file
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for tiergate."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageConfig(BaseModel):
    """Subscription and usage metric storage."""
    backend: Literal["memory", "sqlite", "postgresql"] = "memory"

    # SQLite
    sqlite_path: Path = Path("./data/tiergate.db")
    busy_timeout_ms: int = 5000

    # PostgreSQL
    dsn: str = "postgresql://localhost/tiergate"
    pool_min_size: int = 2
    pool_max_size: int = 10

    @model_validator(mode="after")
    def check_pool_bounds(self) -> "StorageConfig":
        if self.pool_min_size > self.pool_max_size:
            raise ValueError("pool_min_size must not exceed pool_max_size")
        return self


class ResourceConfig(BaseModel):
    """Read-only access to the account and connection tables."""
    backend: Literal["memory", "postgresql"] = "memory"
    dsn: Optional[str] = None  # falls back to storage.dsn
    accounts_table: str = "accounts"
    connections_table: str = "plaid_connections"

    @field_validator("accounts_table", "connections_table")
    @classmethod
    def check_identifier(cls, v: str) -> str:
        if not v.replace("_", "").replace(".", "").isalnum():
            raise ValueError(f"Invalid table name: {v}")
        return v


class EnforcementConfig(BaseModel):
    """Policy knobs for the enforcement layer."""
    approaching_limit_percent: float = 80.0

    @field_validator("approaching_limit_percent")
    @classmethod
    def check_percent(cls, v: float) -> float:
        if not 0 < v <= 100:
            raise ValueError("approaching_limit_percent must be in (0, 100]")
        return v


class LoggingConfig(BaseModel):
    """Structured logging output."""
    level: LogLevel = LogLevel.INFO
    format: Literal["json", "console"] = "json"


class TierGateConfig(BaseSettings):
    """
    Main tiergate configuration.

    Loads from environment variables and/or a JSON file. Variables are
    prefixed with TIERGATE_ (e.g. TIERGATE_STORAGE__BACKEND=sqlite).
    """

    environment: Literal["development", "staging", "production"] = "development"

    storage: StorageConfig = Field(default_factory=StorageConfig)
    resources: ResourceConfig = Field(default_factory=ResourceConfig)
    enforcement: EnforcementConfig = Field(default_factory=EnforcementConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {
        "env_prefix": "TIERGATE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @property
    def resource_dsn(self) -> str:
        """DSN used for the resource tables."""
        return self.resources.dsn or self.storage.dsn

    @classmethod
    def from_file(cls, config_path: Path) -> "TierGateConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data: dict[str, Any] = json.load(f)

        return cls(**config_data)


# Process configuration (lazy loaded)
_config: Optional[TierGateConfig] = None


def get_config() -> TierGateConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = TierGateConfig()
    return _config


def set_config(config: TierGateConfig) -> None:
    """Replace the process-wide configuration."""
    global _config
    _config = config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config
    _config = None
