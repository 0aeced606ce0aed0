"""Configuration and logging shared by all tiergate subsystems."""

from tiergate.core.config import (
    TierGateConfig,
    StorageConfig,
    ResourceConfig,
    EnforcementConfig,
    LoggingConfig,
    LogLevel,
    get_config,
    set_config,
    reset_config,
)
from tiergate.core.logging import setup_logging

__all__ = [
    "TierGateConfig",
    "StorageConfig",
    "ResourceConfig",
    "EnforcementConfig",
    "LoggingConfig",
    "LogLevel",
    "get_config",
    "set_config",
    "reset_config",
    "setup_logging",
]
