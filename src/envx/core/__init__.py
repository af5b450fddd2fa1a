"""
Core Layer - Configuration and logging setup.
"""

from envx.core.config import (
    EnvxConfig,
    HistoryConfig,
    LoggingConfig,
    StorageConfig,
    configure_logging,
    load_config,
)

__all__ = [
    "EnvxConfig",
    "StorageConfig",
    "HistoryConfig",
    "LoggingConfig",
    "configure_logging",
    "load_config",
]
