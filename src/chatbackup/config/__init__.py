"""
Configuration management for chatbackup.

This module handles loading, validating, and saving configuration settings.
"""

from chatbackup.config.settings import (
    CompressionConfig,
    ConfigurationError,
    Settings,
    TransferConfig,
    configure_logging,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "CompressionConfig",
    "TransferConfig",
    "load_config",
    "save_config",
    "configure_logging",
    "ConfigurationError",
]
