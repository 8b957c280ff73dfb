"""
Configuration settings management for chatbackup.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.chatbackup/config.yaml by default, with the
path overridable via the CHATBACKUP_CONFIG environment variable.
"""

import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".chatbackup"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_TEMP_ROOT = Path(tempfile.gettempdir()) / "chatbackup"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class CompressionConfig:
    """Which files are compressed before encryption."""

    database_files: bool = True
    attachments: bool = False
    level: int = 6


@dataclass
class TransferConfig:
    """Upload/download settings."""

    max_workers: int = 1
    manifest_record_name: str = "manifest"


@dataclass
class Settings:
    """
    Complete chatbackup configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with CHATBACKUP_.

    Attributes:
        temp_root: Directory under which each job creates its staging directory.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        compression: Compression settings.
        transfer: Transfer settings.
    """

    temp_root: str = str(DEFAULT_TEMP_ROOT)
    log_level: str = "INFO"

    compression: CompressionConfig = field(default_factory=CompressionConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from CHATBACKUP_CONFIG environment variable if set,
    otherwise returns the default path (~/.chatbackup/config.yaml).
    """
    env_path = os.environ.get("CHATBACKUP_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses CHATBACKUP_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_data = _settings_to_dict(settings)

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def configure_logging(settings: Settings) -> None:
    """Configure root logging at the settings' log level."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("chatbackup") or {}

    if "temp_root" in general:
        settings.temp_root = str(general["temp_root"])
    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()

    try:
        compression = data.get("compression") or {}
        if "database_files" in compression:
            settings.compression.database_files = bool(compression["database_files"])
        if "attachments" in compression:
            settings.compression.attachments = bool(compression["attachments"])
        if "level" in compression:
            settings.compression.level = int(compression["level"])

        transfer = data.get("transfer") or {}
        if "max_workers" in transfer:
            settings.transfer.max_workers = int(transfer["max_workers"])
        if "manifest_record_name" in transfer:
            settings.transfer.manifest_record_name = str(transfer["manifest_record_name"])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value in config file: {e}") from e

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "CHATBACKUP_TEMP_ROOT": ("temp_root", str),
        "CHATBACKUP_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "CHATBACKUP_MAX_WORKERS": ("transfer.max_workers", int),
        "CHATBACKUP_MANIFEST_RECORD_NAME": ("transfer.manifest_record_name", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if not 0 <= settings.compression.level <= 9:
        raise ConfigurationError("compression level must be between 0 and 9")

    if settings.transfer.max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1")

    if not settings.transfer.manifest_record_name:
        raise ConfigurationError("manifest_record_name must not be empty")

    if not settings.temp_root:
        raise ConfigurationError("temp_root must not be empty")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "chatbackup": {
            "temp_root": settings.temp_root,
            "log_level": settings.log_level,
        },
        "compression": {
            "database_files": settings.compression.database_files,
            "attachments": settings.compression.attachments,
            "level": settings.compression.level,
        },
        "transfer": {
            "max_workers": settings.transfer.max_workers,
            "manifest_record_name": settings.transfer.manifest_record_name,
        },
    }
