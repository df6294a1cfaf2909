"""Configuration loader with lazy singleton pattern."""

import os
from typing import Dict, Any, Optional
import tomllib
from pathlib import Path
from dotenv import load_dotenv
from sharedUtils.logger.logger import get_logger
from sharedUtils.config.models import (
    AppConfig,
    CollectionConfig,
    CollectorsConfig,
    DiagnosticsConfig,
    LoggingConfig,
    StorageConfig,
)

logger = get_logger(__name__)

CONFIG_ENV_VAR = "SQLMON_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.toml"

# Global config cache (singleton)
_CONFIG_CACHE: Optional[Dict[str, Any]] = None
_TYPED_CONFIG_CACHE: Optional[AppConfig] = None


def config_path() -> Path:
    """Config file in use: $SQLMON_CONFIG, else the packaged config.toml."""
    override = os.environ.get(CONFIG_ENV_VAR)
    return Path(override) if override else DEFAULT_CONFIG_PATH


def read_config_file(path: Path) -> Dict[str, Any]:
    """
    Read a TOML config file, expanding ${VAR} references in source URLs.

    Variables come from the process environment, after a .env file (if any)
    has been loaded.

    Raises:
        FileNotFoundError: If config file doesn't exist
    """
    logger.debug("Loading config from: %s", path)

    if not path.exists():
        logger.error("Config file not found: %s", path)
        raise FileNotFoundError(f"Configuration file not found: {path}")

    load_dotenv()

    with open(path, "rb") as f:
        config = tomllib.load(f)

    for source in config.get("sources", []):
        if "url" in source:
            source["url"] = os.path.expandvars(source["url"])

    return config


def load_config(path: Path) -> AppConfig:
    """Build a validated AppConfig from an explicit file, bypassing the cache."""
    return AppConfig(**read_config_file(Path(path)))


def get_config() -> Dict[str, Any]:
    """
    Get configuration dictionary (lazy-loaded singleton).

    Loads config on first access and caches it for subsequent calls.

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If config file doesn't exist
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE is None:
        _CONFIG_CACHE = read_config_file(config_path())
        logger.debug("Configuration loaded successfully")

    return _CONFIG_CACHE


def get_typed_config() -> AppConfig:
    """
    Get typed configuration (lazy-loaded singleton with validation).

    Returns:
        Validated AppConfig instance with type-safe access

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValidationError: If config doesn't match expected schema
    """
    global _TYPED_CONFIG_CACHE

    if _TYPED_CONFIG_CACHE is None:
        config_dict = get_config()  # Reuse dict loading logic
        _TYPED_CONFIG_CACHE = AppConfig(**config_dict)
        logger.debug("Configuration validated with Pydantic models")

    return _TYPED_CONFIG_CACHE


def reset_config_cache() -> None:
    """Forget cached configuration so the next access reloads it."""
    global _CONFIG_CACHE, _TYPED_CONFIG_CACHE
    _CONFIG_CACHE = None
    _TYPED_CONFIG_CACHE = None


def get_logging_config() -> LoggingConfig:
    """Get typed logging configuration section."""
    return get_typed_config().logging


def get_collection_config() -> CollectionConfig:
    """Get typed collection cycle configuration section."""
    return get_typed_config().collection


def get_collectors_config() -> CollectorsConfig:
    """Get typed collector configuration section."""
    return get_typed_config().collectors


def get_storage_config() -> StorageConfig:
    """Get typed storage configuration section."""
    return get_typed_config().storage


def get_diagnostics_config() -> DiagnosticsConfig:
    """Get typed diagnostics configuration section."""
    return get_typed_config().diagnostics
