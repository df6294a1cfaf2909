"""Configuration module."""

from sharedUtils.config.loader import (
    config_path,
    get_config,
    get_typed_config,
    get_logging_config,
    get_collection_config,
    get_collectors_config,
    get_storage_config,
    get_diagnostics_config,
    load_config,
    reset_config_cache,
)
from sharedUtils.config.models import (
    KNOWN_COLLECTORS,
    AppConfig,
    CollectionConfig,
    CollectorsConfig,
    DiagnosticsConfig,
    LoggingConfig,
    StorageConfig,
)

__all__ = [
    'config_path',
    'get_config',
    'get_typed_config',
    'get_logging_config',
    'get_collection_config',
    'get_collectors_config',
    'get_storage_config',
    'get_diagnostics_config',
    'load_config',
    'reset_config_cache',
    'KNOWN_COLLECTORS',
    'AppConfig',
    'CollectionConfig',
    'CollectorsConfig',
    'DiagnosticsConfig',
    'LoggingConfig',
    'StorageConfig',
]
