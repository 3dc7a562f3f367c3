"""
crm_sync.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from crm_sync.config.generator import generate_default_config, save_config_file
from crm_sync.config.loader import ConfigError, ConfigLoader
from crm_sync.config.sync_config import SyncConfig, SyncConfigError

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "SyncConfig",
    "SyncConfigError",
    "generate_default_config",
    "save_config_file",
]
