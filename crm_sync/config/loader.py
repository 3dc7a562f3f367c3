"""
Configuration loader module for CRM contact synchronization.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Validation of key types and value ranges
"""

import logging
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from crm_sync.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

VALID_DIRECTIONS = ("to_remote", "from_remote", "both")

# Recognized configuration keys and their expected types
VALID_KEYS: dict[str, Union[type, tuple[type, ...]]] = {
    # Sync behavior
    "direction": str,
    "source_tag_type": str,
    "adopt_orphans": bool,
    "strict_version_check": bool,
    "lock_timeout": (int, float),
    "database_path": str,
    # API options
    "api_page_size": int,
    "api_max_retries": int,
    "api_initial_retry_delay": (int, float),
    "api_max_retry_delay": (int, float),
    # Daemon options
    "daemon_interval": (str, int),
    # Logging options
    "verbose": bool,
    "log_dir": str,
    "log_retention_count": int,
}

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def _type_name(expected: Union[type, tuple[type, ...]]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()

        # Load from specific file
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        config_file: str = DEFAULT_CONFIG_FILE,
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.crm-sync/ or $CRM_SYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Configuration values, or an empty dict if the file doesn't exist

        Raises:
            ConfigError: If the file exists but cannot be parsed
        """
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Union[Path, str]) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            path: Path to the configuration file

        Returns:
            Configuration values, or an empty dict if the file doesn't exist

        Raises:
            ConfigError: If the file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration types and values.

        Unknown keys are logged and ignored.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key not in VALID_KEYS:
                logger.warning(f"Ignoring unknown configuration key '{key}'")
                continue

            expected_type = VALID_KEYS[key]
            # bool is an int subclass; only accept it where bool is expected
            is_bool_for_number = isinstance(value, bool) and expected_type is not bool
            if not isinstance(value, expected_type) or is_bool_for_number:
                raise ConfigError(
                    f"Invalid type for '{key}': expected {_type_name(expected_type)}, "
                    f"got {type(value).__name__}"
                )

        if "direction" in config:
            direction = config["direction"].strip().lower().replace("-", "_")
            if direction not in VALID_DIRECTIONS:
                raise ConfigError(
                    f"Invalid direction '{config['direction']}'. "
                    f"Must be one of: {', '.join(VALID_DIRECTIONS)}"
                )

        if "source_tag_type" in config and not config["source_tag_type"].strip():
            raise ConfigError("source_tag_type cannot be empty")

        positive_int_keys = ["api_page_size", "api_max_retries", "log_retention_count"]
        for key in positive_int_keys:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        if "api_page_size" in config and config["api_page_size"] > 1000:
            raise ConfigError(
                f"api_page_size must be <= 1000, got {config['api_page_size']}"
            )

        positive_float_keys = ["api_initial_retry_delay", "api_max_retry_delay"]
        for key in positive_float_keys:
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        if "lock_timeout" in config and config["lock_timeout"] < 0:
            raise ConfigError(
                f"lock_timeout must be >= 0, got {config['lock_timeout']}"
            )

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
