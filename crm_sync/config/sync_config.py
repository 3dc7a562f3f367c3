"""
Typed sync settings.

Maps the validated configuration dictionary onto a SyncConfig dataclass
that the engine, the directory client and the daemon consume.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from crm_sync.config.loader import ConfigError
from crm_sync.sync.contact import DEFAULT_SOURCE_TYPE
from crm_sync.sync.planner import SyncDirection
from crm_sync.utils.paths import resolve_config_dir

logger = logging.getLogger(__name__)

# Default database file name inside the configuration directory
DEFAULT_DATABASE_FILE = "contacts.db"

DEFAULT_DAEMON_INTERVAL = "1h"


class SyncConfigError(ConfigError):
    """Raised when configuration values cannot be mapped to SyncConfig."""

    pass


@dataclass
class SyncConfig:
    """
    Settings for sync runs.

    Attributes:
        direction: Default run direction
        source_tag_type: Source tag type marking records created from the CRM
        adopt_orphans: Create local records for remote records whose tag
            names an unknown local id (only when pulling)
        strict_version_check: Fail pushes when the remote record changed since
            the last sync instead of overwriting it
        lock_timeout: Seconds to wait for another run of the same owner
            (0 fails immediately)
        database_path: Local SQLite file (default: <config dir>/contacts.db)
        api_page_size: Contacts per page when listing
        api_max_retries: Attempts per API call
        api_initial_retry_delay: First backoff delay in seconds
        api_max_retry_delay: Backoff ceiling in seconds
        daemon_interval: Interval between daemon runs ("30m", "1h", 3600)
        verbose: Verbose logging
        log_dir: Directory for log files
        log_retention_count: Number of log files to keep
    """

    direction: SyncDirection = SyncDirection.BOTH
    source_tag_type: str = DEFAULT_SOURCE_TYPE
    adopt_orphans: bool = False
    strict_version_check: bool = False
    lock_timeout: float = 0.0
    database_path: str | None = None
    api_page_size: int = 100
    api_max_retries: int = 5
    api_initial_retry_delay: float = 1.0
    api_max_retry_delay: float = 60.0
    daemon_interval: str | int = DEFAULT_DAEMON_INTERVAL
    verbose: bool = False
    log_dir: str | None = None
    log_retention_count: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SyncConfig:
        """
        Create SyncConfig from a configuration dictionary.

        Keys that are not SyncConfig fields are ignored.

        Raises:
            SyncConfigError: If the direction is not recognized
        """
        if not data:
            return cls()

        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}

        if "direction" in values:
            try:
                values["direction"] = SyncDirection.parse(values["direction"])
            except ValueError as e:
                raise SyncConfigError(str(e)) from e

        return cls(**values)

    def with_overrides(self, **overrides: Any) -> SyncConfig:
        """
        Return a copy with non-None overrides applied.

        Used to layer CLI options over file values.
        """
        values = {key: value for key, value in overrides.items() if value is not None}
        if "direction" in values:
            values["direction"] = SyncDirection.parse(values["direction"])
        return replace(self, **values)

    def resolve_database_path(self, config_dir: Path | None = None) -> Path:
        """Get the database file path, defaulting to the configuration directory."""
        if self.database_path:
            return Path(self.database_path).expanduser()
        return resolve_config_dir(config_dir) / DEFAULT_DATABASE_FILE

    def resolve_log_dir(self) -> Path | None:
        return Path(self.log_dir).expanduser() if self.log_dir else None
