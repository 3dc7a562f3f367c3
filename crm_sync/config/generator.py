"""
Configuration file generator for CRM contact synchronization.

Provides functionality to generate a default configuration file with
documentation for all available options.
"""

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Every option is commented out, so the generated file leaves the
    built-in defaults in effect until edited.

    Returns:
        String containing YAML configuration with comments
    """
    return """# CRM Contact Sync Configuration
# ==============================
#
# Default options for crm-sync. CLI arguments always override these values.
#
# To use this configuration:
#   1. Save as ~/.crm-sync/config.yaml (or set CRM_SYNC_CONFIG_DIR)
#   2. Uncomment and modify options as needed
#   3. Run crm-sync commands normally


# Sync Behavior
# -------------

# Which side is written during a run
# Options:
#   - to_remote: push local changes and new contacts to Google Contacts
#   - from_remote: pull remote edits into linked local contacts
#   - both: push first; pull only where nothing changed locally
# Default: both
# direction: both

# Key stored in Google Contacts clientData on contacts created by crm-sync
# Default: CRM_CONTACT
# source_tag_type: CRM_CONTACT

# Recreate local contacts from remote contacts whose tag names a local id
# that no longer exists (only when pulling). Off means such contacts are
# reported and skipped.
# Default: false
# adopt_orphans: false

# Refuse to push over a remote contact that changed since the last sync.
# Off means local edits overwrite remote edits.
# Default: false
# strict_version_check: false

# Seconds to wait when another sync for the same owner is running
# Default: 0 (fail immediately)
# lock_timeout: 0

# Local SQLite database file
# Default: ~/.crm-sync/contacts.db
# database_path: /path/to/contacts.db


# API Options
# -----------

# Contacts requested per page (1-1000)
# Default: 100
# api_page_size: 100

# Attempts per API call on rate limits and server errors
# Default: 5
# api_max_retries: 5

# Exponential backoff delays in seconds
# Default: 1.0 and 60.0
# api_initial_retry_delay: 1.0
# api_max_retry_delay: 60.0


# Daemon Options
# --------------

# Interval between runs in daemon mode (s, m, h, d suffixes)
# Default: 1h
# daemon_interval: 1h


# Logging Options
# ---------------

# Enable verbose output with detailed logging
# Default: false
# verbose: false

# Directory for log files
# Default: ~/.crm-sync/logs
# log_dir: /path/to/logs

# Number of daily log files to keep
# Default: 10
# log_retention_count: 10
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, Optional[str]]:
    """
    Save default configuration file to specified path.

    Creates parent directories if they don't exist and writes the file with
    owner-only permissions.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite existing file. If False, fail if file exists.

    Returns:
        (True, None) on success, (False, error_message) on failure
    """
    try:
        config_path = config_path.expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)
