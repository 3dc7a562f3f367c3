"""CLI package for crm_sync."""

from crm_sync.cli.formatters import (
    format_contact_line,
    format_last_run,
    show_planned_changes,
    show_problems,
)
from crm_sync.cli.main import (
    DEFAULT_CONFIG_FILE,
    DIRECTION_CHOICES,
    cli,
    get_config_dir,
    validate_owner,
)
from crm_sync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_CONFIG_FILE",
    "DIRECTION_CHOICES",
    "cli",
    "format_contact_line",
    "format_last_run",
    "get_config_dir",
    "show_planned_changes",
    "show_problems",
    "validate_owner",
]
