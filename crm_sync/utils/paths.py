"""
Where crm-sync keeps its configuration, tokens, database and logs.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".crm-sync"
CONFIG_DIR_ENV_VAR = "CRM_SYNC_CONFIG_DIR"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Pick the configuration directory.

    An explicit config_dir wins, then a non-empty CRM_SYNC_CONFIG_DIR, then
    ~/.crm-sync. The result is user-expanded and absolute.
    """
    chosen = (
        config_dir if config_dir is not None else os.environ.get(CONFIG_DIR_ENV_VAR)
    )
    return Path(chosen or DEFAULT_CONFIG_DIR).expanduser().resolve()
