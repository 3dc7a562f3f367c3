"""
crm_sync.daemon - Periodic sync module

Runs sync cycles on an interval with signal-driven shutdown.
"""

import re
from typing import Union

from crm_sync.daemon.scheduler import DaemonScheduler, DaemonStats, SyncCallback

INTERVAL_MULTIPLIERS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_interval(interval: Union[str, int]) -> int:
    """Parse an interval string into seconds.

    Accepts interval strings with units (s, m, h, d) or plain integers.

    Args:
        interval: Interval specification. Examples:
            - "30s" -> 30 seconds
            - "5m" -> 300 seconds
            - "1h" -> 3600 seconds
            - "1d" -> 86400 seconds
            - 3600 or "3600" -> 3600 seconds

    Returns:
        Interval in seconds (always positive).

    Raises:
        ValueError: If the interval is malformed, uses an unknown unit, or is
            not positive.
    """
    if isinstance(interval, bool):
        raise ValueError("Invalid interval type: bool. Expected str or int.")

    if isinstance(interval, int):
        seconds = interval
    elif isinstance(interval, str):
        text = interval.lower().strip()
        if text.isdigit():
            seconds = int(text)
        else:
            match = re.match(r"^(\d+)\s*([smhd])$", text)
            if not match:
                raise ValueError(
                    f"Invalid interval format: '{interval}'. "
                    "Use format like '30s', '5m', '1h', or '1d'."
                )
            seconds = int(match.group(1)) * INTERVAL_MULTIPLIERS[match.group(2)]
    else:
        raise ValueError(
            f"Invalid interval type: {type(interval).__name__}. Expected str or int."
        )

    if seconds <= 0:
        raise ValueError(f"Interval must be positive, got {interval!r}")
    return seconds


__all__ = ["parse_interval", "DaemonScheduler", "DaemonStats", "SyncCallback"]
