"""
Logging setup for the crm-sync command line.

Console output goes to stderr at the requested level. A dated log file
under the log directory records everything down to DEBUG, and old files
are pruned by cleanup_old_logs().
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "CRM_SYNC_LOG_LEVEL"
ENV_DEBUG = "CRM_SYNC_DEBUG"
ENV_LOG_FILE = "CRM_SYNC_LOG_FILE"

LOG_FILE_PREFIX = "crm_sync_"
ROOT_LOGGER_NAME = "crm_sync"

_LEVEL_NAMES = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level and message when stderr is a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        if not getattr(sys.stderr, "isatty", None) or not sys.stderr.isatty():
            return False
        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        # Other handlers must still see the plain record
        record = logging.makeLogRecord(record.__dict__)

        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color:
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Read the console level from the environment.

    CRM_SYNC_DEBUG set to a true value wins over CRM_SYNC_LOG_LEVEL. Unknown
    level names fall back to INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    level_name = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
    return _LEVEL_NAMES.get(level_name, logging.INFO)


def get_log_file_path(log_dir: Path) -> Optional[Path]:
    """
    Decide where the log file goes.

    CRM_SYNC_LOG_FILE names an explicit file, or disables file logging when
    set to "none", "disabled" or an empty string. Otherwise a file named
    after today's date is used inside log_dir.
    """
    override = os.environ.get(ENV_LOG_FILE)
    if override is not None:
        if override.lower() in ("none", "disabled", ""):
            return None
        return Path(override)

    return log_dir / f"{LOG_FILE_PREFIX}{datetime.now():%Y%m%d}.log"


def setup_logging(
    log_dir: Path,
    level: Optional[int] = None,
    verbose: bool = False,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the crm_sync logger hierarchy.

    Args:
        log_dir: Directory receiving the dated log file
        level: Console level; read from the environment when None
        verbose: Force DEBUG and include file and line in console output
        enable_file_logging: Attach the DEBUG file handler
        use_colors: Color console output when the terminal supports it

    Returns:
        The crm_sync root logger
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    # The file handler needs DEBUG records even when the console is quieter
    logger.setLevel(logging.DEBUG if enable_file_logging else level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    if use_colors:
        console.setFormatter(ColoredFormatter(console_format, DATE_FORMAT))
    else:
        console.setFormatter(logging.Formatter(console_format, DATE_FORMAT))
    logger.addHandler(console)

    file_path = get_log_file_path(log_dir) if enable_file_logging else None
    if file_path:
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(file_path, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not create log file {file_path}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
            logger.addHandler(file_handler)
            logger.debug(f"Log file: {file_path}")

    return logger


def cleanup_old_logs(log_dir: Path, keep_count: int = 10) -> int:
    """
    Delete all but the newest keep_count log files in log_dir.

    A keep_count of 0 or less keeps everything. Returns the number of files
    deleted.
    """
    if keep_count <= 0 or not log_dir.exists():
        return 0

    log_files = sorted(
        log_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )

    deleted = 0
    for old_log in log_files[keep_count:]:
        try:
            old_log.unlink()
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not delete {old_log}: {e}")
        else:
            deleted += 1

    return deleted


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the crm_sync hierarchy, prefixing foreign names."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


__all__ = [
    "setup_logging",
    "get_logger",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
]
