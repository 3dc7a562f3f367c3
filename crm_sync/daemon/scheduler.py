"""
Daemon scheduler for periodic contact synchronization.

Provides a DaemonScheduler class that manages:
- Scheduled sync runs at a configurable interval
- Signal handling for graceful shutdown (SIGTERM/SIGINT)
- A stop event that also cancels an in-flight run between records
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)

# Callback signature: receives the stop event, returns True on success
SyncCallback = Callable[[threading.Event], bool]


@dataclass
class DaemonStats:
    """
    Statistics from daemon operation.

    Tracks daemon uptime and sync cycle information.
    """

    started_at: datetime = field(default_factory=datetime.now)
    sync_count: int = 0
    sync_success_count: int = 0
    sync_error_count: int = 0
    last_sync_at: datetime | None = None
    last_sync_success: bool = False
    last_error: str | None = None


class DaemonScheduler:
    """
    Runs a sync callback every interval seconds until asked to stop.

    The stop event is handed to the callback so a shutdown signal received
    mid-run cancels the run before its next record.

    Usage:
        scheduler = DaemonScheduler(interval=3600)

        def sync_once(stop):
            report = engine.synchronize("alice", cancel_event=stop)
            return report.stats.errors == 0

        scheduler.set_sync_callback(sync_once)

        # Blocks until SIGINT/SIGTERM
        scheduler.run()

    Attributes:
        interval: Sync interval in seconds
        stats: Daemon statistics
    """

    def __init__(
        self,
        interval: int = 3600,
        run_immediately: bool = True,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize the daemon scheduler.

        Args:
            interval: Sync interval in seconds (default: 3600 = 1 hour)
            run_immediately: Run a sync on start before waiting for the interval
            install_signal_handlers: Handle SIGTERM/SIGINT while running
                (only possible from the main thread)
        """
        self.interval = interval
        self.run_immediately = run_immediately
        self.install_signal_handlers = install_signal_handlers
        self.stop_event = threading.Event()
        self.stats = DaemonStats()
        self._sync_callback: SyncCallback | None = None
        self._running = False
        self._original_handlers: dict[int, object] = {}

    def set_sync_callback(self, callback: SyncCallback) -> None:
        """
        Set the function executed for each sync cycle.

        Args:
            callback: Receives the stop event; returns True on success,
                False on failure.
        """
        self._sync_callback = callback

    def _setup_signal_handlers(self) -> None:
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(
                signum, self._signal_handler
            )
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
        self._original_handlers.clear()
        logger.debug("Signal handlers restored")

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        self.stop_event.set()

    def _run_sync(self) -> bool:
        """
        Execute the sync callback and update statistics.

        Returns:
            True if sync succeeded, False otherwise.
        """
        if self._sync_callback is None:
            logger.warning("No sync callback configured, skipping sync")
            return False

        self.stats.sync_count += 1
        self.stats.last_sync_at = datetime.now()

        try:
            logger.info(f"Starting sync (cycle #{self.stats.sync_count})")
            success = self._sync_callback(self.stop_event)
        except Exception as e:
            self.stats.sync_error_count += 1
            self.stats.last_sync_success = False
            self.stats.last_error = str(e)
            logger.error(f"Sync failed with exception: {e}")
            return False

        self.stats.last_sync_success = success
        if success:
            self.stats.sync_success_count += 1
            self.stats.last_error = None
            logger.info("Sync completed successfully")
        else:
            self.stats.sync_error_count += 1
            logger.warning("Sync completed with errors")
        return success

    def _sleep_interruptible(self, seconds: float) -> bool:
        """
        Wait for the given duration unless stopped first.

        Uses wall-clock time so a run that was due while the machine was
        suspended happens right after wake.

        Returns:
            True if the wait completed, False if a stop was requested.
        """
        end_time = time.time() + seconds
        while not self.stop_event.is_set():
            remaining = end_time - time.time()
            if remaining <= 0:
                break
            self.stop_event.wait(min(1.0, remaining))

        return not self.stop_event.is_set()

    def run(self) -> None:
        """
        Run the scheduler loop.

        Blocks until stop() is called or a shutdown signal is received.
        """
        logger.info(f"Starting daemon scheduler (interval: {self.interval}s)")

        if self.install_signal_handlers:
            self._setup_signal_handlers()

        self._running = True
        self.stop_event.clear()
        self.stats = DaemonStats()

        try:
            if self.run_immediately:
                self._run_sync()

            while not self.stop_event.is_set():
                logger.debug(f"Sleeping for {self.interval} seconds until next sync")
                if not self._sleep_interruptible(self.interval):
                    break
                self._run_sync()

        finally:
            self._running = False
            if self.install_signal_handlers:
                self._restore_signal_handlers()
            logger.info(
                f"Daemon scheduler stopped after {self.stats.sync_count} cycles "
                f"({self.stats.sync_error_count} with errors)"
            )

    def stop(self) -> None:
        """
        Request shutdown.

        Safe to call from the sync callback or another thread.
        """
        logger.info("Stop requested")
        self.stop_event.set()

    def is_running(self) -> bool:
        return self._running


__all__ = ["DaemonScheduler", "DaemonStats", "SyncCallback"]
