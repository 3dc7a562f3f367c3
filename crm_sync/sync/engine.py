"""
Sync engine for reconciling a CRM owner's contacts with Google Contacts.

Orchestrates one run per owner: fetch both snapshots, resolve
cross-references, plan decisions, apply them one at a time, and summarize.
"""

import logging
import threading
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from crm_sync.api.directory_api import DirectoryAPI, DirectoryAPIError
from crm_sync.config.sync_config import SyncConfig
from crm_sync.storage.db import ContactStore, LocalStoreError
from crm_sync.sync.applier import ApplyResult, ChangeApplier, SyncOutcome
from crm_sync.sync.contact import LocalContact, RemoteContact, utc_now
from crm_sync.sync.planner import SyncDecision, SyncDirection, plan_changes
from crm_sync.sync.resolver import resolve

logger = logging.getLogger(__name__)


class FatalFetchError(Exception):
    """Raised when a snapshot cannot be fetched; nothing was written."""

    pass


class SyncInProgressError(Exception):
    """Raised when another run for the same owner holds the owner lock."""

    pass


class RunState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RESOLVING = "resolving"
    PLANNING = "planning"
    APPLYING = "applying"
    SUMMARIZING = "summarizing"
    DONE = "done"


@dataclass
class SyncStats:
    """
    Counters for one run.

    Every applied decision increments exactly one counter. cancelled is set
    when a cancellation request stopped the run before all decisions ran.
    """

    created: int = 0
    updated: int = 0
    skipped: int = 0
    unlinked: int = 0
    errors: int = 0
    cancelled: bool = False

    def record(self, outcome: SyncOutcome) -> None:
        if outcome is SyncOutcome.CREATED:
            self.created += 1
        elif outcome is SyncOutcome.UPDATED:
            self.updated += 1
        elif outcome is SyncOutcome.SKIPPED:
            self.skipped += 1
        elif outcome is SyncOutcome.UNLINKED:
            self.unlinked += 1
        else:
            self.errors += 1

    @property
    def total(self) -> int:
        return self.created + self.updated + self.skipped + self.unlinked + self.errors

    def as_dict(self) -> dict[str, Union[int, bool]]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "unlinked": self.unlinked,
            "errors": self.errors,
            "cancelled": self.cancelled,
        }


@dataclass
class SyncReport:
    """
    Result of a sync run.

    Attributes:
        owner_id: Owner the run was for
        direction: Direction the run used
        stats: Outcome counters
        results: One ApplyResult per applied decision, in order
        local_count: Records in the local snapshot
        remote_count: Records in the remote snapshot
        started_at: When fetching began
        finished_at: When summarizing finished
        dry_run: Whether changes were only reported
    """

    owner_id: str
    direction: SyncDirection
    stats: SyncStats = field(default_factory=SyncStats)
    results: list[ApplyResult] = field(default_factory=list)
    local_count: int = 0
    remote_count: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    dry_run: bool = False

    @property
    def failures(self) -> list[ApplyResult]:
        return [r for r in self.results if r.failed]

    @property
    def tag_mismatches(self) -> list[ApplyResult]:
        return [
            r
            for r in self.results
            if r.error_kind is not None and r.outcome is SyncOutcome.SKIPPED
        ]

    def summary(self) -> str:
        """
        Generate a human-readable summary of the run.

        Returns:
            Formatted multi-line summary
        """
        stats = self.stats
        header = "Dry run summary" if self.dry_run else "Sync summary"
        lines = [
            f"{header} for {self.owner_id} ({self.direction.value}):",
            f"  Local contacts: {self.local_count}",
            f"  Remote contacts: {self.remote_count}",
            f"  Created: {stats.created}",
            f"  Updated: {stats.updated}",
            f"  Skipped: {stats.skipped}",
            f"  Unlinked: {stats.unlinked}",
            f"  Errors: {stats.errors}",
        ]
        if stats.cancelled:
            lines.append("  Run was cancelled before all records were processed")
        return "\n".join(lines)


class OwnerLockRegistry:
    """
    In-process locks keyed by owner id.

    Runs for different owners proceed independently; a second run for the
    same owner waits up to the given timeout and then fails.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, owner_id: str) -> threading.Lock:
        with self._guard:
            if owner_id not in self._locks:
                self._locks[owner_id] = threading.Lock()
            return self._locks[owner_id]

    def is_locked(self, owner_id: str) -> bool:
        return self.lock_for(owner_id).locked()

    @contextmanager
    def hold(self, owner_id: str, timeout: float = 0) -> Generator[None, None, None]:
        """
        Hold the owner's lock for the duration of the block.

        Raises:
            SyncInProgressError: If the lock is not free within timeout seconds
        """
        lock = self.lock_for(owner_id)
        if timeout > 0:
            acquired = lock.acquire(timeout=timeout)
        else:
            acquired = lock.acquire(blocking=False)

        if not acquired:
            raise SyncInProgressError(f"A sync for owner {owner_id} is already running")

        try:
            yield
        finally:
            lock.release()


class SyncEngine:
    """
    Run coordinator for per-owner contact reconciliation.

    Usage:
        engine = SyncEngine(directory, store, config)

        report = engine.synchronize('alice', SyncDirection.BOTH)
        print(report.summary())

        # Preview without writing anything
        report = engine.synchronize('alice', dry_run=True)
    """

    def __init__(
        self,
        directory: DirectoryAPI,
        store: ContactStore,
        config: Optional[SyncConfig] = None,
        locks: Optional[OwnerLockRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the engine.

        Args:
            directory: Remote directory client
            store: Local contact store
            config: Sync settings (defaults if None)
            locks: Owner lock registry, shared between engines in one process
            clock: Source of the current time
        """
        self.directory = directory
        self.store = store
        self.config = config or SyncConfig()
        self.locks = locks or OwnerLockRegistry()
        self.clock = clock
        self.applier = ChangeApplier(
            directory,
            store,
            source_type=self.config.source_tag_type,
            strict_version_check=self.config.strict_version_check,
            clock=clock,
        )
        self._states: dict[str, RunState] = {}

    def state_for(self, owner_id: str) -> RunState:
        """Get the current state of the owner's run."""
        return self._states.get(owner_id, RunState.IDLE)

    def _enter(self, owner_id: str, state: RunState) -> None:
        self._states[owner_id] = state
        logger.debug(f"[{owner_id}] {state.value}")

    def _fetch(self, owner_id: str) -> tuple[list[LocalContact], list[RemoteContact]]:
        """
        Fetch both snapshots for an owner.

        Raises:
            FatalFetchError: If either side cannot be read
        """
        try:
            local_contacts = self.store.list_by_owner(owner_id)
        except LocalStoreError as e:
            raise FatalFetchError(
                f"Could not read local contacts for {owner_id}: {e}"
            ) from e

        try:
            remote_contacts = list(self.directory.iter_contacts(owner_id))
        except DirectoryAPIError as e:
            raise FatalFetchError(
                f"Could not fetch remote contacts for {owner_id}: {e}"
            ) from e

        logger.info(
            f"Fetched {len(local_contacts)} local and "
            f"{len(remote_contacts)} remote contacts for {owner_id}"
        )
        return local_contacts, remote_contacts

    def _plan(
        self,
        owner_id: str,
        direction: SyncDirection,
        local_contacts: list[LocalContact],
        remote_contacts: list[RemoteContact],
    ) -> list[SyncDecision]:
        self._enter(owner_id, RunState.RESOLVING)
        resolution = resolve(
            local_contacts, remote_contacts, source_type=self.config.source_tag_type
        )
        logger.info(f"Resolved {owner_id}: {resolution.summary()}")

        self._enter(owner_id, RunState.PLANNING)
        return plan_changes(
            resolution, direction, adopt_orphans=self.config.adopt_orphans
        )

    def plan(
        self,
        owner_id: str,
        direction: Union[SyncDirection, str, None] = None,
    ) -> list[SyncDecision]:
        """
        Fetch, resolve and plan without applying anything.

        Raises:
            FatalFetchError: If a snapshot cannot be fetched
        """
        run_direction = SyncDirection.parse(direction or self.config.direction)
        try:
            self._enter(owner_id, RunState.FETCHING)
            local_contacts, remote_contacts = self._fetch(owner_id)
            return self._plan(owner_id, run_direction, local_contacts, remote_contacts)
        finally:
            self._enter(owner_id, RunState.IDLE)

    def synchronize(
        self,
        owner_id: str,
        direction: Union[SyncDirection, str, None] = None,
        cancel_event: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> SyncReport:
        """
        Reconcile one owner's local and remote contacts.

        Args:
            owner_id: Owner to synchronize
            direction: Run direction (defaults to the configured direction)
            cancel_event: When set, the run stops before the next record
            dry_run: Plan and report without writing anything

        Returns:
            SyncReport with counters and per-record results

        Raises:
            SyncInProgressError: If a run for the owner is already active
            FatalFetchError: If a snapshot cannot be fetched
        """
        run_direction = SyncDirection.parse(direction or self.config.direction)

        with self.locks.hold(owner_id, timeout=self.config.lock_timeout):
            try:
                return self._run(owner_id, run_direction, cancel_event, dry_run)
            finally:
                self._enter(owner_id, RunState.IDLE)

    def _run(
        self,
        owner_id: str,
        direction: SyncDirection,
        cancel_event: Optional[threading.Event],
        dry_run: bool,
    ) -> SyncReport:
        report = SyncReport(
            owner_id=owner_id,
            direction=direction,
            started_at=self.clock(),
            dry_run=dry_run,
        )
        logger.info(
            f"Starting sync for {owner_id} "
            f"(direction={direction.value}, dry_run={dry_run})"
        )

        self._enter(owner_id, RunState.FETCHING)
        local_contacts, remote_contacts = self._fetch(owner_id)
        report.local_count = len(local_contacts)
        report.remote_count = len(remote_contacts)

        decisions = self._plan(owner_id, direction, local_contacts, remote_contacts)

        self._enter(owner_id, RunState.APPLYING)
        for decision in decisions:
            if cancel_event is not None and cancel_event.is_set():
                report.stats.cancelled = True
                logger.warning(
                    f"Sync for {owner_id} cancelled with "
                    f"{len(decisions) - len(report.results)} records not processed"
                )
                break
            result = self.applier.apply(owner_id, decision, dry_run=dry_run)
            report.results.append(result)
            report.stats.record(result.outcome)

        self._enter(owner_id, RunState.SUMMARIZING)
        report.finished_at = self.clock()
        self._record_run(report)

        self._enter(owner_id, RunState.DONE)
        stats = report.stats
        logger.info(
            f"Sync for {owner_id} finished: {stats.created} created, "
            f"{stats.updated} updated, {stats.skipped} skipped, "
            f"{stats.unlinked} unlinked, {stats.errors} errors"
        )
        return report

    def _record_run(self, report: SyncReport) -> None:
        """Store the run in history; a failure here does not fail the run."""
        finished_at = report.finished_at or self.clock()
        started_at = report.started_at or finished_at
        try:
            self.store.record_run(
                owner_id=report.owner_id,
                direction=report.direction.value,
                started_at=started_at,
                finished_at=finished_at,
                stats=report.stats.as_dict(),
                dry_run=report.dry_run,
            )
        except LocalStoreError as e:
            logger.warning(f"Could not record sync run for {report.owner_id}: {e}")
