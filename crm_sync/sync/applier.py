"""
Change application for planned sync decisions.

Executes one SyncDecision against the remote directory and the local store.
Failures are classified and returned, never raised, so one bad record does
not stop the rest of the run.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, TypeVar

from crm_sync.api.directory_api import (
    DirectoryAPI,
    DirectoryAPIError,
    VersionConflictError,
)
from crm_sync.storage.db import ContactStore, LocalStoreError
from crm_sync.sync.contact import (
    DEFAULT_SOURCE_TYPE,
    LocalContact,
    RemoteContact,
    SourceTag,
    ensure_utc,
    utc_now,
)
from crm_sync.sync.planner import ErrorKind, SyncAction, SyncDecision

logger = logging.getLogger(__name__)


class SyncOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    UNLINKED = "unlinked"
    FAILED = "failed"


# Outcome reported when an action succeeds (or would, in a dry run)
PLANNED_OUTCOMES = {
    SyncAction.CREATE_REMOTE: SyncOutcome.CREATED,
    SyncAction.CREATE_LOCAL: SyncOutcome.CREATED,
    SyncAction.UPDATE_REMOTE: SyncOutcome.UPDATED,
    SyncAction.UPDATE_LOCAL: SyncOutcome.UPDATED,
    SyncAction.LINK: SyncOutcome.UPDATED,
    SyncAction.UNLINK: SyncOutcome.UNLINKED,
    SyncAction.SKIP: SyncOutcome.SKIPPED,
}


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying one decision."""

    decision: SyncDecision
    outcome: SyncOutcome
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.outcome is SyncOutcome.FAILED


T = TypeVar("T")


def _require(value: Optional[T], name: str) -> T:
    if value is None:
        raise ValueError(f"Decision is missing its {name}")
    return value


class _RecordFailure(Exception):
    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class _RecordSkipped(_RecordFailure):
    pass


class ChangeApplier:
    """
    Applies sync decisions for one owner at a time.

    Link columns are written only after the remote call they describe has
    succeeded.

    Usage:
        applier = ChangeApplier(directory, store)
        result = applier.apply('alice', decision)
        if result.failed:
            print(result.error_kind, result.message)
    """

    def __init__(
        self,
        directory: DirectoryAPI,
        store: ContactStore,
        source_type: str = DEFAULT_SOURCE_TYPE,
        strict_version_check: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the applier.

        Args:
            directory: Remote directory client
            store: Local contact store
            source_type: Source tag type written on created remote records
            strict_version_check: Fail updates whose stored etag no longer
                matches the remote snapshot instead of overwriting
            clock: Source of the current time
        """
        self.directory = directory
        self.store = store
        self.source_type = source_type
        self.strict_version_check = strict_version_check
        self.clock = clock

    def _synced_at(self, local: Optional[LocalContact] = None) -> datetime:
        """Sync timestamp that is never earlier than the record's updated_at."""
        now = self.clock()
        if local is not None and local.updated_at is not None:
            return max(now, ensure_utc(local.updated_at) or now)
        return now

    def apply(
        self, owner_id: str, decision: SyncDecision, dry_run: bool = False
    ) -> ApplyResult:
        """
        Apply a single decision.

        Args:
            owner_id: Owner the decision belongs to
            decision: Decision from the planner
            dry_run: Report the planned outcome without changing anything

        Returns:
            ApplyResult; per-record failures have outcome FAILED
        """
        planned = PLANNED_OUTCOMES[decision.action]

        if decision.action is SyncAction.SKIP:
            if decision.error_kind is not None:
                logger.warning(
                    f"Skipping {decision.subject}: {decision.reason} "
                    f"[{decision.error_kind.value}]"
                )
            return ApplyResult(
                decision, SyncOutcome.SKIPPED, decision.error_kind, decision.reason
            )

        if dry_run:
            logger.info(f"[dry run] would {decision.action.value} {decision.subject}")
            return ApplyResult(decision, planned, message=f"dry run: {decision.reason}")

        try:
            message = self._execute(owner_id, decision)
        except _RecordSkipped as e:
            logger.warning(f"Skipping {decision.subject}: {e} [{e.kind.value}]")
            return ApplyResult(decision, SyncOutcome.SKIPPED, e.kind, str(e))
        except _RecordFailure as e:
            return self._failed(decision, e.kind, str(e))
        except VersionConflictError as e:
            return self._failed(decision, ErrorKind.VERSION_CONFLICT, str(e))
        except DirectoryAPIError as e:
            return self._failed(decision, ErrorKind.TRANSPORT_ERROR, str(e))
        except LocalStoreError as e:
            return self._failed(decision, ErrorKind.LOCAL_STORE_ERROR, str(e))

        logger.debug(f"{decision.action.value} {decision.subject}: {message}")
        return ApplyResult(decision, planned, message=message)

    def _failed(
        self, decision: SyncDecision, kind: ErrorKind, message: str
    ) -> ApplyResult:
        logger.warning(
            f"Failed to {decision.action.value} {decision.subject} "
            f"[{kind.value}]: {message}"
        )
        return ApplyResult(decision, SyncOutcome.FAILED, kind, message)

    def _execute(self, owner_id: str, decision: SyncDecision) -> str:
        action = decision.action
        local, remote = decision.local, decision.remote

        if action is SyncAction.CREATE_REMOTE:
            return self._create_remote(owner_id, _require(local, "local"))
        if action is SyncAction.UPDATE_REMOTE:
            return self._update_remote(
                owner_id, _require(local, "local"), _require(remote, "remote")
            )
        if action is SyncAction.CREATE_LOCAL:
            seed_id = _require(decision.seed_local_id, "seed_local_id")
            return self._create_local(owner_id, seed_id, _require(remote, "remote"))
        if action is SyncAction.UPDATE_LOCAL:
            return self._update_local(
                _require(local, "local"), _require(remote, "remote")
            )
        if action is SyncAction.LINK:
            return self._link(_require(local, "local"), _require(remote, "remote"))
        if action is SyncAction.UNLINK:
            return self._unlink(_require(local, "local"))

        raise ValueError(f"Unsupported action: {action}")

    def _create_remote(self, owner_id: str, local: LocalContact) -> str:
        tag = SourceTag(self.source_type, local.id)
        created = self.directory.create_contact(owner_id, local.fields, tag)
        self.store.set_cross_reference(
            local.id, created.resource_id, created.version_tag, self._synced_at(local)
        )
        return f"created {created.resource_id}"

    def _update_remote(
        self, owner_id: str, local: LocalContact, remote: RemoteContact
    ) -> str:
        same_record = local.remote_resource_id == remote.resource_id
        if (
            self.strict_version_check
            and same_record
            and local.remote_version_tag != remote.version_tag
        ):
            raise _RecordFailure(
                ErrorKind.VERSION_CONFLICT,
                f"{remote.resource_id} changed remotely since last sync "
                f"(stored {local.remote_version_tag!r}, "
                f"current {remote.version_tag!r})",
            )

        updated = self.directory.update_contact(
            owner_id, remote.resource_id, local.fields, remote.version_tag
        )
        self.store.set_cross_reference(
            local.id,
            updated.resource_id or remote.resource_id,
            updated.version_tag,
            self._synced_at(local),
        )
        return f"pushed to {remote.resource_id}"

    def _create_local(self, owner_id: str, local_id: str, remote: RemoteContact) -> str:
        existing = self.store.get_contact(local_id)
        if existing is not None:
            # The snapshot only holds this owner's rows
            raise _RecordSkipped(
                ErrorKind.ORPHAN_TAG_MISMATCH,
                f"tag names local id {local_id!r}, already stored for "
                f"owner {existing.owner_id!r}",
            )
        fields = remote.fields.cleaned()
        now = self._synced_at()
        contact = LocalContact(
            id=local_id,
            owner_id=owner_id,
            first_name=fields.first_name,
            last_name=fields.last_name,
            email=fields.email,
            phone=fields.phone,
            created_at=now,
            updated_at=now,
            remote_resource_id=remote.resource_id,
            remote_version_tag=remote.version_tag,
            last_synced_at=now,
        )
        self.store.upsert(contact)
        return f"created from {remote.resource_id}"

    def _update_local(self, local: LocalContact, remote: RemoteContact) -> str:
        synced_at = self._synced_at(local)
        updated = local.with_fields(remote.fields.cleaned())
        updated.updated_at = synced_at
        updated.remote_resource_id = remote.resource_id
        updated.remote_version_tag = remote.version_tag
        updated.last_synced_at = synced_at
        self.store.upsert(updated)
        return f"pulled from {remote.resource_id}"

    def _link(self, local: LocalContact, remote: RemoteContact) -> str:
        self.store.set_cross_reference(
            local.id, remote.resource_id, remote.version_tag, self._synced_at(local)
        )
        return f"linked to {remote.resource_id}"

    def _unlink(self, local: LocalContact) -> str:
        self.store.clear_cross_reference(local.id)
        return f"cleared link to {local.remote_resource_id}"
