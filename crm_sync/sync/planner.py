"""
Reconciliation planning.

Turns a Resolution into one SyncDecision per record, according to the run's
direction. Local changes take precedence: a linked record changed locally
since its last sync is pushed, and nothing is pulled for it in the same run.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from crm_sync.sync.contact import LocalContact, RemoteContact
from crm_sync.sync.resolver import (
    LinkedPair,
    LocalOnly,
    LocalOnlyReason,
    RemoteOnly,
    RemoteOnlyKind,
    Resolution,
)


class SyncDirection(str, Enum):
    TO_REMOTE = "to_remote"
    FROM_REMOTE = "from_remote"
    BOTH = "both"

    @property
    def includes_to_remote(self) -> bool:
        return self in (SyncDirection.TO_REMOTE, SyncDirection.BOTH)

    @property
    def includes_from_remote(self) -> bool:
        return self in (SyncDirection.FROM_REMOTE, SyncDirection.BOTH)

    @classmethod
    def parse(cls, value: "str | SyncDirection") -> "SyncDirection":
        """
        Parse a direction name.

        Accepts the enum values and their hyphenated forms.

        Raises:
            ValueError: If the name is not a known direction
        """
        if isinstance(value, SyncDirection):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            choices = ", ".join(d.value for d in cls)
            raise ValueError(
                f"Invalid direction '{value}'. Must be one of: {choices}"
            ) from None


class SyncAction(str, Enum):
    CREATE_REMOTE = "create_remote"
    UPDATE_REMOTE = "update_remote"
    CREATE_LOCAL = "create_local"
    UPDATE_LOCAL = "update_local"
    LINK = "link"
    UNLINK = "unlink"
    SKIP = "skip"


class ErrorKind(str, Enum):
    TRANSPORT_ERROR = "transport_error"
    VERSION_CONFLICT = "version_conflict"
    ORPHAN_TAG_MISMATCH = "orphan_tag_mismatch"
    LOCAL_STORE_ERROR = "local_store_error"


@dataclass(frozen=True)
class SyncDecision:
    """
    The action chosen for one record.

    Attributes:
        action: What the applier should do
        local: The local record involved, if any
        remote: The remote snapshot record involved, if any
        reason: Short human-readable explanation
        error_kind: Set on skips caused by a tag that cannot be honored
        seed_local_id: Local id to use when creating a local record
    """

    action: SyncAction
    local: Optional[LocalContact] = None
    remote: Optional[RemoteContact] = None
    reason: str = ""
    error_kind: Optional[ErrorKind] = None
    seed_local_id: Optional[str] = None

    @property
    def subject(self) -> str:
        """Identifier of the record the decision is about, for logging."""
        if self.local is not None:
            return f"local:{self.local.id}"
        if self.remote is not None:
            return f"remote:{self.remote.resource_id}"
        return "unknown"


def _plan_linked(pair: LinkedPair, direction: SyncDirection) -> SyncDecision:
    local, remote = pair.local, pair.remote

    if direction.includes_to_remote and local.needs_push():
        return SyncDecision(
            SyncAction.UPDATE_REMOTE, local, remote, "changed locally since last sync"
        )

    if direction.includes_from_remote and remote.fields.differs_from(local.fields):
        return SyncDecision(
            SyncAction.UPDATE_LOCAL, local, remote, "remote values differ"
        )

    if pair.matched:
        return SyncDecision(SyncAction.LINK, local, remote, "matched by source tag")

    return SyncDecision(SyncAction.SKIP, local, remote, "in sync")


def _plan_local_only(item: LocalOnly, direction: SyncDirection) -> SyncDecision:
    local = item.contact

    if not direction.includes_to_remote:
        return SyncDecision(
            SyncAction.SKIP, local, reason=f"local-only ({item.reason.value})"
        )

    if item.reason is LocalOnlyReason.NEVER_LINKED:
        return SyncDecision(SyncAction.CREATE_REMOTE, local, reason="never linked")

    return SyncDecision(
        SyncAction.UNLINK, local, reason=f"link invalid ({item.reason.value})"
    )


def _plan_remote_only(
    item: RemoteOnly, direction: SyncDirection, adopt_orphans: bool
) -> SyncDecision:
    remote = item.remote

    if item.kind is RemoteOnlyKind.UNTAGGED:
        return SyncDecision(SyncAction.SKIP, remote=remote, reason="untagged")

    if (
        item.kind is RemoteOnlyKind.ORPHANED
        and adopt_orphans
        and direction.includes_from_remote
    ):
        return SyncDecision(
            SyncAction.CREATE_LOCAL,
            remote=remote,
            reason="adopting orphaned tag",
            seed_local_id=item.tagged_local_id,
        )

    return SyncDecision(
        SyncAction.SKIP,
        remote=remote,
        reason=f"tag names local id {item.tagged_local_id!r} ({item.kind.value})",
        error_kind=ErrorKind.ORPHAN_TAG_MISMATCH,
    )


def plan_changes(
    resolution: Resolution,
    direction: SyncDirection,
    adopt_orphans: bool = False,
) -> list[SyncDecision]:
    """
    Decide what to do with every record of a resolution.

    Args:
        resolution: Output of resolve() for one owner
        direction: Run-level sync direction
        adopt_orphans: Create local records for remote records whose tag
            names an unknown local id (only when pulling)

    Returns:
        One decision per record: linked pairs first, then local-only, then
        remote-only
    """
    decisions = [_plan_linked(pair, direction) for pair in resolution.linked]
    decisions.extend(
        _plan_local_only(item, direction) for item in resolution.local_only
    )
    decisions.extend(
        _plan_remote_only(item, direction, adopt_orphans)
        for item in resolution.remote_only
    )
    return decisions
