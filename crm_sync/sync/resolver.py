"""
Cross-reference resolution between local and remote contact snapshots.

Partitions one owner's records into three disjoint groups:
- linked: a local record and the remote record it corresponds to
- local-only: local records with no present remote counterpart
- remote-only: remote records no local record accounts for

Correspondence comes first from the stored link on the local row, then
from the source tag a remote record carries.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from crm_sync.sync.contact import DEFAULT_SOURCE_TYPE, LocalContact, RemoteContact

logger = logging.getLogger(__name__)


class LocalOnlyReason(str, Enum):
    NEVER_LINKED = "never_linked"
    REMOTE_MISSING = "remote_missing"
    # Another local record already holds the link to the same remote record
    DUPLICATE_LINK = "duplicate_link"


class RemoteOnlyKind(str, Enum):
    UNTAGGED = "untagged"
    ORPHANED = "orphaned"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class LinkedPair:
    """
    A local record and its remote counterpart.

    matched is True when the pair was recognized from the source tag rather
    than from a stored link, so the link still has to be written.
    """

    local: LocalContact
    remote: RemoteContact
    matched: bool = False


@dataclass(frozen=True)
class LocalOnly:
    contact: LocalContact
    reason: LocalOnlyReason


@dataclass(frozen=True)
class RemoteOnly:
    remote: RemoteContact
    kind: RemoteOnlyKind
    tagged_local_id: Optional[str] = None


@dataclass
class Resolution:
    """Result of resolving one owner's snapshots."""

    linked: list[LinkedPair] = field(default_factory=list)
    local_only: list[LocalOnly] = field(default_factory=list)
    remote_only: list[RemoteOnly] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.linked) + len(self.local_only) + len(self.remote_only)

    def summary(self) -> str:
        return (
            f"{len(self.linked)} linked, {len(self.local_only)} local-only, "
            f"{len(self.remote_only)} remote-only"
        )


def resolve(
    local_contacts: Iterable[LocalContact],
    remote_contacts: Iterable[RemoteContact],
    source_type: str = DEFAULT_SOURCE_TYPE,
) -> Resolution:
    """
    Partition one owner's local and remote snapshots.

    A remote record not referenced by any stored link is matched to the local
    record its source tag names, provided that local record is unlinked or its
    link points at a record missing from the snapshot, and no earlier remote
    record already claimed it.

    Args:
        local_contacts: The owner's local snapshot
        remote_contacts: The owner's remote snapshot
        source_type: Source tag type that identifies local ids

    Returns:
        Resolution with every input record in exactly one group
    """
    locals_list = list(local_contacts)
    remote_by_id: dict[str, RemoteContact] = {}
    for remote in remote_contacts:
        if remote.resource_id in remote_by_id:
            logger.warning(f"Duplicate remote record {remote.resource_id} ignored")
            continue
        remote_by_id[remote.resource_id] = remote

    resolution = Resolution()
    referenced: set[str] = set()
    unresolved: dict[str, LocalContact] = {}

    for local in locals_list:
        resource_id = local.remote_resource_id
        if resource_id is not None and resource_id in remote_by_id:
            if resource_id in referenced:
                resolution.local_only.append(
                    LocalOnly(local, LocalOnlyReason.DUPLICATE_LINK)
                )
                continue
            referenced.add(resource_id)
            resolution.linked.append(LinkedPair(local, remote_by_id[resource_id]))
        else:
            unresolved[local.id] = local

    locals_by_id = {local.id: local for local in locals_list}
    claimed: set[str] = set()

    for resource_id, remote in remote_by_id.items():
        if resource_id in referenced:
            continue

        tagged_id = remote.tag_for(source_type)
        if tagged_id is None:
            kind = RemoteOnlyKind.UNTAGGED
        elif tagged_id in unresolved and tagged_id not in claimed:
            claimed.add(tagged_id)
            resolution.linked.append(
                LinkedPair(unresolved[tagged_id], remote, matched=True)
            )
            continue
        elif tagged_id in locals_by_id:
            kind = RemoteOnlyKind.AMBIGUOUS
        else:
            kind = RemoteOnlyKind.ORPHANED

        resolution.remote_only.append(RemoteOnly(remote, kind, tagged_id))

    for local_id, local in unresolved.items():
        if local_id in claimed:
            continue
        reason = (
            LocalOnlyReason.NEVER_LINKED
            if local.remote_resource_id is None
            else LocalOnlyReason.REMOTE_MISSING
        )
        resolution.local_only.append(LocalOnly(local, reason))

    logger.debug(f"Resolved snapshots: {resolution.summary()}")
    return resolution
