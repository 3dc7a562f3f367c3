"""
Contact data model for CRM contact synchronization.

Provides the record types exchanged between the local store and the remote
directory:
- ContactFields: the synchronized fields and their normalized comparison
- LocalContact: a row of the local contact table plus its cross-reference
- RemoteContact: a normalized Google People API person
- SourceTag: the marker a local record leaves on the remote record it created
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

# Source type written on remote records created by this application
DEFAULT_SOURCE_TYPE = "CRM_CONTACT"

# Stand-in for a missing last_synced_at when checking staleness
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Convert a datetime to aware UTC.

    Naive values are assumed to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp into an aware UTC datetime.

    Handles both 'Z' suffix and explicit offsets. Returns None for empty or
    unparseable input.
    """
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except (ValueError, TypeError):
        return None


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _pick_primary(entries: list[dict[str, Any]]) -> dict[str, Any]:
    """Return the entry flagged primary, falling back to the first entry."""
    for entry in entries:
        if entry.get("metadata", {}).get("primary"):
            return entry
    return entries[0] if entries else {}


@dataclass(frozen=True)
class ContactFields:
    """
    The synchronized contact fields.

    Comparison ignores surrounding whitespace and treats None and the empty
    string as the same value.
    """

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def normalized(self) -> tuple[str, str, str, str]:
        """Return the comparison key for these fields."""
        return (
            _clean(self.first_name),
            _clean(self.last_name),
            _clean(self.email),
            _clean(self.phone),
        )

    def differs_from(self, other: "ContactFields") -> bool:
        return self.normalized() != other.normalized()

    def cleaned(self) -> "ContactFields":
        """Return a copy with whitespace stripped and empty values as None."""
        first, last, email, phone = self.normalized()
        return ContactFields(
            first_name=first or None,
            last_name=last or None,
            email=email or None,
            phone=phone or None,
        )

    @property
    def display_name(self) -> str:
        first, last = _clean(self.first_name), _clean(self.last_name)
        return " ".join(p for p in (first, last) if p)

    def to_api_format(self) -> dict[str, Any]:
        """
        Convert to a Google People API person body.

        All three categories are always present so that an update clears a
        remote value whose local counterpart was emptied.
        """
        first, last, email, phone = self.normalized()

        names: list[dict[str, str]] = []
        if first or last:
            name_entry: dict[str, str] = {}
            if first:
                name_entry["givenName"] = first
            if last:
                name_entry["familyName"] = last
            names.append(name_entry)

        return {
            "names": names,
            "emailAddresses": [{"value": email}] if email else [],
            "phoneNumbers": [{"value": phone}] if phone else [],
        }


@dataclass(frozen=True)
class SourceTag:
    """Marker identifying the local record a remote record was created from."""

    source_type: str
    local_id: str

    def to_client_data(self) -> dict[str, str]:
        return {"key": self.source_type, "value": self.local_id}


@dataclass
class LocalContact:
    """
    A contact row owned by one user in the local store.

    The link fields (remote_resource_id, remote_version_tag, last_synced_at)
    are either all set or all None.
    """

    id: str
    owner_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)
    created_at: Optional[datetime] = None
    remote_resource_id: Optional[str] = None
    remote_version_tag: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    @property
    def fields(self) -> ContactFields:
        return ContactFields(
            first_name=self.first_name,
            last_name=self.last_name,
            email=self.email,
            phone=self.phone,
        )

    @property
    def display_name(self) -> str:
        return self.fields.display_name

    @property
    def is_linked(self) -> bool:
        return self.remote_resource_id is not None

    def link_is_consistent(self) -> bool:
        """Check that the link fields are all set or all unset."""
        values = (self.remote_resource_id, self.remote_version_tag, self.last_synced_at)
        return all(v is None for v in values) or all(v is not None for v in values)

    def needs_push(self) -> bool:
        """True when the record changed locally since it was last synced."""
        updated_at = ensure_utc(self.updated_at) or EPOCH
        last_synced_at = ensure_utc(self.last_synced_at) or EPOCH
        return updated_at > last_synced_at

    def with_fields(self, fields: ContactFields) -> "LocalContact":
        """Return a copy carrying the given field values."""
        return replace(
            self,
            first_name=fields.first_name,
            last_name=fields.last_name,
            email=fields.email,
            phone=fields.phone,
        )

    def __repr__(self) -> str:
        return (
            f"LocalContact(id={self.id!r}, owner_id={self.owner_id!r}, "
            f"name={self.display_name!r}, "
            f"remote_resource_id={self.remote_resource_id!r})"
        )


@dataclass
class RemoteContact:
    """
    Normalized remote directory record.

    Only the primary value of each category is kept: the entry whose
    metadata marks it primary, or the first entry when none is marked.
    """

    resource_id: str
    version_tag: str
    primary_name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    primary_email: Optional[str] = None
    primary_phone: Optional[str] = None
    source_tags: list[SourceTag] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_api_response(cls, person: dict[str, Any]) -> "RemoteContact":
        """
        Create a RemoteContact from a Google People API person.

        Example API response structure::

            {
                'resourceName': 'people/c12345',
                'etag': '%EgUBAi43PRoEAQIFByIM',
                'names': [{'displayName': 'Ada Lovelace',
                           'givenName': 'Ada', 'familyName': 'Lovelace',
                           'metadata': {'primary': True}}],
                'emailAddresses': [{'value': 'ada@example.com'}],
                'phoneNumbers': [{'value': '+44 20 7946 0000'}],
                'clientData': [{'key': 'CRM_CONTACT', 'value': 'c-42'}],
                'metadata': {'sources': [{'type': 'CONTACT', 'id': '1a2b',
                                          'updateTime': '...'}]}
            }
        """
        primary_name = _pick_primary(person.get("names", []))
        primary_email = _pick_primary(person.get("emailAddresses", []))
        primary_phone = _pick_primary(person.get("phoneNumbers", []))

        display_name = primary_name.get("displayName")
        given_name = primary_name.get("givenName")
        family_name = primary_name.get("familyName")
        if not display_name and (given_name or family_name):
            display_name = " ".join(p for p in (given_name, family_name) if p)

        source_tags: list[SourceTag] = []
        for entry in person.get("clientData", []):
            key, value = entry.get("key"), entry.get("value")
            if key and value:
                source_tags.append(SourceTag(source_type=key, local_id=value))

        updated_at = None
        for source in person.get("metadata", {}).get("sources", []):
            source_type, source_id = source.get("type"), source.get("id")
            if source_type and source_id:
                source_tags.append(
                    SourceTag(source_type=source_type, local_id=source_id)
                )
            if updated_at is None:
                updated_at = parse_timestamp(source.get("updateTime"))

        return cls(
            resource_id=person.get("resourceName", ""),
            version_tag=person.get("etag", ""),
            primary_name=display_name or None,
            given_name=given_name,
            family_name=family_name,
            primary_email=primary_email.get("value") or None,
            primary_phone=primary_phone.get("value") or None,
            source_tags=source_tags,
            updated_at=updated_at,
        )

    @property
    def fields(self) -> ContactFields:
        """
        The synchronized fields of this record.

        Names come from givenName/familyName when either is present, otherwise
        the display name is split at its first space.
        """
        if self.given_name or self.family_name:
            first_name, last_name = self.given_name, self.family_name
        else:
            parts = _clean(self.primary_name).split(" ", 1)
            first_name = parts[0] or None
            last_name = parts[1].strip() if len(parts) > 1 else None

        return ContactFields(
            first_name=first_name,
            last_name=last_name or None,
            email=self.primary_email,
            phone=self.primary_phone,
        )

    def tag_for(self, source_type: str) -> Optional[str]:
        """Return the local id carried by the first tag of the given type."""
        for tag in self.source_tags:
            if tag.source_type == source_type:
                return tag.local_id
        return None

    def __repr__(self) -> str:
        return (
            f"RemoteContact(resource_id={self.resource_id!r}, "
            f"primary_name={self.primary_name!r}, "
            f"source_tags={self.source_tags!r})"
        )
