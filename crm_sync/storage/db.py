"""
SQLite database module for the local contact table.

Provides persistent storage for CRM contacts, their cross-references to the
remote directory, and a history of completed sync runs.
"""

import logging
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Optional

from crm_sync.sync.contact import ContactFields, LocalContact, ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Timestamps are stored as fixed-width ISO 8601 text so that they order
# lexicographically.
SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    email TEXT,
    phone TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    remote_resource_id TEXT,
    remote_version_tag TEXT,
    last_synced_at TEXT,
    CHECK (
        (remote_resource_id IS NULL
            AND remote_version_tag IS NULL
            AND last_synced_at IS NULL)
        OR (remote_resource_id IS NOT NULL
            AND remote_version_tag IS NOT NULL
            AND last_synced_at IS NOT NULL)
    )
);

CREATE INDEX IF NOT EXISTS idx_contacts_owner ON contacts(owner_id);
CREATE INDEX IF NOT EXISTS idx_contacts_remote
    ON contacts(owner_id, remote_resource_id);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY,
    owner_id TEXT NOT NULL,
    direction TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT NOT NULL,
    created INTEGER NOT NULL DEFAULT 0,
    updated INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    unlinked INTEGER NOT NULL DEFAULT 0,
    errors INTEGER NOT NULL DEFAULT 0,
    cancelled INTEGER NOT NULL DEFAULT 0,
    dry_run INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_owner ON sync_runs(owner_id);
"""

CONTACT_COLUMNS = (
    "id, owner_id, first_name, last_name, email, phone, created_at, updated_at, "
    "remote_resource_id, remote_version_tag, last_synced_at"
)

# Smallest step used to keep updated_at strictly increasing
TIMESTAMP_RESOLUTION = timedelta(microseconds=1)


class LocalStoreError(Exception):
    """Raised when a local store operation fails."""

    pass


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as fixed-width UTC ISO 8601 text."""
    value = ensure_utc(value)
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def parse_stored_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by format_timestamp."""
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def _check_link(
    resource_id: Optional[str],
    version_tag: Optional[str],
    synced_at: Optional[datetime],
) -> None:
    values = (resource_id, version_tag, synced_at)
    if any(v is None for v in values) and any(v is not None for v in values):
        raise ValueError(
            "remote_resource_id, remote_version_tag and last_synced_at "
            "must be set or cleared together"
        )


class ContactStore:
    """
    SQLite gateway for the local contact table.

    Provides methods for:
    - Reading an owner's contacts as a snapshot
    - Writing contact rows and their cross-reference links
    - Local editing (add, update, unlink)
    - Recording completed sync runs

    Every method opens and commits its own transaction; nothing is held open
    between calls. SQLite failures surface as LocalStoreError.

    Usage:
        store = ContactStore('/path/to/contacts.db')
        store.initialize()

        # Or use in-memory for testing:
        store = ContactStore(':memory:')
        store.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        In-memory databases share one connection so the schema persists
        across operations; file databases get a new connection each time.
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for one committed unit of work.

        Yields:
            sqlite3.Connection: Database connection

        Raises:
            LocalStoreError: If SQLite reports an error
        """
        is_shared = self.db_path == ":memory:"
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise LocalStoreError(f"Could not open database {self.db_path}: {e}") from e

        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LocalStoreError(f"Database operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """Create the contacts and sync_runs tables if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        logger.debug(f"Initialized contact store at {self.db_path}")

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # =========================================================================
    # Contact Reads
    # =========================================================================

    @staticmethod
    def _row_to_contact(row: sqlite3.Row) -> LocalContact:
        return LocalContact(
            id=row["id"],
            owner_id=row["owner_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            phone=row["phone"],
            created_at=parse_stored_timestamp(row["created_at"]),
            updated_at=parse_stored_timestamp(row["updated_at"]),
            remote_resource_id=row["remote_resource_id"],
            remote_version_tag=row["remote_version_tag"],
            last_synced_at=parse_stored_timestamp(row["last_synced_at"]),
        )

    def list_by_owner(self, owner_id: str) -> list[LocalContact]:
        """
        Get every contact owned by a user.

        Args:
            owner_id: The owning user's identifier

        Returns:
            List of LocalContact ordered by creation time
        """
        with self.connection() as conn:
            cursor = conn.execute(
                f"SELECT {CONTACT_COLUMNS} FROM contacts "
                "WHERE owner_id = ? ORDER BY created_at, id",
                (owner_id,),
            )
            return [self._row_to_contact(row) for row in cursor.fetchall()]

    def get_contact(self, local_id: str) -> Optional[LocalContact]:
        """
        Get a single contact by id.

        Returns:
            LocalContact, or None if not found
        """
        with self.connection() as conn:
            cursor = conn.execute(
                f"SELECT {CONTACT_COLUMNS} FROM contacts WHERE id = ?", (local_id,)
            )
            row = cursor.fetchone()
            return self._row_to_contact(row) if row else None

    def count_by_owner(self, owner_id: str, linked_only: bool = False) -> int:
        """
        Count an owner's contacts.

        Args:
            owner_id: The owning user's identifier
            linked_only: Only count contacts with a cross-reference

        Returns:
            Number of matching contacts
        """
        query = "SELECT COUNT(*) FROM contacts WHERE owner_id = ?"
        if linked_only:
            query += " AND remote_resource_id IS NOT NULL"
        with self.connection() as conn:
            return int(conn.execute(query, (owner_id,)).fetchone()[0])

    def list_owners(self) -> list[str]:
        """Get the distinct owner ids present in the contact table."""
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT DISTINCT owner_id FROM contacts ORDER BY owner_id"
            )
            return [row["owner_id"] for row in cursor.fetchall()]

    # =========================================================================
    # Contact Writes
    # =========================================================================

    def upsert(self, contact: LocalContact) -> LocalContact:
        """
        Insert or replace a contact row.

        The stored updated_at never moves backwards.

        Args:
            contact: Contact to write

        Returns:
            The contact as stored

        Raises:
            ValueError: If the link fields are only partially set
            LocalStoreError: If the id already belongs to another owner
        """
        _check_link(
            contact.remote_resource_id,
            contact.remote_version_tag,
            contact.last_synced_at,
        )
        updated_at = contact.updated_at or utc_now()
        created_at = contact.created_at or updated_at

        with self.connection() as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO contacts ({CONTACT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    email = excluded.email,
                    phone = excluded.phone,
                    updated_at = MAX(contacts.updated_at, excluded.updated_at),
                    remote_resource_id = excluded.remote_resource_id,
                    remote_version_tag = excluded.remote_version_tag,
                    last_synced_at = excluded.last_synced_at
                WHERE contacts.owner_id = excluded.owner_id
                """,
                (
                    contact.id,
                    contact.owner_id,
                    contact.first_name,
                    contact.last_name,
                    contact.email,
                    contact.phone,
                    format_timestamp(created_at),
                    format_timestamp(updated_at),
                    contact.remote_resource_id,
                    contact.remote_version_tag,
                    format_timestamp(contact.last_synced_at),
                ),
            )
            if cursor.rowcount == 0:
                raise LocalStoreError(f"Contact {contact.id} belongs to another owner")
            row = conn.execute(
                f"SELECT {CONTACT_COLUMNS} FROM contacts WHERE id = ?", (contact.id,)
            ).fetchone()

        logger.debug(f"Upserted local contact {contact.id}")
        return self._row_to_contact(row)

    def set_cross_reference(
        self,
        local_id: str,
        resource_id: Optional[str],
        version_tag: Optional[str],
        synced_at: Optional[datetime],
    ) -> None:
        """
        Write or clear the link between a local contact and a remote record.

        Passing None for all three values clears the link. updated_at is
        left untouched.

        Args:
            local_id: The local contact id
            resource_id: Remote resource id
            version_tag: Remote version tag (etag) observed at sync time
            synced_at: Time of the sync

        Raises:
            ValueError: If only some of the three values are None
            LocalStoreError: If the contact does not exist
        """
        _check_link(resource_id, version_tag, synced_at)

        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE contacts SET
                    remote_resource_id = ?,
                    remote_version_tag = ?,
                    last_synced_at = ?
                WHERE id = ?
                """,
                (resource_id, version_tag, format_timestamp(synced_at), local_id),
            )
            if cursor.rowcount == 0:
                raise LocalStoreError(f"Local contact not found: {local_id}")

        if resource_id is None:
            logger.debug(f"Cleared cross-reference for {local_id}")
        else:
            logger.debug(f"Linked {local_id} -> {resource_id}")

    def clear_cross_reference(self, local_id: str) -> None:
        """Clear the link columns of one contact."""
        self.set_cross_reference(local_id, None, None, None)

    def clear_all_links(self, owner_id: str) -> int:
        """
        Clear the cross-reference of every contact an owner has.

        Returns:
            Number of contacts that were unlinked
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE contacts SET
                    remote_resource_id = NULL,
                    remote_version_tag = NULL,
                    last_synced_at = NULL
                WHERE owner_id = ? AND remote_resource_id IS NOT NULL
                """,
                (owner_id,),
            )
            count = cursor.rowcount

        logger.info(f"Cleared {count} cross-references for owner {owner_id}")
        return count

    def add_contact(
        self,
        owner_id: str,
        fields: ContactFields,
        contact_id: Optional[str] = None,
    ) -> LocalContact:
        """
        Create a new unlinked local contact.

        Args:
            owner_id: The owning user's identifier
            fields: Contact field values
            contact_id: Explicit id (a new UUID is generated if None)

        Returns:
            The stored contact
        """
        fields = fields.cleaned()
        now = utc_now()
        contact = LocalContact(
            id=contact_id or str(uuid.uuid4()),
            owner_id=owner_id,
            first_name=fields.first_name,
            last_name=fields.last_name,
            email=fields.email,
            phone=fields.phone,
            created_at=now,
            updated_at=now,
        )
        return self.upsert(contact)

    def update_fields(self, local_id: str, fields: ContactFields) -> LocalContact:
        """
        Edit a contact's field values locally.

        updated_at moves strictly past both its previous value and
        last_synced_at, so the edit is pushed on the next sync.

        Raises:
            LocalStoreError: If the contact does not exist
        """
        current = self.get_contact(local_id)
        if current is None:
            raise LocalStoreError(f"Local contact not found: {local_id}")

        candidates = [utc_now(), current.updated_at + TIMESTAMP_RESOLUTION]
        if current.last_synced_at is not None:
            candidates.append(current.last_synced_at + TIMESTAMP_RESOLUTION)

        updated = current.with_fields(fields.cleaned())
        updated.updated_at = max(candidates)
        return self.upsert(updated)

    # =========================================================================
    # Run History
    # =========================================================================

    def record_run(
        self,
        owner_id: str,
        direction: str,
        started_at: datetime,
        finished_at: datetime,
        stats: dict[str, Any],
        dry_run: bool = False,
    ) -> int:
        """
        Record a completed sync run.

        Args:
            owner_id: The owner the run was for
            direction: Run direction value
            started_at: Run start time
            finished_at: Run end time
            stats: Counters with created/updated/skipped/unlinked/errors/cancelled
            dry_run: Whether the run applied nothing

        Returns:
            Row id of the recorded run
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs (
                    owner_id, direction, started_at, finished_at,
                    created, updated, skipped, unlinked, errors, cancelled, dry_run
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    owner_id,
                    direction,
                    format_timestamp(started_at),
                    format_timestamp(finished_at),
                    stats.get("created", 0),
                    stats.get("updated", 0),
                    stats.get("skipped", 0),
                    stats.get("unlinked", 0),
                    stats.get("errors", 0),
                    int(bool(stats.get("cancelled", False))),
                    int(dry_run),
                ),
            )
            return int(cursor.lastrowid or 0)

    def get_last_run(self, owner_id: str) -> Optional[dict[str, Any]]:
        """
        Get the most recently finished run for an owner.

        Returns:
            Dictionary with run details, or None if the owner never synced
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT owner_id, direction, started_at, finished_at,
                       created, updated, skipped, unlinked, errors,
                       cancelled, dry_run
                FROM sync_runs
                WHERE owner_id = ?
                ORDER BY finished_at DESC, id DESC
                LIMIT 1
                """,
                (owner_id,),
            )
            row = cursor.fetchone()

        if not row:
            return None

        run = dict(row)
        run["started_at"] = parse_stored_timestamp(run["started_at"])
        run["finished_at"] = parse_stored_timestamp(run["finished_at"])
        run["cancelled"] = bool(run["cancelled"])
        run["dry_run"] = bool(run["dry_run"])
        return run
