"""
Tests for the change applier.

Uses a mocked directory client and a real in-memory store.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from google.auth.exceptions import TransportError

from crm_sync.api.directory_api import (
    ContactNotFoundError,
    DirectoryAPI,
    DirectoryAPIError,
    RateLimitError,
    VersionConflictError,
)
from crm_sync.storage.db import ContactStore, LocalStoreError
from crm_sync.sync.applier import ApplyResult, ChangeApplier, SyncOutcome
from crm_sync.sync.contact import ContactFields, LocalContact, RemoteContact, SourceTag
from crm_sync.sync.planner import ErrorKind, SyncAction, SyncDecision

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
NOW = T0 + timedelta(hours=1)


@pytest.fixture
def store():
    store = ContactStore(":memory:")
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def directory():
    return MagicMock(spec=DirectoryAPI)


@pytest.fixture
def applier(directory, store):
    return ChangeApplier(directory, store, clock=lambda: NOW)


def add_local(store, local_id="l1", linked=False, **kwargs):
    values = {"first_name": "Ada", "updated_at": T0, "created_at": T0}
    if linked:
        values.update(
            remote_resource_id="people/c1",
            remote_version_tag="e1",
            last_synced_at=T0,
        )
    values.update(kwargs)
    return store.upsert(LocalContact(id=local_id, owner_id="alice", **values))


def make_remote(resource_id="people/c1", version_tag="e1", **kwargs):
    return RemoteContact(resource_id=resource_id, version_tag=version_tag, **kwargs)


class TestApplyResult:
    def test_failed_property(self):
        decision = SyncDecision(SyncAction.SKIP)
        assert ApplyResult(decision, SyncOutcome.FAILED).failed
        assert not ApplyResult(decision, SyncOutcome.SKIPPED).failed


class TestCreateRemote:
    """Tests for pushing never-linked local records."""

    def test_creates_tagged_contact_and_links(self, applier, directory, store):
        local = add_local(store, email="ada@example.com")
        directory.create_contact.return_value = make_remote("people/new", "e9")

        result = applier.apply(
            "alice", SyncDecision(SyncAction.CREATE_REMOTE, local=local)
        )

        assert result.outcome is SyncOutcome.CREATED
        directory.create_contact.assert_called_once_with(
            "alice",
            ContactFields(first_name="Ada", email="ada@example.com"),
            SourceTag("CRM_CONTACT", "l1"),
        )
        stored = store.get_contact("l1")
        assert stored.remote_resource_id == "people/new"
        assert stored.remote_version_tag == "e9"
        assert stored.last_synced_at == NOW
        assert not stored.needs_push()

    def test_uses_configured_source_type(self, directory, store):
        applier = ChangeApplier(
            directory, store, source_type="LEADS", clock=lambda: NOW
        )
        local = add_local(store)
        directory.create_contact.return_value = make_remote("people/new")

        applier.apply("alice", SyncDecision(SyncAction.CREATE_REMOTE, local=local))

        assert directory.create_contact.call_args.args[2] == SourceTag("LEADS", "l1")

    def test_synced_at_not_before_updated_at(self, directory, store):
        """Test that a clock behind the record's updated_at cannot re-dirty it."""
        future = NOW + timedelta(days=1)
        local = add_local(store, updated_at=future)
        directory.create_contact.return_value = make_remote("people/new")
        applier = ChangeApplier(directory, store, clock=lambda: NOW)

        applier.apply("alice", SyncDecision(SyncAction.CREATE_REMOTE, local=local))

        stored = store.get_contact("l1")
        assert stored.last_synced_at == future
        assert not stored.needs_push()

    def test_remote_failure_leaves_local_untouched(self, applier, directory, store):
        local = add_local(store)
        directory.create_contact.side_effect = RateLimitError("slow down", 429)

        result = applier.apply(
            "alice", SyncDecision(SyncAction.CREATE_REMOTE, local=local)
        )

        assert result.failed
        assert result.error_kind is ErrorKind.TRANSPORT_ERROR
        assert not store.get_contact("l1").is_linked

    def test_link_write_failure_reported(self, applier, directory, store):
        """Test that a failing link write is a local store error."""
        local = add_local(store)
        directory.create_contact.return_value = make_remote("people/new")
        store.set_cross_reference = MagicMock(side_effect=LocalStoreError("locked"))

        result = applier.apply(
            "alice", SyncDecision(SyncAction.CREATE_REMOTE, local=local)
        )

        assert result.failed
        assert result.error_kind is ErrorKind.LOCAL_STORE_ERROR

    def test_google_transport_error_reported(self, store):
        """Test that a network failure inside google-auth fails only the record."""
        directory = DirectoryAPI(lambda owner_id: MagicMock())
        service = MagicMock()
        create = service.people.return_value.createContact.return_value
        create.execute.side_effect = TransportError("dns")
        directory._services["alice"] = service
        local = add_local(store)

        result = ChangeApplier(directory, store, clock=lambda: NOW).apply(
            "alice", SyncDecision(SyncAction.CREATE_REMOTE, local=local)
        )

        assert result.failed
        assert result.error_kind is ErrorKind.TRANSPORT_ERROR
        assert "dns" in result.message
        assert not store.get_contact("l1").is_linked


class TestUpdateRemote:
    """Tests for pushing local edits."""

    def test_pushes_with_snapshot_etag(self, applier, directory, store):
        local = add_local(store, linked=True, updated_at=T0 + timedelta(minutes=1))
        remote = make_remote(version_tag="e1")
        directory.update_contact.return_value = make_remote(version_tag="e2")

        result = applier.apply(
            "alice", SyncDecision(SyncAction.UPDATE_REMOTE, local, remote)
        )

        assert result.outcome is SyncOutcome.UPDATED
        directory.update_contact.assert_called_once_with(
            "alice", "people/c1", local.fields, "e1"
        )
        stored = store.get_contact("l1")
        assert stored.remote_version_tag == "e2"
        assert stored.last_synced_at == NOW
        assert stored.updated_at == T0 + timedelta(minutes=1)

    def test_overwrites_remote_change_by_default(self, applier, directory, store):
        """Test that local precedence pushes over a changed remote etag."""
        local = add_local(store, linked=True, updated_at=T0 + timedelta(minutes=1))
        remote = make_remote(version_tag="e5")
        directory.update_contact.return_value = make_remote(version_tag="e6")

        result = applier.apply(
            "alice", SyncDecision(SyncAction.UPDATE_REMOTE, local, remote)
        )

        assert result.outcome is SyncOutcome.UPDATED
        assert directory.update_contact.call_args.args[3] == "e5"

    def test_strict_mode_reports_conflict(self, directory, store):
        applier = ChangeApplier(
            directory, store, strict_version_check=True, clock=lambda: NOW
        )
        local = add_local(store, linked=True, updated_at=T0 + timedelta(minutes=1))
        remote = make_remote(version_tag="e5")

        result = applier.apply(
            "alice", SyncDecision(SyncAction.UPDATE_REMOTE, local, remote)
        )

        assert result.failed
        assert result.error_kind is ErrorKind.VERSION_CONFLICT
        directory.update_contact.assert_not_called()
        assert store.get_contact("l1").remote_version_tag == "e1"

    def test_conflict_from_directory(self, applier, directory, store):
        local = add_local(store, linked=True, updated_at=T0 + timedelta(minutes=1))
        directory.update_contact.side_effect = VersionConflictError("stale", 412)

        result = applier.apply(
            "alice", SyncDecision(SyncAction.UPDATE_REMOTE, local, make_remote())
        )

        assert result.error_kind is ErrorKind.VERSION_CONFLICT
        assert store.get_contact("l1").last_synced_at == T0

    def test_not_found_is_transport_error(self, applier, directory, store):
        local = add_local(store, linked=True, updated_at=T0 + timedelta(minutes=1))
        directory.update_contact.side_effect = ContactNotFoundError("gone", 404)

        result = applier.apply(
            "alice", SyncDecision(SyncAction.UPDATE_REMOTE, local, make_remote())
        )

        assert result.error_kind is ErrorKind.TRANSPORT_ERROR


class TestLocalWrites:
    """Tests for pulling remote values and managing links."""

    def test_update_local_pulls_fields(self, applier, store):
        local = add_local(store, linked=True, email="old@example.com")
        remote = make_remote(
            version_tag="e2", given_name=" Grace ", family_name="Hopper"
        )

        result = applier.apply(
            "alice", SyncDecision(SyncAction.UPDATE_LOCAL, local, remote)
        )

        assert result.outcome is SyncOutcome.UPDATED
        stored = store.get_contact("l1")
        assert stored.first_name == "Grace"
        assert stored.last_name == "Hopper"
        assert stored.email is None
        assert stored.remote_version_tag == "e2"
        assert stored.updated_at == stored.last_synced_at == NOW
        assert not stored.needs_push()

    def test_create_local_uses_seed_id(self, applier, store):
        remote = make_remote("people/c7", "e7", given_name="Ada")

        result = applier.apply(
            "alice",
            SyncDecision(
                SyncAction.CREATE_LOCAL, remote=remote, seed_local_id="crm-7"
            ),
        )

        assert result.outcome is SyncOutcome.CREATED
        stored = store.get_contact("crm-7")
        assert stored.owner_id == "alice"
        assert stored.remote_resource_id == "people/c7"
        assert stored.updated_at == stored.last_synced_at
        assert not stored.needs_push()

    def test_create_local_never_takes_another_owners_id(self, applier, store):
        bob = store.upsert(
            LocalContact(id="c-42", owner_id="bob", first_name="Bob", updated_at=T0)
        )
        remote = make_remote("people/c7", "e7", given_name="Ann")

        result = applier.apply(
            "alice",
            SyncDecision(SyncAction.CREATE_LOCAL, remote=remote, seed_local_id="c-42"),
        )

        assert result.outcome is SyncOutcome.SKIPPED
        assert result.error_kind is ErrorKind.ORPHAN_TAG_MISMATCH
        assert not result.failed
        assert store.get_contact("c-42") == bob

    def test_link_writes_cross_reference(self, applier, store):
        local = add_local(store)
        remote = make_remote("people/c3", "e3")

        result = applier.apply("alice", SyncDecision(SyncAction.LINK, local, remote))

        assert result.outcome is SyncOutcome.UPDATED
        stored = store.get_contact("l1")
        assert stored.remote_resource_id == "people/c3"
        assert stored.remote_version_tag == "e3"

    def test_unlink_clears_cross_reference(self, applier, store):
        local = add_local(store, linked=True)

        result = applier.apply("alice", SyncDecision(SyncAction.UNLINK, local))

        assert result.outcome is SyncOutcome.UNLINKED
        stored = store.get_contact("l1")
        assert not stored.is_linked
        assert stored.first_name == "Ada"

    def test_store_failure_reported(self, applier, store):
        local = LocalContact(id="missing", owner_id="alice")

        result = applier.apply("alice", SyncDecision(SyncAction.UNLINK, local))

        assert result.error_kind is ErrorKind.LOCAL_STORE_ERROR


class TestSkipAndDryRun:
    """Tests for decisions that change nothing."""

    def test_skip(self, applier, directory):
        result = applier.apply(
            "alice", SyncDecision(SyncAction.SKIP, remote=make_remote())
        )

        assert result.outcome is SyncOutcome.SKIPPED
        assert result.error_kind is None
        assert directory.method_calls == []

    def test_skip_carries_error_kind(self, applier):
        decision = SyncDecision(
            SyncAction.SKIP,
            remote=make_remote(),
            reason="tag names unknown local",
            error_kind=ErrorKind.ORPHAN_TAG_MISMATCH,
        )

        result = applier.apply("alice", decision)

        assert result.outcome is SyncOutcome.SKIPPED
        assert result.error_kind is ErrorKind.ORPHAN_TAG_MISMATCH
        assert not result.failed

    @pytest.mark.parametrize(
        "action,expected",
        [
            (SyncAction.CREATE_REMOTE, SyncOutcome.CREATED),
            (SyncAction.UPDATE_REMOTE, SyncOutcome.UPDATED),
            (SyncAction.UPDATE_LOCAL, SyncOutcome.UPDATED),
            (SyncAction.LINK, SyncOutcome.UPDATED),
            (SyncAction.UNLINK, SyncOutcome.UNLINKED),
        ],
    )
    def test_dry_run_reports_planned_outcome(
        self, applier, directory, store, action, expected
    ):
        local = add_local(store, linked=True)

        result = applier.apply(
            "alice", SyncDecision(action, local, make_remote()), dry_run=True
        )

        assert result.outcome is expected
        assert directory.method_calls == []
        assert store.get_contact("l1") == local

    def test_transport_error_type(self, applier, directory, store):
        local = add_local(store)
        directory.create_contact.side_effect = DirectoryAPIError("boom")

        result = applier.apply(
            "alice", SyncDecision(SyncAction.CREATE_REMOTE, local=local)
        )

        assert result.error_kind is ErrorKind.TRANSPORT_ERROR
        assert "boom" in result.message
