"""
Unit tests for the directory API module.

Tests the DirectoryAPI class with mocked Google People API responses.
"""

from unittest.mock import MagicMock, patch

import httplib2
import pytest
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError

from crm_sync.api.directory_api import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PAGE_SIZE,
    PERSON_FIELDS,
    UPDATE_PERSON_FIELDS,
    ContactNotFoundError,
    CredentialsUnavailableError,
    DirectoryAPI,
    DirectoryAPIError,
    RateLimitError,
    VersionConflictError,
    classify_http_error,
)
from crm_sync.sync.contact import ContactFields, SourceTag


def make_http_error(status, content=b"error"):
    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.reason = "error"
    return HttpError(mock_resp, content)


def make_person(resource_name, etag="etag1", given="Ada", tag=None):
    person = {
        "resourceName": resource_name,
        "etag": etag,
        "names": [{"givenName": given, "familyName": "Lovelace"}],
        "emailAddresses": [{"value": f"{given.lower()}@example.com"}],
    }
    if tag:
        person["clientData"] = [{"key": "CRM_CONTACT", "value": tag}]
    return person


@pytest.fixture
def credentials():
    return MagicMock(name="credentials")


@pytest.fixture
def api(credentials):
    """Create a DirectoryAPI with a mocked service for owner 'alice'."""
    api = DirectoryAPI(lambda owner_id: credentials)
    api._services["alice"] = MagicMock()
    return api


class TestDirectoryAPIInitialization:
    """Tests for DirectoryAPI initialization."""

    def test_defaults(self):
        """Test default page size and retry settings."""
        api = DirectoryAPI(lambda owner_id: None)

        assert api.page_size == DEFAULT_PAGE_SIZE
        assert api.max_retries == DEFAULT_MAX_RETRIES
        assert api._services == {}

    def test_page_size_capped_at_1000(self):
        """Test that page size is capped at the API maximum."""
        api = DirectoryAPI(lambda owner_id: None, page_size=5000)
        assert api.page_size == 1000


class TestServiceFor:
    """Tests for per-owner service creation."""

    @patch("crm_sync.api.directory_api.build")
    def test_builds_service_with_owner_credentials(self, mock_build, credentials):
        """Test that the service is built from the owner's credentials."""
        provider = MagicMock(return_value=credentials)
        api = DirectoryAPI(provider)

        service = api.service_for("alice")

        provider.assert_called_once_with("alice")
        mock_build.assert_called_once_with(
            "people", "v1", credentials=credentials, cache_discovery=False
        )
        assert service is mock_build.return_value

    @patch("crm_sync.api.directory_api.build")
    def test_service_cached_per_owner(self, mock_build, credentials):
        """Test that each owner's service is built once."""
        mock_build.side_effect = lambda *args, **kwargs: MagicMock()
        api = DirectoryAPI(lambda owner_id: credentials)

        alice1 = api.service_for("alice")
        alice2 = api.service_for("alice")
        bob = api.service_for("bob")

        assert alice1 is alice2
        assert alice1 is not bob
        assert mock_build.call_count == 2

    def test_missing_credentials_raises(self):
        """Test that an owner without credentials cannot be used."""
        api = DirectoryAPI(lambda owner_id: None)

        with pytest.raises(CredentialsUnavailableError, match="crm-sync auth"):
            api.service_for("alice")

    @patch("crm_sync.api.directory_api.build")
    def test_build_failure_raises_directory_error(self, mock_build, credentials):
        """Test that service creation failure is wrapped."""
        mock_build.side_effect = Exception("discovery failed")
        api = DirectoryAPI(lambda owner_id: credentials)

        with pytest.raises(DirectoryAPIError, match="Failed to create API service"):
            api.service_for("alice")

    @patch("crm_sync.api.directory_api.build")
    def test_forget_owner_rebuilds_service(self, mock_build, credentials):
        """Test that forget_owner drops the cached service."""
        api = DirectoryAPI(lambda owner_id: credentials)
        api.service_for("alice")
        api.forget_owner("alice")
        api.service_for("alice")

        assert mock_build.call_count == 2


class TestClassifyHttpError:
    """Tests for mapping HTTP errors onto directory errors."""

    def test_404_is_not_found(self):
        error = classify_http_error(make_http_error(404), "get")
        assert isinstance(error, ContactNotFoundError)
        assert error.status_code == 404

    @pytest.mark.parametrize("status", [409, 412])
    def test_conflict_statuses_are_version_conflicts(self, status):
        error = classify_http_error(make_http_error(status), "update")
        assert isinstance(error, VersionConflictError)

    def test_400_with_precondition_marker_is_version_conflict(self):
        error = classify_http_error(
            make_http_error(400, b'{"error": {"status": "FAILED_PRECONDITION"}}'),
            "update",
        )
        assert isinstance(error, VersionConflictError)

    def test_plain_400_is_generic_error(self):
        error = classify_http_error(make_http_error(400, b"bad request"), "update")
        assert type(error) is DirectoryAPIError
        assert error.status_code == 400


class TestRetryWithBackoff:
    """Tests for the retry with backoff mechanism."""

    def test_successful_operation_returns_result(self, api):
        """Test that a successful operation returns immediately."""
        result = api._retry_with_backoff(lambda: {"ok": True}, "op")
        assert result == {"ok": True}

    @patch("time.sleep")
    def test_rate_limit_retries_with_backoff(self, mock_sleep, api):
        """Test that 429 responses are retried with growing delays."""
        call_count = [0]

        def operation():
            call_count[0] += 1
            if call_count[0] < 3:
                raise make_http_error(429)
            return {"ok": True}

        result = api._retry_with_backoff(operation, "op")

        assert result == {"ok": True}
        assert call_count[0] == 3
        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0]

    @patch("time.sleep")
    def test_rate_limit_exhausted_raises(self, mock_sleep, api):
        """Test that exhausted retries on rate limit raise RateLimitError."""

        def operation():
            raise make_http_error(403)

        with pytest.raises(RateLimitError, match="Rate limit exceeded"):
            api._retry_with_backoff(operation, "op")

        assert mock_sleep.call_count == DEFAULT_MAX_RETRIES - 1

    @patch("time.sleep")
    def test_backoff_capped_at_max_delay(self, mock_sleep, credentials):
        """Test that delays never exceed max_retry_delay."""
        api = DirectoryAPI(
            lambda owner_id: credentials,
            max_retries=5,
            initial_retry_delay=10.0,
            max_retry_delay=15.0,
        )

        def operation():
            raise make_http_error(429)

        with pytest.raises(RateLimitError):
            api._retry_with_backoff(operation, "op")

        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [10.0, 15.0, 15.0, 15.0]

    @patch("time.sleep")
    def test_server_error_retries(self, mock_sleep, api):
        """Test that 5xx errors are retried."""
        call_count = [0]

        def operation():
            call_count[0] += 1
            if call_count[0] < 2:
                raise make_http_error(503)
            return {"ok": True}

        assert api._retry_with_backoff(operation, "op") == {"ok": True}
        assert call_count[0] == 2

    @patch("time.sleep")
    def test_server_error_exhausted_raises(self, mock_sleep, api):
        """Test that a persistent server error ends in DirectoryAPIError."""

        def operation():
            raise make_http_error(500)

        with pytest.raises(DirectoryAPIError) as exc_info:
            api._retry_with_backoff(operation, "op")

        assert exc_info.value.status_code == 500

    @patch("time.sleep")
    def test_client_error_does_not_retry(self, mock_sleep, api):
        """Test that other 4xx errors are raised immediately."""
        call_count = [0]

        def operation():
            call_count[0] += 1
            raise make_http_error(404)

        with pytest.raises(ContactNotFoundError):
            api._retry_with_backoff(operation, "op")

        assert call_count[0] == 1
        mock_sleep.assert_not_called()

    @patch("time.sleep")
    def test_transport_failure_not_retried(self, mock_sleep, api):
        """Test that timeouts and connection errors are raised immediately."""
        call_count = [0]

        def operation():
            call_count[0] += 1
            raise TimeoutError("timed out")

        with pytest.raises(DirectoryAPIError, match="timed out"):
            api._retry_with_backoff(operation, "op")

        assert call_count[0] == 1
        mock_sleep.assert_not_called()

    def test_httplib2_failure_wrapped(self, api):
        """Test that httplib2 errors surface as DirectoryAPIError."""

        def operation():
            raise httplib2.ServerNotFoundError("no such host")

        with pytest.raises(DirectoryAPIError, match="no such host"):
            api._retry_with_backoff(operation, "op")

    @patch("time.sleep")
    def test_google_transport_error_wrapped(self, mock_sleep, api):
        """Test that google-auth network failures surface as DirectoryAPIError."""
        call_count = [0]

        def operation():
            call_count[0] += 1
            raise TransportError("dns")

        with pytest.raises(DirectoryAPIError, match="dns"):
            api._retry_with_backoff(operation, "op")

        assert call_count[0] == 1
        mock_sleep.assert_not_called()


    def test_refresh_error_means_credentials_unavailable(self, api):
        """Test that a failed token refresh is reported as missing credentials."""

        def operation():
            raise RefreshError("invalid_grant")

        with pytest.raises(CredentialsUnavailableError):
            api._retry_with_backoff(operation, "op")


class TestIterContacts:
    """Tests for paginated listing."""

    def test_single_page(self, api):
        """Test listing a single page of contacts."""
        service = api._services["alice"]
        service.people().connections().list().execute.return_value = {
            "connections": [make_person("people/c1"), make_person("people/c2")],
        }

        contacts = list(api.iter_contacts("alice"))

        assert [c.resource_id for c in contacts] == ["people/c1", "people/c2"]

    def test_follows_next_page_token(self, api):
        """Test that pagination continues until no nextPageToken is returned."""
        service = api._services["alice"]
        list_call = service.people().connections().list
        list_call.reset_mock()
        list_call.return_value.execute.side_effect = [
            {"connections": [make_person("people/c1")], "nextPageToken": "p2"},
            {"connections": [make_person("people/c2")]},
        ]

        contacts = api.list_contacts("alice")

        assert [c.resource_id for c in contacts] == ["people/c1", "people/c2"]
        first_kwargs = list_call.call_args_list[0].kwargs
        second_kwargs = list_call.call_args_list[1].kwargs
        assert first_kwargs["personFields"] == PERSON_FIELDS
        assert first_kwargs["pageSize"] == DEFAULT_PAGE_SIZE
        assert "pageToken" not in first_kwargs
        assert second_kwargs["pageToken"] == "p2"

    def test_empty_directory(self, api):
        """Test listing when the owner has no contacts."""
        service = api._services["alice"]
        service.people().connections().list().execute.return_value = {}

        assert api.list_contacts("alice") == []

    def test_skips_connections_without_resource_name(self, api):
        """Test that malformed connections are skipped."""
        service = api._services["alice"]
        service.people().connections().list().execute.return_value = {
            "connections": [{"etag": "x"}, make_person("people/c1")],
        }

        contacts = api.list_contacts("alice")

        assert [c.resource_id for c in contacts] == ["people/c1"]

    def test_reads_source_tags(self, api):
        """Test that clientData tags are parsed onto the remote contact."""
        service = api._services["alice"]
        service.people().connections().list().execute.return_value = {
            "connections": [make_person("people/c1", tag="local-1")],
        }

        (contact,) = api.list_contacts("alice")

        assert contact.tag_for("CRM_CONTACT") == "local-1"

    @patch("time.sleep")
    def test_page_failure_raises(self, mock_sleep, api):
        """Test that a failing page aborts the listing."""
        service = api._services["alice"]
        service.people().connections().list().execute.side_effect = (
            make_http_error(500)
        )

        with pytest.raises(DirectoryAPIError):
            api.list_contacts("alice")


class TestContactOperations:
    """Tests for single-contact operations."""

    def test_get_contact(self, api):
        service = api._services["alice"]
        service.people().get().execute.return_value = make_person("people/c9")

        contact = api.get_contact("alice", "people/c9")

        assert contact.resource_id == "people/c9"
        service.people().get.assert_called_with(
            resourceName="people/c9", personFields=PERSON_FIELDS
        )

    def test_create_contact_sends_source_tag(self, api):
        """Test that created contacts carry the local id as clientData."""
        service = api._services["alice"]
        service.people().createContact().execute.return_value = make_person(
            "people/new", etag="e1", tag="local-1"
        )

        created = api.create_contact(
            "alice",
            ContactFields(first_name="Ada", email="ada@example.com"),
            SourceTag("CRM_CONTACT", "local-1"),
        )

        assert created.resource_id == "people/new"
        assert created.version_tag == "e1"
        kwargs = service.people().createContact.call_args.kwargs
        body = kwargs["body"]
        assert body["clientData"] == [{"key": "CRM_CONTACT", "value": "local-1"}]
        assert body["names"] == [{"givenName": "Ada"}]
        assert "phoneNumbers" not in body
        assert kwargs["personFields"] == PERSON_FIELDS

    def test_update_contact_sends_etag(self, api):
        """Test that updates carry the expected etag and clear emptied fields."""
        service = api._services["alice"]
        service.people().updateContact().execute.return_value = make_person(
            "people/c1", etag="e2"
        )

        updated = api.update_contact(
            "alice", "people/c1", ContactFields(first_name="Ada"), "e1"
        )

        assert updated.version_tag == "e2"
        kwargs = service.people().updateContact.call_args.kwargs
        assert kwargs["resourceName"] == "people/c1"
        assert kwargs["updatePersonFields"] == UPDATE_PERSON_FIELDS
        assert kwargs["body"]["etag"] == "e1"
        assert kwargs["body"]["emailAddresses"] == []
        assert kwargs["body"]["phoneNumbers"] == []

    def test_update_contact_stale_etag_raises_conflict(self, api):
        """Test that a rejected etag surfaces as VersionConflictError."""
        service = api._services["alice"]
        service.people().updateContact().execute.side_effect = make_http_error(
            400, b"failedPrecondition: etag mismatch"
        )

        with pytest.raises(VersionConflictError):
            api.update_contact("alice", "people/c1", ContactFields(), "stale")

    def test_delete_contact(self, api):
        service = api._services["alice"]
        service.people().deleteContact().execute.return_value = {}

        assert api.delete_contact("alice", "people/c1") is True
        service.people().deleteContact.assert_called_with(resourceName="people/c1")

    def test_delete_missing_contact_counts_as_deleted(self, api):
        """Test that deleting an already-deleted contact succeeds."""
        service = api._services["alice"]
        service.people().deleteContact().execute.side_effect = make_http_error(404)

        assert api.delete_contact("alice", "people/gone") is True
