"""
Google People API wrapper for the remote contact directory.

Provides a high-level, per-owner interface to the Google People API for:
- Streaming an owner's contacts page by page
- Creating contacts tagged with the local record they came from
- Updating contacts with etag preconditions
- Exponential backoff retry logic for rate limits and server errors
"""

import logging
import time
from collections.abc import Callable, Generator
from typing import Any, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from crm_sync.sync.contact import ContactFields, RemoteContact, SourceTag

# Person fields to request from the API
PERSON_FIELDS = ",".join(
    [
        "names",
        "emailAddresses",
        "phoneNumbers",
        "clientData",
        "metadata",
    ]
)

# Fields replaced when updating a contact; clientData is left untouched
UPDATE_PERSON_FIELDS = ",".join(
    [
        "names",
        "emailAddresses",
        "phoneNumbers",
    ]
)

# Number of contacts per page when listing (API max is 1000)
DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000

# Retry configuration defaults
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 60.0  # seconds

# Markers the API uses for a stale etag on a 400 response
PRECONDITION_MARKERS = (b"FAILED_PRECONDITION", b"failedPrecondition")

logger = logging.getLogger(__name__)

CredentialsProvider = Callable[[str], Optional[Credentials]]


class DirectoryAPIError(Exception):
    """Raised when a directory operation fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(DirectoryAPIError):
    """Raised when rate limit is exceeded and retries are exhausted."""

    pass


class VersionConflictError(DirectoryAPIError):
    """Raised when an update's etag no longer matches the remote record."""

    pass


class ContactNotFoundError(DirectoryAPIError):
    """Raised when the requested remote contact does not exist."""

    pass


class CredentialsUnavailableError(DirectoryAPIError):
    """Raised when no valid credential exists for an owner."""

    pass


def _is_precondition_failure(error: HttpError) -> bool:
    content = error.content or b""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return any(marker in content for marker in PRECONDITION_MARKERS)


def classify_http_error(error: HttpError, operation_name: str) -> DirectoryAPIError:
    """
    Map a non-retryable HttpError to the matching DirectoryAPIError subclass.

    Args:
        error: The error raised by the Google API client
        operation_name: Name for the error message

    Returns:
        The exception to raise in its place
    """
    status_code = error.resp.status

    if status_code == 404:
        return ContactNotFoundError(
            f"{operation_name} failed: contact not found", status_code
        )
    if status_code in (409, 412) or (
        status_code == 400 and _is_precondition_failure(error)
    ):
        return VersionConflictError(
            f"{operation_name} failed: contact was modified by another client",
            status_code,
        )
    return DirectoryAPIError(f"{operation_name} failed: {error}", status_code)


class DirectoryAPI:
    """
    Google People API client scoped per owner.

    Each owner's requests run under that owner's credentials, obtained from
    the credentials provider the first time the owner is used.

    Usage:
        auth = GoogleAuth(config_dir)
        api = DirectoryAPI(auth.get_credentials)

        # Stream all contacts for an owner
        for remote in api.iter_contacts("alice"):
            ...

        # Create a contact tagged with its local id
        created = api.create_contact(
            "alice", fields, SourceTag("CRM_CONTACT", local_id)
        )

        # Update with an etag precondition
        updated = api.update_contact("alice", resource_id, fields, etag)
    """

    def __init__(
        self,
        credentials_provider: CredentialsProvider,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
    ):
        """
        Initialize the directory client.

        Args:
            credentials_provider: Callable returning an owner's credentials,
                or None if the owner has not authenticated
            page_size: Number of contacts per page when listing (default 100)
            max_retries: Maximum attempts for failed API calls (default 5)
            initial_retry_delay: Initial backoff delay in seconds (default 1.0)
            max_retry_delay: Maximum backoff delay in seconds (default 60.0)
        """
        self.credentials_provider = credentials_provider
        self.page_size = min(page_size, MAX_PAGE_SIZE)
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self._services: dict[str, Any] = {}

    def service_for(self, owner_id: str) -> Any:
        """
        Get or create the Google API service object for an owner.

        Raises:
            CredentialsUnavailableError: If the owner has no valid credentials
            DirectoryAPIError: If the service cannot be created
        """
        if owner_id in self._services:
            return self._services[owner_id]

        credentials = self.credentials_provider(owner_id)
        if credentials is None:
            raise CredentialsUnavailableError(
                f"No valid credentials for owner {owner_id}. "
                f"Run 'crm-sync auth --owner {owner_id}' first."
            )

        try:
            service = build(
                "people", "v1", credentials=credentials, cache_discovery=False
            )
        except Exception as e:
            logger.error(f"Failed to create People API service for {owner_id}: {e}")
            raise DirectoryAPIError(f"Failed to create API service: {e}") from e

        logger.debug(f"Created People API service for owner {owner_id}")
        self._services[owner_id] = service
        return service

    def forget_owner(self, owner_id: str) -> None:
        """Drop the cached service so credentials are looked up again."""
        self._services.pop(owner_id, None)

    def _retry_with_backoff(
        self, operation: Callable[[], Any], operation_name: str
    ) -> Any:
        """
        Execute an operation with exponential backoff retry.

        Rate limits (429, 403) and server errors (5xx) are retried. Timeouts
        and connection failures are raised immediately.

        Raises:
            RateLimitError: If retries are exhausted due to rate limits
            CredentialsUnavailableError: If the credentials cannot be refreshed
            DirectoryAPIError: For other failures
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            try:
                return operation()

            except HttpError as e:
                status_code = e.resp.status

                if status_code in (429, 403):
                    if attempt < self.max_retries - 1:
                        logger.warning(
                            f"{operation_name} rate limited, retrying in "
                            f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                        )
                        time.sleep(delay)
                        delay = min(delay * 2, self.max_retry_delay)
                        continue
                    raise RateLimitError(
                        f"Rate limit exceeded for {operation_name} "
                        f"after {self.max_retries} retries",
                        status_code,
                    ) from e

                if status_code >= 500 and attempt < self.max_retries - 1:
                    logger.warning(
                        f"{operation_name} server error ({status_code}), "
                        f"retrying in {delay:.1f}s"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue

                logger.debug(f"{operation_name} failed with status {status_code}")
                raise classify_http_error(e, operation_name) from e

            except RefreshError as e:
                raise CredentialsUnavailableError(
                    f"{operation_name} failed: credentials could not be refreshed: {e}"
                ) from e

            except (OSError, httplib2.HttpLib2Error, TransportError) as e:
                logger.error(f"{operation_name} transport failure: {e}")
                raise DirectoryAPIError(f"{operation_name} failed: {e}") from e

        raise DirectoryAPIError(f"{operation_name} failed after all retries")

    def iter_contacts(self, owner_id: str) -> Generator[RemoteContact, None, None]:
        """
        Stream every contact of an owner, one page at a time.

        Each call starts again from the first page.

        Args:
            owner_id: The owner whose directory is read

        Yields:
            RemoteContact for each connection

        Raises:
            DirectoryAPIError: If any page fails to load
        """
        logger.debug(f"Listing contacts for owner {owner_id}")
        service = self.service_for(owner_id)

        page_token: Optional[str] = None
        page_number = 0
        total = 0

        while True:
            params: dict[str, Any] = {
                "resourceName": "people/me",
                "personFields": PERSON_FIELDS,
                "pageSize": self.page_size,
            }
            if page_token:
                params["pageToken"] = page_token

            def execute_list(p: dict[str, Any] = params) -> Any:
                return service.people().connections().list(**p).execute()

            page_number += 1
            response = self._retry_with_backoff(
                execute_list, f"list_contacts({owner_id}, page {page_number})"
            )

            for person in response.get("connections", []):
                if not person.get("resourceName"):
                    logger.warning("Skipping connection without a resourceName")
                    continue
                try:
                    contact = RemoteContact.from_api_response(person)
                except (AttributeError, TypeError, ValueError) as e:
                    logger.warning(
                        f"Failed to parse contact {person.get('resourceName')}: {e}"
                    )
                    continue
                total += 1
                yield contact

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.debug(f"Listed {total} contacts for owner {owner_id}")

    def list_contacts(self, owner_id: str) -> list[RemoteContact]:
        """List every contact of an owner."""
        return list(self.iter_contacts(owner_id))

    def get_contact(self, owner_id: str, resource_id: str) -> RemoteContact:
        """
        Get a single contact by resource id.

        Raises:
            ContactNotFoundError: If the contact does not exist
            DirectoryAPIError: If the request fails
        """
        logger.debug(f"Getting contact {resource_id} for owner {owner_id}")
        service = self.service_for(owner_id)

        def execute_get() -> Any:
            return (
                service.people()
                .get(resourceName=resource_id, personFields=PERSON_FIELDS)
                .execute()
            )

        response = self._retry_with_backoff(execute_get, f"get_contact({resource_id})")
        return RemoteContact.from_api_response(response)

    def create_contact(
        self, owner_id: str, fields: ContactFields, source_tag: SourceTag
    ) -> RemoteContact:
        """
        Create a contact tagged with the local record it came from.

        Args:
            owner_id: The owner whose directory receives the contact
            fields: Contact field values
            source_tag: Tag stored as clientData on the new contact

        Returns:
            Created RemoteContact with resource id and etag populated

        Raises:
            DirectoryAPIError: If creation fails
        """
        logger.debug(f"Creating contact for local record {source_tag.local_id}")
        service = self.service_for(owner_id)

        body = {key: value for key, value in fields.to_api_format().items() if value}
        body["clientData"] = [source_tag.to_client_data()]

        def execute_create() -> Any:
            return (
                service.people()
                .createContact(body=body, personFields=PERSON_FIELDS)
                .execute()
            )

        response = self._retry_with_backoff(
            execute_create, f"create_contact({source_tag.local_id})"
        )
        created = RemoteContact.from_api_response(response)

        logger.debug(f"Created contact {created.resource_id}")
        return created

    def update_contact(
        self,
        owner_id: str,
        resource_id: str,
        fields: ContactFields,
        expected_version_tag: str,
    ) -> RemoteContact:
        """
        Replace a contact's names, email and phone.

        Empty local values clear the remote value.

        Args:
            owner_id: The owner whose directory holds the contact
            resource_id: Contact to update
            fields: New field values
            expected_version_tag: Etag the remote record must still carry

        Returns:
            Updated RemoteContact with its new etag

        Raises:
            VersionConflictError: If the etag no longer matches
            ContactNotFoundError: If the contact no longer exists
            DirectoryAPIError: If the update fails
        """
        logger.debug(f"Updating contact {resource_id}")
        service = self.service_for(owner_id)

        body = fields.to_api_format()
        body["etag"] = expected_version_tag

        def execute_update() -> Any:
            return (
                service.people()
                .updateContact(
                    resourceName=resource_id,
                    body=body,
                    updatePersonFields=UPDATE_PERSON_FIELDS,
                    personFields=PERSON_FIELDS,
                )
                .execute()
            )

        response = self._retry_with_backoff(
            execute_update, f"update_contact({resource_id})"
        )
        updated = RemoteContact.from_api_response(response)

        logger.debug(f"Updated contact {resource_id}")
        return updated

    def delete_contact(self, owner_id: str, resource_id: str) -> bool:
        """
        Delete a contact.

        Returns:
            True if the contact is gone (including when it was already deleted)

        Raises:
            DirectoryAPIError: If deletion fails
        """
        logger.debug(f"Deleting contact {resource_id}")
        service = self.service_for(owner_id)

        def execute_delete() -> Any:
            return service.people().deleteContact(resourceName=resource_id).execute()

        try:
            self._retry_with_backoff(execute_delete, f"delete_contact({resource_id})")
        except ContactNotFoundError:
            logger.debug(f"Contact already deleted: {resource_id}")
        return True
