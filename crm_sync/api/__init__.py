"""
crm_sync.api - Remote directory client

Google People API access scoped per owner.
"""

from crm_sync.api.directory_api import (
    ContactNotFoundError,
    CredentialsUnavailableError,
    DirectoryAPI,
    DirectoryAPIError,
    RateLimitError,
    VersionConflictError,
)

__all__ = [
    "DirectoryAPI",
    "DirectoryAPIError",
    "RateLimitError",
    "VersionConflictError",
    "ContactNotFoundError",
    "CredentialsUnavailableError",
]
