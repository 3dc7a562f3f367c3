"""
OAuth2 authentication module for CRM contact synchronization.

Provides OAuth 2.0 authentication with support for:
- One token per CRM owner, each bound to that owner's Google account
- Automatic token refresh
- Secure credential storage in the configuration directory
- Graceful handling of expired tokens
"""

import json
import logging
import re
from pathlib import Path
from typing import Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from crm_sync.utils.paths import resolve_config_dir

# OAuth2 scopes required for Google Contacts access
SCOPES = ["https://www.googleapis.com/auth/contacts"]

# Owner ids become part of a file name
OWNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]{0,127}$")

TOKEN_PREFIX = "token_"

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when authentication fails or credentials are invalid."""

    pass


def validate_owner_id(owner_id: str) -> str:
    """
    Validate an owner identifier.

    Args:
        owner_id: Owner identifier to validate

    Returns:
        The owner id unchanged

    Raises:
        ValueError: If owner_id is empty or contains unsupported characters
    """
    if not owner_id or not OWNER_ID_PATTERN.match(owner_id):
        raise ValueError(
            f"Invalid owner id '{owner_id}'. Use letters, digits, '.', '_', "
            "'@' or '-' (must start with a letter or digit)."
        )
    return owner_id


class GoogleAuth:
    """
    OAuth2 authentication manager keyed by CRM owner.

    Each owner authorizes their own Google account once; the resulting
    token is stored as token_<owner_id>.json and refreshed as needed.

    Attributes:
        config_dir: Directory for storing credentials and tokens
        credentials_path: Path to OAuth client credentials file

    Usage:
        auth = GoogleAuth()

        # Authorize an owner (opens a browser)
        auth.authenticate('alice')

        # Get credentials if already authenticated
        creds = auth.get_credentials('alice')
    """

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize the authentication manager.

        Args:
            config_dir: Directory for storing credentials and tokens.
                       Defaults to ~/.crm-sync/ or $CRM_SYNC_CONFIG_DIR
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.credentials_path = self.config_dir / "credentials.json"

    def _get_token_path(self, owner_id: str) -> Path:
        validate_owner_id(owner_id)
        return self.config_dir / f"{TOKEN_PREFIX}{owner_id}.json"

    def _ensure_config_dir(self) -> None:
        """Create the configuration directory with mode 700 if missing."""
        if not self.config_dir.exists():
            self.config_dir.mkdir(parents=True, mode=0o700)
            logger.debug(f"Created config directory: {self.config_dir}")

    def _load_credentials(self, owner_id: str) -> Optional[Credentials]:
        """
        Load credentials from the owner's token file if it exists.

        Returns:
            Credentials object, or None if the file is missing or invalid
        """
        token_path = self._get_token_path(owner_id)

        if not token_path.exists():
            logger.debug(f"No token file found for {owner_id}")
            return None

        try:
            creds: Credentials = Credentials.from_authorized_user_file(
                str(token_path), SCOPES
            )
            logger.debug(f"Loaded credentials for {owner_id}")
            return creds
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Invalid token file for {owner_id}: {e}")
            return None

    def _save_credentials(self, owner_id: str, creds: Credentials) -> None:
        self._ensure_config_dir()
        token_path = self._get_token_path(owner_id)

        token_path.write_text(creds.to_json())
        token_path.chmod(0o600)
        logger.debug(f"Saved credentials for {owner_id}")

    def _refresh_credentials(self, creds: Credentials) -> bool:
        """
        Attempt to refresh expired credentials.

        Returns:
            True if refresh succeeded, False otherwise
        """
        if not creds.refresh_token:
            logger.debug("No refresh token available")
            return False

        try:
            creds.refresh(Request())
            logger.debug("Successfully refreshed credentials")
            return True
        except (RefreshError, TransportError) as e:
            logger.warning(f"Failed to refresh credentials: {e}")
            return False

    def get_credentials(self, owner_id: str) -> Optional[Credentials]:
        """
        Get valid credentials for an owner if available.

        Attempts to load and refresh credentials without user interaction.

        Args:
            owner_id: Owner identifier

        Returns:
            Valid Credentials object, or None if not available

        Raises:
            ValueError: If owner_id is invalid
        """
        creds = self._load_credentials(owner_id)

        if creds is None:
            return None

        if creds.valid:
            return creds

        if creds.expired and creds.refresh_token and self._refresh_credentials(creds):
            self._save_credentials(owner_id, creds)
            return creds

        return None

    def authenticate(self, owner_id: str, force_reauth: bool = False) -> Credentials:
        """
        Authorize an owner's Google account.

        If valid credentials exist and force_reauth is False, returns existing
        credentials. Otherwise, runs the OAuth flow in a local browser.

        Args:
            owner_id: Owner identifier
            force_reauth: If True, ignore existing credentials and re-authenticate

        Returns:
            Valid Credentials object

        Raises:
            ValueError: If owner_id is invalid
            AuthenticationError: If authentication fails
            FileNotFoundError: If credentials.json is not found
        """
        validate_owner_id(owner_id)

        if not force_reauth:
            creds = self.get_credentials(owner_id)
            if creds is not None:
                logger.info(f"Using existing credentials for {owner_id}")
                return creds

        if not self.credentials_path.exists():
            raise FileNotFoundError(
                f"OAuth credentials file not found: {self.credentials_path}\n"
                "Please download your OAuth client credentials from "
                "Google Cloud Console and save them to this location."
            )

        logger.info(f"Starting OAuth flow for {owner_id}")

        try:
            flow = InstalledAppFlow.from_client_secrets_file(
                str(self.credentials_path), SCOPES
            )
            new_creds: Credentials = flow.run_local_server(port=0)
            self._save_credentials(owner_id, new_creds)
            logger.info(f"Successfully authenticated {owner_id}")
            return new_creds

        except Exception as e:
            logger.error(f"Authentication failed for {owner_id}: {e}")
            raise AuthenticationError(f"Failed to authenticate {owner_id}: {e}") from e

    def is_authenticated(self, owner_id: str) -> bool:
        """Check if an owner has valid credentials."""
        return self.get_credentials(owner_id) is not None

    def clear_credentials(self, owner_id: str) -> bool:
        """
        Remove stored credentials for an owner.

        Returns:
            True if credentials were removed, False if they didn't exist

        Raises:
            ValueError: If owner_id is invalid
        """
        token_path = self._get_token_path(owner_id)

        if token_path.exists():
            token_path.unlink()
            logger.info(f"Cleared credentials for {owner_id}")
            return True

        return False

    def list_owners(self) -> list[str]:
        """Get the owner ids that have a stored token file."""
        if not self.config_dir.exists():
            return []

        owners = []
        for token_path in sorted(self.config_dir.glob(f"{TOKEN_PREFIX}*.json")):
            owner_id = token_path.stem[len(TOKEN_PREFIX) :]
            if OWNER_ID_PATTERN.match(owner_id):
                owners.append(owner_id)
        return owners

    def get_auth_status(self, owner_id: str) -> dict[str, object]:
        """
        Get authentication status for an owner.

        Returns:
            Dictionary with 'authenticated', 'token_path' and 'token_exists'
        """
        token_path = self._get_token_path(owner_id)
        creds = self.get_credentials(owner_id)

        return {
            "owner_id": owner_id,
            "authenticated": creds is not None,
            "token_path": str(token_path),
            "token_exists": token_path.exists(),
        }
