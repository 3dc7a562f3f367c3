"""
crm_sync.auth - Per-owner Google OAuth credentials
"""

from crm_sync.auth.google_auth import AuthenticationError, GoogleAuth, validate_owner_id

__all__ = ["GoogleAuth", "AuthenticationError", "validate_owner_id"]
