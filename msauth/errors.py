"""
Error Taxonomy
==============
Every fatal condition raised by the authentication core.

Configuration and provider errors surface before a browser is launched.
Flow errors surface at the end of a pass, after a diagnostic screenshot.
Callers receive the original exception with its message intact.
"""

from __future__ import annotations

from typing import Optional


class MsAuthError(Exception):
    """Base class for all authentication core errors."""


# ---------------------------------------------------------------------------
# Pre-flight
# ---------------------------------------------------------------------------

class ConfigurationError(MsAuthError):
    """Missing or invalid configuration (names the offending field)."""


class UnsupportedProviderError(ConfigurationError):
    """Unknown credential provider kind."""


class CredentialRetrievalError(MsAuthError):
    """A credential backend could not produce a usable secret."""


# ---------------------------------------------------------------------------
# Login flow
# ---------------------------------------------------------------------------

class LoginPageMismatchError(MsAuthError):
    """The browser never reached the identity provider's sign-in page."""


class PasswordAuthenticationError(MsAuthError):
    """Password field missing or the provider rejected the password."""


class CertificateAuthenticationError(MsAuthError):
    """The provider rejected the client certificate."""

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class RedirectTimeoutError(MsAuthError):
    """Sign-in finished but the browser never left the identity provider."""


# ---------------------------------------------------------------------------
# Session storage
# ---------------------------------------------------------------------------

class StorageAccessError(MsAuthError):
    """Session file could not be read or written."""


class SessionNotFoundError(StorageAccessError):
    """No valid session snapshot exists for the identity."""
