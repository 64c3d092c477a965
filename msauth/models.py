"""
Data Model
==========
Value types shared by the providers, the session cache and the
authenticator.

    - ``AuthIdentity``     : the account being signed in (cache key)
    - ``CredentialType``   : password | certificate
    - ``ProviderKind``     : which credential backend to use
    - ``ProviderConfig``   : one dataclass per backend
    - ``CredentialResult`` : the fetched secret, tagged with its type
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .errors import ConfigurationError, UnsupportedProviderError

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CredentialType(str, Enum):
    PASSWORD = "password"
    CERTIFICATE = "certificate"

    @classmethod
    def parse(cls, value: Union[str, "CredentialType"]) -> "CredentialType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"credential_type must be 'password' or 'certificate', got {value!r}"
            ) from None


class ProviderKind(str, Enum):
    KEY_VAULT = "azure-keyvault"
    LOCAL_FILE = "local-file"
    ENVIRONMENT = "environment"
    CI_SECRET = "github-secrets"

    @classmethod
    def parse(cls, value: Union[str, "ProviderKind"]) -> "ProviderKind":
        """Resolve a provider tag, accepting the short aliases too."""
        if isinstance(value, cls):
            return value
        tag = str(value).strip().lower()
        tag = _PROVIDER_ALIASES.get(tag, tag)
        try:
            return cls(tag)
        except ValueError:
            raise UnsupportedProviderError(
                f"Unsupported credential provider type: {value!r}"
            ) from None


_PROVIDER_ALIASES = {
    "key-vault": "azure-keyvault",
    "keyvault": "azure-keyvault",
    "ci-secret": "github-secrets",
    "file": "local-file",
    "env": "environment",
}


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthIdentity:
    """The account to sign in. Primary key for session caching."""
    email: str

    def __post_init__(self):
        if not self.email or not _EMAIL_RE.match(self.email):
            raise ConfigurationError(f"Invalid email format: {self.email!r}")

    def __str__(self) -> str:
        return self.email


# ---------------------------------------------------------------------------
# Provider configuration variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KeyVaultConfig:
    vault_endpoint: str = ""
    secret_name: str = ""
    secret_version: Optional[str] = None
    allow_interactive: bool = True
    """Add the interactive browser credential to the chain (off in CI)."""

    kind = ProviderKind.KEY_VAULT


@dataclass(frozen=True)
class LocalFileConfig:
    file_path: str = ""
    certificate_password: Optional[str] = None

    kind = ProviderKind.LOCAL_FILE


@dataclass(frozen=True)
class EnvironmentConfig:
    variable_name: str = ""
    password_variable_name: Optional[str] = None

    kind = ProviderKind.ENVIRONMENT


@dataclass(frozen=True)
class CiSecretConfig:
    repository: str = ""
    secret_name: str = ""

    kind = ProviderKind.CI_SECRET


ProviderConfig = Union[KeyVaultConfig, LocalFileConfig, EnvironmentConfig, CiSecretConfig]


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------

@dataclass(frozen=True, repr=False)
class CredentialResult:
    """A fetched credential.

    ``certificate`` values are raw PKCS#12 bytes, ``password`` values are
    text. Never persisted; ``repr`` hides the value.
    """
    type: CredentialType
    value: Union[str, bytes]
    passphrase: Optional[str] = None

    def __post_init__(self):
        if self.type is CredentialType.CERTIFICATE and not isinstance(self.value, bytes):
            raise TypeError("certificate credentials must carry bytes")
        if self.type is CredentialType.PASSWORD and not isinstance(self.value, str):
            raise TypeError("password credentials must carry text")

    @property
    def is_certificate(self) -> bool:
        return self.type is CredentialType.CERTIFICATE

    def fingerprint(self) -> str:
        """SHA-256 hex digest of the certificate bytes (diagnostics only)."""
        data = self.value if isinstance(self.value, bytes) else self.value.encode("utf-8")
        return hashlib.sha256(data).hexdigest()

    def describe(self) -> str:
        if self.is_certificate:
            return f"certificate ({len(self.value)} bytes)"
        return f"password ({len(self.value)} characters)"

    def __repr__(self) -> str:
        return f"CredentialResult(type={self.type.value!r}, value=<{self.describe()}>)"
