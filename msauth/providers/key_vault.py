"""
Azure Key Vault Provider
========================
Fetches a password or PFX certificate stored as a Key Vault secret.

The secret's ``content_type`` is authoritative when set
(``application/x-pkcs12`` → certificate, anything else → password);
only untyped secrets fall back to ``classify_credential()``.

The ``SecretClient`` is built once at construction (or injected by the
caller) and released with ``close()``.
"""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from azure.core.exceptions import AzureError
from azure.identity import (
    AzureCliCredential,
    AzureDeveloperCliCredential,
    AzurePowerShellCredential,
    ChainedTokenCredential,
    InteractiveBrowserCredential,
)
from azure.keyvault.secrets import SecretClient

from ..errors import ConfigurationError, CredentialRetrievalError
from ..models import CredentialResult, CredentialType, KeyVaultConfig
from .base import classify_credential

logger = logging.getLogger(__name__)

PKCS12_CONTENT_TYPE = "application/x-pkcs12"
_INTERACTIVE_REDIRECT_URI = "http://localhost:8080/"


def build_token_credential(allow_interactive: bool) -> ChainedTokenCredential:
    """Developer-tool credentials first, interactive browser last."""
    chain = [
        AzureCliCredential(),
        AzurePowerShellCredential(),
        AzureDeveloperCliCredential(),
    ]
    if allow_interactive:
        chain.append(InteractiveBrowserCredential(redirect_uri=_INTERACTIVE_REDIRECT_URI))
    return ChainedTokenCredential(*chain)


class KeyVaultProvider:
    """Credential provider backed by an Azure Key Vault secret."""

    def __init__(self, config: KeyVaultConfig, client: Optional[SecretClient] = None):
        self.config = config
        self.validate()
        self._client = client or SecretClient(
            vault_url=config.vault_endpoint,
            credential=build_token_credential(config.allow_interactive),
        )

    @property
    def name(self) -> str:
        return "Azure KeyVault"

    def validate(self) -> None:
        if not self.config.vault_endpoint:
            raise ConfigurationError("KeyVault endpoint is required (vault_endpoint)")
        if not self.config.secret_name:
            raise ConfigurationError("Secret name is required (secret_name)")
        parsed = urlparse(self.config.vault_endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(
                f"Invalid KeyVault endpoint URL: {self.config.vault_endpoint}"
            )

    def fetch(self) -> CredentialResult:
        cfg = self.config
        logger.info(
            f"[KEYVAULT] Retrieving secret '{cfg.secret_name}' from '{cfg.vault_endpoint}'"
        )
        try:
            secret = self._client.get_secret(cfg.secret_name, version=cfg.secret_version)
        except AzureError as exc:
            raise CredentialRetrievalError(
                f"Unable to retrieve secret '{cfg.secret_name}' from KeyVault: {exc}"
            ) from exc

        if not secret.value:
            raise CredentialRetrievalError(
                f"Secret '{cfg.secret_name}' has no value. "
                f"Check permissions and ensure the secret exists."
            )

        props = secret.properties
        logger.debug(
            f"[KEYVAULT] Secret metadata: enabled={props.enabled}, "
            f"not_before={props.not_before}, expires_on={props.expires_on}, "
            f"content_type={props.content_type}"
        )
        self._check_validity(props.enabled, props.not_before, props.expires_on)

        content_type = (props.content_type or "").strip().lower()
        if content_type == PKCS12_CONTENT_TYPE:
            try:
                blob = base64.b64decode(secret.value, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise CredentialRetrievalError(
                    f"Secret '{cfg.secret_name}' is marked PKCS#12 but is not valid base64"
                ) from exc
            result = CredentialResult(CredentialType.CERTIFICATE, blob)
        elif content_type:
            result = CredentialResult(CredentialType.PASSWORD, secret.value)
        else:
            result = classify_credential(secret.value, source=f"secret '{cfg.secret_name}'")

        logger.info(f"[KEYVAULT] Retrieved {result.describe()}")
        return result

    def _check_validity(
        self,
        enabled: Optional[bool],
        not_before: Optional[datetime],
        expires_on: Optional[datetime],
    ) -> None:
        name = self.config.secret_name
        now = datetime.now(timezone.utc)
        if not enabled:
            raise CredentialRetrievalError(f"Secret '{name}' is disabled")
        if expires_on and expires_on < now:
            raise CredentialRetrievalError(
                f"Secret '{name}' expired on {expires_on.isoformat()}"
            )
        if not_before and not_before > now:
            raise CredentialRetrievalError(
                f"Secret '{name}' is not valid before {not_before.isoformat()}"
            )

    def close(self) -> None:
        self._client.close()
