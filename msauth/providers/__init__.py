"""
Credential Providers
====================
Pluggable backends that fetch the secret used to sign in.

    - ``KeyVaultProvider``   : Azure Key Vault secret
    - ``LocalFileProvider``  : file on disk
    - ``EnvironmentProvider``: environment variable
    - ``CiSecretProvider``   : CI repository secret
    - ``CredentialProviderFactory``: the only way the authenticator builds one
"""

from .base import CredentialProvider, classify_credential, looks_like_certificate
from .ci_secret import CiSecretProvider
from .environment import EnvironmentProvider
from .factory import CredentialProviderFactory
from .key_vault import KeyVaultProvider
from .local_file import LocalFileProvider

__all__ = [
    "CredentialProvider",
    "CredentialProviderFactory",
    "classify_credential",
    "looks_like_certificate",
    "KeyVaultProvider",
    "LocalFileProvider",
    "EnvironmentProvider",
    "CiSecretProvider",
]
