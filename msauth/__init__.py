"""
Playwright Microsoft Entra Authentication
=========================================
Signs a test identity in to Microsoft Entra with a password or a client
certificate and saves the browser ``storage_state`` so test suites can
start already authenticated.

CLI Usage:
    python -m msauth login --url <url> [options]
    python -m msauth env-help

Programmatic usage::

    import asyncio, os
    from msauth import AuthConfig, authenticate

    cfg = AuthConfig.from_env(os.environ)
    state_path = asyncio.run(authenticate(cfg, "https://contoso.sharepoint.com"))
"""

from .auth import (
    AuthState,
    CertificateRouteBridge,
    MsAuthenticator,
    SessionCache,
    authenticate,
    load_storage_state,
)
from .errors import (
    CertificateAuthenticationError,
    ConfigurationError,
    CredentialRetrievalError,
    LoginPageMismatchError,
    MsAuthError,
    PasswordAuthenticationError,
    RedirectTimeoutError,
    SessionNotFoundError,
    StorageAccessError,
    UnsupportedProviderError,
)
from .models import (
    AuthIdentity,
    CiSecretConfig,
    CredentialResult,
    CredentialType,
    EnvironmentConfig,
    KeyVaultConfig,
    LocalFileConfig,
    ProviderKind,
)
from .providers import CredentialProviderFactory
from .run_config import AuthConfig, EnvVars

__all__ = [
    'AuthConfig',
    'EnvVars',
    'AuthIdentity',
    'CredentialType',
    'ProviderKind',
    'KeyVaultConfig',
    'LocalFileConfig',
    'EnvironmentConfig',
    'CiSecretConfig',
    'CredentialResult',
    'CredentialProviderFactory',
    'MsAuthenticator',
    'AuthState',
    'CertificateRouteBridge',
    'SessionCache',
    'authenticate',
    'load_storage_state',
    # Errors
    'MsAuthError',
    'ConfigurationError',
    'UnsupportedProviderError',
    'CredentialRetrievalError',
    'LoginPageMismatchError',
    'PasswordAuthenticationError',
    'CertificateAuthenticationError',
    'RedirectTimeoutError',
    'StorageAccessError',
    'SessionNotFoundError',
]

__version__ = '1.0.0'
