"""
Authentication Run Configuration
================================
Single source of truth for every authentication default.

``AuthConfig`` is built exactly once per invocation, either from an
environment snapshot (``from_env``) or from CLI arguments layered over
that snapshot (``from_cli_args``), and is immutable afterwards.  The
authenticator and the providers only ever see this object; nothing
downstream reads the live process environment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .models import (
    AuthIdentity,
    CiSecretConfig,
    CredentialType,
    EnvironmentConfig,
    KeyVaultConfig,
    LocalFileConfig,
    ProviderConfig,
    ProviderKind,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults, the only place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "credential_type": "password",
    "provider_kind": "azure-keyvault",
    "session_ttl_hours": 24.0,
    "login_endpoint": "login.microsoftonline.com",
    "headless": True,
    "wait_for_client_tokens": True,
    "client_token_timeout_ms": 30_000,
    "settle_delay_ms": 2_000,
}

# Environment entry used by ``--password``; lives only in the snapshot
INLINE_PASSWORD_VARIABLE = "MS_AUTH_PASSWORD_INLINE"


class EnvVars:
    """Environment variable names understood by ``AuthConfig.from_env``."""
    EMAIL = "MS_AUTH_EMAIL"
    CREDENTIAL_TYPE = "MS_AUTH_CREDENTIAL_TYPE"
    CREDENTIAL_PROVIDER = "MS_AUTH_CREDENTIAL_PROVIDER"
    KEYVAULT_ENDPOINT = "MS_AUTH_KEYVAULT_ENDPOINT"
    KEYVAULT_SECRET_NAME = "MS_AUTH_KEYVAULT_SECRET_NAME"
    KEYVAULT_SECRET_VERSION = "MS_AUTH_KEYVAULT_SECRET_VERSION"
    LOCAL_FILE_PATH = "MS_AUTH_LOCAL_FILE_PATH"
    CERTIFICATE_PASSWORD = "MS_AUTH_CERTIFICATE_PASSWORD"
    ENV_VARIABLE_NAME = "MS_AUTH_ENV_VARIABLE_NAME"
    OUTPUT_DIR = "MS_AUTH_OUTPUT_DIR"
    LOGIN_ENDPOINT = "MS_AUTH_LOGIN_ENDPOINT"
    STORAGE_STATE_EXPIRATION = "MS_AUTH_STORAGE_STATE_EXPIRATION"
    GITHUB_REPOSITORY = "MS_AUTH_GITHUB_REPOSITORY"
    GITHUB_SECRET_NAME = "MS_AUTH_GITHUB_SECRET_NAME"
    WAIT_FOR_MSAL_TOKENS = "MS_AUTH_WAIT_FOR_MSAL_TOKENS"
    MSAL_TOKEN_TIMEOUT = "MS_AUTH_MSAL_TOKEN_TIMEOUT"
    BROWSER_CHANNEL = "MS_AUTH_BROWSER_CHANNEL"
    SYSTEM_DEBUG = "SYSTEM_DEBUG"


ENV_HELP: List[Tuple[str, List[Tuple[str, str]]]] = [
    ("Core Configuration", [
        (EnvVars.EMAIL, "User email address"),
        (EnvVars.CREDENTIAL_TYPE, "Credential type (password|certificate)"),
        (EnvVars.CREDENTIAL_PROVIDER,
         "Provider type (azure-keyvault|local-file|environment|github-secrets)"),
        (EnvVars.OUTPUT_DIR, "Output directory for storage state"),
        (EnvVars.LOGIN_ENDPOINT, "Entra login endpoint (default: login.microsoftonline.com)"),
        (EnvVars.STORAGE_STATE_EXPIRATION, "Hours until storage state expires (default: 24)"),
        (EnvVars.WAIT_FOR_MSAL_TOKENS, "Wait for MSAL tokens in localStorage (default: true)"),
        (EnvVars.MSAL_TOKEN_TIMEOUT, "Max wait for MSAL tokens in ms (default: 30000)"),
        (EnvVars.BROWSER_CHANNEL, "Browser channel, e.g. msedge (default: bundled chromium)"),
    ]),
    ("Azure KeyVault Provider", [
        (EnvVars.KEYVAULT_ENDPOINT, "KeyVault endpoint URL"),
        (EnvVars.KEYVAULT_SECRET_NAME, "Secret name in KeyVault"),
        (EnvVars.KEYVAULT_SECRET_VERSION, "Secret version (default: latest)"),
    ]),
    ("Local File Provider", [
        (EnvVars.LOCAL_FILE_PATH, "Path to credential file"),
        (EnvVars.CERTIFICATE_PASSWORD, "Password for encrypted certificate"),
    ]),
    ("Environment Variable Provider", [
        (EnvVars.ENV_VARIABLE_NAME, "Name of environment variable containing credential"),
        (EnvVars.CERTIFICATE_PASSWORD, "Name of variable holding the certificate password"),
    ]),
    ("GitHub Secrets Provider", [
        (EnvVars.GITHUB_REPOSITORY, "Repository (owner/repo)"),
        (EnvVars.GITHUB_SECRET_NAME, "Secret name"),
    ]),
    ("Debugging", [
        (EnvVars.SYSTEM_DEBUG, "Set to 'true' for debug logging"),
    ]),
]


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def _parse_float(raw: Optional[str], default: float, name: str) -> float:
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _is_ci(environ: Mapping[str, str]) -> bool:
    return bool(environ.get("CI") or environ.get("TF_BUILD"))


def provider_config_from_env(
    kind: ProviderKind, environ: Mapping[str, str]
) -> ProviderConfig:
    """Build the provider config variant for *kind* from *environ*."""
    if kind is ProviderKind.KEY_VAULT:
        return KeyVaultConfig(
            vault_endpoint=environ.get(EnvVars.KEYVAULT_ENDPOINT, ""),
            secret_name=environ.get(EnvVars.KEYVAULT_SECRET_NAME, ""),
            secret_version=environ.get(EnvVars.KEYVAULT_SECRET_VERSION) or None,
            allow_interactive=not _is_ci(environ),
        )
    if kind is ProviderKind.LOCAL_FILE:
        return LocalFileConfig(
            file_path=environ.get(EnvVars.LOCAL_FILE_PATH, ""),
            certificate_password=environ.get(EnvVars.CERTIFICATE_PASSWORD) or None,
        )
    if kind is ProviderKind.ENVIRONMENT:
        return EnvironmentConfig(
            variable_name=environ.get(EnvVars.ENV_VARIABLE_NAME, ""),
            password_variable_name=environ.get(EnvVars.CERTIFICATE_PASSWORD) or None,
        )
    if kind is ProviderKind.CI_SECRET:
        return CiSecretConfig(
            repository=environ.get(EnvVars.GITHUB_REPOSITORY, ""),
            secret_name=environ.get(EnvVars.GITHUB_SECRET_NAME, ""),
        )
    raise AssertionError(f"unhandled provider kind: {kind}")


# ---------------------------------------------------------------------------
# AuthConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthConfig:
    """
    Immutable configuration for one authentication pass.

    Populate via:
      - ``AuthConfig(identity=..., provider_kind=..., provider_config=...)``
      - ``AuthConfig.from_env(environ)``
      - ``AuthConfig.from_cli_args(ns, environ)``
    """

    identity: AuthIdentity
    provider_kind: ProviderKind
    provider_config: ProviderConfig
    credential_type: CredentialType = CredentialType(_DEFAULTS["credential_type"])

    # ---- Session cache ----
    output_dir: Optional[str] = None
    session_ttl_hours: float = _DEFAULTS["session_ttl_hours"]

    # ---- Identity provider ----
    login_endpoint: str = _DEFAULTS["login_endpoint"]

    # ---- Browser ----
    headless: bool = _DEFAULTS["headless"]
    browser_channel: Optional[str] = None

    # ---- Client-side token wait ----
    wait_for_client_tokens: bool = _DEFAULTS["wait_for_client_tokens"]
    client_token_timeout_ms: int = _DEFAULTS["client_token_timeout_ms"]
    settle_delay_ms: int = _DEFAULTS["settle_delay_ms"]

    # Snapshot handed to env-backed providers
    environ: Mapping[str, str] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        # Accept plain strings from direct construction
        if not isinstance(self.identity, AuthIdentity):
            object.__setattr__(self, "identity", AuthIdentity(str(self.identity)))
        object.__setattr__(self, "provider_kind", ProviderKind.parse(self.provider_kind))
        object.__setattr__(self, "credential_type", CredentialType.parse(self.credential_type))

    @property
    def email(self) -> str:
        return self.identity.email

    def validate(self) -> None:
        """Raise ``ConfigurationError`` for out-of-range values."""
        if self.session_ttl_hours <= 0:
            raise ConfigurationError("session_ttl_hours must be positive")
        if self.client_token_timeout_ms <= 0:
            raise ConfigurationError("client_token_timeout_ms must be positive")
        if not self.login_endpoint or "/" in self.login_endpoint:
            raise ConfigurationError(
                f"login_endpoint must be a bare hostname, got {self.login_endpoint!r}"
            )
        if not isinstance(self.provider_config, _CONFIG_TYPES[self.provider_kind]):
            raise ConfigurationError(
                f"provider_config does not match provider '{self.provider_kind.value}'"
            )

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "AuthConfig":
        """Build config from an environment snapshot."""
        return cls._build(dict(environ), overrides={})

    @classmethod
    def from_cli_args(cls, args, environ: Mapping[str, str]) -> "AuthConfig":
        """Build config from an argparse Namespace layered over *environ*.

        CLI flags win over environment variables.  ``--password`` switches
        to the environment provider through a private snapshot entry.
        """
        env: Dict[str, str] = dict(environ)
        flag_map = {
            "email": EnvVars.EMAIL,
            "credential_type": EnvVars.CREDENTIAL_TYPE,
            "credential_provider": EnvVars.CREDENTIAL_PROVIDER,
            "keyvault_endpoint": EnvVars.KEYVAULT_ENDPOINT,
            "keyvault_secret": EnvVars.KEYVAULT_SECRET_NAME,
            "local_file": EnvVars.LOCAL_FILE_PATH,
            "env_variable": EnvVars.ENV_VARIABLE_NAME,
            "github_repo": EnvVars.GITHUB_REPOSITORY,
            "github_secret": EnvVars.GITHUB_SECRET_NAME,
            "output_dir": EnvVars.OUTPUT_DIR,
        }
        for attr, var in flag_map.items():
            value = getattr(args, attr, None)
            if value:
                env[var] = value

        password = getattr(args, "password", None)
        if password:
            env[INLINE_PASSWORD_VARIABLE] = password
            env[EnvVars.CREDENTIAL_PROVIDER] = ProviderKind.ENVIRONMENT.value
            env[EnvVars.ENV_VARIABLE_NAME] = INLINE_PASSWORD_VARIABLE

        overrides = {}
        if getattr(args, "headful", False):
            overrides["headless"] = False
        return cls._build(env, overrides=overrides)

    @classmethod
    def _build(cls, env: Mapping[str, str], overrides: dict) -> "AuthConfig":
        email = env.get(EnvVars.EMAIL, "")
        if not email:
            raise ConfigurationError(f"{EnvVars.EMAIL} is required (or pass --email)")

        kind = ProviderKind.parse(
            env.get(EnvVars.CREDENTIAL_PROVIDER) or _DEFAULTS["provider_kind"]
        )
        cfg = cls(
            identity=AuthIdentity(email),
            credential_type=CredentialType.parse(
                env.get(EnvVars.CREDENTIAL_TYPE) or _DEFAULTS["credential_type"]
            ),
            provider_kind=kind,
            provider_config=provider_config_from_env(kind, env),
            output_dir=env.get(EnvVars.OUTPUT_DIR) or None,
            session_ttl_hours=_parse_float(
                env.get(EnvVars.STORAGE_STATE_EXPIRATION),
                _DEFAULTS["session_ttl_hours"],
                EnvVars.STORAGE_STATE_EXPIRATION,
            ),
            login_endpoint=env.get(EnvVars.LOGIN_ENDPOINT) or _DEFAULTS["login_endpoint"],
            headless=overrides.get("headless", _DEFAULTS["headless"]),
            browser_channel=env.get(EnvVars.BROWSER_CHANNEL) or None,
            wait_for_client_tokens=_parse_bool(
                env.get(EnvVars.WAIT_FOR_MSAL_TOKENS), _DEFAULTS["wait_for_client_tokens"]
            ),
            client_token_timeout_ms=int(_parse_float(
                env.get(EnvVars.MSAL_TOKEN_TIMEOUT),
                _DEFAULTS["client_token_timeout_ms"],
                EnvVars.MSAL_TOKEN_TIMEOUT,
            )),
            environ=env,
        )
        cfg.validate()
        return cfg

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self, url: str = "") -> None:
        """Emit a structured summary to the logger (never the secret)."""
        logger.info("=" * 60)
        logger.info("MS AUTH RUN CONFIG")
        logger.info("=" * 60)
        if url:
            logger.info(f"  URL:              {url}")
        logger.info(f"  Email:            {self.email}")
        logger.info(f"  Credential Type:  {self.credential_type.value}")
        logger.info(f"  Provider:         {self.provider_kind.value}")
        logger.info(f"  Login Endpoint:   {self.login_endpoint}")
        logger.info(f"  Browser Mode:     {'headless' if self.headless else 'headful'}")
        if self.browser_channel:
            logger.info(f"  Browser Channel:  {self.browser_channel}")
        logger.info(f"  Session TTL:      {self.session_ttl_hours}h")
        if self.output_dir:
            logger.info(f"  Output Dir:       {self.output_dir}")
        if self.wait_for_client_tokens:
            logger.info(f"  Token Wait:       {self.client_token_timeout_ms} ms")
        else:
            logger.info(f"  Token Wait:       disabled")
        logger.info("=" * 60)


_CONFIG_TYPES = {
    ProviderKind.KEY_VAULT: KeyVaultConfig,
    ProviderKind.LOCAL_FILE: LocalFileConfig,
    ProviderKind.ENVIRONMENT: EnvironmentConfig,
    ProviderKind.CI_SECRET: CiSecretConfig,
}
