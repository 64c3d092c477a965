"""
Tests for run_config.py: environment snapshot parsing and CLI layering.
"""

import argparse
import os

import pytest

from msauth.errors import ConfigurationError, UnsupportedProviderError
from msauth.models import (
    AuthIdentity,
    CredentialType,
    EnvironmentConfig,
    KeyVaultConfig,
    LocalFileConfig,
    ProviderKind,
)
from msauth.run_config import INLINE_PASSWORD_VARIABLE, AuthConfig, EnvVars

BASE_ENV = {
    EnvVars.EMAIL: "qa@contoso.com",
    EnvVars.KEYVAULT_ENDPOINT: "https://kv-e2e.vault.azure.net/",
    EnvVars.KEYVAULT_SECRET_NAME: "ms-auth",
}


def cli_args(**kwargs):
    defaults = dict(
        url="https://contoso.sharepoint.com", email=None, credential_type=None,
        credential_provider=None, keyvault_endpoint=None, keyvault_secret=None,
        local_file=None, env_variable=None, password=None, github_repo=None,
        github_secret=None, output_dir=None, headful=False, debug=False,
    )
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


class TestFromEnv:

    def test_defaults(self):
        cfg = AuthConfig.from_env(BASE_ENV)
        assert cfg.email == "qa@contoso.com"
        assert cfg.credential_type is CredentialType.PASSWORD
        assert cfg.provider_kind is ProviderKind.KEY_VAULT
        assert cfg.provider_config == KeyVaultConfig(
            "https://kv-e2e.vault.azure.net/", "ms-auth", None, allow_interactive=True
        )
        assert cfg.session_ttl_hours == 24.0
        assert cfg.login_endpoint == "login.microsoftonline.com"
        assert cfg.headless is True
        assert cfg.wait_for_client_tokens is True
        assert cfg.client_token_timeout_ms == 30_000
        assert cfg.output_dir is None

    @pytest.mark.parametrize("ci_var", ["CI", "TF_BUILD"])
    def test_ci_disables_interactive_credential(self, ci_var):
        cfg = AuthConfig.from_env({**BASE_ENV, ci_var: "true"})
        assert cfg.provider_config.allow_interactive is False

    def test_overrides(self):
        cfg = AuthConfig.from_env({
            **BASE_ENV,
            EnvVars.CREDENTIAL_TYPE: "Certificate",
            EnvVars.CREDENTIAL_PROVIDER: "local-file",
            EnvVars.LOCAL_FILE_PATH: "/secrets/qa.pfx",
            EnvVars.CERTIFICATE_PASSWORD: "pp",
            EnvVars.STORAGE_STATE_EXPIRATION: "0.5",
            EnvVars.LOGIN_ENDPOINT: "login.microsoftonline.us",
            EnvVars.WAIT_FOR_MSAL_TOKENS: "false",
            EnvVars.MSAL_TOKEN_TIMEOUT: "5000",
            EnvVars.BROWSER_CHANNEL: "msedge",
        })
        assert cfg.credential_type is CredentialType.CERTIFICATE
        assert cfg.provider_config == LocalFileConfig("/secrets/qa.pfx", "pp")
        assert cfg.session_ttl_hours == 0.5
        assert cfg.login_endpoint == "login.microsoftonline.us"
        assert cfg.wait_for_client_tokens is False
        assert cfg.client_token_timeout_ms == 5000
        assert cfg.browser_channel == "msedge"

    def test_email_required(self):
        with pytest.raises(ConfigurationError, match=EnvVars.EMAIL):
            AuthConfig.from_env({})

    def test_invalid_email(self):
        with pytest.raises(ConfigurationError, match="Invalid email"):
            AuthConfig.from_env({**BASE_ENV, EnvVars.EMAIL: "not-an-email"})

    def test_unknown_provider(self):
        with pytest.raises(UnsupportedProviderError):
            AuthConfig.from_env({**BASE_ENV, EnvVars.CREDENTIAL_PROVIDER: "lastpass"})

    def test_bad_number(self):
        with pytest.raises(ConfigurationError, match=EnvVars.STORAGE_STATE_EXPIRATION):
            AuthConfig.from_env({**BASE_ENV, EnvVars.STORAGE_STATE_EXPIRATION: "a day"})

    def test_non_positive_ttl(self):
        with pytest.raises(ConfigurationError, match="session_ttl_hours"):
            AuthConfig.from_env({**BASE_ENV, EnvVars.STORAGE_STATE_EXPIRATION: "0"})

    def test_snapshot_is_detached(self):
        env = dict(BASE_ENV)
        cfg = AuthConfig.from_env(env)
        env[EnvVars.EMAIL] = "changed@contoso.com"
        assert cfg.environ[EnvVars.EMAIL] == "qa@contoso.com"


class TestFromCliArgs:

    def test_flags_win_over_environment(self):
        cfg = AuthConfig.from_cli_args(
            cli_args(email="cli@contoso.com", output_dir="/tmp/auth", headful=True), BASE_ENV,
        )
        assert cfg.email == "cli@contoso.com"
        assert cfg.output_dir == "/tmp/auth"
        assert cfg.headless is False

    def test_inline_password_uses_environment_provider(self, monkeypatch):
        monkeypatch.delenv(INLINE_PASSWORD_VARIABLE, raising=False)
        cfg = AuthConfig.from_cli_args(cli_args(password="hunter2"), BASE_ENV)

        assert cfg.provider_kind is ProviderKind.ENVIRONMENT
        assert cfg.provider_config == EnvironmentConfig(INLINE_PASSWORD_VARIABLE)
        assert cfg.environ[INLINE_PASSWORD_VARIABLE] == "hunter2"
        assert INLINE_PASSWORD_VARIABLE not in os.environ

    def test_secret_not_in_repr(self):
        cfg = AuthConfig.from_cli_args(cli_args(password="hunter2"), BASE_ENV)
        assert "hunter2" not in repr(cfg)


class TestDirectConstruction:

    def test_plain_strings_are_normalised(self):
        cfg = AuthConfig(
            identity="qa@contoso.com",
            provider_kind="env",
            provider_config=EnvironmentConfig("APP_PW"),
            credential_type="Certificate",
        )
        assert cfg.identity == AuthIdentity("qa@contoso.com")
        assert cfg.email == "qa@contoso.com"
        assert cfg.provider_kind is ProviderKind.ENVIRONMENT
        assert cfg.credential_type is CredentialType.CERTIFICATE
        cfg.validate()

    def test_bad_strings_fail_at_construction(self):
        with pytest.raises(ConfigurationError):
            AuthConfig(
                identity="qa@contoso.com",
                provider_kind="environment",
                provider_config=EnvironmentConfig("APP_PW"),
                credential_type="smartcard",
            )
        with pytest.raises(ConfigurationError, match="Invalid email"):
            AuthConfig(
                identity="qa",
                provider_kind="environment",
                provider_config=EnvironmentConfig("APP_PW"),
            )


class TestValidate:

    def test_mismatched_provider_config(self):
        cfg = AuthConfig.from_env(BASE_ENV)
        broken = AuthConfig(
            identity=cfg.identity,
            provider_kind=ProviderKind.ENVIRONMENT,
            provider_config=cfg.provider_config,
        )
        with pytest.raises(ConfigurationError, match="does not match"):
            broken.validate()

    def test_login_endpoint_must_be_hostname(self):
        cfg = AuthConfig.from_env(BASE_ENV)
        broken = AuthConfig(
            identity=cfg.identity,
            provider_kind=cfg.provider_kind,
            provider_config=cfg.provider_config,
            login_endpoint="https://login.microsoftonline.com/",
        )
        with pytest.raises(ConfigurationError, match="login_endpoint"):
            broken.validate()
