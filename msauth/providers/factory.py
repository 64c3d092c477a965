"""
Credential Provider Factory
===========================
Maps a ``ProviderKind`` plus its configuration to a fresh provider.

Adding a backend:
    1. Add a value to ``ProviderKind`` and a config dataclass in ``models``
    2. Write the provider class (``name`` / ``validate`` / ``fetch``)
    3. Add one entry to ``_BUILDERS``

Instances are never cached: providers may hold short-lived backend
client handles, so every call builds new state.

Usage::

    from msauth.providers import CredentialProviderFactory

    provider = CredentialProviderFactory.create("local-file", LocalFileConfig("pw.txt"))
    credential = provider.fetch()
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..models import (
    CiSecretConfig,
    EnvironmentConfig,
    KeyVaultConfig,
    LocalFileConfig,
    ProviderConfig,
    ProviderKind,
)
from .base import CredentialProvider
from .ci_secret import CiSecretProvider
from .environment import EnvironmentProvider
from .key_vault import KeyVaultProvider
from .local_file import LocalFileProvider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

_Builder = Callable[[ProviderConfig, Mapping[str, str]], CredentialProvider]

_BUILDERS: Dict[ProviderKind, Tuple[type, _Builder]] = {
    ProviderKind.KEY_VAULT: (KeyVaultConfig, lambda cfg, env: KeyVaultProvider(cfg)),
    ProviderKind.LOCAL_FILE: (LocalFileConfig, lambda cfg, env: LocalFileProvider(cfg)),
    ProviderKind.ENVIRONMENT: (EnvironmentConfig, lambda cfg, env: EnvironmentProvider(cfg, env)),
    ProviderKind.CI_SECRET: (CiSecretConfig, lambda cfg, env: CiSecretProvider(cfg, env)),
}


class CredentialProviderFactory:
    """Builds credential providers by kind."""

    @staticmethod
    def create(
        kind: Union[str, ProviderKind],
        config: ProviderConfig,
        environ: Optional[Mapping[str, str]] = None,
    ) -> CredentialProvider:
        """Build a provider for *kind*.

        Args:
            kind:    Provider tag or ``ProviderKind``.
            config:  The matching provider config variant.
            environ: Environment snapshot for the env-backed providers.
                     Defaults to a copy of the process environment.

        Raises:
            UnsupportedProviderError: *kind* is not a known provider.
            ConfigurationError:       *config* is missing a required field.
            TypeError:                *config* is the wrong variant for *kind*.
        """
        provider_kind = ProviderKind.parse(kind)
        config_type, builder = _BUILDERS[provider_kind]
        if not isinstance(config, config_type):
            raise TypeError(
                f"{provider_kind.value} provider expects {config_type.__name__}, "
                f"got {type(config).__name__}"
            )
        if environ is None:
            environ = dict(os.environ)
        provider = builder(config, environ)
        logger.debug(f"[PROVIDER-FACTORY] Built provider: {provider.name}")
        return provider

    @staticmethod
    def supported_providers() -> List[str]:
        """Return the tags of every supported provider."""
        return [kind.value for kind in _BUILDERS]
