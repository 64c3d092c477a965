"""
Environment Variable Provider
=============================
Reads a password or base64-encoded certificate from a named variable.

The variables come from an explicit mapping handed over at construction
(normally the snapshot taken by the config layer), not from the live
process environment.
"""

from __future__ import annotations

import logging
from typing import Mapping

from ..errors import ConfigurationError, CredentialRetrievalError
from ..models import CredentialResult, EnvironmentConfig
from .base import classify_credential

logger = logging.getLogger(__name__)


class EnvironmentProvider:
    """Credential provider backed by an environment variable."""

    def __init__(self, config: EnvironmentConfig, environ: Mapping[str, str]):
        self.config = config
        self._environ = environ
        self.validate()

    @property
    def name(self) -> str:
        return "Environment Variable"

    def validate(self) -> None:
        if not self.config.variable_name:
            raise ConfigurationError("Environment variable name is required (variable_name)")

    def fetch(self) -> CredentialResult:
        var = self.config.variable_name
        logger.info(f"[ENV] Reading credential from environment variable '{var}'")
        value = self._environ.get(var, "")
        if not value:
            raise CredentialRetrievalError(
                f"Environment variable '{var}' is not set or empty"
            )

        passphrase = None
        if self.config.password_variable_name:
            passphrase = self._environ.get(self.config.password_variable_name) or None

        result = classify_credential(value, passphrase=passphrase, source=f"variable '{var}'")
        logger.info(f"[ENV] Retrieved {result.describe()}")
        return result
