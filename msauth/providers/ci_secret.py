"""
CI Secret Provider
==================
Reads a repository secret that the CI runner (GitHub Actions) exposes
to the job as an environment variable.

The variable name is the secret name upper-cased with every character
outside ``[A-Z0-9_]`` replaced by ``_``.
"""

from __future__ import annotations

import logging
import re
from typing import Mapping

from ..errors import ConfigurationError, CredentialRetrievalError
from ..models import CiSecretConfig, CredentialResult
from .base import classify_credential

logger = logging.getLogger(__name__)

_REPOSITORY_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


def secret_env_name(secret_name: str) -> str:
    return re.sub(r"[^A-Z0-9_]", "_", secret_name.upper())


class CiSecretProvider:
    """Credential provider backed by a CI repository secret."""

    def __init__(self, config: CiSecretConfig, environ: Mapping[str, str]):
        self.config = config
        self._environ = environ
        self.validate()

    @property
    def name(self) -> str:
        return "GitHub Secrets"

    def validate(self) -> None:
        if not self.config.repository:
            raise ConfigurationError("GitHub repository is required (repository, format: owner/repo)")
        if not _REPOSITORY_RE.match(self.config.repository):
            raise ConfigurationError(
                f"Invalid repository '{self.config.repository}' (expected owner/repo)"
            )
        if not self.config.secret_name:
            raise ConfigurationError("GitHub secret name is required (secret_name)")

    def fetch(self) -> CredentialResult:
        var = secret_env_name(self.config.secret_name)
        logger.info(
            f"[CI-SECRET] Looking for secret '{self.config.secret_name}' "
            f"of {self.config.repository} in ${var}"
        )
        value = self._environ.get(var, "")
        if not value:
            raise CredentialRetrievalError(
                f"Secret '{self.config.secret_name}' not found in environment. "
                f"Expose it to the job as ${var}."
            )
        result = classify_credential(value, source=f"secret '{self.config.secret_name}'")
        logger.info(f"[CI-SECRET] Retrieved {result.describe()}")
        return result
