"""
Local File Provider
===================
Reads a password or certificate from a file on disk.

The file extension is treated as an explicit marker: ``.txt``, ``.pwd``
and ``.password`` hold passwords, ``.pfx`` and ``.p12`` hold certificates.
Any other file is classified by content.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ..errors import ConfigurationError, CredentialRetrievalError
from ..models import CredentialResult, CredentialType, LocalFileConfig
from .base import classify_credential

logger = logging.getLogger(__name__)

_PASSWORD_SUFFIXES = {".txt", ".pwd", ".password"}
_CERTIFICATE_SUFFIXES = {".pfx", ".p12"}


class LocalFileProvider:
    """Credential provider backed by a local file."""

    def __init__(self, config: LocalFileConfig):
        self.config = config
        self.validate()

    @property
    def name(self) -> str:
        return "Local File"

    def validate(self) -> None:
        if not self.config.file_path:
            raise ConfigurationError("File path is required for local file provider (file_path)")

    def fetch(self) -> CredentialResult:
        path = Path(self.config.file_path)
        logger.info(f"[LOCAL-FILE] Reading credential from '{path}'")
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise CredentialRetrievalError(
                f"Failed to read credential file '{path}': {exc}"
            ) from exc

        suffix = path.suffix.lower()
        if suffix in _PASSWORD_SUFFIXES:
            try:
                result = CredentialResult(
                    CredentialType.PASSWORD, content.decode("utf-8").strip()
                )
            except UnicodeDecodeError as exc:
                raise CredentialRetrievalError(
                    f"Password file '{path}' is not valid UTF-8"
                ) from exc
        elif suffix in _CERTIFICATE_SUFFIXES:
            result = CredentialResult(
                CredentialType.CERTIFICATE, content, self.config.certificate_password
            )
        else:
            result = classify_credential(
                content,
                passphrase=self.config.certificate_password,
                source=f"file '{path.name}'",
            )

        logger.info(f"[LOCAL-FILE] Retrieved {result.describe()}")
        return result
