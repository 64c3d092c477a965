"""
Credential Provider Contract
============================
Every backend exposes the same small surface:

    - ``name``     : human readable backend name (diagnostics only)
    - ``validate()``: raise ``ConfigurationError`` naming the bad field;
                      called from ``__init__``, never deferred to fetch time
    - ``fetch()``  : return a ``CredentialResult`` or raise
                      ``CredentialRetrievalError``

Backends that cannot rely on authoritative metadata classify the raw
secret with ``classify_credential()`` so every variant agrees on what
counts as a certificate.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Optional, Protocol, Union, runtime_checkable

from ..models import CredentialResult, CredentialType

logger = logging.getLogger(__name__)

# DER SEQUENCE tag that opens every PKCS#12 / X.509 structure
_DER_SEQUENCE = 0x30
# Anything shorter cannot be a real PFX bundle
MIN_CERTIFICATE_BYTES = 100


@runtime_checkable
class CredentialProvider(Protocol):
    """Capability implemented by each credential backend."""

    @property
    def name(self) -> str:
        ...

    def validate(self) -> None:
        ...

    def fetch(self) -> CredentialResult:
        ...


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def looks_like_certificate(data: bytes) -> bool:
    """True if *data* opens with a DER SEQUENCE and is large enough."""
    return len(data) > MIN_CERTIFICATE_BYTES and data[0] == _DER_SEQUENCE


def _b64decode(text: str) -> Optional[bytes]:
    compact = "".join(text.split())
    if not compact:
        return None
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        return None


def classify_credential(
    raw: Union[bytes, str],
    *,
    passphrase: Optional[str] = None,
    source: str = "credential",
) -> CredentialResult:
    """Decide whether *raw* is a certificate or a password.

    Certificate if the bytes (as-is, or after base64 decoding) start with
    ``0x30`` and exceed ``MIN_CERTIFICATE_BYTES``. Otherwise the content
    is a password, trimmed of surrounding whitespace; bytes that are not
    valid UTF-8 are replaced with U+FFFD.
    """
    data = raw if isinstance(raw, bytes) else raw.encode("utf-8")

    if looks_like_certificate(data):
        return CredentialResult(CredentialType.CERTIFICATE, data, passphrase)

    text = data.decode("utf-8", errors="replace")

    decoded = _b64decode(text)
    if decoded is not None and looks_like_certificate(decoded):
        logger.debug(f"[PROVIDER] {source}: base64-encoded certificate detected")
        return CredentialResult(CredentialType.CERTIFICATE, decoded, passphrase)

    return CredentialResult(CredentialType.PASSWORD, text.strip())
