"""
Certificate Route Bridge
========================
Answers the identity provider's certificate-authentication request
out-of-band with a TLS client certificate.

Browsers cannot be handed a client certificate programmatically, so the
bridge intercepts ``https://*certauth.<endpoint>/**`` in the page,
replays each request (method, headers, body) over a ``requests`` session
authenticated with the PFX identity, and fulfils the browser request
with the raw upstream response.

Failure policy:
    - transport error or status >= 400 → the browser request is aborted
    - nothing partial is ever fulfilled

The response body is read as a stream of raw (still encoded) chunks and
joined only for the final ``route.fulfill``.

See https://learn.microsoft.com/en-us/entra/identity/authentication/concept-certificate-based-authentication-technical-deep-dive
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple

import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from playwright.async_api import Page, Request, Route
from urllib3.exceptions import HTTPError as TransportError

from ..errors import CertificateAuthenticationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

DEFAULT_AUTH_ENDPOINT = "login.microsoftonline.com"
_REPLAY_TIMEOUT_S = 60
_CHUNK_SIZE = 16 * 1024
_MULTI_LINE_HEADERS = {"set-cookie"}


def cert_auth_glob(endpoint: str = DEFAULT_AUTH_ENDPOINT) -> str:
    """Route pattern for the certificate-auth sub-host of *endpoint*."""
    return f"https://*certauth.{endpoint}/**"


class BridgeReplayError(Exception):
    """Upstream replay failed; the intercepted request must be aborted."""


# ---------------------------------------------------------------------------
# Client identity
# ---------------------------------------------------------------------------

def write_client_identity(
    pfx: bytes, passphrase: Optional[str], directory: Path
) -> Tuple[str, str]:
    """Unpack a PKCS#12 blob into ``cert.pem`` / ``key.pem`` under *directory*.

    Returns:
        ``(cert_path, key_path)`` in the form ``requests`` expects for ``cert=``.

    Raises:
        CertificateAuthenticationError: the blob cannot be opened.
    """
    password = passphrase.encode("utf-8") if passphrase else None
    try:
        key, cert, extra = pkcs12.load_key_and_certificates(pfx, password)
    except (ValueError, TypeError) as exc:
        raise CertificateAuthenticationError(
            f"Unable to load client certificate: {exc}"
        ) from exc
    if key is None or cert is None:
        raise CertificateAuthenticationError(
            "Client certificate bundle must contain a certificate and its private key"
        )

    chain = [cert, *(extra or [])]
    cert_path = directory / "cert.pem"
    key_path = directory / "key.pem"
    cert_path.write_bytes(
        b"".join(c.public_bytes(serialization.Encoding.PEM) for c in chain)
    )
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    os.chmod(key_path, 0o600)
    return str(cert_path), str(key_path)


def forwardable_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Intercepted headers minus HTTP/2 pseudo-headers."""
    return {k: v for k, v in headers.items() if not k.startswith(":")}


def flatten_headers(headers) -> Dict[str, str]:
    """Collapse multi-valued response headers into the dict ``fulfill`` takes.

    ``set-cookie`` values are joined with newlines (one cookie per line),
    everything else with ``", "``.
    """
    getlist = getattr(headers, "getlist", None)
    flat: Dict[str, str] = {}
    for name in headers.keys():
        values = getlist(name) if getlist else [headers[name]]
        sep = "\n" if name.lower() in _MULTI_LINE_HEADERS else ", "
        flat[name] = sep.join(values)
    return flat


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------

class CertificateRouteBridge:
    """Intercepts certificate-auth requests and answers them with a client cert.

    The PEM material lives in a private temporary directory until
    ``close()``.  Use as a context manager or call ``close()`` explicitly.
    """

    def __init__(
        self,
        pfx: bytes,
        passphrase: Optional[str] = None,
        auth_endpoint: str = DEFAULT_AUTH_ENDPOINT,
        *,
        session_factory: Callable[[], requests.Session] = requests.Session,
        timeout_s: float = _REPLAY_TIMEOUT_S,
    ):
        self.auth_endpoint = auth_endpoint or DEFAULT_AUTH_ENDPOINT
        self.pattern = cert_auth_glob(self.auth_endpoint)
        self.timeout_s = timeout_s
        self.last_status: Optional[int] = None
        self._session_factory = session_factory
        self._handled: Optional[asyncio.Event] = None
        self._tmpdir = tempfile.TemporaryDirectory(prefix="msauth-cert-")
        try:
            self._client_cert = write_client_identity(
                pfx, passphrase, Path(self._tmpdir.name)
            )
        except Exception:
            self._tmpdir.cleanup()
            raise

    def __enter__(self) -> "CertificateRouteBridge":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Public API ────────────────────────────────────────────────

    async def install(self, page: Page) -> None:
        """Arm the intercept on *page*.  Must run before any UI interaction."""
        self._handled = asyncio.Event()
        logger.info(f"[CERT-AUTH] Adding certificate authentication route: {self.pattern}")
        await page.route(self.pattern, self.handle)

    async def wait_handled(self, timeout_s: float) -> bool:
        """Wait until an intercepted request was fulfilled or aborted."""
        if self._handled is None:
            return False
        try:
            await asyncio.wait_for(self._handled.wait(), timeout=timeout_s)
            return True
        except asyncio.TimeoutError:
            return False

    def close(self) -> None:
        self._tmpdir.cleanup()

    # ── Route handler ─────────────────────────────────────────────

    async def handle(self, route: Route, request: Request) -> None:
        """Replay *request* with the client certificate and relay the result."""
        url = request.url
        logger.info(f"[CERT-AUTH] Handling certificate authentication request to {url[:120]}")
        try:
            headers = forwardable_headers(await request.all_headers())
            status, resp_headers, body = await asyncio.to_thread(
                self._replay, request.method, url, headers, request.post_data_buffer
            )
        except (requests.RequestException, TransportError, OSError, BridgeReplayError) as exc:
            logger.error(f"[CERT-AUTH] Failed to send cert auth request: {exc}")
            await route.abort("failed")
        else:
            self.last_status = status
            await route.fulfill(status=status, headers=resp_headers, body=body)
            logger.info(
                f"[CERT-AUTH] Certificate authentication request completed "
                f"with status {status} ({len(body)} bytes)"
            )
        finally:
            if self._handled is not None:
                self._handled.set()

    def _replay(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[bytes],
    ) -> Tuple[int, Dict[str, str], bytes]:
        with self._session_factory() as session:
            # only the browser's own headers go upstream
            session.headers.clear()
            response = session.request(
                method,
                url,
                headers=headers,
                data=body,
                cert=self._client_cert,
                stream=True,
                allow_redirects=False,
                timeout=self.timeout_s,
            )
            try:
                if response.status_code >= 400:
                    raise BridgeReplayError(
                        f"Cert auth request failed: {response.status_code} {response.reason}"
                    )
                chunks = []
                for chunk in response.raw.stream(_CHUNK_SIZE, decode_content=False):
                    chunks.append(chunk)
                return (
                    response.status_code,
                    flatten_headers(response.raw.headers),
                    b"".join(chunks),
                )
            finally:
                response.close()
