"""
Tests for auth/cert_bridge.py.

The PKCS#12 fixture is generated on the fly; upstream HTTP is replaced by
a scripted session so no network is touched.
"""

import asyncio
import datetime
from pathlib import Path
from types import SimpleNamespace

import pytest
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from urllib3 import HTTPHeaderDict

from msauth.auth.cert_bridge import (
    CertificateRouteBridge,
    cert_auth_glob,
    flatten_headers,
    forwardable_headers,
    write_client_identity,
)
from msauth.errors import CertificateAuthenticationError

CERTAUTH_URL = "https://t.certauth.login.microsoftonline.com/abc/certauth"


@pytest.fixture(scope="module")
def pfx_bundle():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "qa@contoso.com")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    blob = pkcs12.serialize_key_and_certificates(
        b"qa", key, cert, None, serialization.BestAvailableEncryption(b"pfx-pass")
    )
    return blob, cert


# ====================================================================
# Fakes for requests + Playwright routing
# ====================================================================

class FakeRaw:
    def __init__(self, body: bytes, headers: HTTPHeaderDict):
        self._body = body
        self.headers = headers

    def stream(self, amt, decode_content=None):
        assert decode_content is False
        for i in range(0, len(self._body), 4):
            yield self._body[i:i + 4]


class FakeResponse:
    def __init__(self, status=200, body=b"<html>ok</html>", headers=None, reason="OK"):
        self.status_code = status
        self.reason = reason
        self.raw = FakeRaw(body, headers if headers is not None else HTTPHeaderDict())
        self.closed = False

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.headers = {"User-Agent": "python-requests/2.x", "Accept": "*/*"}
        self.response = response
        self.error = error
        self.calls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return None

    def request(self, method, url, **kwargs):
        self.calls.append(dict(method=method, url=url, session_headers=dict(self.headers), **kwargs))
        if self.error:
            raise self.error
        return self.response


class FakeRoute:
    def __init__(self):
        self.fulfilled = None
        self.aborted = None

    async def fulfill(self, **kwargs):
        self.fulfilled = kwargs

    async def abort(self, error_code=None):
        self.aborted = error_code


class FakeRequest:
    method = "POST"
    url = CERTAUTH_URL
    post_data_buffer = b"ctx=abc&flowtoken=xyz"

    async def all_headers(self):
        return {
            ":authority": "t.certauth.login.microsoftonline.com",
            "content-type": "application/x-www-form-urlencoded",
            "cookie": "buid=1",
        }


class FakeRoutingPage:
    def __init__(self):
        self.routes = []

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))


def drive(bridge):
    """Install the bridge, deliver one intercepted request, report handled."""
    route = FakeRoute()
    page = FakeRoutingPage()

    async def scenario():
        await bridge.install(page)
        await bridge.handle(route, FakeRequest())
        return await bridge.wait_handled(0.1)

    handled = asyncio.run(scenario())
    return route, page, handled


# ====================================================================
# Client identity
# ====================================================================

class TestClientIdentity:

    def test_writes_pem_pair(self, pfx_bundle, tmp_path):
        blob, cert = pfx_bundle
        cert_path, key_path = write_client_identity(blob, "pfx-pass", tmp_path)

        loaded = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
        assert loaded == cert
        assert b"BEGIN PRIVATE KEY" in Path(key_path).read_bytes()
        assert (Path(key_path).stat().st_mode & 0o777) == 0o600

    def test_wrong_passphrase(self, pfx_bundle, tmp_path):
        with pytest.raises(CertificateAuthenticationError, match="Unable to load"):
            write_client_identity(pfx_bundle[0], "wrong", tmp_path)

    def test_not_a_pfx(self, tmp_path):
        with pytest.raises(CertificateAuthenticationError):
            write_client_identity(b"\x30" + b"\x00" * 200, None, tmp_path)

    def test_temp_material_removed_on_close(self, pfx_bundle):
        with CertificateRouteBridge(pfx_bundle[0], "pfx-pass") as bridge:
            tmpdir = Path(bridge._tmpdir.name)
            assert (tmpdir / "key.pem").exists()
        assert not tmpdir.exists()


# ====================================================================
# Header helpers
# ====================================================================

class TestHeaders:

    def test_pseudo_headers_dropped(self):
        assert forwardable_headers({":method": "POST", "cookie": "a=1"}) == {"cookie": "a=1"}

    def test_set_cookie_joined_by_newline(self):
        headers = HTTPHeaderDict()
        headers.add("Set-Cookie", "ESTSAUTH=1; path=/")
        headers.add("Set-Cookie", "ESTSAUTHPERSISTENT=2; path=/")
        headers.add("Cache-Control", "no-store")
        headers.add("Cache-Control", "no-cache")
        flat = flatten_headers(headers)
        assert flat["Set-Cookie"] == "ESTSAUTH=1; path=/\nESTSAUTHPERSISTENT=2; path=/"
        assert flat["Cache-Control"] == "no-store, no-cache"

    def test_plain_mapping(self):
        assert flatten_headers({"location": "/x"}) == {"location": "/x"}

    def test_route_pattern(self):
        assert cert_auth_glob() == "https://*certauth.login.microsoftonline.com/**"
        assert cert_auth_glob("login.microsoftonline.us") == "https://*certauth.login.microsoftonline.us/**"


# ====================================================================
# Route handling
# ====================================================================

class TestRouteHandling:

    def test_success_fulfils_with_upstream_response(self, pfx_bundle):
        headers = HTTPHeaderDict()
        headers.add("Content-Type", "text/html")
        headers.add("Set-Cookie", "a=1")
        headers.add("Set-Cookie", "b=2")
        response = FakeResponse(302, b"<html>redirecting</html>", headers, "Found")
        session = FakeSession(response)

        with CertificateRouteBridge(
            pfx_bundle[0], "pfx-pass", session_factory=lambda: session
        ) as bridge:
            route, page, handled = drive(bridge)
            client_cert = bridge._client_cert

        assert handled is True
        assert page.routes[0][0] == "https://*certauth.login.microsoftonline.com/**"
        assert route.aborted is None
        assert route.fulfilled == {
            "status": 302,
            "headers": {"Content-Type": "text/html", "Set-Cookie": "a=1\nb=2"},
            "body": b"<html>redirecting</html>",
        }
        assert bridge.last_status == 302
        assert response.closed

        call = session.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == CERTAUTH_URL
        assert call["session_headers"] == {}
        assert ":authority" not in call["headers"]
        assert call["headers"]["cookie"] == "buid=1"
        assert call["data"] == b"ctx=abc&flowtoken=xyz"
        assert call["cert"] == client_cert
        assert call["allow_redirects"] is False
        assert call["stream"] is True

    def test_upstream_error_status_aborts(self, pfx_bundle):
        response = FakeResponse(500, b"boom", reason="Internal Server Error")
        session = FakeSession(response)
        with CertificateRouteBridge(pfx_bundle[0], "pfx-pass", session_factory=lambda: session) as bridge:
            route, _, handled = drive(bridge)

        assert handled is True
        assert route.fulfilled is None
        assert route.aborted == "failed"
        assert response.closed

    def test_transport_error_aborts(self, pfx_bundle):
        session = FakeSession(error=requests.ConnectionError("TLS handshake failed"))
        with CertificateRouteBridge(pfx_bundle[0], "pfx-pass", session_factory=lambda: session) as bridge:
            route, _, _ = drive(bridge)
        assert route.fulfilled is None
        assert route.aborted == "failed"

    def test_wait_handled_times_out_without_traffic(self, pfx_bundle):
        async def scenario(bridge):
            await bridge.install(FakeRoutingPage())
            return await bridge.wait_handled(0.01)

        with CertificateRouteBridge(pfx_bundle[0], "pfx-pass") as bridge:
            assert asyncio.run(scenario(bridge)) is False

    def test_wait_handled_before_install(self, pfx_bundle):
        with CertificateRouteBridge(pfx_bundle[0], "pfx-pass") as bridge:
            assert asyncio.run(bridge.wait_handled(0.01)) is False
