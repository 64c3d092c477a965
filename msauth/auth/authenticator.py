"""
Microsoft Entra Authenticator
=============================
Drives one interactive sign-in through a Playwright browser and saves
the resulting ``storage_state`` so later test runs start authenticated.

The pass is an explicit state machine::

    CHECK_CACHE ─valid─▶ DONE
         │
         ▼
    FETCH_CREDENTIAL ▶ NAVIGATE ▶ VERIFY_LOGIN_PAGE ▶ ENTER_EMAIL ▶ CRED_BRANCH
                                                                     │
                              ┌──────── certificate ─────────────────┤
                              ▼                                      ▼
                       CERTIFICATE_FLOW                        PASSWORD_FLOW
                              └───────────────┬──────────────────────┘
                                              ▼
              STAY_SIGNED_IN_PROMPT ▶ REDIRECT_WAIT ▶ [TOKEN_WAIT] ▶ PERSIST_SESSION ▶ DONE

Any error moves the pass to FAILED: a diagnostic screenshot is taken and
the original exception is re-raised.  Nothing is retried.

Optional UI (account chooser, certificate link, "Stay signed in?") is
detected with ``probe()``, a bounded visibility check that answers a
plain bool.

Usage::

    from msauth import AuthConfig, authenticate

    cfg = AuthConfig.from_env(os.environ)
    state_path = await authenticate(cfg, "https://contoso.sharepoint.com")
"""

from __future__ import annotations

import logging
import re
from contextlib import AsyncExitStack, asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional
from urllib.parse import urlparse

from playwright.async_api import BrowserContext, Locator, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from ..errors import (
    CertificateAuthenticationError,
    LoginPageMismatchError,
    PasswordAuthenticationError,
    RedirectTimeoutError,
    StorageAccessError,
)
from ..models import CredentialResult
from ..providers.factory import CredentialProviderFactory
from ..run_config import AuthConfig
from .cert_bridge import CertificateRouteBridge
from .session_cache import SessionCache

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Timeouts (ms unless noted)
# ---------------------------------------------------------------------------

_LOGIN_PAGE_TIMEOUT_MS = 30_000
_PASSWORD_FIELD_TIMEOUT_MS = 10_000
_PASSWORD_ERROR_PROBE_MS = 1_000
_OPTIONAL_PROMPT_PROBE_MS = 5_000
_STAY_SIGNED_IN_PROBE_MS = 10_000
_CERT_RESPONSE_TIMEOUT_S = 60.0
_EXACT_REDIRECT_TIMEOUT_MS = 5_000
_POST_SUBMIT_PAUSE_MS = 1_000
_POST_PROMPT_PAUSE_MS = 2_000

# Host labels compared when the exact target URL was not reached
_REGISTRABLE_LABELS = 3


# ---------------------------------------------------------------------------
# Entra selectors
# ---------------------------------------------------------------------------

_CERT_FAILURE_HEADING = re.compile(
    r"Certificate validation failed|We couldn't sign you in with a certificate", re.I
)
_STAY_SIGNED_IN = re.compile(r"stay signed in", re.I)
_YES_BUTTON = re.compile(r"^yes$", re.I)
_PASSWORD_ERROR_SELECTOR = "#passwordError, .has-error"

_TOKEN_PREFIXES = ["msal."]
_TOKEN_SUBSTRINGS = ["accessToken", "idToken", "account", ".login.windows.net"]

_HAS_TOKEN_KEYS_JS = """(m) => {
    const keys = Object.keys(window.localStorage);
    return keys.some(k =>
        m.prefixes.some(p => k.startsWith(p)) ||
        m.substrings.some(s => k.includes(s)));
}"""

_TOKEN_KEYS_JS = """(m) => Object.keys(window.localStorage).filter(k =>
    m.prefixes.some(p => k.startsWith(p)) ||
    m.substrings.some(s => k.includes(s)))"""

_ALL_KEYS_JS = "() => Object.keys(window.localStorage)"


class AuthState(str, Enum):
    CHECK_CACHE = "CHECK_CACHE"
    FETCH_CREDENTIAL = "FETCH_CREDENTIAL"
    NAVIGATE = "NAVIGATE"
    VERIFY_LOGIN_PAGE = "VERIFY_LOGIN_PAGE"
    ENTER_EMAIL = "ENTER_EMAIL"
    CRED_BRANCH = "CRED_BRANCH"
    CERTIFICATE_FLOW = "CERTIFICATE_FLOW"
    PASSWORD_FLOW = "PASSWORD_FLOW"
    STAY_SIGNED_IN_PROMPT = "STAY_SIGNED_IN_PROMPT"
    REDIRECT_WAIT = "REDIRECT_WAIT"
    TOKEN_WAIT = "TOKEN_WAIT"
    PERSIST_SESSION = "PERSIST_SESSION"
    DONE = "DONE"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def probe(locator: Locator, timeout_ms: int) -> bool:
    """Bounded presence check: True if *locator* becomes visible in time."""
    try:
        await locator.first.wait_for(state="visible", timeout=timeout_ms)
        return True
    except PlaywrightError:
        return False


def _hostname(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def registrable_suffix(host: str, labels: int = _REGISTRABLE_LABELS) -> str:
    """Last *labels* DNS labels of *host*, e.g. ``x.test.powerapps.com`` → ``test.powerapps.com``."""
    return ".".join(host.lower().split(".")[-labels:])


def redirect_accepted(current_url: str, target_url: str, login_endpoint: str) -> bool:
    """Fallback success check after the exact target URL was not reached.

    Accepted when the current host shares the target's registrable
    suffix, or when the browser has left the identity provider's host.
    """
    current = _hostname(current_url)
    if not current:
        return False
    if registrable_suffix(current) == registrable_suffix(_hostname(target_url)):
        return True
    return login_endpoint.lower() not in current


def token_markers(login_endpoint: str) -> Dict[str, List[str]]:
    """localStorage key markers written by MSAL once tokens are cached."""
    provider_domain = "." + registrable_suffix(login_endpoint, labels=2)
    substrings = list(_TOKEN_SUBSTRINGS)
    if provider_domain not in substrings:
        substrings.append(provider_domain)
    return {"prefixes": list(_TOKEN_PREFIXES), "substrings": substrings}


@asynccontextmanager
async def launch_browser(config: AuthConfig) -> AsyncIterator[BrowserContext]:
    """Launch Chromium and yield a fresh context with no stored state."""
    async with async_playwright() as pw:
        browser = await pw.chromium.launch(
            headless=config.headless,
            channel=config.browser_channel,
            args=["--no-sandbox", "--disable-setuid-sandbox"],
        )
        logger.info(
            f"[MSAUTH] Browser launched ({'headless' if config.headless else 'headful'})"
        )
        try:
            context = await browser.new_context(storage_state=None)
            try:
                yield context
            finally:
                await context.close()
        finally:
            await browser.close()


BrowserLauncher = Callable[[AuthConfig], AsyncContextManager[BrowserContext]]


# ---------------------------------------------------------------------------
# One authentication pass
# ---------------------------------------------------------------------------

class AuthFlow:
    """State and step handlers for a single pass.  Not reusable."""

    _STEPS = {
        AuthState.CHECK_CACHE: "_check_cache",
        AuthState.FETCH_CREDENTIAL: "_fetch_credential",
        AuthState.NAVIGATE: "_navigate",
        AuthState.VERIFY_LOGIN_PAGE: "_verify_login_page",
        AuthState.ENTER_EMAIL: "_enter_email",
        AuthState.CRED_BRANCH: "_cred_branch",
        AuthState.CERTIFICATE_FLOW: "_certificate_flow",
        AuthState.PASSWORD_FLOW: "_password_flow",
        AuthState.STAY_SIGNED_IN_PROMPT: "_stay_signed_in",
        AuthState.REDIRECT_WAIT: "_redirect_wait",
        AuthState.TOKEN_WAIT: "_token_wait",
        AuthState.PERSIST_SESSION: "_persist_session",
    }

    def __init__(
        self,
        config: AuthConfig,
        target_url: str,
        *,
        cache: SessionCache,
        provider_factory=CredentialProviderFactory,
        launcher: BrowserLauncher = launch_browser,
        bridge_factory=CertificateRouteBridge,
    ):
        self.config = config
        self.target_url = target_url
        self.cache = cache
        self.session_path = cache.path_for(config.identity)
        self.state = AuthState.CHECK_CACHE
        self.history: List[AuthState] = []
        self.used_cache = False
        self.credential: Optional[CredentialResult] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.bridge: Optional[CertificateRouteBridge] = None
        self.login_host = config.login_endpoint
        self._provider_factory = provider_factory
        self._launcher = launcher
        self._bridge_factory = bridge_factory
        self._stack = AsyncExitStack()

    async def run(self) -> Path:
        """Walk the state machine to DONE and return the session path."""
        try:
            while self.state is not AuthState.DONE:
                self.history.append(self.state)
                logger.debug(f"[MSAUTH] State: {self.state.value}")
                step = getattr(self, self._STEPS[self.state])
                self.state = await step()
            self.history.append(AuthState.DONE)
            return self.session_path
        except Exception:
            failed_in = self.state
            self.state = AuthState.FAILED
            self.history.append(AuthState.FAILED)
            shot = await self._screenshot("failed")
            logger.error(
                f"[MSAUTH] Authentication failed in {failed_in.value}."
                + (f" Screenshot: {shot}" if shot else "")
            )
            try:
                await self._stack.aclose()
            except Exception as exc:
                logger.debug(f"[MSAUTH] Cleanup after failure raised: {exc}")
            raise
        finally:
            await self._stack.aclose()

    # ── Pre-browser steps ─────────────────────────────────────────

    async def _check_cache(self) -> AuthState:
        if self.cache.is_valid(self.session_path, self.config.session_ttl_hours):
            logger.info(
                f"[MSAUTH] Storage state for '{self.config.email}' is still valid, "
                f"skipping authentication"
            )
            self.used_cache = True
            return AuthState.DONE
        return AuthState.FETCH_CREDENTIAL

    async def _fetch_credential(self) -> AuthState:
        cfg = self.config
        logger.info(f"[MSAUTH] Starting authentication for '{cfg.email}'")
        provider = self._provider_factory.create(
            cfg.provider_kind, cfg.provider_config, environ=cfg.environ
        )
        logger.info(f"[MSAUTH] Credential provider: {provider.name}")
        try:
            self.credential = provider.fetch()
        finally:
            close = getattr(provider, "close", None)
            if close:
                close()

        if self.credential.type is not cfg.credential_type:
            logger.warning(
                f"[MSAUTH] Credential type mismatch: expected "
                f"'{cfg.credential_type.value}' but got '{self.credential.type.value}'"
            )
        return AuthState.NAVIGATE

    # ── Browser steps ─────────────────────────────────────────────

    async def _navigate(self) -> AuthState:
        self.context = await self._stack.enter_async_context(self._launcher(self.config))
        self.page = await self.context.new_page()
        logger.info(f"[MSAUTH] Navigating to {self.target_url}")
        await self.page.goto(self.target_url, wait_until="domcontentloaded")
        return AuthState.VERIFY_LOGIN_PAGE

    async def _verify_login_page(self) -> AuthState:
        endpoint = self.config.login_endpoint.lower()
        try:
            await self.page.wait_for_url(
                lambda url: _hostname(url) == endpoint,
                timeout=_LOGIN_PAGE_TIMEOUT_MS,
            )
        except PlaywrightTimeout as exc:
            raise LoginPageMismatchError(
                f"Expected Entra sign-in page on {endpoint}, but got {self.page.url}"
            ) from exc
        self.login_host = _hostname(self.page.url)
        logger.info(f"[MSAUTH] On Entra login page: {self.login_host}")
        return AuthState.ENTER_EMAIL

    async def _enter_email(self) -> AuthState:
        logger.info(f"[MSAUTH] Entering email: {self.config.email}")
        await self.page.get_by_role("textbox", name="email").fill(self.config.email)
        await self.page.get_by_role("button", name="next").click()
        return AuthState.CRED_BRANCH

    async def _cred_branch(self) -> AuthState:
        if self.credential.is_certificate:
            return AuthState.CERTIFICATE_FLOW
        return AuthState.PASSWORD_FLOW

    async def _certificate_flow(self) -> AuthState:
        page = self.page
        cert = self.credential
        logger.info("[MSAUTH] Using certificate authentication")
        logger.info(f"[MSAUTH] Certificate fingerprint: {cert.fingerprint()}")
        logger.info(f"[MSAUTH] Certificate size: {len(cert.value)} bytes")

        self.bridge = self._bridge_factory(cert.value, cert.passphrase, self.login_host)
        self._stack.callback(self.bridge.close)
        await self.bridge.install(page)

        work_or_school = page.get_by_role("button", name="Work or school account")
        if await probe(work_or_school, _OPTIONAL_PROMPT_PROBE_MS):
            logger.info("[MSAUTH] Selecting 'Work or school account'")
            await work_or_school.first.click()

        cert_option = page.get_by_role("link", name="certificate").or_(
            page.get_by_role("button", name="certificate")
        )
        if await probe(cert_option, _OPTIONAL_PROMPT_PROBE_MS):
            logger.info("[MSAUTH] Selecting certificate authentication")
            await cert_option.first.click()

        logger.info("[MSAUTH] Waiting for certificate authentication response")
        if not await self.bridge.wait_handled(_CERT_RESPONSE_TIMEOUT_S):
            logger.warning(
                "[MSAUTH] Certificate authentication response not detected, "
                "continuing in case the sign-in flow changed"
            )

        failure = page.get_by_role("heading", name=_CERT_FAILURE_HEADING)
        if await probe(failure, _OPTIONAL_PROMPT_PROBE_MS):
            heading = (await failure.first.text_content() or "").strip()
            logger.error(f"[MSAUTH] Certificate authentication failed: {heading}")
            detail = await self._certificate_error_detail()
            if detail:
                logger.error(f"[MSAUTH] Error details: {detail}")
            raise CertificateAuthenticationError(
                f"Certificate authentication failed for {self.config.email}: {heading}. "
                f"Check Entra sign-in logs.",
                detail=detail,
            )

        logger.info("[MSAUTH] Certificate authentication successful")
        await page.wait_for_timeout(_POST_PROMPT_PAUSE_MS)
        return AuthState.STAY_SIGNED_IN_PROMPT

    async def _certificate_error_detail(self) -> Optional[str]:
        """Best effort: expand 'More details' and read it via the clipboard."""
        page = self.page
        try:
            more = page.get_by_role("button", name="More details")
            if not await probe(more, _OPTIONAL_PROMPT_PROBE_MS):
                return None
            await more.first.click()
            await self.context.grant_permissions(["clipboard-read", "clipboard-write"])
            copy = page.get_by_role("button", name="Copy")
            if not await probe(copy, _OPTIONAL_PROMPT_PROBE_MS):
                return None
            await copy.first.click()
            text = await page.evaluate("navigator.clipboard.readText()")
            if not isinstance(text, str):
                return None
            return text.strip() or None
        except PlaywrightError as exc:
            logger.debug(f"[MSAUTH] Could not extract certificate error details: {exc}")
            return None

    async def _password_flow(self) -> AuthState:
        page = self.page
        logger.info("[MSAUTH] Using password authentication")

        password_box = page.get_by_role("textbox", name="password")
        if not await probe(password_box, _PASSWORD_FIELD_TIMEOUT_MS):
            raise PasswordAuthenticationError(
                f"Password field did not appear for {self.config.email} "
                f"within {_PASSWORD_FIELD_TIMEOUT_MS // 1000}s"
            )

        logger.info("[MSAUTH] Entering password")
        await password_box.first.fill(self.credential.value)
        submit = page.get_by_role("button", name="submit").or_(
            page.locator('input[type="submit"]')
        )
        await submit.first.click()

        await page.wait_for_timeout(_POST_SUBMIT_PAUSE_MS)
        error = page.locator(_PASSWORD_ERROR_SELECTOR)
        if await probe(error, _PASSWORD_ERROR_PROBE_MS):
            text = (await error.first.text_content() or "").strip()
            logger.error(f"[MSAUTH] Password authentication failed: {text}")
            raise PasswordAuthenticationError(
                f"Password authentication failed for {self.config.email}. "
                f"Please verify the password is correct."
            )

        logger.info("[MSAUTH] Password authentication successful")
        return AuthState.STAY_SIGNED_IN_PROMPT

    async def _stay_signed_in(self) -> AuthState:
        page = self.page
        logger.info("[MSAUTH] Checking for 'Stay signed in?' prompt...")
        prompt = page.get_by_role("heading", name=_STAY_SIGNED_IN).or_(
            page.get_by_text(_STAY_SIGNED_IN)
        )
        if not await probe(prompt, _STAY_SIGNED_IN_PROBE_MS):
            logger.info("[MSAUTH] No 'Stay signed in?' prompt detected")
            return AuthState.REDIRECT_WAIT

        yes = page.get_by_role("button", name=_YES_BUTTON).or_(
            page.locator('input[type="submit"][value="Yes"]')
        )
        if await probe(yes, _OPTIONAL_PROMPT_PROBE_MS):
            await yes.first.click()
            logger.info("[MSAUTH] Clicked 'Yes' on stay signed in prompt")
            await page.wait_for_timeout(_POST_PROMPT_PAUSE_MS)
        else:
            logger.warning("[MSAUTH] 'Stay signed in?' prompt had no Yes button")
        return AuthState.REDIRECT_WAIT

    async def _redirect_wait(self) -> AuthState:
        page = self.page
        nxt = AuthState.TOKEN_WAIT if self.config.wait_for_client_tokens else AuthState.PERSIST_SESSION
        logger.info("[MSAUTH] Waiting for redirect to target domain")
        try:
            await page.wait_for_url(self.target_url, timeout=_EXACT_REDIRECT_TIMEOUT_MS)
            logger.info(f"[MSAUTH] Redirected to {self.target_url}")
            return nxt
        except PlaywrightTimeout:
            pass

        current = page.url
        if redirect_accepted(current, self.target_url, self.config.login_endpoint):
            logger.info(f"[MSAUTH] Redirected to {current} (authentication successful)")
            return nxt
        raise RedirectTimeoutError(
            f"Authentication may have failed. Expected to be on "
            f"{_hostname(self.target_url)} or similar, but got {current}"
        )

    async def _token_wait(self) -> AuthState:
        page = self.page
        timeout_ms = self.config.client_token_timeout_ms
        markers = token_markers(self.config.login_endpoint)
        logger.info(f"[MSAUTH] Waiting for MSAL tokens in localStorage (timeout: {timeout_ms}ms)")
        try:
            await page.wait_for_function(_HAS_TOKEN_KEYS_JS, arg=markers, timeout=timeout_ms)
        except PlaywrightTimeout:
            logger.warning("[MSAUTH] No MSAL tokens found in localStorage, continuing anyway")
            try:
                keys = await page.evaluate(_ALL_KEYS_JS)
            except PlaywrightError:
                keys = []
            logger.info(f"[MSAUTH] Found {len(keys)} total localStorage keys: {', '.join(keys[:10])}")
            return AuthState.PERSIST_SESSION

        try:
            keys = await page.evaluate(_TOKEN_KEYS_JS, markers)
        except PlaywrightError:
            keys = []
        logger.info(f"[MSAUTH] Found {len(keys)} MSAL-related localStorage keys")
        if keys:
            more = "..." if len(keys) > 5 else ""
            logger.debug(f"[MSAUTH] MSAL keys: {', '.join(keys[:5])}{more}")
        return AuthState.PERSIST_SESSION

    async def _persist_session(self) -> AuthState:
        await self.page.wait_for_timeout(self.config.settle_delay_ms)
        path = self.session_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await self.context.storage_state(path=str(path))
        except (OSError, PlaywrightError) as exc:
            raise StorageAccessError(f"Failed to save storage state to {path}: {exc}") from exc
        logger.info(f"[MSAUTH] Saved storage state to {path}")

        shot = await self._screenshot("success")
        if shot:
            logger.info(f"[MSAUTH] Screenshot saved to {shot}")
        return AuthState.DONE

    # ── Diagnostics ───────────────────────────────────────────────

    async def _screenshot(self, status: str) -> Optional[Path]:
        """Full-page screenshot tagged with *status*; never raises."""
        if self.page is None:
            return None
        path = self.cache.screenshot_path(self.config.identity, status)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await self.page.screenshot(path=str(path), full_page=True)
        except (OSError, PlaywrightError) as exc:
            logger.debug(f"[MSAUTH] Screenshot failed: {exc}")
            return None
        return path


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class MsAuthenticator:
    """Signs one identity in and keeps its session snapshot fresh.

    Collaborators are injectable so the flow can run against fakes:
    ``provider_factory`` (credential backends), ``launcher`` (async
    context manager yielding a ``BrowserContext``) and ``bridge_factory``
    (certificate route bridge).
    """

    def __init__(
        self,
        config: AuthConfig,
        *,
        cache: Optional[SessionCache] = None,
        provider_factory=CredentialProviderFactory,
        launcher: BrowserLauncher = launch_browser,
        bridge_factory=CertificateRouteBridge,
    ):
        config.validate()
        self.config = config
        self.cache = cache or SessionCache.for_output_dir(config.output_dir)
        self._provider_factory = provider_factory
        self._launcher = launcher
        self._bridge_factory = bridge_factory
        self.last_flow: Optional[AuthFlow] = None

    @property
    def session_path(self) -> Path:
        return self.cache.path_for(self.config.identity)

    async def authenticate(self, target_url: str) -> Path:
        """Run one pass for *target_url*; returns the session snapshot path."""
        flow = AuthFlow(
            self.config,
            target_url,
            cache=self.cache,
            provider_factory=self._provider_factory,
            launcher=self._launcher,
            bridge_factory=self._bridge_factory,
        )
        self.last_flow = flow
        path = await flow.run()
        if not flow.used_cache:
            logger.info(
                f"[MSAUTH] Authentication completed successfully for '{self.config.email}'"
            )
        return path

    def load_storage_state(self) -> Path:
        """Path of a still-valid snapshot, else ``SessionNotFoundError``."""
        return self.cache.require_valid(self.config.identity, self.config.session_ttl_hours)


async def authenticate(config: AuthConfig, target_url: str, **kwargs) -> Path:
    """Convenience wrapper around ``MsAuthenticator(config).authenticate()``."""
    return await MsAuthenticator(config, **kwargs).authenticate(target_url)


def load_storage_state(config: AuthConfig, cache: Optional[SessionCache] = None) -> Path:
    """Return the cached session path for *config* or raise ``SessionNotFoundError``."""
    return MsAuthenticator(config, cache=cache).load_storage_state()
