"""
Session Cache
=============
Decides where an identity's browser session snapshot lives and whether
it is still fresh enough to reuse.

Responsibilities:
    1. Derive a deterministic, filesystem-safe path per identity
    2. Judge freshness from the file's modification time vs the TTL
    3. Name status-tagged diagnostic screenshots

Writing the snapshot is the browser's job (``context.storage_state``);
the cache never opens the file, so a corrupt snapshot is only ever
rejected by age.  No locking is done: two passes for the same identity
can race on the file.

Usage::

    cache = SessionCache.for_output_dir(cfg.output_dir)
    path = cache.path_for(cfg.identity)
    if cache.is_valid(path, cfg.session_ttl_hours):
        ...
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from ..errors import SessionNotFoundError, StorageAccessError
from ..models import AuthIdentity

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings
# ---------------------------------------------------------------------------

_DEFAULT_DIR_NAME = ".playwright-ms-auth"
_PROJECT_MARKERS = ("pyproject.toml", "setup.cfg", "setup.py")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9@.\-]")


def sanitize_identity(identity: Union[AuthIdentity, str]) -> str:
    """Replace every character outside ``[A-Za-z0-9@.-]`` with ``_``."""
    return _UNSAFE_CHARS.sub("_", str(identity))


def find_project_root(start: Optional[Path] = None) -> Path:
    """Walk upwards from *start* (default: CWD) to the nearest project root.

    Falls back to *start* itself when no packaging file is found.
    """
    start = (start or Path.cwd()).resolve()
    for candidate in (start, *start.parents):
        if any((candidate / marker).exists() for marker in _PROJECT_MARKERS):
            return candidate
    return start


class SessionCache:
    """Path derivation and freshness checks for session snapshots."""

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)

    @classmethod
    def for_output_dir(cls, output_dir: Optional[str] = None) -> "SessionCache":
        """Cache rooted at *output_dir*, or ``<project root>/.playwright-ms-auth``."""
        if output_dir:
            return cls(Path(output_dir).resolve())
        return cls(find_project_root() / _DEFAULT_DIR_NAME)

    # ── Paths ─────────────────────────────────────────────────────

    def path_for(self, identity: Union[AuthIdentity, str]) -> Path:
        return self.base_dir / f"state-{sanitize_identity(identity)}.json"

    def screenshot_path(
        self,
        identity: Union[AuthIdentity, str],
        status: str,
        when: Optional[datetime] = None,
    ) -> Path:
        """``<base>/screenshots/auth-<identity>-<status>-<timestamp>.png``"""
        when = when or datetime.now(timezone.utc)
        stamp = when.strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3] + "Z"
        return (
            self.base_dir
            / "screenshots"
            / f"auth-{sanitize_identity(identity)}-{status}-{stamp}.png"
        )

    # ── Freshness ─────────────────────────────────────────────────

    def is_valid(
        self, path: Union[str, Path], ttl_hours: float, now: Optional[float] = None
    ) -> bool:
        """True iff *path* exists and is younger than *ttl_hours*.

        Raises:
            StorageAccessError: the file exists but cannot be inspected.
        """
        path = Path(path)
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            logger.info(f"[SESSION] No saved session at {path}")
            return False
        except OSError as exc:
            raise StorageAccessError(f"Cannot read session file {path}: {exc}") from exc

        now = time.time() if now is None else now
        age_seconds = now - mtime
        if age_seconds < ttl_hours * 3600:
            logger.info(
                f"[SESSION] Valid session: age {age_seconds / 3600:.1f}h "
                f"(max {ttl_hours}h)"
            )
            return True

        logger.info(
            f"[SESSION] Session is {age_seconds / 3600:.1f}h old, expired "
            f"(max {ttl_hours}h)"
        )
        return False

    def require_valid(
        self, identity: Union[AuthIdentity, str], ttl_hours: float
    ) -> Path:
        """Return the session path for *identity* or raise ``SessionNotFoundError``."""
        path = self.path_for(identity)
        if not self.is_valid(path, ttl_hours):
            raise SessionNotFoundError(
                f"Storage state for '{identity}' does not exist or has expired. "
                f"Please run authentication first."
            )
        return path
