"""
Tests for auth/session_cache.py: snapshot paths and TTL freshness.
"""

import os
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from msauth.auth.session_cache import SessionCache, find_project_root, sanitize_identity
from msauth.errors import SessionNotFoundError, StorageAccessError
from msauth.models import AuthIdentity


def write_aged(path: Path, hours: float) -> None:
    path.write_text("{}", encoding="utf-8")
    stamp = time.time() - hours * 3600
    os.utime(path, (stamp, stamp))


class TestPaths:

    def test_safe_characters_kept(self):
        assert sanitize_identity("first.last-1@contoso.com") == "first.last-1@contoso.com"

    def test_unsafe_characters_replaced(self):
        assert sanitize_identity("o'brien+qa@contoso.com") == "o_brien_qa@contoso.com"

    def test_path_is_deterministic(self, tmp_path):
        cache = SessionCache(tmp_path)
        identity = AuthIdentity("qa@contoso.com")
        assert cache.path_for(identity) == cache.path_for("qa@contoso.com")
        assert cache.path_for(identity) == tmp_path / "state-qa@contoso.com.json"

    def test_screenshot_path(self, tmp_path):
        when = datetime(2024, 5, 1, 9, 30, 15, 123456, tzinfo=timezone.utc)
        path = SessionCache(tmp_path).screenshot_path("qa@contoso.com", "failed", when)
        assert path == tmp_path / "screenshots" / "auth-qa@contoso.com-failed-2024-05-01T09-30-15-123Z.png"

    def test_output_dir_wins(self, tmp_path):
        assert SessionCache.for_output_dir(str(tmp_path)).base_dir == tmp_path.resolve()

    def test_default_dir_under_project_root(self, tmp_path, monkeypatch):
        (tmp_path / "pyproject.toml").write_text("[project]\n", encoding="utf-8")
        nested = tmp_path / "tests" / "e2e"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)
        cache = SessionCache.for_output_dir(None)
        assert cache.base_dir == tmp_path.resolve() / ".playwright-ms-auth"

    def test_project_root_falls_back_to_start(self, tmp_path):
        assert find_project_root(tmp_path) in (tmp_path.resolve(), *tmp_path.resolve().parents)


class TestFreshness:

    def test_missing_file_is_invalid(self, tmp_path):
        assert SessionCache(tmp_path).is_valid(tmp_path / "state-x.json", 24) is False

    def test_fresh_file(self, tmp_path):
        path = tmp_path / "state.json"
        write_aged(path, 1)
        assert SessionCache(tmp_path).is_valid(path, 24)

    def test_expired_file(self, tmp_path):
        path = tmp_path / "state.json"
        write_aged(path, 25)
        assert not SessionCache(tmp_path).is_valid(path, 24)

    def test_boundary_is_expired(self, tmp_path):
        """Exactly TTL old: expired (age must be strictly below the TTL)."""
        path = tmp_path / "state.json"
        path.write_text("{}", encoding="utf-8")
        mtime = path.stat().st_mtime
        assert not SessionCache(tmp_path).is_valid(path, 1, now=mtime + 3600)
        assert SessionCache(tmp_path).is_valid(path, 1, now=mtime + 3599)

    def test_unreadable_file_raises(self, tmp_path, monkeypatch):
        path = tmp_path / "state.json"
        path.write_text("{}", encoding="utf-8")
        real_stat = Path.stat

        def denied(self, *args, **kwargs):
            if self == path:
                raise PermissionError(13, "Permission denied")
            return real_stat(self, *args, **kwargs)

        monkeypatch.setattr(Path, "stat", denied)
        with pytest.raises(StorageAccessError, match="Cannot read"):
            SessionCache(tmp_path).is_valid(path, 24)

    def test_require_valid(self, tmp_path):
        cache = SessionCache(tmp_path)
        with pytest.raises(SessionNotFoundError, match="run authentication first"):
            cache.require_valid("qa@contoso.com", 24)

        write_aged(cache.path_for("qa@contoso.com"), 2)
        assert cache.require_valid("qa@contoso.com", 24) == cache.path_for("qa@contoso.com")
