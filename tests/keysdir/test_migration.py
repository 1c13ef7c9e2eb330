"""Tests for the authorized_keys to authorized_keys.d migration."""

from __future__ import annotations

import os
import stat
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import pytest

from authorized.keysdir import migration as migration_module
from authorized.keysdir.base import MigrationError, MigrationInconsistentError
from authorized.keysdir.identity import IdentityContext
from authorized.keysdir.migration import MigrationEngine
from authorized.keysdir.paths import KeysDirPaths


class TestMigrationEngine:
    """Tests for MigrationEngine."""

    def test_preserves_legacy_file(self, paths: KeysDirPaths, legacy_keys: bytes) -> None:
        """Test that the legacy content ends up byte-for-byte in the store."""
        target = MigrationEngine(paths, user="core-test").migrate()

        assert target == paths.authorized_keys_dir
        assert target.is_dir()
        assert paths.preserved_keys_file.read_bytes() == legacy_keys
        assert not paths.authorized_keys_file.exists()

    def test_without_legacy_file(self, paths: KeysDirPaths) -> None:
        """Test that a user without authorized_keys gets an empty store."""
        target = MigrationEngine(paths).migrate()

        assert target.is_dir()
        assert list(target.iterdir()) == []
        assert stat.S_IMODE(paths.ssh_dir.stat().st_mode) == 0o700

    def test_permissions(self, paths: KeysDirPaths, legacy_keys: bytes) -> None:
        MigrationEngine(paths).migrate()

        assert stat.S_IMODE(paths.authorized_keys_dir.stat().st_mode) == 0o700
        assert stat.S_IMODE(paths.preserved_keys_file.stat().st_mode) == 0o600

    def test_no_staging_left_behind(self, paths: KeysDirPaths, legacy_keys: bytes) -> None:
        MigrationEngine(paths).migrate()

        assert not paths.stage_dir.exists()
        assert not paths.stage_file.exists()

    def test_stale_staging_is_replaced(self, paths: KeysDirPaths, legacy_keys: bytes) -> None:
        """Test that leftovers of an interrupted attempt do not leak into the store."""
        paths.stage_dir.mkdir()
        (paths.stage_dir / "half-written").write_text("junk")
        paths.stage_file.write_text("partial")

        target = MigrationEngine(paths).migrate()

        assert sorted(p.name for p in target.iterdir()) == ["orig_authorized_keys"]
        assert paths.preserved_keys_file.read_bytes() == legacy_keys
        assert not paths.stage_file.exists()

    def test_refuses_existing_target(self, paths: KeysDirPaths) -> None:
        paths.authorized_keys_dir.mkdir(parents=True)

        with pytest.raises(MigrationError) as exc_info:
            MigrationEngine(paths).migrate()

        assert not isinstance(exc_info.value, MigrationInconsistentError)

    def test_failure_before_install_leaves_filesystem_unchanged(
        self, paths: KeysDirPaths
    ) -> None:
        """Test that an unreadable legacy entry aborts without side effects."""
        paths.authorized_keys_file.mkdir(parents=True)
        (paths.authorized_keys_file / "keep").write_text("x")

        with pytest.raises(MigrationError) as exc_info:
            MigrationEngine(paths, user="core-test").migrate()

        assert not isinstance(exc_info.value, MigrationInconsistentError)
        assert exc_info.value.user == "core-test"
        assert not paths.authorized_keys_dir.exists()
        assert not paths.stage_dir.exists()
        assert not paths.stage_file.exists()
        assert (paths.authorized_keys_file / "keep").read_text() == "x"

    def test_retry_after_failure(self, paths: KeysDirPaths, legacy_keys: bytes, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a failed install can simply be retried."""
        real_rename = os.rename
        calls = {"count": 0}

        def failing_rename(src, dst):  # type: ignore[no-untyped-def]
            if Path(dst) == paths.authorized_keys_dir and calls["count"] == 0:
                calls["count"] += 1
                raise OSError("simulated rename failure")
            return real_rename(src, dst)

        monkeypatch.setattr(migration_module.os, "rename", failing_rename)

        with pytest.raises(MigrationError):
            MigrationEngine(paths).migrate()

        assert paths.authorized_keys_file.read_bytes() == legacy_keys
        assert not paths.authorized_keys_dir.exists()
        assert not paths.stage_dir.exists()

        MigrationEngine(paths).migrate()
        assert paths.preserved_keys_file.read_bytes() == legacy_keys

    def test_failure_after_install_is_inconsistent(
        self, paths: KeysDirPaths, legacy_keys: bytes, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that failing to retire the legacy file is reported as fatal."""
        real_unlink = os.unlink

        def failing_unlink(path, *args, **kwargs):  # type: ignore[no-untyped-def]
            if Path(path) == paths.authorized_keys_file:
                raise PermissionError("simulated unlink failure")
            return real_unlink(path, *args, **kwargs)

        monkeypatch.setattr(migration_module.os, "unlink", failing_unlink)

        with pytest.raises(MigrationInconsistentError) as exc_info:
            MigrationEngine(paths).migrate()

        assert exc_info.value.path == paths.authorized_keys_file
        assert paths.authorized_keys_dir.is_dir()
        assert paths.preserved_keys_file.read_bytes() == legacy_keys

    def test_failure_removes_created_ssh_dir(
        self, paths: KeysDirPaths, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a ~/.ssh created by a failed attempt is removed again."""
        real_rename = os.rename

        def failing_rename(src, dst):  # type: ignore[no-untyped-def]
            if Path(dst) == paths.authorized_keys_dir:
                raise OSError("simulated rename failure")
            return real_rename(src, dst)

        monkeypatch.setattr(migration_module.os, "rename", failing_rename)

        with pytest.raises(MigrationError):
            MigrationEngine(paths).migrate()

        assert not paths.ssh_dir.exists()
        assert list(paths.home.iterdir()) == []

    def test_identity_failure_is_migration_error(self, paths: KeysDirPaths) -> None:
        """Test that failing to switch identity is reported as a migration error."""

        class BrokenIdentity(IdentityContext):
            @contextmanager
            def assume(self) -> Iterator[None]:
                raise PermissionError("cannot switch")
                yield

        with pytest.raises(MigrationError) as exc_info:
            MigrationEngine(paths, BrokenIdentity(), user="core-test").migrate()

        assert not isinstance(exc_info.value, MigrationInconsistentError)
        assert exc_info.value.user == "core-test"
        assert isinstance(exc_info.value.__cause__, PermissionError)
        assert not paths.ssh_dir.exists()
