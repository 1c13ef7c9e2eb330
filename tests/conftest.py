"""Shared fixtures for authorized tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from authorized.keysdir import FcntlLockStrategy, KeysDirManager, KeysDirPaths, ProcessIdentity
from authorized.provider import User


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """An empty home directory."""
    path = tmp_path / "home" / "core"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def user(home: Path) -> User:
    """A user living in the home fixture."""
    return User(
        name="core-test",
        home_dir=str(home),
        shell="/bin/bash",
        keys=("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIA core@laptop",),
    )


@pytest.fixture
def paths(user: User) -> KeysDirPaths:
    return KeysDirPaths.for_user(user)


@pytest.fixture
def manager() -> KeysDirManager:
    """A manager that never switches identity."""
    return KeysDirManager(
        strategy=FcntlLockStrategy(),
        identity_resolver=lambda user: ProcessIdentity(),
    )


@pytest.fixture
def legacy_keys(paths: KeysDirPaths) -> bytes:
    """Write a legacy ~/.ssh/authorized_keys and return its content."""
    content = (
        b"# managed by hand\n"
        b"ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQ admin@bastion\n"
        b"\n"
        b"ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIB ops@laptop\n"
    )
    paths.ssh_dir.mkdir(mode=0o700)
    paths.authorized_keys_file.write_bytes(content)
    return content
