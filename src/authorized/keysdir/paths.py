"""Canonical paths of a user's authorized_keys.d store.

Nothing here touches the filesystem. All names come from a KeysDirLayout so
tests and alternative deployments can relocate every artifact.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from authorized.provider import User


@dataclass(frozen=True)
class KeysDirLayout:
    """File and directory names used for a store.

    Attributes:
        ssh_dir: Directory under the home directory holding ssh files.
        authorized_keys_file: Legacy single-file store, under ssh_dir.
        authorized_keys_dir: Directory-based store, under ssh_dir.
        preserved_keys_name: Name of the legacy copy inside the store.
        lock_file: Lock marker, directly under the home directory.
        stage_file: Transient staging file, under ssh_dir.
        stage_dir: Transient staging directory, under ssh_dir.
    """

    ssh_dir: str = ".ssh"
    authorized_keys_file: str = "authorized_keys"
    authorized_keys_dir: str = "authorized_keys.d"
    preserved_keys_name: str = "orig_authorized_keys"
    lock_file: str = ".authorized_keys.d.lock"
    stage_file: str = ".authorized_keys.d.stage_file"
    stage_dir: str = ".authorized_keys.d.stage_dir"

    def __post_init__(self) -> None:
        for name, value in vars(self).items():
            if not value or "/" in value or value in (".", ".."):
                raise ValueError(f"Invalid layout name for {name}: {value!r}")


DEFAULT_LAYOUT = KeysDirLayout()


@dataclass(frozen=True)
class KeysDirPaths:
    """Resolved paths for one home directory."""

    home: Path
    layout: KeysDirLayout = DEFAULT_LAYOUT

    @classmethod
    def for_user(cls, user: "User", layout: KeysDirLayout = DEFAULT_LAYOUT) -> "KeysDirPaths":
        return cls(home=Path(user.home_dir), layout=layout)

    @property
    def ssh_dir(self) -> Path:
        return self.home / self.layout.ssh_dir

    @property
    def authorized_keys_file(self) -> Path:
        return self.ssh_dir / self.layout.authorized_keys_file

    @property
    def authorized_keys_dir(self) -> Path:
        return self.ssh_dir / self.layout.authorized_keys_dir

    @property
    def preserved_keys_file(self) -> Path:
        return self.authorized_keys_dir / self.layout.preserved_keys_name

    @property
    def lock_file(self) -> Path:
        return self.home / self.layout.lock_file

    @property
    def stage_file(self) -> Path:
        return self.ssh_dir / self.layout.stage_file

    @property
    def stage_dir(self) -> Path:
        return self.ssh_dir / self.layout.stage_dir
