"""One-time conversion of ~/.ssh/authorized_keys to ~/.ssh/authorized_keys.d.

The new directory is built off to the side in a staging directory and made
visible with a single rename, so nothing observing ~/.ssh ever sees an empty
or half-populated authorized_keys.d. The legacy file is copied into the
staged directory as orig_authorized_keys before the rename and removed only
after it.

Must be run while holding the user's store lock.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from authorized.keysdir.base import MigrationError, MigrationInconsistentError
from authorized.keysdir.identity import IdentityContext, ProcessIdentity
from authorized.keysdir.paths import KeysDirPaths

logger = logging.getLogger(__name__)

SSH_DIR_MODE = 0o700
KEYS_DIR_MODE = 0o700
KEY_FILE_MODE = 0o600


def fsync_path(path: Path) -> None:
    """Flush a file or, on POSIX, a directory entry table to disk."""
    if path.is_dir() and os.name != "posix":
        return
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class MigrationEngine:
    """Migrates one user from the legacy file layout to the directory layout.

    Example:
        >>> engine = MigrationEngine(KeysDirPaths.for_user(user), user="core")
        >>> engine.migrate()
        PosixPath('/home/core/.ssh/authorized_keys.d')
    """

    def __init__(
        self,
        paths: KeysDirPaths,
        identity: IdentityContext | None = None,
        user: str | None = None,
    ) -> None:
        self._paths = paths
        self._identity = identity or ProcessIdentity()
        self._user = user

    @property
    def paths(self) -> KeysDirPaths:
        return self._paths

    def migrate(self) -> Path:
        """Create authorized_keys.d, preserving any legacy authorized_keys.

        Returns:
            Path of the installed authorized_keys.d.

        Raises:
            MigrationError: If a step before installation failed. The
                filesystem is left as it was and the call may be retried.
            MigrationInconsistentError: If removing the legacy file failed
                after installation.
        """
        target = self._paths.authorized_keys_dir
        try:
            with self._identity.assume():
                had_legacy = self._install()
        except OSError as e:
            raise MigrationError(
                f"Cannot migrate {target} as {self._identity!r}: {e}",
                path=target,
                user=self._user,
            ) from e

        logger.info(
            "Migrated %s to %s (legacy keys preserved: %s)",
            self._user or self._paths.home,
            target,
            had_legacy,
        )
        return target

    def _install(self) -> bool:
        target = self._paths.authorized_keys_dir
        stage_dir = self._paths.stage_dir

        created_ssh_dir = False
        try:
            if os.path.lexists(target):
                raise MigrationError(
                    f"{target} already exists", path=target, user=self._user
                )
            created_ssh_dir = self._prepare_staging()
            had_legacy = self._stage_legacy()
        except OSError as e:
            self._rollback(created_ssh_dir)
            raise MigrationError(
                f"Staging {target} failed: {e}", path=stage_dir, user=self._user
            ) from e

        try:
            os.rename(stage_dir, target)
        except OSError as e:
            self._rollback(created_ssh_dir)
            raise MigrationError(
                f"Installing {target} failed: {e}", path=target, user=self._user
            ) from e
        logger.debug("Installed %s", target)

        try:
            if had_legacy:
                os.unlink(self._paths.authorized_keys_file)
            fsync_path(self._paths.ssh_dir)
        except OSError as e:
            raise MigrationInconsistentError(
                f"{target} installed but retiring "
                f"{self._paths.authorized_keys_file} failed: {e}",
                path=self._paths.authorized_keys_file,
                user=self._user,
            ) from e
        return had_legacy

    def _prepare_staging(self) -> bool:
        """Create ~/.ssh if needed and an empty staging directory.

        Returns:
            True if ~/.ssh was created by this call.
        """
        created = False
        if not os.path.lexists(self._paths.ssh_dir):
            os.mkdir(self._paths.ssh_dir, SSH_DIR_MODE)
            created = True
        try:
            self._discard_staging()
            os.mkdir(self._paths.stage_dir, KEYS_DIR_MODE)
        except OSError:
            if created:
                self._rollback(created)
            raise
        return created

    def _stage_legacy(self) -> bool:
        """Copy the legacy file into the staging directory.

        Returns:
            True if a legacy file existed and was staged.
        """
        legacy = self._paths.authorized_keys_file
        stage_file = self._paths.stage_file

        try:
            src = open(legacy, "rb")
        except FileNotFoundError:
            logger.debug("No legacy %s to preserve", legacy)
            return False

        with src:
            fd = os.open(
                str(stage_file), os.O_WRONLY | os.O_CREAT | os.O_EXCL, KEY_FILE_MODE
            )
            with open(fd, "wb") as dst:
                shutil.copyfileobj(src, dst)
                dst.flush()
                os.fsync(dst.fileno())

        os.rename(stage_file, self._paths.stage_dir / self._paths.layout.preserved_keys_name)
        logger.debug("Staged legacy %s", legacy)
        return True

    def _discard_staging(self) -> None:
        """Remove staging leftovers of this or an earlier attempt."""
        for path in (self._paths.stage_file, self._paths.stage_dir):
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove staging artifact %s: %s", path, e)

    def _rollback(self, created_ssh_dir: bool) -> None:
        """Undo a failed attempt that never reached installation."""
        self._discard_staging()
        if not created_ssh_dir:
            return
        try:
            os.rmdir(self._paths.ssh_dir)
        except OSError as e:
            logger.warning("Could not remove %s: %s", self._paths.ssh_dir, e)
