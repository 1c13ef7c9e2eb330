"""Opening, populating and closing a user's authorized_keys.d.

A store is opened under the user's exclusive lock, which stays held until
the returned KeysDir is closed. Whether the directory exists is only ever
checked while holding the lock, so a concurrent migration by another process
can never be observed half-way.

Example:
    >>> manager = KeysDirManager()
    >>> with manager.open(user, create=True) as keys_dir:
    ...     keys_dir.add_keys("provider", user.keys, replace=True)
    ...     keys_dir.render()
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from contextlib import ExitStack
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable

from authorized.keysdir.base import (
    KeyFileError,
    KeysDirClosedError,
    KeysDirError,
    KeysDirNotADirectoryError,
    KeysDirNotFoundError,
    KeysDirStatError,
    LockAcquisitionError,
)
from authorized.keysdir.identity import IdentityContext, ProcessIdentity, identity_for
from authorized.keysdir.locks import LockHandle, LockStrategy, get_lock_strategy
from authorized.keysdir.migration import KEY_FILE_MODE, MigrationEngine, fsync_path
from authorized.keysdir.paths import DEFAULT_LAYOUT, KeysDirLayout, KeysDirPaths

if TYPE_CHECKING:
    from authorized.config import AuthorizedConfig
    from authorized.provider import User

logger = logging.getLogger(__name__)

RENDER_HEADER = "# Generated from authorized_keys.d, local edits will be lost."

# Key material is opaque: undecodable bytes round-trip unchanged.
KEY_FILE_ERRORS = "surrogateescape"


def opendir(
    path: Path,
    identity: IdentityContext | None = None,
    user: str | None = None,
) -> Path:
    """Check that the authorized_keys.d directory exists.

    Raises:
        KeysDirNotFoundError: If path does not exist.
        KeysDirNotADirectoryError: If path exists but is not a directory.
        KeysDirStatError: If path cannot be inspected.
    """
    identity = identity or ProcessIdentity()
    try:
        with identity.assume():
            st = os.stat(path)
    except FileNotFoundError:
        raise KeysDirNotFoundError(path, user=user) from None
    except OSError as e:
        raise KeysDirStatError(f"Cannot stat {path}: {e}", path=path, user=user) from e

    if not stat.S_ISDIR(st.st_mode):
        raise KeysDirNotADirectoryError(path, user=user)
    return path


def _validate_name(name: str) -> None:
    if not name or name.startswith(".") or "/" in name or os.sep in name:
        raise KeyFileError(f"Invalid key file name: {name!r}")


def _key_lines(text: str) -> list[str]:
    lines = (line.strip() for line in text.splitlines())
    return [line for line in lines if line and not line.startswith("#")]


class KeysDir:
    """An opened authorized_keys.d, holding the user's lock until closed.

    Instances are created by KeysDirManager.open(); do not construct them
    directly. Any method called after close() raises KeysDirClosedError.
    """

    def __init__(
        self,
        path: Path,
        user: "User",
        paths: KeysDirPaths,
        lock: LockHandle,
        strategy: LockStrategy,
        identity: IdentityContext,
    ) -> None:
        self._path = path
        self._user = user
        self._paths = paths
        self._lock: LockHandle | None = lock
        self._strategy = strategy
        self._identity = identity

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"KeysDir({str(self._path)!r}, user={self._user.name!r}, {state})"

    @property
    def path(self) -> Path:
        self._check_open()
        return self._path

    @property
    def user(self) -> "User":
        return self._user

    @property
    def closed(self) -> bool:
        return self._lock is None

    def close(self) -> None:
        """Release the lock. Calling close() twice is a no-op."""
        if self._lock is None:
            return
        lock, self._lock = self._lock, None
        self._strategy.release(lock)
        logger.debug("Closed %s for %s", self._path, self._user.name)

    def __enter__(self) -> "KeysDir":
        self._check_open()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._lock is None:
            raise KeysDirClosedError(
                f"{self._path} is closed", path=self._path, user=self._user.name
            )

    # -------------------------------------------------------------------------
    # Key files
    # -------------------------------------------------------------------------

    def key_file_path(self, name: str) -> Path:
        _validate_name(name)
        return self.path / name

    def list_keys(self) -> dict[str, list[str]]:
        """Get the keys of every key file, ordered by file name.

        Hidden files are skipped; blank and comment lines are dropped.
        """
        self._check_open()
        result: dict[str, list[str]] = {}
        with self._identity.assume():
            try:
                for entry in sorted(os.scandir(self._path), key=lambda e: e.name):
                    if entry.name.startswith(".") or not entry.is_file():
                        continue
                    with open(entry.path, encoding="utf-8", errors=KEY_FILE_ERRORS) as f:
                        result[entry.name] = _key_lines(f.read())
            except OSError as e:
                raise KeyFileError(
                    f"Cannot read {self._path}: {e}", path=self._path, user=self._user.name
                ) from e
        return result

    def add_keys(self, name: str, keys: Iterable[str], replace: bool = False) -> Path:
        """Write keys to the key file name.

        Args:
            name: Key file name inside the store.
            keys: Key lines, taken verbatim.
            replace: Replace the file instead of appending to it.

        Returns:
            Path of the written key file.
        """
        target = self.key_file_path(name)
        new_keys = [key.strip() for key in keys]
        for key in new_keys:
            if not key or "\n" in key or "\r" in key:
                raise KeyFileError(
                    f"Key for {name!r} must be a single non-empty line",
                    path=target,
                    user=self._user.name,
                )

        merged: list[str] = []
        if not replace:
            merged = self.list_keys().get(name, [])
        for key in new_keys:
            if key not in merged:
                merged.append(key)

        self._write_atomic(target, "".join(f"{key}\n" for key in merged))
        logger.debug("Wrote %d keys to %s", len(merged), target)
        return target

    def remove_keys(self, name: str) -> bool:
        """Delete the key file name.

        Returns:
            True if a file was removed.
        """
        target = self.key_file_path(name)
        try:
            with self._identity.assume():
                os.unlink(target)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise KeyFileError(
                f"Cannot remove {target}: {e}", path=target, user=self._user.name
            ) from e
        logger.debug("Removed %s", target)
        return True

    def _write_atomic(self, target: Path, content: str) -> None:
        with self._identity.assume():
            fd, temp_path = tempfile.mkstemp(
                dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
            )
            try:
                with open(fd, "w", encoding="utf-8", errors=KEY_FILE_ERRORS) as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, target)
            except OSError as e:
                Path(temp_path).unlink(missing_ok=True)
                raise KeyFileError(
                    f"Cannot write {target}: {e}", path=target, user=self._user.name
                ) from e

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def render(self) -> Path:
        """Write ~/.ssh/authorized_keys from the store's key files.

        The file is written to the staging file first and renamed into place,
        so sshd only ever reads a complete file.

        Returns:
            Path of the rendered authorized_keys file.
        """
        parts = [RENDER_HEADER]
        for name, keys in self.list_keys().items():
            parts.append(f"# {name}")
            parts.extend(keys)
        content = "\n".join(parts) + "\n"

        target = self._paths.authorized_keys_file
        stage_file = self._paths.stage_file
        with self._identity.assume():
            try:
                fd = os.open(
                    str(stage_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, KEY_FILE_MODE
                )
                with open(fd, "w", encoding="utf-8", errors=KEY_FILE_ERRORS) as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(stage_file, target)
                fsync_path(self._paths.ssh_dir)
            except OSError as e:
                stage_file.unlink(missing_ok=True)
                raise KeysDirError(
                    f"Cannot render {target}: {e}", path=target, user=self._user.name
                ) from e

        logger.debug("Rendered %s", target)
        return target


class KeysDirManager:
    """Opens authorized_keys.d stores.

    Example:
        >>> manager = KeysDirManager(lock_timeout=30.0)
        >>> keys_dir = manager.open(user)
        >>> try:
        ...     print(keys_dir.list_keys())
        ... finally:
        ...     keys_dir.close()
    """

    def __init__(
        self,
        layout: KeysDirLayout = DEFAULT_LAYOUT,
        strategy: LockStrategy | None = None,
        lock_timeout: float | None = None,
        identity_resolver: Callable[["User"], IdentityContext] | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            layout: File and directory names of the store.
            strategy: Lock strategy. None picks the best for the platform.
            lock_timeout: Maximum lock wait in seconds (None = wait forever).
            identity_resolver: Maps a user to the identity its filesystem
                calls run under. Defaults to identity_for().
        """
        self._layout = layout
        self._strategy = strategy or get_lock_strategy()
        self._lock_timeout = lock_timeout
        self._identity_resolver = identity_resolver or identity_for

    @classmethod
    def from_config(cls, config: "AuthorizedConfig") -> "KeysDirManager":
        switch = config.switch_identity
        return cls(
            layout=config.layout,
            strategy=get_lock_strategy(config.lock_strategy),
            lock_timeout=config.lock_timeout,
            identity_resolver=lambda user: identity_for(user, switch=switch),
        )

    @property
    def layout(self) -> KeysDirLayout:
        return self._layout

    @property
    def strategy(self) -> LockStrategy:
        return self._strategy

    def paths_for(self, user: "User") -> KeysDirPaths:
        return KeysDirPaths.for_user(user, self._layout)

    def open(self, user: "User", create: bool = False) -> KeysDir:
        """Open the authorized_keys.d of user.

        Args:
            user: Owner of the store.
            create: Create the store, preserving any legacy authorized_keys,
                if it does not exist yet.

        Returns:
            An open KeysDir; close() it to release the lock.

        Raises:
            LockAcquisitionError: If the lock cannot be taken.
            KeysDirNotFoundError: If the store is missing and create is False.
            KeysDirNotADirectoryError: If the store path is not a directory.
            KeysDirStatError: If the store path cannot be inspected.
            MigrationError: If creating the store failed.
        """
        paths = self.paths_for(user)
        identity = self._identity_resolver(user)

        with ExitStack() as stack:
            try:
                handle = self._strategy.acquire(
                    paths.lock_file, self._lock_timeout, identity
                )
            except LockAcquisitionError as e:
                e.user = user.name
                raise
            stack.callback(self._strategy.release, handle)

            try:
                path = opendir(paths.authorized_keys_dir, identity, user.name)
            except KeysDirNotFoundError:
                if not create:
                    raise
                path = MigrationEngine(paths, identity, user.name).migrate()

            keys_dir = KeysDir(path, user, paths, handle, self._strategy, identity)
            stack.pop_all()

        logger.debug("Opened %s for %s", path, user.name)
        return keys_dir


def open_keys_dir(user: "User", create: bool = False, **kwargs: object) -> KeysDir:
    """Convenience function opening a store with a one-off KeysDirManager.

    Keyword arguments are passed to KeysDirManager.
    """
    return KeysDirManager(**kwargs).open(user, create)  # type: ignore[arg-type]
