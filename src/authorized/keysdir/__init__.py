"""Lifecycle management for per-user authorized_keys.d directories.

This package follows a layered architecture:

1. Path Layer: Canonical paths of a store, driven by KeysDirLayout
2. Identity Layer: Filesystem calls performed as the store's owner
3. Lock Layer: Exclusive per-user advisory lock held for open()-close()
4. Migration Layer: Atomic conversion of authorized_keys to authorized_keys.d
5. Store Layer: The lock-holding KeysDir handle and the KeysDirManager

Example:
    >>> from authorized.keysdir import KeysDirManager
    >>>
    >>> with KeysDirManager().open(user, create=True) as keys_dir:
    ...     keys_dir.add_keys("provider", ["ssh-ed25519 AAAA... core@host"])
    ...     keys_dir.render()
"""

from authorized.keysdir.base import (
    KeyFileError,
    KeysDirClosedError,
    KeysDirError,
    KeysDirNotADirectoryError,
    KeysDirNotFoundError,
    KeysDirStatError,
    LockAcquisitionError,
    LockTimeout,
    MigrationError,
    MigrationInconsistentError,
)
from authorized.keysdir.identity import (
    IdentityContext,
    ProcessIdentity,
    SwitchedIdentity,
    identity_for,
)
from authorized.keysdir.locks import (
    FcntlLockStrategy,
    FileLockStrategy,
    LockHandle,
    LockStrategy,
    get_lock_strategy,
)
from authorized.keysdir.migration import MigrationEngine
from authorized.keysdir.paths import DEFAULT_LAYOUT, KeysDirLayout, KeysDirPaths
from authorized.keysdir.store import KeysDir, KeysDirManager, open_keys_dir, opendir

__all__ = [
    # Errors
    "KeysDirError",
    "LockAcquisitionError",
    "LockTimeout",
    "KeysDirNotFoundError",
    "KeysDirNotADirectoryError",
    "KeysDirStatError",
    "MigrationError",
    "MigrationInconsistentError",
    "KeysDirClosedError",
    "KeyFileError",
    # Paths
    "DEFAULT_LAYOUT",
    "KeysDirLayout",
    "KeysDirPaths",
    # Identity
    "IdentityContext",
    "ProcessIdentity",
    "SwitchedIdentity",
    "identity_for",
    # Locking
    "LockHandle",
    "LockStrategy",
    "FcntlLockStrategy",
    "FileLockStrategy",
    "get_lock_strategy",
    # Store
    "MigrationEngine",
    "KeysDir",
    "KeysDirManager",
    "open_keys_dir",
    "opendir",
]
