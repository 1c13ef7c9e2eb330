"""Exceptions for authorized_keys.d management.

Every error carries the path it concerns and the name of the user whose
store was being operated on, so a failure in a batch run can be traced
back without re-running it.
"""

from __future__ import annotations

from pathlib import Path


class KeysDirError(Exception):
    """Base exception for all authorized_keys.d errors."""

    def __init__(
        self,
        message: str,
        path: Path | str | None = None,
        user: str | None = None,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self.user = user
        super().__init__(message)


class LockAcquisitionError(KeysDirError):
    """Raised when the per-user lock file cannot be opened or locked."""

    pass


class LockTimeout(LockAcquisitionError):
    """Raised when a bounded lock wait expires."""

    def __init__(self, path: Path | str, timeout: float, user: str | None = None) -> None:
        self.timeout = timeout
        super().__init__(
            f"Timeout acquiring lock on {path} after {timeout}s", path=path, user=user
        )


class KeysDirNotFoundError(KeysDirError):
    """Raised when no authorized_keys.d exists and creation was not requested."""

    def __init__(self, path: Path | str, user: str | None = None) -> None:
        super().__init__(f"{path} does not exist", path=path, user=user)


class KeysDirNotADirectoryError(KeysDirError):
    """Raised when the authorized_keys.d path exists but is not a directory."""

    def __init__(self, path: Path | str, user: str | None = None) -> None:
        super().__init__(f"{str(path)!r} is not a directory", path=path, user=user)


class KeysDirStatError(KeysDirError):
    """Raised when the authorized_keys.d path cannot be inspected."""

    pass


class MigrationError(KeysDirError):
    """Raised when converting authorized_keys to authorized_keys.d fails.

    Failures raised as plain MigrationError happened before the staged
    directory was installed and can be retried.
    """

    pass


class MigrationInconsistentError(MigrationError):
    """Raised when migration fails after the directory was installed.

    The legacy authorized_keys file may or may not still exist; this is not
    retried automatically.
    """

    pass


class KeysDirClosedError(KeysDirError):
    """Raised when a closed KeysDir handle is used."""

    pass


class KeyFileError(KeysDirError):
    """Raised for invalid key file names or failed key file writes."""

    pass
