"""Identity contexts for filesystem operations performed on behalf of a user.

Files in a user's home must be created by that user, otherwise sshd's
StrictModes check rejects them. When running as root the store manager
switches its effective uid/gid around each filesystem call instead of
relying on whatever identity the process happens to have.

Example:
    >>> identity = identity_for(user)
    >>> with identity.assume():
    ...     os.mkdir(path, 0o700)
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from authorized.provider import User

logger = logging.getLogger(__name__)

# Effective ids are process-wide; only one thread may be switched at a time.
_switch_lock = threading.RLock()


class IdentityContext(ABC):
    """Capability to run filesystem calls as a given identity."""

    @abstractmethod
    @contextmanager
    def assume(self) -> Iterator[None]:
        """Run the enclosed block with this identity."""
        pass


class ProcessIdentity(IdentityContext):
    """Run as the current process identity, without switching."""

    @contextmanager
    def assume(self) -> Iterator[None]:
        yield

    def __repr__(self) -> str:
        return "ProcessIdentity()"


@dataclass(frozen=True)
class SwitchedIdentity(IdentityContext):
    """Run with a different effective uid, gid and supplementary groups.

    Requires the process to be privileged. The previous ids are restored on
    exit even if the block raises.
    """

    uid: int
    gid: int
    groups: tuple[int, ...] = field(default_factory=tuple)

    @contextmanager
    def assume(self) -> Iterator[None]:
        with _switch_lock:
            saved_uid = os.geteuid()
            saved_gid = os.getegid()
            saved_groups = os.getgroups()

            try:
                os.setgroups(list(self.groups or (self.gid,)))
                os.setegid(self.gid)
                os.seteuid(self.uid)
                yield
            finally:
                os.seteuid(saved_uid)
                os.setegid(saved_gid)
                os.setgroups(saved_groups)


def identity_for(user: "User", switch: bool = True) -> IdentityContext:
    """Get the identity filesystem calls for user should run under.

    Args:
        user: Target user.
        switch: Whether switching is allowed at all.

    Returns:
        A SwitchedIdentity when running as root for a different local user,
        ProcessIdentity otherwise.
    """
    if not switch or not hasattr(os, "geteuid") or os.geteuid() != 0:
        return ProcessIdentity()

    import pwd

    try:
        entry = pwd.getpwnam(user.name)
    except KeyError:
        logger.debug("No passwd entry for %s, using process identity", user.name)
        return ProcessIdentity()

    if entry.pw_uid == 0:
        return ProcessIdentity()

    groups = tuple(os.getgrouplist(user.name, entry.pw_gid))
    return SwitchedIdentity(uid=entry.pw_uid, gid=entry.pw_gid, groups=groups)
