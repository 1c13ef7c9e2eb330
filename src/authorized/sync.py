"""Apply provider users to their authorized_keys.d stores.

For every user of every batch the runner opens the user's store, writes the
provider's keys to a single key file and re-renders authorized_keys. Users
flagged as disabled only have the provider key file withdrawn; a disabled
user that never had a store is left alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from authorized.config import AuthorizedConfig
from authorized.keysdir import KeysDirError, KeysDirManager, KeysDirNotFoundError
from authorized.provider import Provider, User

logger = logging.getLogger(__name__)


class SyncAction(Enum):
    """What happened to a user's store."""

    UPDATED = "updated"
    WITHDRAWN = "withdrawn"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Outcome for one user."""

    user: str
    action: SyncAction
    error: str | None = None


@dataclass
class SyncReport:
    """Outcome of a sync run."""

    results: list[SyncResult] = field(default_factory=list)

    @property
    def failed(self) -> list[SyncResult]:
        return [r for r in self.results if r.action == SyncAction.FAILED]

    @property
    def success(self) -> bool:
        return not self.failed

    def count(self, action: SyncAction) -> int:
        return sum(1 for r in self.results if r.action == action)


class KeysDirSync:
    """Synchronizes provider users into authorized_keys.d.

    Example:
        >>> runner = KeysDirSync(load_config())
        >>> report = runner.run(YamlProvider("/etc/authorized/users.yaml"))
        >>> report.success
        True
    """

    def __init__(
        self,
        config: AuthorizedConfig | None = None,
        manager: KeysDirManager | None = None,
    ) -> None:
        self._config = config or AuthorizedConfig()
        self._manager = manager or KeysDirManager.from_config(self._config)

    def run(self, provider: Provider) -> SyncReport:
        """Apply every user yielded by provider.

        Failures are recorded per user and never stop the run.
        """
        report = SyncReport()
        for batch in provider.users():
            for user in batch:
                report.results.append(self.apply(user))

        logger.info(
            "Sync finished: %d updated, %d withdrawn, %d skipped, %d failed",
            report.count(SyncAction.UPDATED),
            report.count(SyncAction.WITHDRAWN),
            report.count(SyncAction.SKIPPED),
            report.count(SyncAction.FAILED),
        )
        return report

    def apply(self, user: User) -> SyncResult:
        """Apply a single user."""
        try:
            if user.disabled:
                return self._withdraw(user)
            return self._update(user)
        except KeysDirError as e:
            logger.error("Failed to sync %s: %s", user.name, e)
            return SyncResult(user=user.name, action=SyncAction.FAILED, error=str(e))

    def _update(self, user: User) -> SyncResult:
        with self._manager.open(user, create=True) as keys_dir:
            keys_dir.add_keys(self._config.provider_key_name, user.keys, replace=True)
            keys_dir.render()
        logger.debug("Updated %d keys for %s", len(user.keys), user.name)
        return SyncResult(user=user.name, action=SyncAction.UPDATED)

    def _withdraw(self, user: User) -> SyncResult:
        try:
            keys_dir = self._manager.open(user, create=False)
        except KeysDirNotFoundError:
            logger.debug("%s is disabled and has no store, nothing to do", user.name)
            return SyncResult(user=user.name, action=SyncAction.SKIPPED)

        with keys_dir:
            keys_dir.remove_keys(self._config.provider_key_name)
            keys_dir.render()
        return SyncResult(user=user.name, action=SyncAction.WITHDRAWN)
