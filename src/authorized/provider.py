"""User providers.

A provider yields batches of users whose authorized_keys.d should be
managed. The store manager is invoked once per user and knows nothing about
where users come from.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

import yaml

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a provider cannot produce users."""

    pass


@dataclass(frozen=True)
class User:
    """A user record as seen by the store manager.

    Attributes:
        name: Login name.
        home_dir: Home directory.
        shell: Login shell.
        keys: SSH public key lines, taken verbatim.
        disabled: Whether the provider's keys should be withdrawn.
    """

    name: str
    home_dir: str
    shell: str = ""
    keys: tuple[str, ...] = field(default_factory=tuple)
    disabled: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "User":
        """Create a user from a mapping as found in a users file."""
        try:
            name = data["name"]
            home = data.get("home_dir", data.get("home"))
        except (KeyError, AttributeError, TypeError) as e:
            raise ProviderError(f"Invalid user entry: {data!r}") from e
        if not name or not home:
            raise ProviderError(f"User entry needs name and home: {data!r}")

        keys = data.get("keys")
        if keys is None:
            keys = ()
        elif isinstance(keys, str):
            keys = (keys,)
        elif not isinstance(keys, (list, tuple)):
            raise ProviderError(f"keys of {name!r} must be a string or a list: {keys!r}")
        return cls(
            name=str(name),
            home_dir=str(home),
            shell=str(data.get("shell") or ""),
            keys=tuple(str(k) for k in keys),
            disabled=bool(data.get("disabled", False)),
        )


class Provider(ABC):
    """Source of users to manage."""

    @abstractmethod
    def users(self) -> Iterator[list[User]]:
        """Yield batches of users."""
        pass


class StaticProvider(Provider):
    """Provider over a fixed sequence of users."""

    def __init__(self, users: Iterable[User], batch_size: int = 100) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._users = list(users)
        self._batch_size = batch_size

    def users(self) -> Iterator[list[User]]:
        for start in range(0, len(self._users), self._batch_size):
            yield self._users[start : start + self._batch_size]


class YamlProvider(Provider):
    """Provider reading users from a YAML or JSON document.

    Expected layout::

        users:
          - name: core
            home: /home/core
            shell: /bin/bash
            keys:
              - ssh-ed25519 AAAA... core@laptop
            disabled: false
    """

    def __init__(self, path: Path | str, batch_size: int = 100) -> None:
        self._path = Path(path)
        self._batch_size = batch_size

    def _load(self) -> list[User]:
        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise ProviderError(f"Cannot read {self._path}: {e}") from e

        try:
            if self._path.suffix == ".json":
                data = json.loads(content)
            else:
                data = yaml.safe_load(content)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ProviderError(f"Cannot parse {self._path}: {e}") from e

        entries = (data or {}).get("users") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ProviderError(f"{self._path} has no 'users' list")
        return [User.from_dict(entry) for entry in entries]

    def users(self) -> Iterator[list[User]]:
        users = self._load()
        logger.debug("Loaded %d users from %s", len(users), self._path)
        yield from StaticProvider(users, self._batch_size).users()


class PasswdProvider(Provider):
    """Provider resolving users from the local passwd database.

    Keys are not stored in passwd, so they are supplied per user name.
    """

    def __init__(
        self,
        names: Iterable[str],
        keys: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self._names = list(names)
        self._keys = {name: tuple(k) for name, k in (keys or {}).items()}

    def users(self) -> Iterator[list[User]]:
        import pwd

        batch = []
        for name in self._names:
            try:
                entry = pwd.getpwnam(name)
            except KeyError as e:
                raise ProviderError(f"Unknown user: {name}") from e
            batch.append(
                User(
                    name=entry.pw_name,
                    home_dir=entry.pw_dir,
                    shell=entry.pw_shell,
                    keys=self._keys.get(name, ()),
                )
            )
        yield batch
