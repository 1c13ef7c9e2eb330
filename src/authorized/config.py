"""Configuration for authorized.

Values are layered: defaults, then a YAML or JSON file, then environment
variables prefixed with AUTHORIZED_.

Example:
    >>> config = load_config("/etc/authorized.yaml")
    >>> config.lock_timeout
    30.0

File format::

    lock_timeout: 30
    lock_strategy: fcntl
    provider_key_name: directory-service
    log_level: DEBUG
    layout:
      ssh_dir: .ssh
      authorized_keys_dir: authorized_keys.d
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from authorized.keysdir.paths import DEFAULT_LAYOUT, KeysDirLayout

logger = logging.getLogger(__name__)

ENV_PREFIX = "AUTHORIZED_"

LOCK_STRATEGIES = ("auto", "fcntl", "filelock")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(Exception):
    """Base configuration error."""

    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Configuration validation failed: {', '.join(errors)}")


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class AuthorizedConfig:
    """Settings for managing authorized_keys.d stores.

    Attributes:
        layout: File and directory names of the store.
        lock_timeout: Maximum lock wait in seconds (None = wait forever).
        lock_strategy: "auto", "fcntl" or "filelock".
        provider_key_name: Key file the sync runner writes provider keys to.
        switch_identity: Switch to the target user when running as root.
        log_level: Logging level name.
    """

    layout: KeysDirLayout = field(default_factory=lambda: DEFAULT_LAYOUT)
    lock_timeout: float | None = None
    lock_strategy: str = "auto"
    provider_key_name: str = "provider"
    switch_identity: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthorizedConfig":
        """Create a config from a mapping, validating every value."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigValidationError([f"unknown option: {key}" for key in unknown])

        values = dict(data)
        layout = values.pop("layout", None)
        if layout is not None:
            if isinstance(layout, KeysDirLayout):
                values["layout"] = layout
            elif isinstance(layout, dict):
                try:
                    values["layout"] = KeysDirLayout(**layout)
                except (TypeError, ValueError) as e:
                    raise ConfigValidationError([f"layout: {e}"]) from e
            else:
                raise ConfigValidationError(["layout must be a mapping"])

        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> None:
        """Check every value, collecting all problems.

        Raises:
            ConfigValidationError: If any value is invalid.
        """
        errors: list[str] = []

        if self.lock_timeout is not None:
            if isinstance(self.lock_timeout, bool) or not isinstance(
                self.lock_timeout, (int, float)
            ):
                errors.append("lock_timeout must be a number")
            elif self.lock_timeout < 0:
                errors.append("lock_timeout must not be negative")

        if self.lock_strategy not in LOCK_STRATEGIES:
            errors.append(f"lock_strategy must be one of {', '.join(LOCK_STRATEGIES)}")

        name = self.provider_key_name
        if not isinstance(name, str) or not name or name.startswith(".") or "/" in name:
            errors.append("provider_key_name must be a plain file name")

        if not isinstance(self.switch_identity, bool):
            errors.append("switch_identity must be a boolean")

        if str(self.log_level).upper() not in LOG_LEVELS:
            errors.append(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        else:
            self.log_level = str(self.log_level).upper()

        if errors:
            raise ConfigValidationError(errors)


# =============================================================================
# Configuration Sources
# =============================================================================


def load_file(path: Path | str) -> dict[str, Any]:
    """Load a YAML or JSON configuration file.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse configuration {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must be a mapping")
    return data


_TRUE_VALUES = ("true", "yes", "on", "1")
_FALSE_VALUES = ("false", "no", "off", "0")


def _parse_bool(value: str) -> Any:
    if value.lower() in _TRUE_VALUES:
        return True
    if value.lower() in _FALSE_VALUES:
        return False
    return value


def _parse_optional_float(value: str) -> Any:
    if value.lower() in ("null", "none", ""):
        return None
    try:
        return float(value)
    except ValueError:
        return value


# Options settable from the environment and how their values are parsed.
# Unparseable values are passed through so validate() reports them.
_ENV_PARSERS = {
    "lock_timeout": _parse_optional_float,
    "lock_strategy": str,
    "provider_key_name": str,
    "switch_identity": _parse_bool,
    "log_level": str,
}


def load_env(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect AUTHORIZED_* overrides from the environment.

    AUTHORIZED_LOCK_TIMEOUT=30 becomes {"lock_timeout": 30.0}. Variables that
    do not name an option are ignored.
    """
    environ = os.environ if environ is None else environ
    result: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        option = key[len(ENV_PREFIX) :].lower()
        parser = _ENV_PARSERS.get(option)
        if parser is None:
            logger.debug("Ignoring environment variable %s", key)
            continue
        result[option] = parser(value)
    return result


def load_config(
    path: Path | str | None = None,
    environ: dict[str, str] | None = None,
) -> AuthorizedConfig:
    """Load configuration from defaults, an optional file and the environment.

    Args:
        path: YAML or JSON configuration file.
        environ: Environment mapping. None uses os.environ.

    Returns:
        Validated AuthorizedConfig.
    """
    data: dict[str, Any] = {}
    if path is not None:
        data.update(load_file(path))
        logger.debug("Loaded configuration from %s", path)
    data.update(load_env(environ))
    return AuthorizedConfig.from_dict(data)
