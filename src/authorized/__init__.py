"""authorized - Per-user SSH authorized_keys.d management."""

from authorized.config import AuthorizedConfig, load_config
from authorized.keysdir import (
    KeysDir,
    KeysDirError,
    KeysDirLayout,
    KeysDirManager,
    KeysDirNotFoundError,
    open_keys_dir,
)
from authorized.provider import Provider, StaticProvider, User, YamlProvider
from authorized.sync import KeysDirSync, SyncReport

__version__ = "0.1.0"

__all__ = [
    "AuthorizedConfig",
    "load_config",
    "KeysDir",
    "KeysDirError",
    "KeysDirLayout",
    "KeysDirManager",
    "KeysDirNotFoundError",
    "open_keys_dir",
    "Provider",
    "StaticProvider",
    "User",
    "YamlProvider",
    "KeysDirSync",
    "SyncReport",
]
