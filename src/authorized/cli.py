"""Command-line interface for authorized."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Optional

import typer

from authorized.config import AuthorizedConfig, ConfigError, load_config
from authorized.keysdir import KeysDirError, KeysDirManager
from authorized.provider import PasswdProvider, ProviderError, User, YamlProvider
from authorized.sync import KeysDirSync, SyncAction

app = typer.Typer(
    name="authorized",
    help="Manage per-user ~/.ssh/authorized_keys.d directories",
    add_completion=False,
)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="YAML or JSON configuration file"),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
    ] = None,
    lock_timeout: Annotated[
        Optional[float],
        typer.Option("--lock-timeout", help="Seconds to wait for a user's lock (default: forever)"),
    ] = None,
) -> None:
    """Manage per-user ~/.ssh/authorized_keys.d directories."""
    try:
        config = load_config(config_file)
        if log_level is not None:
            config.log_level = log_level
        if lock_timeout is not None:
            config.lock_timeout = lock_timeout
        config.validate()
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)

    _configure_logging(config.log_level)
    ctx.obj = config


def _resolve_users(names: list[str], home: Optional[Path]) -> list[User]:
    if home is not None:
        if len(names) != 1:
            typer.echo("Error: --home requires exactly one user", err=True)
            raise typer.Exit(2)
        return [User(name=names[0], home_dir=str(home))]

    try:
        return [user for batch in PasswdProvider(names).users() for user in batch]
    except ProviderError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command(name="sync")
def sync_cmd(
    ctx: typer.Context,
    users_file: Annotated[Path, typer.Argument(help="YAML or JSON file listing users")],
) -> None:
    """Write provider keys for every user listed in a users file."""
    config: AuthorizedConfig = ctx.obj
    if not users_file.exists():
        typer.echo(f"Error: File not found: {users_file}", err=True)
        raise typer.Exit(1)

    try:
        report = KeysDirSync(config).run(YamlProvider(users_file))
    except ProviderError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    for result in report.results:
        line = f"{result.user}: {result.action.value}"
        if result.action == SyncAction.FAILED:
            typer.echo(f"{line} ({result.error})", err=True)
        else:
            typer.echo(line)

    if not report.success:
        raise typer.Exit(1)


@app.command(name="migrate")
def migrate_cmd(
    ctx: typer.Context,
    users: Annotated[list[str], typer.Argument(help="Users to migrate")],
    home: Annotated[
        Optional[Path],
        typer.Option("--home", help="Home directory (single user, skips passwd lookup)"),
    ] = None,
) -> None:
    """Create authorized_keys.d for users, preserving authorized_keys."""
    config: AuthorizedConfig = ctx.obj
    manager = KeysDirManager.from_config(config)
    failed = False

    for user in _resolve_users(users, home):
        try:
            with manager.open(user, create=True) as keys_dir:
                typer.echo(f"{user.name}: {keys_dir.path}")
        except KeysDirError as e:
            typer.echo(f"Error: {user.name}: {e}", err=True)
            failed = True

    if failed:
        raise typer.Exit(1)


@app.command(name="list")
def list_cmd(
    ctx: typer.Context,
    user: Annotated[str, typer.Argument(help="User whose keys to list")],
    home: Annotated[
        Optional[Path],
        typer.Option("--home", help="Home directory (skips passwd lookup)"),
    ] = None,
) -> None:
    """List the key files of an existing authorized_keys.d."""
    config: AuthorizedConfig = ctx.obj
    manager = KeysDirManager.from_config(config)
    (target,) = _resolve_users([user], home)

    try:
        with manager.open(target, create=False) as keys_dir:
            key_files = keys_dir.list_keys()
    except KeysDirError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    for name, keys in key_files.items():
        typer.echo(f"# {name}")
        for key in keys:
            typer.echo(key)


if __name__ == "__main__":
    app()
