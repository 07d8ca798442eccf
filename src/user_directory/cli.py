"""CLI entry point for the user directory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from user_directory.config import Settings, get_settings
from user_directory.errors import (
    AlreadyExistsError,
    ConfigurationFatalError,
    DirectoryUnavailableError,
    NotFoundError,
)
from user_directory.models.identity import User, UserFilter
from user_directory.resolver import UserResolver
from user_directory.storage.sqlite import StorageEngine

app = typer.Typer(
    name="user-directory",
    help="User directory: resolve uids to users, provisioning from LDAP on first use.",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
) -> None:
    level = "DEBUG" if verbose else get_settings().log_level.upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _db_path(db: Path | None, settings: Settings) -> Path:
    path = db or settings.database_path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


@asynccontextmanager
async def _open(db: Path | None) -> AsyncIterator[tuple[StorageEngine, UserResolver]]:
    settings = get_settings()
    storage = StorageEngine(_db_path(db, settings))
    await storage.initialize()
    directory = None
    if settings.ldap_enabled:
        from user_directory.directory.ldap import LDAPDirectoryClient

        directory = LDAPDirectoryClient(settings)
    try:
        yield storage, UserResolver(storage, directory, settings=settings)
    finally:
        if directory is not None:
            await directory.close()
        await storage.close()


def _run(coro: Callable[[], Awaitable[None]]) -> None:
    """Run a command body, turning resolution errors into exit codes."""
    try:
        asyncio.run(coro())
    except ConfigurationFatalError as e:
        console.print(f"[red bold]Configuration error:[/red bold] {e}")
        raise typer.Exit(2) from e
    except (NotFoundError, AlreadyExistsError, DirectoryUnavailableError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e


def _print_users(users: list[User]) -> None:
    table = Table("entity", "uid", "name", "email", "active", "admin", "realm")
    for user in users:
        table.add_row(
            str(user.entity_id),
            user.uid,
            user.name,
            user.email,
            "yes" if user.active else "no",
            "yes" if user.admin else "no",
            user.auth_realm.value,
        )
    console.print(table)


@app.command()
def init(
    db: Path | None = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Create the database schema."""

    async def _init() -> None:
        async with _open(db) as (storage, _):
            console.print(f"[green]Initialized user directory at {storage.db_path}[/green]")

    _run(_init)


@app.command(name="seed-service-user")
def seed_service_user(
    name: str = typer.Option("Directory sync", help="Display name of the service identity"),
    db: Path | None = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Create the service identity that directory provisioning acts as."""

    async def _seed() -> None:
        async with _open(db) as (_, resolver):
            user = await resolver.provision_local(
                User(uid=get_settings().service_uid, name=name, admin=True)
            )
            console.print(f"[green]Seeded {user.uid} as entity {user.entity_id}[/green]")

    _run(_seed)


@app.command(name="add-user")
def add_user(
    uid: str = typer.Argument(help="Unique user identifier"),
    name: str = typer.Option(..., help="Full name"),
    email: str = typer.Option("", help="Email address"),
    admin: bool = typer.Option(False, help="Grant admin rights"),
    db: Path | None = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Create a local (non-directory) user."""

    async def _add() -> None:
        async with _open(db) as (_, resolver):
            user = await resolver.provision_local(
                User(uid=uid, name=name, email=email, admin=admin)
            )
            console.print(f"[green]Added {user.uid} as entity {user.entity_id}[/green]")

    _run(_add)


@app.command()
def resolve(
    uid: str = typer.Argument(help="User identifier to resolve"),
    db: Path | None = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Resolve a uid, provisioning it from the directory if needed."""

    async def _resolve() -> None:
        async with _open(db) as (_, resolver):
            resolution = await resolver.resolve(uid)
            _print_users([resolution.user])
            console.print(f"[dim]source: {resolution.source.value}[/dim]")
            sync = resolution.group_sync
            if sync is not None:
                if sync.synced:
                    console.print(f"[green]Groups synced:[/green] {', '.join(sync.synced)}")
                for group, error in sync.failures.items():
                    console.print(f"[yellow]Group {group} not synced: {error}[/yellow]")

    _run(_resolve)


@app.command()
def show(
    entity_id: int = typer.Argument(help="Entity id of the user"),
    db: Path | None = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show a stored user by entity id."""

    async def _show() -> None:
        async with _open(db) as (_, resolver):
            _print_users([await resolver.resolve_by_id(entity_id)])

    _run(_show)


@app.command(name="list-users")
def list_users(
    uid: str | None = typer.Option(None, help="Exact uid"),
    name: str | None = typer.Option(None, help="Exact name"),
    admins_of_active_servers: bool = typer.Option(
        False, help="Only users administering a server that is not decommissioned"
    ),
    db: Path | None = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List stored users."""

    async def _list() -> None:
        async with _open(db) as (_, resolver):
            users = await resolver.list_users(
                UserFilter(uid=uid, name=name, admins_of_active_servers=admins_of_active_servers)
            )
            if not users:
                console.print("[dim]No users found.[/dim]")
                return
            _print_users(users)

    _run(_list)


@app.command()
def groups(
    uid: str = typer.Argument(help="User identifier"),
    db: Path | None = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show the groups a user belongs to."""

    async def _groups() -> None:
        async with _open(db) as (storage, resolver):
            user = await resolver.resolve_by_uid(uid)
            memberships = await storage.list_user_groups(user)
            if not memberships:
                console.print(f"[dim]{uid} is not in any group.[/dim]")
                return
            for group in memberships:
                marker = " [dim](system)[/dim]" if group.system else ""
                console.print(f"  {group.name}{marker}")

    _run(_groups)


if __name__ == "__main__":
    app()
