"""``linkstore init``, ``linkstore import`` and ``linkstore show``."""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from linkstore.cli.common import console, open_store, reported_errors, settings_from
from linkstore.core.hasher import normalize_hash
from linkstore.errors import NotFoundError
from linkstore.models.objects import ObjectKind
from linkstore.store import Store


def init_cmd(ctx: typer.Context) -> None:
    """Create the store directory layout (safe to run twice)."""
    with reported_errors():
        store = Store.init(settings_from(ctx))

    table = Table(show_header=False, box=None)
    for label, path in (
        ("Objects", store.layout.objects),
        ("Packages", store.layout.packages),
        ("Mappings", store.layout.mappings),
        ("Scratch", store.layout.tmp),
    ):
        table.add_row(f"[bold]{label}[/bold]", str(path))
    console.print(
        Panel(table, title=f"[bold green]Store ready[/bold green] {store.layout.root}")
    )


def import_cmd(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, file_okay=False, help="Directory to import."),
    name: str = typer.Option(..., "--name", "-n", help="Package name."),
    platform: str = typer.Option(
        None, "--platform", "-p", help="Platform string; defaults to the host."
    ),
    references: list[str] = typer.Option(
        [], "--ref", "-r", help="Hash of a package this one references (repeatable)."
    ),
) -> None:
    """Store a directory as a package and realize it."""
    with reported_errors():
        store = open_store(ctx)
        package_hash = store.import_directory(path, name, platform, references)
        install_dir = store.checkout.install_dir(package_hash)

    console.print(f"[dim]{install_dir}[/dim]", soft_wrap=True)
    console.print(package_hash)


def show_cmd(
    ctx: typer.Context,
    object_hash: str = typer.Argument(..., help="Hash of any stored object."),
) -> None:
    """Print a stored object."""
    with reported_errors():
        store = open_store(ctx)
        digest = normalize_hash(object_hash)
        kind = store.objects.kind_of(digest)
        if kind is None:
            raise NotFoundError(f"no object {digest} in the store", hash=digest)

        if kind is ObjectKind.BLOB:
            path = store.objects.path_for(digest, kind)
            mode = "executable" if path.stat().st_mode & 0o111 else "file or symlink"
            console.print(
                f"[bold]blob[/bold] {digest}  {store.objects.size(digest, kind)} bytes ({mode})"
            )
            return

        data = json.loads(store.objects.get(digest, kind))
        console.print(f"[bold]{kind.name.lower()}[/bold] {digest}")
        console.print(Syntax(json.dumps(data, indent=2, sort_keys=True), "json"))
