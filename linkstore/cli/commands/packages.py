"""``linkstore realize``, ``linkstore verify`` and ``linkstore closure``."""

from __future__ import annotations

import typer
from rich.table import Table

from linkstore.cli.common import console, open_store, reported_errors
from linkstore.core.closure import compute_closure
from linkstore.core.hasher import normalize_hash
from linkstore.models.objects import ObjectKind


def realize_cmd(
    ctx: typer.Context,
    package_hash: str = typer.Argument(..., help="Package hash to check out."),
) -> None:
    """Check out a package under ``packages/`` and print its path."""
    with reported_errors():
        store = open_store(ctx)
        path = store.checkout.realize(normalize_hash(package_hash))
    console.print(str(path), soft_wrap=True)


def verify_cmd(
    ctx: typer.Context,
    package_hash: str = typer.Argument(..., help="Package hash to verify."),
) -> None:
    """Compare a checkout against its package, file by file."""
    with reported_errors():
        store = open_store(ctx)
        digest = normalize_hash(package_hash)
        store.checkout.verify(digest)
    console.print(f"[green]OK[/green] {store.checkout.install_dir(digest)}")


def closure_cmd(
    ctx: typer.Context,
    package_hashes: list[str] = typer.Argument(..., help="Root package hashes."),
    dot: bool = typer.Option(False, "--dot", help="Print the graph in Graphviz DOT format."),
) -> None:
    """List every package reachable from the given packages."""
    with reported_errors():
        store = open_store(ctx)
        closure = compute_closure(store.objects, [normalize_hash(h) for h in package_hashes])

    if dot:
        console.print(
            closure.to_dot(), end="", markup=False, highlight=False, soft_wrap=True
        )
        return

    table = Table(title=f"Closure ({len(closure)} objects)")
    table.add_column("Package", style="cyan")
    table.add_column("Hash", style="dim")
    for digest in closure.packages:
        table.add_row(closure.labels.get((ObjectKind.PACKAGE, digest), "?"), digest)
    console.print(table)
