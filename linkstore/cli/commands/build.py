"""``linkstore build`` and ``linkstore lookup``.

A builder is described by a JSON file with the fields of a Builder object;
``--source NAME=PATH`` imports a local file or directory into the store and
adds it to the builder's sources.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import typer
from rich.table import Table

from linkstore.cli.common import console, open_store, reported_errors
from linkstore.core.hasher import normalize_hash
from linkstore.models.objects import Builder


def _import_source(store, spec: str) -> tuple[str, str]:
    name, sep, raw_path = spec.partition("=")
    if not sep or not name:
        raise typer.BadParameter(f"expected NAME=PATH, got {spec!r}", param_hint="--source")
    path = Path(raw_path)
    if path.is_dir():
        return name, store.tree_builder.build_tree(path)
    return name, store.objects.put_file(path, executable=os.access(path, os.X_OK))


def build_cmd(
    ctx: typer.Context,
    builder_file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="JSON file describing the builder."
    ),
    sources: list[str] = typer.Option(
        [], "--source", "-S", help="NAME=PATH to import as a source (repeatable)."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Rebuild even if a trusted mapping exists."
    ),
) -> None:
    """Run a builder and record its result."""
    with reported_errors():
        store = open_store(ctx)
        data = json.loads(builder_file.read_text())
        data.setdefault("sources", {})
        for spec in sources:
            name, digest = _import_source(store, spec)
            data["sources"][name] = digest
        builder = Builder.model_validate(data)
        record = store.executor.build(builder, force=force)

    verb = "reused" if record.reused else f"built in {record.duration:.2f}s"
    console.print(f"[green]{builder.name}[/green] {verb}")
    console.print(f"[dim]builder[/dim] {record.builder_hash}")
    console.print(f"[dim]mapping[/dim] {record.mapping_hash}")
    console.print(record.package_hash)


def lookup_cmd(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Builder hash (or result hash with --by-result)."),
    source: str = typer.Option(None, "--source", help="Only this trust source."),
    by_result: bool = typer.Option(False, "--by-result", help="Look up by result hash."),
) -> None:
    """List recorded mappings for a builder or a result package."""
    with reported_errors():
        store = open_store(ctx)
        digest = normalize_hash(key)
        sources = [source] if source else store.mappings.sources()

        table = Table(title="Mappings")
        table.add_column("Source", style="cyan")
        table.add_column("Mapping", style="dim")
        table.add_column("Builder")
        table.add_column("Result")
        table.add_column("Recorded")
        for src in sources:
            lookup = store.mappings.lookup_by_result if by_result else store.mappings.lookup_by_builder
            for mapping_hash in sorted(lookup(src, digest)):
                mapping = store.objects.get_mapping(mapping_hash)
                table.add_row(
                    src,
                    mapping_hash[:16],
                    mapping.builder[:16],
                    mapping.result[:16],
                    mapping.metadata.timestamp.isoformat(timespec="seconds"),
                )

    if table.row_count == 0:
        console.print("[dim]No mappings found.[/dim]")
        raise typer.Exit(code=1)
    console.print(table)
