"""``linkstore gc`` and ``linkstore fsck-mappings``."""

from __future__ import annotations

import typer
from rich.table import Table

from linkstore.cli.common import console, open_store, reported_errors


def gc_cmd(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Report without deleting."),
    pins: list[str] = typer.Option(
        [], "--pin", help="Extra package name or hash to keep (repeatable)."
    ),
) -> None:
    """Remove objects and checkouts unreachable from any root."""
    with reported_errors():
        store = open_store(ctx)
        report = store.gc.collect(dry_run=dry_run, extra_pins=pins)

    title = "Garbage collection (dry run)" if dry_run else "Garbage collection"
    table = Table(title=title, show_header=False)
    table.add_row("Roots", str(report.roots))
    table.add_row("Live objects", str(report.live))
    table.add_row("Removed objects", str(len(report.removed_objects)))
    table.add_row("Pruned checkouts", str(len(report.pruned_packages)))
    table.add_row("Stale temp files", str(len(report.removed_temp_files)))
    if report.missing:
        table.add_row("[yellow]Missing objects[/yellow]", str(len(report.missing)))
    console.print(table)


def fsck_mappings_cmd(
    ctx: typer.Context,
    source: str = typer.Option(None, "--source", help="Only this trust source."),
    repair: bool = typer.Option(False, "--repair", help="Fix the issues found."),
) -> None:
    """Check that every mapping is indexed under both its keys."""
    with reported_errors():
        store = open_store(ctx)
        sources = [source] if source else store.mappings.sources()
        reports = [
            store.mappings.repair(s) if repair else store.mappings.check_consistency(s)
            for s in sources
        ]

    clean = True
    for report in reports:
        if report.consistent:
            console.print(f"[green]OK[/green] {report.source}: {report.checked} keys")
            continue
        clean = False
        table = Table(title=f"{report.source}: {len(report.issues)} issues")
        table.add_column("Issue", style="yellow")
        table.add_column("Side")
        table.add_column("Key", style="dim")
        table.add_column("Mapping", style="dim")
        for issue in report.issues:
            table.add_row(issue.kind.value, issue.side.value, issue.key[:16], issue.mapping_hash[:16])
        console.print(table)

    if not clean and not repair:
        raise typer.Exit(code=1)
