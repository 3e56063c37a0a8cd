"""Main Typer application — imports and registers all CLI commands.

Entry point: ``linkstore`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

from pathlib import Path

import typer

from linkstore.cli.commands.build import build_cmd, lookup_cmd
from linkstore.cli.commands.maintenance import fsck_mappings_cmd, gc_cmd
from linkstore.cli.commands.objects import import_cmd, init_cmd, show_cmd
from linkstore.cli.commands.packages import closure_cmd, realize_cmd, verify_cmd
from linkstore.cli.common import configure_logging
from linkstore.config import StoreSettings

app = typer.Typer(
    name="linkstore",
    help="Linkstore: content-addressed package store with hard-linked checkouts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    store: Path = typer.Option(
        None, "--store", "-s", help="Store root (overrides LINKSTORE_STORE_ROOT)."
    ),
    log_level: str = typer.Option(
        None, "--log-level", help="Logging level (overrides LINKSTORE_LOG_LEVEL)."
    ),
) -> None:
    """Resolve settings once and configure logging for every command."""
    settings = StoreSettings(store_root=store) if store else StoreSettings()
    configure_logging(log_level or settings.log_level)
    ctx.obj = settings


# Register subcommands
app.command(name="init", help="Create the store directory layout.")(init_cmd)
app.command(name="import", help="Store a directory as a package.")(import_cmd)
app.command(name="show", help="Print a stored object.")(show_cmd)
app.command(name="realize", help="Check out a package.")(realize_cmd)
app.command(name="verify", help="Verify a checkout against its package.")(verify_cmd)
app.command(name="build", help="Run a builder and record the result.")(build_cmd)
app.command(name="lookup", help="List mappings for a builder or result.")(lookup_cmd)
app.command(name="closure", help="List the closure of packages.")(closure_cmd)
app.command(name="gc", help="Collect unreachable objects.")(gc_cmd)
app.command(name="fsck-mappings", help="Check mapping index consistency.")(fsck_mappings_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
