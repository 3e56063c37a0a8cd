"""Helpers shared by CLI commands: settings, logging, store access, errors."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import typer
from rich.console import Console
from rich.logging import RichHandler

from linkstore.config import StoreSettings
from linkstore.errors import StoreError
from linkstore.store import Store

console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route all ``linkstore`` loggers through a Rich handler on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def settings_from(ctx: typer.Context) -> StoreSettings:
    if isinstance(ctx.obj, StoreSettings):
        return ctx.obj
    return StoreSettings()


def open_store(ctx: typer.Context) -> Store:
    return Store.open(settings_from(ctx))


@contextmanager
def reported_errors() -> Iterator[None]:
    """Print store and validation errors in red and exit with status 1."""
    try:
        yield
    except (StoreError, ValueError) as exc:
        err_console.print(f"[bold red]{type(exc).__name__}:[/bold red] {exc}")
        raise typer.Exit(code=1) from exc
