"""Shared CLI plumbing: settings, logging and error reporting."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from envforge.config import EnvforgeConfig
from envforge.core.catalog import CatalogError
from envforge.core.content_store import BuildFailure
from envforge.core.evaluator import EvaluationError, SpecSyntaxError
from envforge.core.fetcher import FetchError
from envforge.core.orchestrator import Orchestrator
from envforge.core.package_graph import CyclicDependencyError, DanglingInputError
from envforge.core.resolver import UnresolvedReferenceError

err_console = Console(stderr=True)

# Failures a user can act on; anything else is a bug and keeps its traceback.
REPORTED_ERRORS: tuple[type[Exception], ...] = (
    SpecSyntaxError,
    EvaluationError,
    CatalogError,
    CyclicDependencyError,
    DanglingInputError,
    UnresolvedReferenceError,
    FetchError,
    BuildFailure,
    OSError,
)


def configure_logging(level: str) -> None:
    """Route log records through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def build_settings(
    catalog: Path | None = None,
    store: Path | None = None,
    log_level: str | None = None,
) -> EnvforgeConfig:
    """Read settings from the environment, with command-line overrides on top."""
    overrides: dict[str, object] = {}
    if catalog is not None:
        overrides["catalog_path"] = catalog
    if store is not None:
        overrides["store_path"] = store
    if log_level is not None:
        overrides["log_level"] = log_level
    return EnvforgeConfig(**overrides)


def get_settings(ctx: typer.Context) -> EnvforgeConfig:
    settings = ctx.obj
    if not isinstance(settings, EnvforgeConfig):
        settings = build_settings()
        ctx.obj = settings
    return settings


def get_orchestrator(ctx: typer.Context) -> Orchestrator:
    """An orchestrator for the current invocation; closed with the context."""
    orchestrator = Orchestrator(get_settings(ctx))
    ctx.call_on_close(orchestrator.close)
    return orchestrator


@contextmanager
def reported_errors() -> Iterator[None]:
    """Turn expected failures into a red message and exit code 1."""
    try:
        yield
    except REPORTED_ERRORS as exc:
        err_console.print(
            f"[bold red]{type(exc).__name__}:[/bold red] {escape(str(exc))}",
            highlight=False,
        )
        raise typer.Exit(code=1) from exc
