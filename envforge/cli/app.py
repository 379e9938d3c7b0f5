"""Main Typer application — imports and registers all CLI commands.

Entry point: ``envforge`` (configured via pyproject.toml scripts).

Commands: resolve, activate, print-script, fetch, store list, store show.
"""

from __future__ import annotations

from pathlib import Path

import typer

from envforge.cli.commands.activate import activate_cmd
from envforge.cli.commands.fetch import fetch_cmd
from envforge.cli.commands.print_script import print_script_cmd
from envforge.cli.commands.resolve import resolve_cmd
from envforge.cli.commands.store import store_list_cmd, store_show_cmd
from envforge.cli.runtime import build_settings, configure_logging

app = typer.Typer(
    name="envforge",
    help="Envforge: declarative, reproducible shell environments.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

store_app = typer.Typer(
    name="store",
    help="Inspect the content store.",
    no_args_is_help=True,
)
app.add_typer(store_app, name="store")

# Register subcommands
app.command(name="resolve", help="Resolve a spec and build its packages.")(resolve_cmd)
app.command(name="activate", help="Activate a spec, optionally running a command.")(
    activate_cmd
)
app.command(name="print-script", help="Print a sourceable activation script.")(
    print_script_cmd
)
app.command(name="fetch", help="Prefetch a source, or verify it against a pin.")(fetch_cmd)
store_app.command(name="list", help="List store entries.")(store_list_cmd)
store_app.command(name="show", help="Show the build attempts of a content hash.")(
    store_show_cmd
)


@app.callback()
def _global_options(
    ctx: typer.Context,
    catalog: Path | None = typer.Option(
        None,
        "--catalog",
        "-c",
        help="Package catalog (TOML). Overrides ENVFORGE_CATALOG_PATH.",
    ),
    store: Path | None = typer.Option(
        None,
        "--store",
        "-s",
        help="Content store directory. Overrides ENVFORGE_STORE_PATH.",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ...). Overrides ENVFORGE_LOG_LEVEL.",
    ),
) -> None:
    """Global options applied to every command."""
    settings = build_settings(catalog=catalog, store=store, log_level=log_level)
    configure_logging(settings.log_level)
    ctx.obj = settings


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
