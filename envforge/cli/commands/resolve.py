"""``envforge resolve SPEC`` — evaluate and build an environment.

Builds every package the spec needs into the content store and prints
the resolved environment: packages with their store paths, variables and
the search path order.  ``--json`` prints the resolved environment as
JSON instead.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from envforge.cli.runtime import get_orchestrator, reported_errors
from envforge.models.environment import ResolvedEnvironment

console = Console()


def print_resolved(resolved: ResolvedEnvironment) -> None:
    """Render a resolved environment as Rich tables."""
    table = Table(title=f"Packages of {escape(resolved.name)}")
    table.add_column("Name", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Hash", style="dim")
    table.add_column("Store Path")
    for pkg in resolved.packages:
        table.add_row(
            escape(pkg.name), escape(pkg.version), pkg.content_hash[:12], escape(pkg.store_path)
        )
    console.print(table)

    if resolved.variables:
        variables = Table(title="Variables")
        variables.add_column("Name", style="cyan")
        variables.add_column("Value")
        for name, value in resolved.variables.items():
            shown = "[dim](unset)[/dim]" if value is None else escape(value)
            variables.add_row(escape(name), shown)
        console.print(variables)

    console.print(
        Panel(
            escape("\n".join(resolved.search_paths)) or "[dim](none)[/dim]",
            title="[bold]Search Path[/bold]",
            border_style="green",
        )
    )
    console.print(f"[bold]Environment hash:[/bold] {resolved.environment_hash}")


def resolve_cmd(
    ctx: typer.Context,
    spec: Path = typer.Argument(..., help="Path to the environment spec."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print the resolved environment as JSON.",
    ),
) -> None:
    """Resolve SPEC, building whatever the store is missing."""
    orchestrator = get_orchestrator(ctx)
    with reported_errors():
        resolved = orchestrator.resolver.resolve(orchestrator.evaluate_file(spec))

    if json_output:
        typer.echo(resolved.model_dump_json(indent=2))
        return
    print_resolved(resolved)
