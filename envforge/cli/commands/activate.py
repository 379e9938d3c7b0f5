"""``envforge activate SPEC`` — activate an environment.

Without ``--run`` this reports what activation changes.  With ``--run``
the given command is executed inside the activated environment and its
exit status becomes the exit status of ``envforge``.
"""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from envforge.cli.runtime import get_orchestrator, reported_errors
from envforge.core.process_env import ProcessEnvironment
from envforge.models.activation import ActivationResult, ActivationState

console = Console()


def _summary(name: str, result: ActivationResult) -> Panel:
    ok = result.state == ActivationState.HOOK_RAN
    lines = [
        f"[bold]State:[/bold]        {result.state.value}",
        f"[bold]Exported:[/bold]     {', '.join(result.exported) or '-'}",
        f"[bold]Unset:[/bold]        {', '.join(result.unset) or '-'}",
        f"[bold]Search path:[/bold]  {len(result.prepended_paths)} entries prepended",
    ]
    if result.rejected_variables:
        lines.append(
            f"[bold yellow]Rejected:[/bold yellow]     {', '.join(result.rejected_variables)}"
        )
    for warning in result.warnings:
        lines.append(f"[yellow]- {escape(warning)}[/yellow]")
    return Panel(
        "\n".join(lines),
        title=f"[bold]{escape(name)}[/bold]",
        border_style="green" if ok else "yellow",
        padding=(1, 2),
    )


def activate_cmd(
    ctx: typer.Context,
    spec: Path = typer.Argument(..., help="Path to the environment spec."),
    run: str | None = typer.Option(
        None,
        "--run",
        "-r",
        help="Command to run inside the activated environment.",
    ),
) -> None:
    """Resolve SPEC and activate it."""
    orchestrator = get_orchestrator(ctx)
    with reported_errors():
        resolved, process_env, result = orchestrator.activate(
            spec.read_text(encoding="utf-8"), ProcessEnvironment.from_environ()
        )

    if result.hook_stdout:
        typer.echo(result.hook_stdout, nl=False, err=True)

    if run is None:
        console.print(_summary(resolved.name, result))
        return

    argv = shlex.split(run)
    if not argv:
        raise typer.BadParameter("--run needs a command")
    with reported_errors():
        proc = subprocess.run(argv, env=process_env.to_environ(), check=False)
    raise typer.Exit(code=proc.returncode)
