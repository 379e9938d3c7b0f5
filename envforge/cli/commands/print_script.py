"""``envforge print-script SPEC`` — print a sourceable activation script.

Usage from a shell::

    eval "$(envforge print-script shell.nix)"
"""

from __future__ import annotations

from pathlib import Path

import typer

from envforge.cli.runtime import get_orchestrator, reported_errors


def print_script_cmd(
    ctx: typer.Context,
    spec: Path = typer.Argument(..., help="Path to the environment spec."),
) -> None:
    """Resolve SPEC and print a POSIX script that activates it."""
    orchestrator = get_orchestrator(ctx)
    with reported_errors():
        script = orchestrator.activation_script(spec.read_text(encoding="utf-8"))
    typer.echo(script, nl=False)
