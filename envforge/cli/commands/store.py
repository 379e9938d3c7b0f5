"""``envforge store`` — inspect the content store.

``store list`` shows the latest attempt of every content hash;
``store show HASH`` shows every attempt of one hash.  A unique prefix of
a hash is accepted.
"""

from __future__ import annotations

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from envforge.cli.runtime import get_orchestrator
from envforge.models.store import BuildStatus, StoreEntry

console = Console()

_STATUS_STYLE = {
    BuildStatus.BUILT: "[green]built[/green]",
    BuildStatus.PENDING: "[yellow]pending[/yellow]",
    BuildStatus.FAILED: "[red]failed[/red]",
}


def _entry_table(title: str, entries: list[StoreEntry]) -> Table:
    table = Table(title=title)
    table.add_column("Hash", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Attempt", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Path / Reason")
    for entry in entries:
        detail = entry.reason if entry.status == BuildStatus.FAILED else str(entry.path)
        table.add_row(
            entry.content_hash[:12],
            escape(entry.name),
            str(entry.attempt),
            _STATUS_STYLE[entry.status],
            escape(detail),
        )
    return table


def store_list_cmd(
    ctx: typer.Context,
    status: BuildStatus | None = typer.Option(
        None,
        "--status",
        help="Only show entries with this status.",
    ),
) -> None:
    """List store entries."""
    store = get_orchestrator(ctx).store
    entries = store.list_entries(status=status)
    if not entries:
        console.print("[dim]The store is empty.[/dim]")
        return
    console.print(_entry_table(f"Store {escape(str(store.root))}", entries))


def store_show_cmd(
    ctx: typer.Context,
    content_hash: str = typer.Argument(..., help="Content hash or a unique prefix of one."),
) -> None:
    """Show every build attempt of one content hash."""
    store = get_orchestrator(ctx).store
    matches = sorted(
        {e.content_hash for e in store.list_entries() if e.content_hash.startswith(content_hash)}
    )
    if not matches:
        console.print(f"[bold red]No store entry matches {escape(content_hash)}[/bold red]")
        raise typer.Exit(code=1)
    if len(matches) > 1:
        console.print(
            f"[bold red]{escape(content_hash)} is ambiguous:[/bold red] {len(matches)} entries"
        )
        raise typer.Exit(code=1)

    full_hash = matches[0]
    console.print(_entry_table(full_hash, store.attempts(full_hash)))
