"""``envforge fetch URL`` — download a source into the verified cache.

Without ``--hash`` the source is prefetched and its SHA-256 printed, ready
to be pinned in a catalog.  With ``--hash`` the download is verified
against the pin and rejected on mismatch.
"""

from __future__ import annotations

import typer
from rich.console import Console

from envforge.cli.runtime import get_orchestrator, reported_errors
from envforge.core.fetcher import RetryConfig, retry_with_backoff
from envforge.core.hasher import normalize_sha256

console = Console()


def fetch_cmd(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="URL (or local path) to fetch."),
    expected_hash: str | None = typer.Option(
        None,
        "--hash",
        help="Pinned SHA-256 (hex, sha256:hex or SRI sha256-base64).",
    ),
) -> None:
    """Fetch URL, verifying it against --hash when given."""
    if expected_hash is not None:
        try:
            normalize_sha256(expected_hash)
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--hash") from exc

    orchestrator = get_orchestrator(ctx)
    settings = orchestrator.settings
    retry = RetryConfig(
        max_retries=settings.fetch_max_retries,
        base_delay=settings.fetch_backoff_seconds,
    )
    fetcher = orchestrator.fetcher

    with reported_errors():
        if expected_hash is None:
            path, digest = retry_with_backoff(lambda: fetcher.prefetch(url), retry)
        else:
            path = retry_with_backoff(lambda: fetcher.fetch(url, expected_hash), retry)
            digest = None

    if digest is not None:
        typer.echo(f"sha256:{digest}")
    console.print(f"[bold green]Cached:[/bold green] {path}", highlight=False)
