"""
CLI subcommands for the memory index.

Usage:
    contextkeeper index build ~/clawd
    contextkeeper index regenerate
"""

from pathlib import Path
from typing import Optional

import typer

from contextkeeper.cli.main import get_host_config, get_settings
from contextkeeper.config import resolve_workspace
from contextkeeper.errors import NotFound, WriteFailure
from contextkeeper.memory.indexer import MemoryIndexBuilder, format_size, regenerate_all

index_app = typer.Typer(help="Build and regenerate memory INDEX.md files.")


@index_app.command("build")
def build_index(
    workspace: Optional[Path] = typer.Argument(
        None, help="Workspace directory (default: the main agent's workspace)"
    ),
):
    """Build INDEX.md for one workspace."""
    if workspace is None:
        settings = get_settings()
        workspace = resolve_workspace(get_host_config(settings), "main", Path.home())

    try:
        index = MemoryIndexBuilder(workspace / "memory").write()
    except (NotFound, WriteFailure) as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=1)

    totals = index.totals
    typer.echo(
        f"Index generated: {workspace / 'memory' / 'INDEX.md'} "
        f"({totals.files} files, {format_size(totals.size)}, ~{totals.tokens} tokens)"
    )


@index_app.command("regenerate")
def regenerate(
    min_bytes: Optional[int] = typer.Option(
        None, "--min-bytes", help="Only index workspaces whose memory pool is at least this large"
    ),
):
    """Rebuild INDEX.md for every configured workspace above the size threshold."""
    settings = get_settings()
    config = get_host_config(settings)

    report = regenerate_all(
        config,
        Path.home(),
        min_bytes=min_bytes if min_bytes is not None else settings.memory_threshold_bytes,
    )
    for workspace in report.generated:
        typer.echo(f"  generated  {workspace}")
    for workspace, error in report.failed:
        typer.echo(f"  failed     {workspace}: {error}")
    typer.echo(report.summary())
