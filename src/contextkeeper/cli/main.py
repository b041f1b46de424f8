"""
Top-level CLI commands: checkpoint, rotate, bootstrap, summarize.

Each command is one short-lived batch run meant to be fired by launchd/cron.
A run exits 1 only when it cannot start at all (host configuration unreadable,
session registry unreachable); per-agent and per-session failures are counted
in the final tally instead.
"""

import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer

from contextkeeper.config import HostConfig, Settings, load_host_config
from contextkeeper.config import load_environment as _load_dotenv_files
from contextkeeper.errors import MalformedInput, NotFound, RegistryUnavailable, WriteFailure
from contextkeeper.logger import get_logger, setup_logging
from contextkeeper.memory.checkpoint import CheckpointRunner
from contextkeeper.memory.disclosure import BootstrapFile, DisclosurePlanner
from contextkeeper.memory.summary import SessionSummaryWriter
from contextkeeper.session.gateway import GatewayClient
from contextkeeper.session.lifecycle import RotationController, RotationPolicy

logger = get_logger(__name__)


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    setup_logging(level="DEBUG" if verbose else "WARNING")


def load_environment():
    """Load .env files so Settings.from_env sees them."""
    _load_dotenv_files()


def get_settings() -> Settings:
    return Settings.from_env()


def get_host_config(settings: Settings) -> HostConfig:
    """Load the host configuration or abort the invocation."""
    try:
        return load_host_config(settings.host_config_path)
    except (NotFound, MalformedInput) as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=1)


def get_gateway(settings: Settings) -> GatewayClient:
    return GatewayClient(
        settings.gateway_url,
        token=settings.gateway_token,
        timeout=settings.call_timeout,
    )


def checkpoint(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Run the full pipeline but write nothing"
    ),
    agent: Optional[List[str]] = typer.Option(
        None, "--agent", "-a", help="Only checkpoint these agent ids (repeatable)"
    ),
):
    """Snapshot every agent's active session into its memory directory."""
    settings = get_settings()
    config = get_host_config(settings)

    runner = CheckpointRunner(config, settings=settings)
    report = asyncio.run(runner.run(dry_run=dry_run, agent_ids=agent or None))

    for result in report.results:
        detail = f" ({result.reason})" if result.reason else ""
        typer.echo(f"  {result.agent_id:<16} {result.status.value}{detail}")
    typer.echo(report.summary())


def rotate(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Report what would be rotated without rotating"
    ),
    threshold: Optional[int] = typer.Option(
        None, "--threshold", "-t", help="Token threshold (default: ROTATION_THRESHOLD or 150000)"
    ),
):
    """Rotate sessions whose token count crossed the threshold."""
    settings = get_settings()

    try:
        policy = RotationPolicy(
            threshold=threshold if threshold is not None else settings.rotation_threshold,
            exclude_patterns=settings.exclude_patterns,
        )
    except ValueError as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=1)

    async def _run():
        async with get_gateway(settings) as gateway:
            controller = RotationController(
                gateway, policy=policy, budget_seconds=settings.budget_seconds
            )
            return await controller.run(dry_run=dry_run)

    try:
        report = asyncio.run(_run())
    except RegistryUnavailable as e:
        typer.echo(f"❌ Cannot list sessions: {e}")
        raise typer.Exit(code=1)

    for decision in report.candidates:
        typer.echo(
            f"  {decision.state.value:<16} {decision.key} ({decision.total_tokens} tokens)"
        )
    typer.echo(report.summary())


def bootstrap(
    workspace: Path = typer.Argument(..., help="Agent workspace directory"),
    threshold: Optional[int] = typer.Option(
        None, "--threshold", "-t", help="Disclosure threshold in bytes"
    ),
    as_json: bool = typer.Option(
        False, "--json", help="Print injected blocks as JSON for the host hook"
    ),
):
    """Decide how much memory to disclose when an agent starts."""
    settings = get_settings()
    planner = DisclosurePlanner(
        threshold_bytes=threshold if threshold is not None else settings.memory_threshold_bytes
    )

    blocks: List[BootstrapFile] = []
    plan = asyncio.run(planner.plan(workspace, blocks))

    if as_json:
        typer.echo(json.dumps([block.model_dump() for block in blocks], ensure_ascii=False))
        return

    typer.echo(f"Memory pool: {plan.total_bytes}B (threshold {plan.threshold}B)")
    if not plan.disclosed:
        typer.echo(f"Full memory load ({plan.reason})")
        return

    typer.echo(f"Disclosing via index: {', '.join(plan.injected)}")
    for block in blocks:
        typer.echo(f"\n===== {block.name} =====\n{block.content}")


def summarize(
    session_file: Path = typer.Argument(..., help="Transcript (.jsonl) of the finished session"),
    key: str = typer.Option(..., "--key", "-k", help="Session key, e.g. agent:main:main"),
    source: str = typer.Option("cli", "--source", "-s", help="What ended the session"),
):
    """Write a structured summary of a finished session into memory."""
    settings = get_settings()
    config = get_host_config(settings)

    writer = SessionSummaryWriter(config)
    try:
        result = asyncio.run(writer.write(key, session_file, source=source))
    except WriteFailure as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=1)

    if result.path is None:
        typer.echo(f"Nothing to summarize ({result.reason}).")
        return
    action = "Appended to" if result.appended else "Wrote"
    typer.echo(f"{action} {result.path}")


def register_commands(app: typer.Typer):
    """Register top-level commands on the main app."""
    app.command()(checkpoint)
    app.command()(rotate)
    app.command()(bootstrap)
    app.command()(summarize)
