"""
Checkpoint runner: periodic, LLM-free memory checkpointing for every agent.

Invoked once per external tick (launchd/cron, e.g. every 20 minutes). For each
agent listed in the host configuration it:
  1. finds the most recently modified transcript
  2. skips stale, tiny or near-empty sessions
  3. extracts an ACTIVE_CONTEXT.md snapshot and a day-log entry
  4. writes both into <workspace>/memory/

Agents are independent: one agent's failure never stops the others.
"""

import asyncio
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from contextkeeper.config import HostConfig, Settings, resolve_workspace
from contextkeeper.errors import NotFound, WriteFailure
from contextkeeper.logger import get_logger
from contextkeeper.memory.extraction import (
    build_active_context,
    build_day_log_entry,
    clean_messages,
)
from contextkeeper.memory.markdown_store import MarkdownMemoryStore, MemoryDirLock
from contextkeeper.session.transcript import TranscriptReader

logger = get_logger(__name__)


class CheckpointStatus(str, Enum):
    CHECKPOINTED = "checkpointed"
    SKIPPED = "skipped"
    FAILED = "failed"


class AgentCheckpoint(BaseModel):
    """What happened to one agent during a run."""

    agent_id: str
    status: CheckpointStatus
    reason: str = ""
    session_id: Optional[str] = None
    messages: int = 0
    malformed_lines: int = 0
    snapshot_written: bool = False
    day_log_appended: bool = False


class CheckpointReport(BaseModel):
    dry_run: bool = False
    results: List[AgentCheckpoint] = Field(default_factory=list)

    def _count(self, status: CheckpointStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def checkpointed(self) -> int:
        return self._count(CheckpointStatus.CHECKPOINTED)

    @property
    def skipped(self) -> int:
        return self._count(CheckpointStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(CheckpointStatus.FAILED)

    def summary(self) -> str:
        prefix = "[DRY RUN] " if self.dry_run else ""
        return (
            f"{prefix}Checkpointed {self.checkpointed}/{len(self.results)} agents "
            f"({self.skipped} skipped, {self.failed} failed)."
        )


class CheckpointRunner:
    """Runs the transcript -> extraction -> markdown pipeline for each agent."""

    def __init__(
        self,
        config: HostConfig,
        settings: Optional[Settings] = None,
        home: Optional[Path] = None,
    ):
        self.config = config
        self.settings = settings or Settings()
        self.home = home or Path.home()

    async def run(
        self, dry_run: bool = False, agent_ids: Optional[List[str]] = None
    ) -> CheckpointReport:
        """Checkpoint all configured agents (or a subset) within the wall-clock budget."""
        agents = agent_ids or self.config.agent_ids
        report = CheckpointReport(dry_run=dry_run)

        mode = " [DRY RUN]" if dry_run else ""
        logger.info(f"Starting checkpoint run for {len(agents)} agent(s){mode}")

        if not agents:
            logger.info("No agents found in config")
            return report

        semaphore = asyncio.Semaphore(max(1, self.settings.concurrency))

        async def bounded(agent_id: str) -> AgentCheckpoint:
            async with semaphore:
                return await self.checkpoint_agent(agent_id, dry_run=dry_run)

        tasks = {agent_id: asyncio.ensure_future(bounded(agent_id)) for agent_id in agents}
        done, pending = await asyncio.wait(
            tasks.values(), timeout=self.settings.budget_seconds
        )
        for task in pending:
            task.cancel()

        for agent_id, task in tasks.items():
            if task in pending:
                logger.error(f"{agent_id}: checkpoint did not finish within the wall-clock budget")
                result = AgentCheckpoint(
                    agent_id=agent_id,
                    status=CheckpointStatus.FAILED,
                    reason="wall-clock budget exhausted",
                )
            elif task.exception() is not None:
                error = task.exception()
                logger.error(f"{agent_id}: error: {error}")
                result = AgentCheckpoint(
                    agent_id=agent_id, status=CheckpointStatus.FAILED, reason=str(error)
                )
            else:
                result = task.result()
            report.results.append(result)

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info(report.summary())
        return report

    async def checkpoint_agent(self, agent_id: str, dry_run: bool = False) -> AgentCheckpoint:
        """Checkpoint a single agent. Per-agent write failures are reported, not raised."""
        reader = TranscriptReader(
            self.settings.sessions_dir(agent_id), max_lines=self.settings.max_lines
        )

        session = await asyncio.to_thread(reader.find_active_session)
        if session is None:
            return self._skip(agent_id, "no active session")

        stale_seconds = self.settings.stale_hours * 3600
        age = session.age_seconds()
        if age > stale_seconds:
            return self._skip(
                agent_id,
                f"newest session is {round(age / 60)}m old",
                session.session_id,
            )

        if session.size < self.settings.min_session_bytes:
            return self._skip(
                agent_id, f"session too small ({session.size}B)", session.session_id
            )

        logger.debug(f"{agent_id}: reading {session.path} ({session.size}B)")
        try:
            transcript = await asyncio.to_thread(reader.read, session.path)
        except NotFound:
            # Rotated away between listing and reading
            return self._skip(agent_id, "session vanished", session.session_id)

        messages = clean_messages(transcript.messages)
        if len(messages) < self.settings.min_messages:
            result = self._skip(
                agent_id, f"too few messages ({len(messages)})", session.session_id
            )
            result.malformed_lines = transcript.malformed
            return result

        result = AgentCheckpoint(
            agent_id=agent_id,
            status=CheckpointStatus.CHECKPOINTED,
            session_id=session.session_id,
            messages=len(messages),
            malformed_lines=transcript.malformed,
        )

        now = datetime.now().astimezone()
        snapshot = build_active_context(agent_id, session.session_id, messages, now=now)
        entry = build_day_log_entry(
            messages, now=now, bucket_minutes=self.settings.day_log_bucket_minutes
        )

        workspace = resolve_workspace(self.config, agent_id, self.home)
        store = MarkdownMemoryStore.for_workspace(workspace)

        if dry_run:
            content = snapshot.render()
            logger.info(
                f"{agent_id}: [DRY RUN] would write {store.active_context_path} ({len(content)} chars)"
            )
            logger.info(
                f"{agent_id}: [DRY RUN] would append to {store.day_log_path(now.date()).name}"
            )
            result.reason = "dry run"
            return result

        try:
            await asyncio.to_thread(store.ensure_dir)
        except WriteFailure as e:
            logger.error(f"{agent_id}: {e}")
            return self._fail(agent_id, str(e), session.session_id)

        lock = MemoryDirLock(store.memory_dir, stale_seconds=self.settings.lock_stale_seconds)
        if not await asyncio.to_thread(lock.acquire):
            return self._skip(agent_id, "memory directory locked by another run", session.session_id)

        errors = []
        try:
            try:
                await store.write_active_context(snapshot.render())
                result.snapshot_written = True
            except WriteFailure as e:
                logger.error(f"{agent_id}: failed to write ACTIVE_CONTEXT.md: {e}")
                errors.append(str(e))

            try:
                result.day_log_appended = await store.append_day_log(
                    agent_id,
                    entry,
                    day=now.date(),
                    bucket_minutes=self.settings.day_log_bucket_minutes,
                )
            except WriteFailure as e:
                logger.error(f"{agent_id}: failed to append daily log: {e}")
                errors.append(str(e))
        finally:
            lock.release()

        if errors:
            result.status = CheckpointStatus.FAILED
            result.reason = "; ".join(errors)
        else:
            logger.debug(
                f"{agent_id}: checkpointed {len(messages)} messages "
                f"(day log {'appended' if result.day_log_appended else 'unchanged'})"
            )
        return result

    @staticmethod
    def _skip(agent_id: str, reason: str, session_id: Optional[str] = None) -> AgentCheckpoint:
        logger.debug(f"{agent_id}: {reason}, skipping")
        return AgentCheckpoint(
            agent_id=agent_id,
            status=CheckpointStatus.SKIPPED,
            reason=reason,
            session_id=session_id,
        )

    @staticmethod
    def _fail(agent_id: str, reason: str, session_id: Optional[str] = None) -> AgentCheckpoint:
        return AgentCheckpoint(
            agent_id=agent_id,
            status=CheckpointStatus.FAILED,
            reason=reason,
            session_id=session_id,
        )
