"""Tests for the per-agent checkpoint run."""

import os
import time
from datetime import datetime
from unittest.mock import patch

import pytest

from conftest import conversation, write_transcript
from contextkeeper.config import HostConfig
from contextkeeper.memory.checkpoint import CheckpointRunner, CheckpointStatus
from contextkeeper.memory.markdown_store import LOCK_FILENAME
from contextkeeper.session.transcript import TranscriptReader

FIXED_NOW = datetime(2026, 2, 8, 14, 32)


def add_session(settings, agent_id, events, session_id="abc12345"):
    path = settings.sessions_dir(agent_id) / f"{session_id}.jsonl"
    return write_transcript(path, events)


@pytest.fixture
def frozen_clock():
    with patch("contextkeeper.memory.checkpoint.datetime") as mock_dt:
        mock_dt.now.return_value = FIXED_NOW
        yield mock_dt


class TestCheckpointRun:
    @pytest.mark.asyncio
    async def test_checkpoints_active_session(self, settings, host_config, workspace, frozen_clock):
        add_session(settings, "main", conversation(6))

        report = await CheckpointRunner(host_config, settings=settings).run()

        assert report.checkpointed == 1
        result = report.results[0]
        assert result.session_id == "abc12345"
        assert result.messages == 6
        assert result.snapshot_written and result.day_log_appended

        memory = workspace / "memory"
        snapshot = (memory / "ACTIVE_CONTEXT.md").read_text(encoding="utf-8")
        assert snapshot.startswith("# Active Context - main")
        day_log = (memory / "2026-02-08.md").read_text(encoding="utf-8")
        assert "### Checkpoint 14:32 (auto)" in day_log
        assert not (memory / LOCK_FILENAME).exists()

    @pytest.mark.asyncio
    async def test_rerun_in_same_bucket_is_idempotent(self, settings, host_config, workspace, frozen_clock):
        add_session(settings, "main", conversation(6))
        runner = CheckpointRunner(host_config, settings=settings)

        await runner.run()
        first_snapshot = (workspace / "memory" / "ACTIVE_CONTEXT.md").read_text()
        report = await runner.run()

        assert report.results[0].day_log_appended is False
        day_log = (workspace / "memory" / "2026-02-08.md").read_text()
        assert day_log.count("### Checkpoint") == 1
        assert (workspace / "memory" / "ACTIVE_CONTEXT.md").read_text() == first_snapshot

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, settings, host_config, workspace):
        add_session(settings, "main", conversation(6))

        report = await CheckpointRunner(host_config, settings=settings).run(dry_run=True)

        assert report.dry_run
        assert report.results[0].status == CheckpointStatus.CHECKPOINTED
        assert report.results[0].reason == "dry run"
        assert not (workspace / "memory").exists()
        assert report.summary().startswith("[DRY RUN]")

    @pytest.mark.asyncio
    async def test_no_session_is_skipped(self, settings, host_config):
        report = await CheckpointRunner(host_config, settings=settings).run()

        assert report.skipped == 1
        assert report.results[0].reason == "no active session"

    @pytest.mark.asyncio
    async def test_stale_session_is_skipped(self, settings, host_config, workspace):
        path = add_session(settings, "main", conversation(6))
        old = time.time() - 5 * 3600
        os.utime(path, (old, old))

        report = await CheckpointRunner(host_config, settings=settings).run()

        assert report.skipped == 1
        assert "old" in report.results[0].reason
        assert not (workspace / "memory").exists()

    @pytest.mark.asyncio
    async def test_small_session_is_skipped(self, settings, host_config):
        add_session(settings, "main", conversation(2, length=10))

        report = await CheckpointRunner(host_config, settings=settings).run()

        assert report.skipped == 1
        assert "too small" in report.results[0].reason

    @pytest.mark.asyncio
    async def test_too_few_messages_is_skipped(self, settings, host_config, workspace):
        events = conversation(2, length=800)
        add_session(settings, "main", events)

        report = await CheckpointRunner(host_config, settings=settings).run()

        assert report.skipped == 1
        assert "too few messages" in report.results[0].reason
        assert not (workspace / "memory").exists()

    @pytest.mark.asyncio
    async def test_locked_memory_dir_is_skipped(self, settings, host_config, workspace):
        add_session(settings, "main", conversation(6))
        memory = workspace / "memory"
        memory.mkdir()
        (memory / LOCK_FILENAME).write_text("4242")

        report = await CheckpointRunner(host_config, settings=settings).run()

        assert report.skipped == 1
        assert "locked" in report.results[0].reason
        assert not (memory / "ACTIVE_CONTEXT.md").exists()

    @pytest.mark.asyncio
    async def test_one_agent_failure_does_not_stop_others(self, settings, tmp_path, frozen_clock):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        good = tmp_path / "clawd-good"
        config = HostConfig.model_validate(
            {
                "agents": {
                    "list": [
                        {"id": "broken", "workspace": str(blocker)},
                        {"id": "good", "workspace": str(good)},
                    ]
                }
            }
        )
        add_session(settings, "broken", conversation(6))
        add_session(settings, "good", conversation(6))

        report = await CheckpointRunner(config, settings=settings).run()

        statuses = {r.agent_id: r.status for r in report.results}
        assert statuses == {
            "broken": CheckpointStatus.FAILED,
            "good": CheckpointStatus.CHECKPOINTED,
        }
        assert (good / "memory" / "ACTIVE_CONTEXT.md").exists()
        assert "1 failed" in report.summary()

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported_per_agent(self, settings, host_config):
        runner = CheckpointRunner(host_config, settings=settings)

        with patch.object(runner, "checkpoint_agent", side_effect=RuntimeError("boom")):
            report = await runner.run()

        assert report.failed == 1
        assert report.results[0].reason == "boom"

    @pytest.mark.asyncio
    async def test_slow_agents_fail_when_budget_is_exhausted(self, settings, tmp_path):
        agents = ["alpha", "beta", "gamma"]
        config = HostConfig.model_validate(
            {
                "agents": {
                    "list": [
                        {"id": agent, "workspace": str(tmp_path / f"clawd-{agent}")}
                        for agent in agents
                    ]
                }
            }
        )
        for agent in agents:
            add_session(settings, agent, conversation(6))
        settings.budget_seconds = 0.2

        started = time.monotonic()
        with patch.object(TranscriptReader, "read", side_effect=lambda *args: time.sleep(0.5)):
            report = await CheckpointRunner(config, settings=settings).run()
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert report.failed == 3
        assert all(r.reason == "wall-clock budget exhausted" for r in report.results)
        assert not any((tmp_path / f"clawd-{agent}").exists() for agent in agents)

    @pytest.mark.asyncio
    async def test_agent_subset(self, settings, host_config):
        report = await CheckpointRunner(host_config, settings=settings).run(agent_ids=["ops"])
        assert [r.agent_id for r in report.results] == ["ops"]

    @pytest.mark.asyncio
    async def test_no_agents(self, settings):
        report = await CheckpointRunner(HostConfig(), settings=settings).run()
        assert report.results == []
