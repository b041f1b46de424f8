"""Tests for the markdown memory store and its directory lock."""

import os
import time
from datetime import date, datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from contextkeeper.memory.extraction import build_day_log_entry
from contextkeeper.memory.markdown_store import (
    LOCK_FILENAME,
    MarkdownMemoryStore,
    MemoryDirLock,
    write_atomic,
)
from contextkeeper.session.models import MessageRecord

DAY = date(2026, 2, 8)


def entry_at(hour, minute):
    messages = [
        MessageRecord(role="user", text="please check the build"),
        MessageRecord(role="assistant", text="the build is green"),
    ]
    return build_day_log_entry(messages, now=datetime(2026, 2, 8, hour, minute))


@pytest.fixture
def store(tmp_path):
    return MarkdownMemoryStore.for_workspace(tmp_path)


class TestDayLog:
    @pytest.mark.asyncio
    async def test_new_file_gets_header(self, store):
        appended = await store.append_day_log("main", entry_at(14, 32), day=DAY)

        content = store.day_log_path(DAY).read_text(encoding="utf-8")
        assert appended is True
        assert content.startswith("# main - 2026-02-08\n\n### Checkpoint 14:32 (auto)")

    @pytest.mark.asyncio
    async def test_same_bucket_is_not_appended_twice(self, store):
        assert await store.append_day_log("main", entry_at(14, 32), day=DAY)
        assert not await store.append_day_log("main", entry_at(14, 32), day=DAY)
        assert not await store.append_day_log("main", entry_at(14, 38), day=DAY)

        content = await store.read_day_log(DAY)
        assert content.count("### Checkpoint") == 1
        assert content.count("# main - 2026-02-08") == 1

    @pytest.mark.asyncio
    async def test_next_bucket_is_appended(self, store):
        await store.append_day_log("main", entry_at(14, 32), day=DAY)
        assert await store.append_day_log("main", entry_at(14, 52), day=DAY)

        content = await store.read_day_log(DAY)
        assert "### Checkpoint 14:32 (auto)" in content
        assert "### Checkpoint 14:52 (auto)" in content

    @pytest.mark.asyncio
    async def test_existing_manual_content_is_preserved(self, store):
        store.ensure_dir()
        store.day_log_path(DAY).write_text("# Notes\n\nwritten by the agent\n", encoding="utf-8")

        await store.append_day_log("main", entry_at(10, 0), day=DAY)

        content = await store.read_day_log(DAY)
        assert content.startswith("# Notes\n\nwritten by the agent\n")
        assert "# main - 2026-02-08" not in content

    def test_parse_buckets(self):
        content = "### Checkpoint 09:05 (auto)\n\n### Checkpoint 23:59 (auto)\n"
        assert MarkdownMemoryStore.parse_buckets(content, 10) == {54, 143}


class TestActiveContextFile:
    @pytest.mark.asyncio
    async def test_overwrites_snapshot(self, store):
        await store.write_active_context("first")
        await store.write_active_context("second")

        assert await store.read_active_context() == "second"
        assert [p.name for p in store.memory_dir.iterdir()] == ["ACTIVE_CONTEXT.md"]

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, store):
        assert await store.read_active_context() is None


class TestCorpus:
    def test_documents_exclude_index(self, store):
        store.ensure_dir()
        (store.memory_dir / "a.md").write_text("aaaa")
        (store.memory_dir / "INDEX.md").write_text("index " * 100)
        (store.memory_dir / "b.txt").write_text("not markdown")

        assert [p.name for p in store.documents()] == ["a.md"]
        assert store.total_size() == 4

    def test_missing_dir(self, tmp_path):
        store = MarkdownMemoryStore(tmp_path / "missing")
        assert store.documents() == []
        assert store.total_size() == 0


def test_write_atomic_leaves_no_temp_file(tmp_path):
    target = tmp_path / "INDEX.md"
    write_atomic(target, "content")
    assert target.read_text() == "content"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["INDEX.md"]


class TestMemoryDirLock:
    def test_exclusive(self, tmp_path):
        first = MemoryDirLock(tmp_path)
        second = MemoryDirLock(tmp_path)

        assert first.acquire()
        assert not second.acquire()

        first.release()
        assert second.acquire()
        second.release()
        assert not (tmp_path / LOCK_FILENAME).exists()

    def test_breaks_stale_lock(self, tmp_path):
        lock_path = tmp_path / LOCK_FILENAME
        lock_path.write_text("12345")
        old = time.time() - 3600
        os.utime(lock_path, (old, old))

        lock = MemoryDirLock(tmp_path, stale_seconds=600)
        assert lock.acquire()
        lock.release()

    def test_fresh_lock_taken_during_stale_break_is_kept(self, tmp_path):
        lock_path = tmp_path / LOCK_FILENAME
        lock_path.write_text("crashed-run")
        old = time.time() - 3600
        os.utime(lock_path, (old, old))
        real_rename = os.rename

        def rename_after_other_run_relocks(src, dst):
            # Another run breaks the stale lock and takes a fresh one first
            os.unlink(src)
            Path(src).write_text("other-run")
            real_rename(src, dst)

        lock = MemoryDirLock(tmp_path, stale_seconds=600)
        with patch(
            "contextkeeper.memory.markdown_store.os.rename",
            side_effect=rename_after_other_run_relocks,
        ):
            assert lock.acquire() is False

        assert lock_path.read_text() == "other-run"
        assert sorted(p.name for p in tmp_path.iterdir()) == [LOCK_FILENAME]

    def test_context_manager(self, tmp_path):
        with MemoryDirLock(tmp_path) as acquired:
            assert acquired
            assert (tmp_path / LOCK_FILENAME).exists()
        assert not (tmp_path / LOCK_FILENAME).exists()

    def test_release_without_acquire_keeps_foreign_lock(self, tmp_path):
        (tmp_path / LOCK_FILENAME).write_text("other")
        MemoryDirLock(tmp_path).release()
        assert (tmp_path / LOCK_FILENAME).exists()
