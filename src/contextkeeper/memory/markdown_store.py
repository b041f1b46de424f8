"""
Markdown-based memory store.

Operates on an agent's <workspace>/memory/ directory, which the agent itself
also reads and writes through its file tools. Layout:
- ACTIVE_CONTEXT.md: current-state snapshot (overwritten by every checkpoint)
- YYYY-MM-DD.md:     day logs (append-only, local date, one per day)
- INDEX.md:          generated memory index (a cache, safe to delete)
- anything else *.md: durable memory documents
"""

import asyncio
import os
import re
import time
import uuid
from datetime import date as date_type
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Set

from contextkeeper.errors import WriteFailure
from contextkeeper.logger import get_logger
from contextkeeper.memory.extraction import DayLogEntry, TimeBucket

logger = get_logger(__name__)

ACTIVE_CONTEXT_FILENAME = "ACTIVE_CONTEXT.md"
INDEX_FILENAME = "INDEX.md"
LOCK_FILENAME = ".checkpoint.lock"

CHECKPOINT_HEADING_PATTERN = re.compile(
    r"^### Checkpoint (\d{2}:\d{2})\b", re.MULTILINE
)


def _read_optional(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def write_atomic(path: Path, content: str) -> None:
    """Replace a file's content in one step so readers never see a half write."""
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise WriteFailure(f"Failed to write {path}: {e}") from e


class MemoryDirLock:
    """
    Advisory lock over one memory directory, held by a single checkpoint run.

    The lock is a file created with O_EXCL; a lock older than ``stale_seconds``
    is assumed to belong to a crashed run and is broken.
    """

    def __init__(self, memory_dir: Path, stale_seconds: float = 600.0):
        self.path = Path(memory_dir) / LOCK_FILENAME
        self.stale_seconds = stale_seconds
        self._held = False

    def acquire(self) -> bool:
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if not self._break_if_stale():
                    return False
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self._held = True
            return True
        return False

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self._held = False

    def _break_if_stale(self) -> bool:
        """
        Remove the lock if it is stale.

        The lock is first renamed aside and compared with the file that was
        judged stale, so a lock freshly taken by a concurrent run is restored
        instead of deleted.
        """
        try:
            judged = self.path.stat()
        except FileNotFoundError:
            return True
        age = time.time() - judged.st_mtime
        if age < self.stale_seconds:
            return False

        aside = self.path.with_name(f"{LOCK_FILENAME}.{os.getpid()}.{uuid.uuid4().hex[:8]}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True

        moved = aside.stat()
        if (moved.st_ino, moved.st_mtime_ns) != (judged.st_ino, judged.st_mtime_ns):
            # Another run replaced the stale lock between our check and the rename
            try:
                os.link(aside, self.path)
            except FileExistsError:
                pass
            aside.unlink()
            return False

        logger.warning(f"Breaking stale checkpoint lock {self.path} ({int(age)}s old)")
        aside.unlink()
        return True

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, *exc_info) -> None:
        self.release()


class MarkdownMemoryStore:
    """Reads and writes the markdown files in one agent's memory directory."""

    def __init__(self, memory_dir: Path):
        self.memory_dir = Path(memory_dir)

    @classmethod
    def for_workspace(cls, workspace: Path) -> "MarkdownMemoryStore":
        return cls(Path(workspace) / "memory")

    def ensure_dir(self) -> None:
        try:
            self.memory_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WriteFailure(f"Failed to create memory dir {self.memory_dir}: {e}") from e

    # --- Paths ---

    @property
    def active_context_path(self) -> Path:
        return self.memory_dir / ACTIVE_CONTEXT_FILENAME

    @property
    def index_path(self) -> Path:
        return self.memory_dir / INDEX_FILENAME

    def day_log_path(self, day: date_type) -> Path:
        return self.memory_dir / f"{day.isoformat()}.md"

    # --- Active context ---

    def _write_active_context(self, content: str) -> None:
        self.ensure_dir()
        write_atomic(self.active_context_path, content)

    async def write_active_context(self, content: str) -> None:
        """Overwrite the snapshot. Raises WriteFailure."""
        await asyncio.to_thread(self._write_active_context, content)
        logger.debug(f"Wrote {self.active_context_path} ({len(content)} chars)")

    async def read_active_context(self) -> Optional[str]:
        return await asyncio.to_thread(_read_optional, self.active_context_path)

    # --- Day logs ---

    @staticmethod
    def parse_buckets(content: str, width_minutes: int) -> Set[int]:
        """Slot indexes of every checkpoint heading already in a day log."""
        buckets = set()
        for match in CHECKPOINT_HEADING_PATTERN.finditer(content):
            try:
                buckets.add(TimeBucket.from_clock(match.group(1), width_minutes).index)
            except ValueError:
                continue
        return buckets

    async def append_day_log(
        self,
        agent_id: str,
        entry: DayLogEntry,
        day: Optional[date_type] = None,
        bucket_minutes: int = 10,
    ) -> bool:
        """
        Append a checkpoint entry to the day's log.

        Returns:
            False when an entry for the same time bucket already exists.

        Raises:
            WriteFailure: the log could not be read or written
        """
        day = day or datetime.now().date()
        return await asyncio.to_thread(
            self._append_day_log, agent_id, entry, day, bucket_minutes
        )

    def _append_day_log(
        self, agent_id: str, entry: DayLogEntry, day: date_type, bucket_minutes: int
    ) -> bool:
        path = self.day_log_path(day)
        self.ensure_dir()

        try:
            existing = path.read_text(encoding="utf-8") if path.exists() else None
        except OSError as e:
            raise WriteFailure(f"Failed to read {path}: {e}") from e

        if existing is not None and entry.bucket.index in self.parse_buckets(
            existing, bucket_minutes
        ):
            logger.debug(f"{agent_id}: skipped day-log append (checkpoint {entry.bucket.clock} exists)")
            return False

        try:
            with open(path, "a", encoding="utf-8") as f:
                if existing is None:
                    f.write(f"# {agent_id} - {day.isoformat()}\n\n")
                f.write(entry.render())
        except OSError as e:
            raise WriteFailure(f"Failed to append to {path}: {e}") from e

        logger.debug(f"{agent_id}: appended to {path.name}")
        return True

    async def read_day_log(self, day: date_type) -> Optional[str]:
        return await asyncio.to_thread(_read_optional, self.day_log_path(day))

    # --- Corpus ---

    def documents(self) -> List[Path]:
        """Memory documents (every *.md except the index), sorted by name."""
        if not self.memory_dir.is_dir():
            return []
        return sorted(
            p
            for p in self.memory_dir.glob("*.md")
            if p.is_file() and p.name != INDEX_FILENAME
        )

    def total_size(self) -> int:
        total = 0
        for path in self.documents():
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total

    async def read_index(self) -> Optional[str]:
        return await asyncio.to_thread(_read_optional, self.index_path)
