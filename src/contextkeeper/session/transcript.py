"""
JSONL transcript reader.

The host platform writes append-only per-session transcripts to
<host_home>/agents/<agent_id>/sessions/<session_id>.jsonl. We only ever read
the tail of the newest file.

Each line is a JSON event; the ones we care about look like:
  {"type": "message", "timestamp": "2026-02-08T14:32:00Z",
   "message": {"role": "user"|"assistant", "content": "..." | [{"type": "text", "text": "..."}],
               "model": "..."}}
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from contextkeeper.errors import MalformedInput, NotFound
from contextkeeper.logger import get_logger
from contextkeeper.session.models import MessageRecord, TranscriptRead

logger = get_logger(__name__)

DEFAULT_MAX_LINES = 60
BLOCK_SIZE = 8192
MESSAGE_ROLES = ("user", "assistant")


@dataclass
class SessionFile:
    """The newest transcript file of an agent."""

    path: Path
    mtime: float
    size: int

    @property
    def session_id(self) -> str:
        return self.path.stem

    def age_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else datetime.now().timestamp()) - self.mtime


def tail_lines(path: Path, max_lines: int = DEFAULT_MAX_LINES) -> List[bytes]:
    """
    Return the last ``max_lines`` complete lines of a file.

    Reads backwards in blocks so only the tail is loaded. A trailing segment
    without a newline is a write in progress and is discarded.

    Raises:
        NotFound: the file does not exist
    """
    if max_lines <= 0:
        return []

    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            position = f.tell()
            buffer = b""

            # One extra newline so the first kept line is known to be whole
            while position > 0 and buffer.count(b"\n") <= max_lines:
                step = min(BLOCK_SIZE, position)
                position -= step
                f.seek(position)
                buffer = f.read(step) + buffer
    except FileNotFoundError as e:
        raise NotFound(f"Transcript not found: {path}") from e

    if not buffer:
        return []

    segments = buffer.split(b"\n")

    # Partial final line (or the empty string after a trailing newline)
    segments.pop()

    # First segment may start mid-line when we stopped short of the file start
    if position > 0 and segments:
        segments.pop(0)

    lines = [s.rstrip(b"\r") for s in segments if s.strip()]
    return lines[-max_lines:]


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        if isinstance(value, (int, float)):
            # Epoch milliseconds
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, str):
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    return None


def _content_text(content: Any) -> str:
    """Join text parts; thinking blocks and tool calls are skipped."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part["text"]
            for part in content
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
        ]
        return "\n".join(str(p) for p in parts)
    return ""


def parse_event_line(line: bytes) -> Optional[MessageRecord]:
    """
    Normalize one transcript line.

    Returns:
        A MessageRecord for user/assistant message events, None for every
        other kind of event.

    Raises:
        MalformedInput: the line is not a JSON object
    """
    try:
        entry = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedInput(f"Unparseable transcript line: {e}") from e

    if not isinstance(entry, dict):
        raise MalformedInput("Transcript line is not a JSON object")

    message = entry.get("message")
    if entry.get("type") != "message" or not isinstance(message, dict):
        return None

    role = message.get("role")
    if role not in MESSAGE_ROLES:
        return None

    return MessageRecord(
        role=role,
        text=_content_text(message.get("content")),
        timestamp=_parse_timestamp(entry.get("timestamp")),
        model=message.get("model") or None,
    )


class TranscriptReader:
    """Locates an agent's active transcript and reads its tail."""

    def __init__(self, sessions_dir: Path, max_lines: int = DEFAULT_MAX_LINES):
        self.sessions_dir = Path(sessions_dir)
        self.max_lines = max_lines

    def find_active_session(self) -> Optional[SessionFile]:
        """Return the most recently modified transcript, or None if there is none."""
        try:
            entries = list(self.sessions_dir.iterdir())
        except (FileNotFoundError, NotADirectoryError):
            return None

        newest: Optional[SessionFile] = None
        for path in entries:
            name = path.name
            if not name.endswith(".jsonl") or ".deleted" in name or ".lock" in name:
                continue
            try:
                stat = path.stat()
            except OSError:
                continue
            if newest is None or stat.st_mtime > newest.mtime:
                newest = SessionFile(path=path, mtime=stat.st_mtime, size=stat.st_size)

        return newest

    def read(self, path: Path) -> TranscriptRead:
        """
        Read message records from the tail of a transcript.

        Malformed lines are dropped and counted; a missing file raises NotFound.
        """
        lines = tail_lines(path, self.max_lines)
        result = TranscriptRead(lines_read=len(lines))

        for line in lines:
            try:
                record = parse_event_line(line)
            except MalformedInput:
                result.malformed += 1
                continue
            if record is not None:
                result.messages.append(record)

        if result.malformed:
            logger.debug(f"Dropped {result.malformed} malformed line(s) from {path.name}")

        return result
