"""
Structured session summaries.

When a session ends (rotation or an explicit /new), the tail of its transcript
is written to memory/<date>-<slug>.md with an observation-marker template the
agent (or a human) can refine later. Open checklist items become [TODO]
markers straight away.

The slug may come from an external summariser (an LLM call we treat as an
opaque callable); without one the UTC HHMM of the event is used.
"""

import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from contextkeeper.config import HostConfig, agent_id_from_session_key, resolve_workspace
from contextkeeper.errors import NotFound, WriteFailure
from contextkeeper.logger import get_logger
from contextkeeper.memory.markdown_store import MarkdownMemoryStore
from contextkeeper.session.transcript import TranscriptReader

logger = get_logger(__name__)

SUMMARY_MAX_LINES = 80
SUMMARY_MESSAGE_CHARS = 500
MIN_CONTENT_CHARS = 50

OPEN_ITEM_PATTERN = re.compile(r"- \[ \].+")
DONE_ITEM_PATTERN = re.compile(r"- \[x\].+", re.IGNORECASE)
SLUG_PATTERN = re.compile(r"[^a-z0-9]+")

Summarizer = Callable[[str], Awaitable[Optional[str]]]


def render_conversation(path: Path, max_lines: int = SUMMARY_MAX_LINES) -> str:
    """``role: text`` blocks for the tail of a transcript, slash commands excluded."""
    transcript = TranscriptReader(path.parent, max_lines=max_lines).read(path)
    blocks = [
        f"{msg.role}: {msg.text[:SUMMARY_MESSAGE_CHARS]}"
        for msg in transcript.messages
        if msg.text and not msg.text.startswith("/")
    ]
    return "\n\n".join(blocks)


def build_structured_template(conversation: str) -> str:
    completed = DONE_ITEM_PATTERN.findall(conversation)
    pending = OPEN_ITEM_PATTERN.findall(conversation)

    parts: List[str] = [
        "## Session Conversation",
        "",
        conversation,
        "",
        "---",
        "",
        "## Observations",
        "_Tag key observations from this session below:_",
        "",
    ]

    if completed:
        parts.append("### Completed")
        parts.extend(completed)
        parts.append("")

    if pending:
        parts.append("### Pending")
        parts.extend(f"⚪ [TODO] {item[len('- [ ] '):]}" for item in pending)
        parts.append("")

    parts += [
        "<!-- Add observations as you review:",
        "🟤 [DECISION] ...",
        "🔴 [GOTCHA] ...",
        "🟡 [SOLUTION] ...",
        "🔵 [PATTERN] ...",
        "🟢 [FACT] ...",
        "-->",
    ]
    return "\n".join(parts)


def normalize_slug(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    slug = SLUG_PATTERN.sub("-", raw.lower()).strip("-")
    return slug[:60] or None


@dataclass
class SummaryResult:
    path: Optional[Path]
    agent_id: str
    appended: bool = False
    reason: str = ""


class SessionSummaryWriter:
    """Writes the structured summary of one finished session."""

    def __init__(
        self,
        config: HostConfig,
        home: Optional[Path] = None,
        summarizer: Optional[Summarizer] = None,
    ):
        self.config = config
        self.home = home or Path.home()
        self.summarizer = summarizer

    async def write(
        self,
        session_key: str,
        transcript_path: Path,
        source: str = "unknown",
        when: Optional[datetime] = None,
    ) -> SummaryResult:
        """
        Summarize a session transcript into the agent's memory directory.

        Raises:
            WriteFailure: the summary file could not be written
        """
        when = (when or datetime.now(timezone.utc)).astimezone(timezone.utc)
        agent_id = agent_id_from_session_key(session_key)

        try:
            conversation = render_conversation(Path(transcript_path))
        except NotFound:
            logger.info(f"No session file at {transcript_path}, skipping")
            return SummaryResult(None, agent_id, reason="no session file")

        if len(conversation) < MIN_CONTENT_CHARS:
            logger.info("Session content too short, skipping")
            return SummaryResult(None, agent_id, reason="content too short")

        slug = await self._slug(conversation) or when.strftime("%H%M")
        workspace = resolve_workspace(self.config, agent_id, self.home)
        store = MarkdownMemoryStore.for_workspace(workspace)
        store.ensure_dir()

        date_str = when.strftime("%Y-%m-%d")
        path = store.memory_dir / f"{date_str}-{slug}.md"
        structured = build_structured_template(conversation)

        try:
            if path.exists():
                existing = path.read_text(encoding="utf-8")
                path.write_text(existing + "\n\n" + structured, encoding="utf-8")
                appended = True
            else:
                header = "\n".join(
                    [
                        f"# Session: {date_str} {when.strftime('%H:%M:%S')} UTC - {slug.replace('-', ' ')}",
                        "",
                        f"- **Session Key**: {session_key}",
                        f"- **Agent**: {agent_id}",
                        f"- **Source**: {source}",
                        "",
                    ]
                )
                path.write_text(header + structured, encoding="utf-8")
                appended = False
            if os.name == "posix":
                os.chmod(path, 0o600)
        except OSError as e:
            raise WriteFailure(f"Failed to write session summary {path}: {e}") from e

        logger.info(f"Structured summary written: {path.name}")
        return SummaryResult(path, agent_id, appended=appended, reason="written")

    async def _slug(self, conversation: str) -> Optional[str]:
        if self.summarizer is None:
            return None
        try:
            return normalize_slug(await self.summarizer(conversation))
        except Exception as e:
            logger.error(f"Summary slug generation failed: {e}")
            return None
