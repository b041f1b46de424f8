"""
Checkpoint extraction: turns transcript messages into durable artifacts.

Purely programmatic, no LLM involved. Given the tail of a session it builds
- an ActiveContext snapshot (current working state, overwritten every run)
- a DayLogEntry (one timestamped line group appended to the day's log)

Everything here is pure; persistence lives in markdown_store.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from contextkeeper.session.models import MessageRecord

# Filtering
MIN_TEXT_LENGTH = 5
MAX_MESSAGE_CHARS = 1000
CONTROL_SENTINELS = frozenset({"HEARTBEAT_OK", "NO_REPLY"})
COMMAND_PREFIX = "/"
MESSAGE_ROLES = ("user", "assistant")

# Snapshot
RECENT_TURNS = 5
REQUEST_CHARS = 300
WORK_CHARS = 400
MAX_FILE_REFS = 20

# Day log
DAY_LOG_CHARS = 200

FILE_REF_PATTERN = re.compile(
    r"(?:^|\s)((?:[\w./-]+/)+[\w.-]+\.\w{1,10})(?=\s|$|[,;:)\]])", re.MULTILINE
)
EXCLUDED_REF_FRAGMENTS = ("node_modules",)


def clean_messages(
    messages: Iterable[MessageRecord],
    min_length: int = MIN_TEXT_LENGTH,
    max_chars: int = MAX_MESSAGE_CHARS,
) -> List[MessageRecord]:
    """
    Keep only usable user/assistant turns, capping each text.

    Drops other roles, near-empty text, control sentinels and slash commands.
    """
    usable = []
    for msg in messages:
        if msg.role not in MESSAGE_ROLES:
            continue
        text = msg.text or ""
        if len(text) < min_length:
            continue
        if text in CONTROL_SENTINELS or text.startswith(COMMAND_PREFIX):
            continue
        if len(text) > max_chars:
            msg = msg.model_copy(update={"text": text[:max_chars]})
        usable.append(msg)
    return usable


def extract_file_refs(texts: Iterable[str], limit: int = MAX_FILE_REFS) -> List[str]:
    """Path-shaped references in first-seen order, without URLs or dependency noise."""
    refs: List[str] = []
    for match in FILE_REF_PATTERN.finditer("\n".join(texts)):
        ref = match.group(1)
        if len(ref) <= 5 or ref.startswith("http"):
            continue
        if any(fragment in ref for fragment in EXCLUDED_REF_FRAGMENTS):
            continue
        if ref not in refs:
            refs.append(ref)
            if len(refs) >= limit:
                break
    return refs


def format_clock(timestamp: Optional[datetime]) -> str:
    """Local HH:MM for a message timestamp, ??:?? when unknown."""
    if timestamp is None:
        return "??:??"
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone()
    return timestamp.strftime("%H:%M")


@dataclass
class ContextItem:
    clock: str
    text: str


@dataclass
class ActiveContext:
    """The current-state snapshot for one agent."""

    agent_id: str
    session_id: str
    generated_at: datetime
    message_count: int
    requests: List[ContextItem] = field(default_factory=list)
    work: List[ContextItem] = field(default_factory=list)
    file_refs: List[str] = field(default_factory=list)

    def render(self) -> str:
        sections = [
            f"# Active Context - {self.agent_id}",
            f"> Auto-generated by contextkeeper checkpoint at {self.generated_at.isoformat()}",
            f"> Session: {self.session_id}",
            f"> Messages captured: {self.message_count}",
            "",
        ]

        if self.requests:
            sections.append("## Recent Requests")
            sections.extend(f"- **[{item.clock}]** {item.text}" for item in self.requests)
            sections.append("")

        if self.work:
            sections.append("## Recent Work")
            sections.extend(f"- **[{item.clock}]** {item.text}" for item in self.work)
            sections.append("")

        if self.file_refs:
            sections.append("## Files Referenced")
            sections.extend(f"- `{ref}`" for ref in self.file_refs)
            sections.append("")

        return "\n".join(sections)


def build_active_context(
    agent_id: str,
    session_id: str,
    messages: Sequence[MessageRecord],
    now: Optional[datetime] = None,
    recent: int = RECENT_TURNS,
) -> ActiveContext:
    """Snapshot from already-cleaned messages: last K requests and last K replies."""
    now = now or datetime.now().astimezone()
    requests = [m for m in messages if m.role == "user"][-recent:]
    work = [m for m in messages if m.role == "assistant"][-recent:]

    return ActiveContext(
        agent_id=agent_id,
        session_id=session_id,
        generated_at=now,
        message_count=len(messages),
        requests=[ContextItem(format_clock(m.timestamp), m.text[:REQUEST_CHARS]) for m in requests],
        work=[ContextItem(format_clock(m.timestamp), m.text[:WORK_CHARS]) for m in work],
        file_refs=extract_file_refs(m.text for m in messages),
    )


@dataclass
class DayLogEntry:
    """One checkpoint record in the daily log."""

    bucket: "TimeBucket"
    message_count: int
    user_count: int
    assistant_count: int
    last_request: Optional[str] = None
    last_output: Optional[str] = None

    def render(self) -> str:
        lines = [
            f"### Checkpoint {self.bucket.clock} (auto)",
            "",
            f"- {self.message_count} messages ({self.user_count} user, "
            f"{self.assistant_count} assistant)",
        ]
        if self.last_request:
            lines.append(f"- Last request: {self.last_request}")
        if self.last_output:
            lines.append(f"- Last output: {self.last_output}")
        lines.append("")
        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class TimeBucket:
    """
    Minute-granularity slot within a day used to deduplicate day-log entries.

    ``clock`` is the HH:MM the entry was written at; ``index`` is the slot
    number of that minute for the given bucket width.
    """

    clock: str
    index: int

    @classmethod
    def from_clock(cls, clock: str, width_minutes: int) -> "TimeBucket":
        hours, minutes = (int(part) for part in clock.split(":"))
        return cls(clock=clock, index=(hours * 60 + minutes) // max(1, width_minutes))

    @classmethod
    def from_datetime(cls, when: datetime, width_minutes: int) -> "TimeBucket":
        return cls.from_clock(when.strftime("%H:%M"), width_minutes)


def build_day_log_entry(
    messages: Sequence[MessageRecord],
    now: Optional[datetime] = None,
    bucket_minutes: int = 10,
) -> DayLogEntry:
    now = now or datetime.now()
    users = [m for m in messages if m.role == "user"]
    assistants = [m for m in messages if m.role == "assistant"]

    return DayLogEntry(
        bucket=TimeBucket.from_datetime(now, bucket_minutes),
        message_count=len(messages),
        user_count=len(users),
        assistant_count=len(assistants),
        last_request=users[-1].text[:DAY_LOG_CHARS] if users else None,
        last_output=assistants[-1].text[:DAY_LOG_CHARS] if assistants else None,
    )
