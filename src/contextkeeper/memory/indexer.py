"""
Memory index builder.

Scans <workspace>/memory/*.md and renders a compact INDEX.md (roughly
800-1500 tokens) that an agent can read instead of its whole memory pool:
per-document category, title, size, token estimate, observation-marker counts
and modification date, plus corpus-wide totals.

The index is a cache. It is rebuilt from scratch on every run.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from fnmatch import fnmatchcase
from functools import reduce
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from contextkeeper.config import HostConfig, iter_workspaces
from contextkeeper.errors import NotFound, WriteFailure
from contextkeeper.logger import get_logger
from contextkeeper.memory.markdown_store import (
    MarkdownMemoryStore,
    write_atomic,
)

logger = get_logger(__name__)

BYTES_PER_TOKEN = 4
TITLE_MAX_CHARS = 60

# Marker name -> emoji used in the rendered index
OBSERVATION_MARKERS: Dict[str, str] = {
    "DECISION": "🟤",
    "GOTCHA": "🔴",
    "SOLUTION": "🟡",
    "PATTERN": "🔵",
    "TRADEOFF": "⚖️",
    "FACT": "🟢",
    "PREFERENCE": "🟣",
    "TODO": "⚪",
}

HEADING_PATTERN = re.compile(r"^#+\s*(.*)$", re.MULTILINE)


# ─── Categories ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Category:
    key: str
    label: str
    description: str


CORE = Category(
    "core",
    "🔑 Core State (always load ACTIVE_CONTEXT)",
    "Current working state, overnight run status, mission control config",
)
DOMAIN = Category("domain", "🏢 UQUAL Domain", "Business strategy, repos, credit/finance domain, marketing context")
PLANS = Category("plans", "📋 Plans & Procedures", "Implementation plans, deployment procedures, checklists")
CONFIG = Category("config", "⚙️ Config & Credentials", "Integration configs, API keys, service connections")
RESEARCH = Category("research", "🔬 Research Reports", "Deep research output from sub-agents")
PROJECT = Category("project", "🏗️ Project Setup", "Agent setup checklists, project scaffolding")
SESSIONS = Category("sessions", "📅 Session Logs", "Daily session notes and decisions")
OTHER = Category("other", "📁 Other", "Uncategorized memory files")

# Render order of the sections
CATEGORY_ORDER: List[Category] = [CORE, DOMAIN, PLANS, CONFIG, RESEARCH, PROJECT, SESSIONS, OTHER]


def _matches(*patterns: str) -> Callable[[str], bool]:
    return lambda filename: any(fnmatchcase(filename, p) for p in patterns)


# Evaluated top to bottom, first match wins; OTHER is the fallback
CATEGORY_RULES: List[Tuple[Callable[[str], bool], Category]] = [
    (_matches("ACTIVE_CONTEXT.md", "overnight-run-state.md", "slack-mission-control.md"), CORE),
    (_matches("uqual-*"), DOMAIN),
    (_matches("research-*"), RESEARCH),
    (_matches("20[0-9][0-9]-[0-9][0-9]-[0-9][0-9]*"), SESSIONS),
    (_matches("*-config.md", "credentials-*"), CONFIG),
    (_matches("plan-*", "procedure-*"), PLANS),
    (_matches("*-setup*", "*-checklist*"), PROJECT),
]


def categorize(
    filename: str,
    rules: List[Tuple[Callable[[str], bool], Category]] = CATEGORY_RULES,
    default: Category = OTHER,
) -> Category:
    for predicate, category in rules:
        if predicate(filename):
            return category
    return default


# ─── Per-document data ───────────────────────────────────────────────


@dataclass(frozen=True)
class ObservationCounts:
    counts: Tuple[Tuple[str, int], ...] = tuple((m, 0) for m in OBSERVATION_MARKERS)

    @classmethod
    def scan(cls, text: str) -> "ObservationCounts":
        """Count lines containing each bracketed marker tag."""
        lines = text.splitlines()
        return cls(
            tuple(
                (marker, sum(1 for line in lines if f"[{marker}]" in line))
                for marker in OBSERVATION_MARKERS
            )
        )

    def get(self, marker: str) -> int:
        return dict(self.counts).get(marker, 0)

    def __add__(self, other: "ObservationCounts") -> "ObservationCounts":
        return ObservationCounts(
            tuple((marker, self.get(marker) + other.get(marker)) for marker in OBSERVATION_MARKERS)
        )

    @property
    def total(self) -> int:
        return sum(count for _, count in self.counts)

    def render(self) -> str:
        parts = [
            f"{count}{OBSERVATION_MARKERS[marker]}" for marker, count in self.counts if count > 0
        ]
        return " ".join(parts) if parts else "—"


@dataclass(frozen=True)
class IndexedDocument:
    filename: str
    category: Category
    title: str
    size: int
    modified: str
    observations: ObservationCounts

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.size)

    def render_row(self) -> str:
        return (
            f"| {self.filename} | {self.title} | {format_size(self.size)} | "
            f"~{self.tokens} | {self.observations.render()} | {self.modified} |"
        )


@dataclass(frozen=True)
class IndexTotals:
    """Running corpus totals, threaded through the build as a fold."""

    files: int = 0
    size: int = 0
    observations: ObservationCounts = field(default_factory=ObservationCounts)

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.size)

    def add(self, doc: IndexedDocument) -> "IndexTotals":
        return replace(
            self,
            files=self.files + 1,
            size=self.size + doc.size,
            observations=self.observations + doc.observations,
        )


def estimate_tokens(size: int) -> int:
    return size // BYTES_PER_TOKEN


def format_size(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size // (1024 * 1024)}MB"
    if size >= 1024:
        return f"{size // 1024}KB"
    return f"{size}B"


def extract_title(text: str, fallback: str) -> str:
    match = HEADING_PATTERN.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()[:TITLE_MAX_CHARS]
    return fallback


def index_document(path: Path) -> IndexedDocument:
    text = path.read_text(encoding="utf-8", errors="replace")
    stat = path.stat()
    return IndexedDocument(
        filename=path.name,
        category=categorize(path.name),
        title=extract_title(text, path.stem),
        size=stat.st_size,
        modified=datetime.fromtimestamp(stat.st_mtime).strftime("%Y-%m-%d"),
        observations=ObservationCounts.scan(text),
    )


# ─── Index ───────────────────────────────────────────────────────────


TABLE_HEADER = (
    "| File | Title | Size | Tokens | Observations | Modified |\n"
    "|------|-------|------|--------|-------------|----------|"
)


@dataclass
class MemoryIndex:
    documents: List[IndexedDocument]
    totals: IndexTotals
    generated_at: datetime

    def by_category(self) -> Dict[str, List[IndexedDocument]]:
        sections: Dict[str, List[IndexedDocument]] = {c.key: [] for c in CATEGORY_ORDER}
        for doc in self.documents:
            sections.setdefault(doc.category.key, []).append(doc)
        for docs in sections.values():
            docs.sort(key=lambda d: (d.modified, d.filename), reverse=True)
        return sections

    def render(self) -> str:
        totals = self.totals
        obs = totals.observations
        lines = [
            "# Memory Index",
            f"> **Generated**: {self.generated_at.strftime('%Y-%m-%d %H:%M %Z').strip()} | "
            f"**Files**: {totals.files} | **Size**: {format_size(totals.size)} | "
            f"**~Tokens**: {totals.tokens}",
            "> **Observations**: "
            + " | ".join(
                f"{obs.get(marker)}{emoji} {marker.lower()}"
                for marker, emoji in OBSERVATION_MARKERS.items()
            ),
            "",
            "## How to Use This Index",
            "- **Don't load everything.** Use `memory_search` to find relevant files, "
            "then `memory_get` to read specific sections.",
            "- **Always load**: ACTIVE_CONTEXT.md (current working state)",
            "- **Load on demand**: Everything else based on the task at hand",
            "- Observation markers: "
            + " | ".join(f"{emoji} {marker}" for marker, emoji in OBSERVATION_MARKERS.items()),
            "",
        ]

        sections = self.by_category()
        for category in CATEGORY_ORDER:
            docs = sections.get(category.key)
            if not docs:
                continue
            lines += ["", f"### {category.label}", f"_{category.description}_", "", TABLE_HEADER]
            lines += [doc.render_row() for doc in docs]

        return "\n".join(lines) + "\n"


class MemoryIndexBuilder:
    """Builds and writes INDEX.md for one memory directory."""

    def __init__(self, memory_dir: Path):
        self.store = MarkdownMemoryStore(memory_dir)

    def build(self, now: Optional[datetime] = None) -> MemoryIndex:
        """
        Index every memory document except INDEX.md itself.

        Raises:
            NotFound: the memory directory does not exist
        """
        if not self.store.memory_dir.is_dir():
            raise NotFound(f"Memory directory not found: {self.store.memory_dir}")

        documents = []
        for path in self.store.documents():
            try:
                documents.append(index_document(path))
            except OSError as e:
                logger.warning(f"Skipping unreadable memory file {path.name}: {e}")

        totals = reduce(IndexTotals.add, documents, IndexTotals())
        return MemoryIndex(
            documents=documents,
            totals=totals,
            generated_at=now or datetime.now().astimezone(),
        )

    def write(self, now: Optional[datetime] = None) -> MemoryIndex:
        """Build and atomically replace INDEX.md. Raises NotFound or WriteFailure."""
        index = self.build(now=now)
        write_atomic(self.store.index_path, index.render())
        logger.info(
            f"Index generated: {self.store.index_path} "
            f"(files: {index.totals.files}, size: {format_size(index.totals.size)}, "
            f"~tokens: {index.totals.tokens})"
        )
        return index


@dataclass
class RegenerationReport:
    generated: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.generated) + len(self.skipped) + len(self.failed)

    def summary(self) -> str:
        return (
            f"Generated {len(self.generated)}/{self.total} indexes "
            f"({len(self.skipped)} skipped, {len(self.failed)} failed)."
        )


def regenerate_all(
    config: HostConfig,
    home: Path,
    min_bytes: int = 50 * 1024,
) -> RegenerationReport:
    """Rebuild INDEX.md for every configured workspace whose memory pool is large enough."""
    report = RegenerationReport()

    for workspace in iter_workspaces(config, home):
        memory_dir = workspace / "memory"
        store = MarkdownMemoryStore(memory_dir)
        if not memory_dir.is_dir():
            report.skipped.append(workspace)
            continue

        size = store.total_size()
        if size < min_bytes:
            logger.debug(f"{workspace}: memory pool {size}B below {min_bytes}B, skipping")
            report.skipped.append(workspace)
            continue

        logger.info(f"Regenerating INDEX for {workspace} ({size // 1024}KB)")
        try:
            MemoryIndexBuilder(memory_dir).write()
            report.generated.append(workspace)
        except (NotFound, WriteFailure) as e:
            logger.error(f"{workspace}: index regeneration failed: {e}")
            report.failed.append((workspace, str(e)))

    logger.info(report.summary())
    return report
