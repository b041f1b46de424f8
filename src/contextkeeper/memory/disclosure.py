"""
Progressive memory disclosure at agent bootstrap.

When an agent's memory pool is large, injecting every file wastes context.
Instead we hand the agent the compact INDEX.md plus its ACTIVE_CONTEXT.md and
tell it to pull anything else on demand. Small pools are left to the host's
default full load.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from contextkeeper.logger import get_logger
from contextkeeper.memory.indexer import BYTES_PER_TOKEN, OBSERVATION_MARKERS
from contextkeeper.memory.markdown_store import ACTIVE_CONTEXT_FILENAME, MarkdownMemoryStore

logger = get_logger(__name__)

DEFAULT_THRESHOLD_BYTES = 50 * 1024
MEMORY_INDEX_BLOCK = "MEMORY_INDEX.md"

MARKER_DESCRIPTIONS = {
    "GOTCHA": "Traps, footguns, unexpected behavior",
    "DECISION": "Architectural/strategic choices",
    "TRADEOFF": "Evaluated options with pros/cons",
    "SOLUTION": "Problem + how it was solved",
    "PATTERN": "Reusable approach or workflow",
    "FACT": "Verified reference data",
    "PREFERENCE": "User preference",
    "TODO": "Action items",
}


class BootstrapFile(BaseModel):
    """A named content block the host renders into the agent's initial context."""

    name: str
    content: str


def format_disclosure_instruction(total_bytes: int) -> str:
    """
    Usage instruction placed ahead of the index.

    Args:
        total_bytes: Aggregate memory pool size

    Returns:
        Markdown block explaining how to work from the index
    """
    markers = "\n".join(
        f"- {OBSERVATION_MARKERS[marker]} [{marker}] - {description}"
        for marker, description in MARKER_DESCRIPTIONS.items()
    )
    return f"""## Progressive Memory Disclosure

Your memory pool contains {round(total_bytes / 1024)}KB (~{round(total_bytes / BYTES_PER_TOKEN)} tokens) across multiple files.
To avoid wasting context on irrelevant memory, you've been given a compact INDEX instead of the full contents.

**How to use:**
1. ACTIVE_CONTEXT.md is loaded below - it contains your current working state
2. The INDEX shows all available memory files with categories, sizes, and observation markers
3. Use `memory_search` to find relevant files by topic
4. Use `memory_get` to load specific sections of specific files
5. **Don't load everything** - only pull what's relevant to the current task

**Observation markers in memory files:**
{markers}
"""


@dataclass
class DisclosurePlan:
    """What the planner decided for one bootstrap."""

    total_bytes: int
    threshold: int
    injected: List[str] = field(default_factory=list)
    reason: str = ""

    @property
    def disclosed(self) -> bool:
        return bool(self.injected)


class DisclosurePlanner:
    """Decides between the host's full memory load and index-based disclosure."""

    def __init__(self, threshold_bytes: int = DEFAULT_THRESHOLD_BYTES):
        self.threshold_bytes = threshold_bytes

    async def plan(
        self, workspace_dir: Path, bootstrap_files: List[BootstrapFile]
    ) -> DisclosurePlan:
        """
        Append index-based disclosure blocks to ``bootstrap_files`` when warranted.

        Never raises for missing files: an absent memory dir or index just
        leaves the bootstrap untouched. Memory files are only read.
        """
        store = MarkdownMemoryStore.for_workspace(workspace_dir)

        if not store.memory_dir.is_dir():
            return DisclosurePlan(0, self.threshold_bytes, reason="no memory directory")

        total = store.total_size()
        plan = DisclosurePlan(total_bytes=total, threshold=self.threshold_bytes)

        if total < self.threshold_bytes:
            plan.reason = f"memory pool {total}B < {self.threshold_bytes}B threshold"
            logger.info(f"{plan.reason}, skipping")
            return plan

        try:
            index_content = await store.read_index()
        except OSError as e:
            logger.error(f"Failed to read {store.index_path}: {e}")
            plan.reason = "index unreadable"
            return plan

        if index_content is None:
            plan.reason = "no INDEX.md found"
            logger.info(f"No INDEX.md found in {store.memory_dir}, skipping")
            return plan

        active_context: Optional[str] = None
        try:
            active_context = await store.read_active_context()
        except OSError as e:
            logger.warning(f"Failed to read {store.active_context_path}: {e}")

        combined = "\n".join([format_disclosure_instruction(total), "---", "", index_content])
        bootstrap_files.append(BootstrapFile(name=MEMORY_INDEX_BLOCK, content=combined))
        plan.injected.append(MEMORY_INDEX_BLOCK)

        if active_context:
            bootstrap_files.append(
                BootstrapFile(name=ACTIVE_CONTEXT_FILENAME, content=active_context)
            )
            plan.injected.append(ACTIVE_CONTEXT_FILENAME)

        plan.reason = f"memory pool {total}B >= {self.threshold_bytes}B threshold"
        logger.info(
            f"Injected INDEX ({len(index_content)} chars)"
            f"{' + ACTIVE_CONTEXT' if active_context else ''} for {workspace_dir}"
        )
        return plan
