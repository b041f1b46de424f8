"""
Configuration for contextkeeper.

Two sources are involved:
- Settings: tunables for the batch runs, read from environment variables
  (optionally seeded from a .env file by python-dotenv).
- HostConfig: the host platform's own configuration document (clawdbot.json)
  enumerating known agents and their workspaces. Read-only for us.
"""

import json
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from contextkeeper.errors import MalformedInput, NotFound
from contextkeeper.logger import get_logger

logger = get_logger(__name__)

DEFAULT_HOST_HOME = Path.home() / ".clawdbot"
HOST_CONFIG_FILENAME = "clawdbot.json"

DEFAULT_EXCLUDE_PATTERNS = [
    r"^agent:.*:cron:",  # cron job sessions are ephemeral
    r"^agent:.*:subagent:",  # sub-agent sessions are managed by their parent
]


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={value!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={value!r}, using {default}")
        return default


class Settings(BaseModel):
    """Tunables for checkpointing, rotation, indexing and disclosure."""

    host_home: Path = DEFAULT_HOST_HOME

    # Gateway
    gateway_url: str = "http://127.0.0.1:18789"
    gateway_token: Optional[str] = None
    call_timeout: float = 10.0

    # Rotation
    rotation_threshold: int = 150_000
    exclude_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS)
    )

    # Checkpointing
    stale_hours: float = 4.0
    min_session_bytes: int = 1024
    max_lines: int = 60
    min_messages: int = 3
    day_log_bucket_minutes: int = 10
    lock_stale_seconds: float = 600.0

    # Disclosure / indexing
    memory_threshold_bytes: int = 50 * 1024

    # Batch execution
    concurrency: int = 4
    budget_seconds: float = 120.0

    @property
    def host_config_path(self) -> Path:
        return self.host_home / HOST_CONFIG_FILENAME

    def sessions_dir(self, agent_id: str) -> Path:
        """Directory holding the host's JSONL transcripts for an agent."""
        return self.host_home / "agents" / agent_id / "sessions"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        host_home = os.getenv("CLAWDBOT_HOME")
        extra_patterns = [
            p.strip()
            for p in os.getenv("ROTATION_EXCLUDE_PATTERNS", "").split(",")
            if p.strip()
        ]

        return cls(
            host_home=Path(host_home).expanduser() if host_home else DEFAULT_HOST_HOME,
            gateway_url=os.getenv("CLAWDBOT_GATEWAY_URL", "http://127.0.0.1:18789"),
            gateway_token=os.getenv("CLAWDBOT_GATEWAY_TOKEN")
            or os.getenv("GATEWAY_AUTH_TOKEN"),
            call_timeout=_env_float("CONTEXTKEEPER_CALL_TIMEOUT", 10.0),
            rotation_threshold=_env_int("ROTATION_THRESHOLD", 150_000),
            exclude_patterns=list(DEFAULT_EXCLUDE_PATTERNS) + extra_patterns,
            stale_hours=_env_float("SESSION_STALE_HOURS", 4.0),
            min_session_bytes=_env_int("MIN_SESSION_BYTES", 1024),
            max_lines=_env_int("CHECKPOINT_MAX_LINES", 60),
            min_messages=_env_int("CHECKPOINT_MIN_MESSAGES", 3),
            memory_threshold_bytes=_env_int("MEMORY_THRESHOLD_BYTES", 50 * 1024),
            concurrency=max(1, _env_int("CONTEXTKEEPER_CONCURRENCY", 4)),
            budget_seconds=_env_float("CONTEXTKEEPER_BUDGET_SECONDS", 120.0),
        )


def load_environment(host_home: Optional[Path] = None) -> None:
    """Load .env files from the working directory and the host home."""
    load_dotenv()
    home = host_home or Path(os.getenv("CLAWDBOT_HOME", str(DEFAULT_HOST_HOME)))
    env_file = Path(home).expanduser() / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)


# ─── Host configuration document ─────────────────────────────────────


class AgentEntry(BaseModel):
    """One agent listed in the host configuration."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    workspace: Optional[str] = None


class AgentDefaults(BaseModel):
    model_config = ConfigDict(extra="ignore")

    workspace: Optional[str] = None


class AgentsSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    defaults: AgentDefaults = Field(default_factory=AgentDefaults)
    entries: List[AgentEntry] = Field(default_factory=list, alias="list")


class HostConfig(BaseModel):
    """The subset of the host configuration contextkeeper relies on."""

    model_config = ConfigDict(extra="ignore")

    agents: AgentsSection = Field(default_factory=AgentsSection)

    @property
    def agent_ids(self) -> List[str]:
        return [entry.id for entry in self.agents.entries]

    def find_agent(self, agent_id: str) -> Optional[AgentEntry]:
        for entry in self.agents.entries:
            if entry.id == agent_id:
                return entry
            if entry.name and entry.name.lower() == agent_id:
                return entry
        return None


def load_host_config(path: Path) -> HostConfig:
    """
    Read and parse the host configuration document.

    Raises:
        NotFound: the file does not exist
        MalformedInput: the file is not valid JSON or has the wrong shape
    """
    if not path.exists():
        raise NotFound(f"Host configuration not found: {path}")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return HostConfig.model_validate(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedInput(f"Host configuration is not valid JSON: {e}") from e
    except ValidationError as e:
        raise MalformedInput(f"Host configuration has an unexpected shape: {e}") from e


def _expand_home(path: str, home: Path) -> Path:
    if path == "~":
        return home
    if path.startswith("~/"):
        return home / path[2:]
    return Path(path)


def resolve_workspace(config: HostConfig, agent_id: str, home: Path) -> Path:
    """
    Resolve the workspace directory for an agent.

    Lookup order: explicit per-agent workspace, the defaults workspace (main
    agent only), then the conventional ~/clawd or ~/clawd-<id> directory.
    Pure function of its arguments; ``home`` is the only environment input.
    """
    agent_id = (agent_id or "main").strip().lower()

    entry = config.find_agent(agent_id)
    if entry and entry.workspace:
        return _expand_home(entry.workspace, home)

    if agent_id == "main":
        if config.agents.defaults.workspace:
            return _expand_home(config.agents.defaults.workspace, home)
        return home / "clawd"

    return home / f"clawd-{agent_id}"


def iter_workspaces(config: HostConfig, home: Path) -> List[Path]:
    """Unique configured workspaces: the defaults workspace first, then per-agent ones."""
    seen: List[Path] = []

    if config.agents.defaults.workspace:
        seen.append(_expand_home(config.agents.defaults.workspace, home))

    for entry in config.agents.entries:
        if not entry.workspace:
            continue
        workspace = _expand_home(entry.workspace, home)
        if workspace not in seen:
            seen.append(workspace)

    return seen


def agent_id_from_session_key(session_key: Optional[str]) -> str:
    """Extract the agent id from a key like ``agent:<id>:slack:dm:...``."""
    if not session_key:
        return "main"
    parts = session_key.split(":")
    if parts[0] == "agent" and len(parts) >= 2 and parts[1]:
        return parts[1].lower()
    return "main"
