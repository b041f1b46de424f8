"""Shared pytest fixtures and configuration."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

from contextkeeper.config import HostConfig, Settings
from contextkeeper.logger import setup_logging


def message_event(role: str, text: str, timestamp: Optional[datetime] = None) -> dict:
    """A transcript line in the host's JSONL event shape."""
    ts = timestamp or datetime(2026, 2, 8, 14, 30, tzinfo=timezone.utc)
    return {
        "type": "message",
        "timestamp": ts.isoformat().replace("+00:00", "Z"),
        "message": {"role": role, "content": [{"type": "text", "text": text}]},
    }


def write_transcript(path: Path, events: List[dict], partial: Optional[str] = None) -> Path:
    """Write events as JSONL, optionally followed by an unterminated line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    body = "".join(json.dumps(event) + "\n" for event in events)
    if partial is not None:
        body += partial
    path.write_text(body, encoding="utf-8")
    return path


def conversation(turns: int, length: int = 200) -> List[dict]:
    """Alternating user/assistant events, one minute apart."""
    start = datetime(2026, 2, 8, 14, 0, tzinfo=timezone.utc)
    events = []
    for i in range(turns):
        role = "user" if i % 2 == 0 else "assistant"
        text = f"{role} turn {i} " + "x" * length
        events.append(message_event(role, text, start + timedelta(minutes=i)))
    return events


@pytest.fixture(autouse=True)
def reset_logging():
    """Point loguru back at the live stderr after tests that swap streams."""
    yield
    setup_logging(level="WARNING")


@pytest.fixture
def host_home(tmp_path):
    home = tmp_path / ".clawdbot"
    home.mkdir()
    return home


@pytest.fixture
def settings(host_home):
    return Settings(host_home=host_home, concurrency=2, budget_seconds=30)


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "clawd"
    ws.mkdir()
    return ws


@pytest.fixture
def host_config(workspace):
    return HostConfig.model_validate(
        {"agents": {"defaults": {"workspace": str(workspace)}, "list": [{"id": "main"}]}}
    )
