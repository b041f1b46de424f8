"""Tests for settings, host configuration and workspace resolution."""

import json

import pytest

from contextkeeper.config import (
    DEFAULT_EXCLUDE_PATTERNS,
    HostConfig,
    Settings,
    agent_id_from_session_key,
    iter_workspaces,
    load_host_config,
    resolve_workspace,
)
from contextkeeper.errors import MalformedInput, NotFound


def config(**agents):
    return HostConfig.model_validate({"agents": agents})


class TestResolveWorkspace:
    def test_explicit_agent_workspace(self, tmp_path):
        cfg = config(list=[{"id": "ops", "workspace": "/srv/ops"}])
        assert str(resolve_workspace(cfg, "ops", tmp_path)) == "/srv/ops"

    def test_tilde_uses_injected_home(self, tmp_path):
        cfg = config(list=[{"id": "ops", "workspace": "~/work/ops"}])
        assert resolve_workspace(cfg, "ops", tmp_path) == tmp_path / "work" / "ops"

    def test_match_by_name(self, tmp_path):
        cfg = config(list=[{"id": "a1", "name": "Research", "workspace": "/srv/research"}])
        assert str(resolve_workspace(cfg, "Research", tmp_path)) == "/srv/research"

    def test_main_uses_defaults(self, tmp_path):
        cfg = config(defaults={"workspace": "~/clawd-main"}, list=[{"id": "main"}])
        assert resolve_workspace(cfg, "main", tmp_path) == tmp_path / "clawd-main"

    def test_defaults_do_not_apply_to_other_agents(self, tmp_path):
        cfg = config(defaults={"workspace": "~/clawd-main"})
        assert resolve_workspace(cfg, "ops", tmp_path) == tmp_path / "clawd-ops"

    def test_conventional_fallbacks(self, tmp_path):
        cfg = HostConfig()
        assert resolve_workspace(cfg, "main", tmp_path) == tmp_path / "clawd"
        assert resolve_workspace(cfg, "", tmp_path) == tmp_path / "clawd"
        assert resolve_workspace(cfg, "Ops", tmp_path) == tmp_path / "clawd-ops"


class TestIterWorkspaces:
    def test_unique_defaults_first(self, tmp_path):
        cfg = config(
            defaults={"workspace": "~/clawd"},
            list=[
                {"id": "main", "workspace": "~/clawd"},
                {"id": "ops", "workspace": "~/clawd-ops"},
                {"id": "bare"},
            ],
        )
        assert iter_workspaces(cfg, tmp_path) == [tmp_path / "clawd", tmp_path / "clawd-ops"]


class TestLoadHostConfig:
    def test_loads_agents(self, tmp_path):
        path = tmp_path / "clawdbot.json"
        path.write_text(
            json.dumps(
                {
                    "agents": {"list": [{"id": "main"}, {"id": "ops", "model": "x"}]},
                    "channels": {"slack": {}},
                }
            )
        )
        assert load_host_config(path).agent_ids == ["main", "ops"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(NotFound):
            load_host_config(tmp_path / "clawdbot.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "clawdbot.json"
        path.write_text("{nope")
        with pytest.raises(MalformedInput):
            load_host_config(path)

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "clawdbot.json"
        path.write_text(json.dumps({"agents": {"list": "main"}}))
        with pytest.raises(MalformedInput):
            load_host_config(path)


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("CLAWDBOT_HOME", "ROTATION_THRESHOLD", "ROTATION_EXCLUDE_PATTERNS"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.rotation_threshold == 150_000
        assert settings.exclude_patterns == DEFAULT_EXCLUDE_PATTERNS
        assert settings.memory_threshold_bytes == 51200

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CLAWDBOT_HOME", str(tmp_path))
        monkeypatch.setenv("ROTATION_THRESHOLD", "1000")
        monkeypatch.setenv("ROTATION_EXCLUDE_PATTERNS", "^agent:ops:, ^agent:qa:")
        monkeypatch.setenv("GATEWAY_AUTH_TOKEN", "tok")
        monkeypatch.delenv("CLAWDBOT_GATEWAY_TOKEN", raising=False)

        settings = Settings.from_env()

        assert settings.host_home == tmp_path
        assert settings.host_config_path == tmp_path / "clawdbot.json"
        assert settings.sessions_dir("ops") == tmp_path / "agents" / "ops" / "sessions"
        assert settings.rotation_threshold == 1000
        assert settings.exclude_patterns[-2:] == ["^agent:ops:", "^agent:qa:"]
        assert settings.gateway_token == "tok"

    def test_bad_number_falls_back(self, monkeypatch):
        monkeypatch.setenv("ROTATION_THRESHOLD", "lots")
        assert Settings.from_env().rotation_threshold == 150_000


@pytest.mark.parametrize(
    "key,agent",
    [
        ("agent:ops:slack:dm:u123", "ops"),
        ("agent:Main:main", "main"),
        ("slack:dm:u1", "main"),
        (None, "main"),
        ("agent::x", "main"),
    ],
)
def test_agent_id_from_session_key(key, agent):
    assert agent_id_from_session_key(key) == agent
