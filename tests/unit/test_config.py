"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from homespun.config import (
    ENV_DEFAULT_HARNESS,
    ENV_EXTERNAL_HOSTNAME,
    ENV_OPENCODE_EXECUTABLE,
    HomespunConfig,
    load_config,
)
from homespun.errors import ConfigurationError


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path: Path) -> None:
        config = load_config(tmp_path / "missing.yaml", env={})
        assert config == HomespunConfig()
        assert config.agent.default_harness == "opencode"
        assert config.opencode.base_port == 4096
        assert config.agent.prompt_timeout_seconds == 600.0

    def test_yaml_sections(self, tmp_path: Path) -> None:
        path = tmp_path / "homespun.yaml"
        path.write_text(
            "debug: true\n"
            "agent:\n"
            "  default_harness: claude\n"
            "  event_buffer_size: 32\n"
            "opencode:\n"
            "  base_port: 5000\n"
            "  max_servers: 2\n"
            "  unknown_key: ignored\n"
            "claude:\n"
            "  allowed_tools: [Read, Edit]\n"
            "claudeui:\n"
            "  enabled: false\n"
        )
        config = load_config(path, env={})
        assert config.debug is True
        assert config.agent.default_harness == "claude"
        assert config.agent.event_buffer_size == 32
        assert (config.opencode.base_port, config.opencode.max_servers) == (5000, 2)
        assert config.claude.allowed_tools == ["Read", "Edit"]
        assert config.claudeui.enabled is False

    def test_env_overrides_file(self, tmp_path: Path) -> None:
        path = tmp_path / "homespun.yaml"
        path.write_text("agent:\n  default_harness: claude\n")
        config = load_config(path, env={
            ENV_DEFAULT_HARNESS: "claudeui",
            ENV_EXTERNAL_HOSTNAME: "dev.example.com",
            ENV_OPENCODE_EXECUTABLE: "/opt/opencode/bin/opencode",
        })
        assert config.agent.default_harness == "claudeui"
        assert config.agent.external_hostname == "dev.example.com"
        assert config.opencode.executable == "/opt/opencode/bin/opencode"

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "homespun.yaml"
        path.write_text("")
        assert load_config(path, env={}) == HomespunConfig()

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "homespun.yaml"
        path.write_text("agent: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(path, env={})

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "homespun.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(path, env={})

    def test_default_path_is_cwd(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        (tmp_path / "homespun.yaml").write_text("opencode:\n  base_port: 6000\n")
        assert load_config(env={}).opencode.base_port == 6000
