"""Configuration loading and management."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from homespun.errors import ConfigurationError

DEFAULT_HARNESS = "opencode"
DEFAULT_CONFIG_FILE = "homespun.yaml"

ENV_EXTERNAL_HOSTNAME = "HSP_EXTERNAL_HOSTNAME"
ENV_DEFAULT_HARNESS = "HOMESPUN_DEFAULT_HARNESS"
ENV_OPENCODE_EXECUTABLE = "OPENCODE_EXECUTABLE"


@dataclass(slots=True)
class AgentConfig:
    default_harness: str = DEFAULT_HARNESS
    external_hostname: str | None = None
    prompt_timeout_seconds: float = 600.0
    health_timeout_seconds: float = 5.0
    event_buffer_size: int = 256


@dataclass(slots=True)
class OpenCodeConfig:
    enabled: bool = True
    executable: str = "opencode"
    base_port: int = 4096
    max_servers: int = 10
    start_timeout_seconds: float = 15.0
    default_model: str = "anthropic/claude-opus-4-5"


@dataclass(slots=True)
class ClaudeUIConfig:
    enabled: bool = True
    executable: str = "cloudcli"
    base_port: int = 3001
    max_servers: int = 10
    start_timeout_seconds: float = 30.0
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ClaudeCliConfig:
    enabled: bool = True
    executable: str = "claude"
    start_timeout_seconds: float = 20.0
    allowed_tools: list[str] = field(default_factory=list)
    skip_permissions: bool = True


@dataclass(slots=True)
class HomespunConfig:
    """Merged configuration.

    Priority: env vars > config file > defaults
    """

    agent: AgentConfig = field(default_factory=AgentConfig)
    opencode: OpenCodeConfig = field(default_factory=OpenCodeConfig)
    claudeui: ClaudeUIConfig = field(default_factory=ClaudeUIConfig)
    claude: ClaudeCliConfig = field(default_factory=ClaudeCliConfig)
    debug: bool = False


def load_config(path: str | Path | None = None, *, env: dict[str, str] | None = None) -> HomespunConfig:
    """Load configuration from an optional YAML file plus the environment.

    A missing file yields defaults; a file that is not a mapping is a
    ``ConfigurationError``.
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    p = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_FILE
    raw: Any = {}
    if p.exists():
        try:
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {p} must contain a mapping")

    config = HomespunConfig(
        agent=AgentConfig(**_pick(_section(raw, "agent"), AgentConfig)),
        opencode=OpenCodeConfig(**_pick(_section(raw, "opencode"), OpenCodeConfig)),
        claudeui=ClaudeUIConfig(**_pick(_section(raw, "claudeui"), ClaudeUIConfig)),
        claude=ClaudeCliConfig(**_pick(_section(raw, "claude"), ClaudeCliConfig)),
        debug=bool(raw.get("debug", False)),
    )
    _apply_env(config, env)
    return config


def _apply_env(config: HomespunConfig, env: dict[str, str]) -> None:
    if hostname := env.get(ENV_EXTERNAL_HOSTNAME):
        config.agent.external_hostname = hostname
    if harness := env.get(ENV_DEFAULT_HARNESS):
        config.agent.default_harness = harness
    if executable := env.get(ENV_OPENCODE_EXECUTABLE):
        config.opencode.executable = executable


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
