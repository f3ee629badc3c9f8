"""Harness registry: resolves a harness variant by name."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from types import MappingProxyType

from homespun.agents.claude_cli import ClaudeCliHarness
from homespun.agents.claudeui import ClaudeUIHarness
from homespun.agents.harness import AgentHarness
from homespun.agents.opencode import OpenCodeHarness
from homespun.config import HomespunConfig
from homespun.errors import ConfigurationError, UnavailableError

logger = logging.getLogger(__name__)


class HarnessFactory:
    """Immutable, case-insensitive name -> harness table.

    Built once at configuration time; lookups are plain dict reads and
    safe from any number of concurrent callers.
    """

    def __init__(self, harnesses: Iterable[AgentHarness], default_harness_type: str) -> None:
        table: dict[str, AgentHarness] = {}
        for harness in harnesses:
            key = harness.harness_type.lower()
            if key in table:
                raise ConfigurationError(f"Duplicate harness type: {harness.harness_type}")
            table[key] = harness
        if default_harness_type.lower() not in table:
            raise ConfigurationError(
                f"Default harness {default_harness_type!r} is not registered "
                f"(available: {', '.join(sorted(table)) or 'none'})"
            )
        self._harnesses = MappingProxyType(table)
        self._default = default_harness_type.lower()

    @property
    def available_harness_types(self) -> list[str]:
        return list(self._harnesses)

    @property
    def default_harness_type(self) -> str:
        return self._default

    def get(self, harness_type: str) -> AgentHarness:
        harness = self._harnesses.get(harness_type.lower())
        if harness is None:
            raise UnavailableError(harness_type, self.available_harness_types)
        return harness

    def get_default(self) -> AgentHarness:
        return self._harnesses[self._default]

    def is_available(self, harness_type: str) -> bool:
        return harness_type.lower() in self._harnesses

    async def aclose(self) -> None:
        for harness in self._harnesses.values():
            await harness.aclose()


def create_harness_factory(config: HomespunConfig) -> HarnessFactory:
    """Build the factory for every harness enabled in *config*."""
    agent = config.agent
    common = {
        "prompt_timeout": agent.prompt_timeout_seconds,
        "health_timeout": agent.health_timeout_seconds,
        "buffer_size": agent.event_buffer_size,
    }
    harnesses: list[AgentHarness] = []
    if config.opencode.enabled:
        harnesses.append(OpenCodeHarness(config.opencode, external_hostname=agent.external_hostname, **common))
    if config.claudeui.enabled:
        harnesses.append(ClaudeUIHarness(config.claudeui, external_hostname=agent.external_hostname, **common))
    if config.claude.enabled:
        harnesses.append(ClaudeCliHarness(config.claude, **common))

    factory = HarnessFactory(harnesses, agent.default_harness)
    logger.info(
        "Harness factory ready: %s (default %s)",
        ", ".join(factory.available_harness_types), factory.default_harness_type,
    )
    return factory
