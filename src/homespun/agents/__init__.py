"""Agent harnesses: lifecycle, instance registry and event fan-out."""

from homespun.agents.claude_cli import ClaudeCliHarness
from homespun.agents.claudeui import ClaudeUIHarness
from homespun.agents.factory import HarnessFactory, create_harness_factory
from homespun.agents.harness import AgentHarness, BaseHarness
from homespun.agents.instance_registry import InstanceRegistry
from homespun.agents.multiplexer import EventMultiplexer, Subscription
from homespun.agents.opencode import OpenCodeHarness
from homespun.agents.types import (
    AgentEvent,
    AgentEventType,
    AgentInstance,
    AgentInstanceStatus,
    AgentMessage,
    AgentMessagePart,
    AgentPrompt,
    AgentStartOptions,
    RunningAgentInfo,
)

__all__ = [
    "AgentEvent",
    "AgentEventType",
    "AgentHarness",
    "AgentInstance",
    "AgentInstanceStatus",
    "AgentMessage",
    "AgentMessagePart",
    "AgentPrompt",
    "AgentStartOptions",
    "BaseHarness",
    "ClaudeCliHarness",
    "ClaudeUIHarness",
    "EventMultiplexer",
    "HarnessFactory",
    "InstanceRegistry",
    "OpenCodeHarness",
    "RunningAgentInfo",
    "Subscription",
    "create_harness_factory",
]
