"""Agent harness data types.

Harness-agnostic shapes shared by every backend: instances and their
status, real-time events, prompts and response messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(UTC)


class AgentInstanceStatus(StrEnum):
    """Lifecycle of an agent instance.

    ``STARTING -> RUNNING -> STOPPING -> STOPPED``; any non-terminal state
    may move to ``FAILED``. ``STOPPED`` and ``FAILED`` are terminal.
    """

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentInstanceStatus.STOPPED, AgentInstanceStatus.FAILED)


ALLOWED_TRANSITIONS: dict[AgentInstanceStatus, frozenset[AgentInstanceStatus]] = {
    AgentInstanceStatus.STARTING: frozenset({AgentInstanceStatus.RUNNING, AgentInstanceStatus.STOPPING, AgentInstanceStatus.FAILED}),
    AgentInstanceStatus.RUNNING: frozenset({AgentInstanceStatus.STOPPING, AgentInstanceStatus.FAILED}),
    AgentInstanceStatus.STOPPING: frozenset({AgentInstanceStatus.STOPPED, AgentInstanceStatus.FAILED}),
    AgentInstanceStatus.STOPPED: frozenset(),
    AgentInstanceStatus.FAILED: frozenset(),
}


class AgentEventType(StrEnum):
    CONNECTED = "agent.connected"
    DISCONNECTED = "agent.disconnected"
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    MESSAGE_CREATED = "message.created"
    MESSAGE_UPDATED = "message.updated"
    TOOL_STARTED = "tool.started"
    TOOL_COMPLETED = "tool.completed"
    STATUS_CHANGED = "status.changed"


@dataclass(frozen=True, slots=True)
class AgentEvent:
    """A single real-time event from an agent. Never mutated after creation."""

    type: AgentEventType
    agent_id: str
    session_id: str | None = None
    message_id: str | None = None
    content: str | None = None
    tool_name: str | None = None
    status: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utc_now)
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentInstance:
    """Snapshot of a live (or retained failed) agent.

    Records handed out by the registry are copies; mutating one has no
    effect on the registry.
    """

    agent_id: str
    entity_id: str
    harness_type: str
    working_directory: str
    status: AgentInstanceStatus = AgentInstanceStatus.STARTING
    active_session_id: str | None = None
    api_base_url: str | None = None
    web_view_url: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    last_event: AgentEvent | None = None


@dataclass(slots=True)
class AgentPrompt:
    text: str
    model: str | None = None  # "provider/model"
    system_prompt: str | None = None
    file_paths: list[str] = field(default_factory=list)

    @classmethod
    def from_text(cls, text: str, model: str | None = None) -> AgentPrompt:
        return cls(text=text, model=model)


@dataclass(slots=True)
class AgentStartOptions:
    entity_id: str
    working_directory: str
    session_title: str | None = None
    model: str | None = None
    continue_session: bool = False
    initial_prompt: AgentPrompt | None = None
    harness_config: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolExecutionState:
    status: str  # "running" | "completed" | "error"
    error: str | None = None
    start_time: int | None = None
    end_time: int | None = None
    title: str | None = None


@dataclass(slots=True)
class AgentMessagePart:
    type: str  # "text" | "tool_use" | "tool_result"
    text: str | None = None
    tool_name: str | None = None
    tool_use_id: str | None = None
    tool_input: Any = None
    tool_output: Any = None
    tool_state: ToolExecutionState | None = None


@dataclass(slots=True)
class AgentMessage:
    id: str
    agent_id: str
    role: str
    created_at: datetime = field(default_factory=utc_now)
    parts: list[AgentMessagePart] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.text or "" for p in self.parts if p.type == "text")


@dataclass(slots=True)
class RunningAgentInfo:
    """Flattened view of an instance for broadcast to UI listeners."""

    entity_id: str
    harness_type: str
    working_directory: str
    started_at: datetime
    status: AgentInstanceStatus
    port: int | None = None
    base_url: str | None = None
    active_session_id: str | None = None
    web_view_url: str | None = None

    @classmethod
    def from_instance(cls, agent: AgentInstance) -> RunningAgentInfo:
        port = agent.metadata.get("port")
        return cls(
            entity_id=agent.entity_id,
            harness_type=agent.harness_type,
            working_directory=agent.working_directory,
            started_at=agent.started_at,
            status=agent.status,
            port=port if isinstance(port, int) else None,
            base_url=agent.api_base_url,
            active_session_id=agent.active_session_id,
            web_view_url=agent.web_view_url,
        )
