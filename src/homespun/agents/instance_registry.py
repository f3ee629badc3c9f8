"""Per-harness registry of agent instances.

The registry is the single writer of instance records. Every mutation
happens under one lock and is scoped to a single agent id; callers only
ever receive copies. It is safe to call from any thread or task.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any

from homespun.agents.types import (
    ALLOWED_TRANSITIONS,
    AgentEvent,
    AgentInstance,
    AgentInstanceStatus,
)
from homespun.errors import ConflictError, InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset({
    "active_session_id",
    "api_base_url",
    "web_view_url",
    "metadata",
    "last_event",
})


@dataclass(slots=True)
class _Entry:
    record: AgentInstance
    runtime: Any = None


def _snapshot(record: AgentInstance) -> AgentInstance:
    return replace(record, metadata=dict(record.metadata))


class InstanceRegistry:
    """Concurrent map from agent id to instance record plus backend runtime.

    The runtime (process handle, HTTP client, ...) is opaque to the
    registry; it is only attached while the instance is still starting so
    that a concurrent stop can never miss a launched process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, instance: AgentInstance) -> AgentInstance:
        """Insert a new instance.

        Fails with ``ConflictError`` if a non-terminal instance already
        serves the same entity. Terminal instances for the entity are
        replaced.
        """
        with self._lock:
            if instance.agent_id in self._entries:
                existing = self._entries[instance.agent_id].record
                raise ConflictError(existing.entity_id, existing.agent_id)
            for entry in self._entries.values():
                rec = entry.record
                if rec.entity_id == instance.entity_id and not rec.status.is_terminal:
                    raise ConflictError(instance.entity_id, rec.agent_id)
            stale = [
                agent_id
                for agent_id, entry in self._entries.items()
                if entry.record.entity_id == instance.entity_id
            ]
            for agent_id in stale:
                del self._entries[agent_id]
                logger.debug("Replaced terminal agent %s for entity %s", agent_id, instance.entity_id)

            record = _snapshot(instance)
            self._entries[record.agent_id] = _Entry(record=record)
            return _snapshot(record)

    def remove(self, agent_id: str) -> AgentInstance | None:
        with self._lock:
            entry = self._entries.pop(agent_id, None)
        return entry.record if entry else None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def transition(
        self,
        agent_id: str,
        status: AgentInstanceStatus,
        *,
        expected: Iterable[AgentInstanceStatus] | None = None,
        error: str | None = None,
    ) -> AgentInstance:
        """Move *agent_id* to *status*.

        Raises ``InvalidStateError`` if the current status is not in
        *expected* (when given) or the state machine forbids the move.
        """
        with self._lock:
            entry = self._require(agent_id)
            current = entry.record.status
            if expected is not None and current not in set(expected):
                raise InvalidStateError(
                    f"Agent {agent_id} is {current}, cannot move to {status}",
                    agent_id=agent_id,
                    status=str(current),
                )
            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStateError(
                    f"Invalid transition {current} -> {status} for agent {agent_id}",
                    agent_id=agent_id,
                    status=str(current),
                )
            entry.record.status = status
            if error is not None:
                entry.record.error = error
            snapshot = _snapshot(entry.record)
        logger.info("Agent %s: %s -> %s", agent_id, current, status)
        return snapshot

    def try_transition(
        self,
        agent_id: str,
        status: AgentInstanceStatus,
        *,
        expected: Iterable[AgentInstanceStatus] | None = None,
        error: str | None = None,
    ) -> AgentInstance | None:
        """Like :meth:`transition` but returns ``None`` instead of raising."""
        try:
            return self.transition(agent_id, status, expected=expected, error=error)
        except (InvalidStateError, NotFoundError):
            return None

    def update(self, agent_id: str, **changes: Any) -> AgentInstance:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update instance fields: {sorted(unknown)}")
        with self._lock:
            entry = self._require(agent_id)
            for name, value in changes.items():
                setattr(entry.record, name, dict(value) if name == "metadata" else value)
            return _snapshot(entry.record)

    def record_event(self, agent_id: str, event: AgentEvent) -> None:
        """Remember the latest event; unknown ids are ignored."""
        with self._lock:
            entry = self._entries.get(agent_id)
            if entry is not None:
                entry.record.last_event = event

    # ------------------------------------------------------------------
    # Runtime handles
    # ------------------------------------------------------------------

    def attach_runtime(self, agent_id: str, runtime: Any) -> bool:
        """Attach a backend handle. Refused unless the agent is still starting."""
        with self._lock:
            entry = self._entries.get(agent_id)
            if entry is None or entry.record.status != AgentInstanceStatus.STARTING:
                return False
            entry.runtime = runtime
            return True

    def runtime(self, agent_id: str) -> Any:
        with self._lock:
            entry = self._entries.get(agent_id)
            return entry.runtime if entry else None

    def detach_runtime(self, agent_id: str) -> Any:
        with self._lock:
            entry = self._entries.get(agent_id)
            if entry is None:
                return None
            runtime, entry.runtime = entry.runtime, None
            return runtime

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, agent_id: str) -> AgentInstance | None:
        with self._lock:
            entry = self._entries.get(agent_id)
            return _snapshot(entry.record) if entry else None

    def require(self, agent_id: str) -> AgentInstance:
        with self._lock:
            return _snapshot(self._require(agent_id).record)

    def for_entity(self, entity_id: str) -> AgentInstance | None:
        """The live instance for *entity_id*, else its most recent terminal one."""
        with self._lock:
            matches = [e.record for e in self._entries.values() if e.record.entity_id == entity_id]
        if not matches:
            return None
        live = [r for r in matches if not r.status.is_terminal]
        pick = live[0] if live else max(matches, key=lambda r: r.started_at)
        return _snapshot(pick)

    def running(self) -> list[AgentInstance]:
        with self._lock:
            return [
                _snapshot(e.record)
                for e in self._entries.values()
                if e.record.status == AgentInstanceStatus.RUNNING
            ]

    def all(self) -> list[AgentInstance]:
        with self._lock:
            return [_snapshot(e.record) for e in self._entries.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, agent_id: object) -> bool:
        with self._lock:
            return agent_id in self._entries

    def _require(self, agent_id: str) -> _Entry:
        entry = self._entries.get(agent_id)
        if entry is None:
            raise NotFoundError(f"No agent with id {agent_id}", agent_id=agent_id)
        return entry
