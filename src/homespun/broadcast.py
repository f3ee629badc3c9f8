"""Relays from agent events and notifications to a real-time transport.

The transport (websocket hub, SSE endpoint, ...) implements
:class:`Broadcaster`; it groups remote listeners by the group name and
forwards payloads. Nothing here knows about connections.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from homespun.agents.harness import AgentHarness
from homespun.agents.types import AgentEvent, RunningAgentInfo
from homespun.notifications import Notification, NotificationRegistry

logger = logging.getLogger(__name__)

GLOBAL_GROUP = "global"


class Broadcaster(Protocol):
    async def publish(self, group: str, kind: str, payload: Any) -> None: ...


def to_payload(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-ready values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_payload(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_payload(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [to_payload(v) for v in value]
    return value


def agent_group(agent_id: str) -> str:
    return f"agent-{agent_id}"


def project_group(project_id: str) -> str:
    return f"project-{project_id}"


class AgentEventRelay:
    """Forwards one agent's events to ``agent-{agent_id}``.

    Publishes ``AgentStarted`` with the agent's status, one ``AgentEvent``
    per event, and ``AgentStopped`` once the event stream ends.
    """

    def __init__(self, harness: AgentHarness, broadcaster: Broadcaster) -> None:
        self._harness = harness
        self._broadcaster = broadcaster
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def start(self, agent_id: str) -> asyncio.Task[None]:
        """Begin relaying; a second call for the same agent returns the running task."""
        task = self._tasks.get(agent_id)
        if task is not None and not task.done():
            return task
        subscription = self._harness.subscribe_to_events(agent_id)
        task = asyncio.create_task(self._run(agent_id, subscription), name=f"relay-{agent_id}")
        self._tasks[agent_id] = task
        task.add_done_callback(lambda t: self._tasks.pop(agent_id, None) if self._tasks.get(agent_id) is t else None)
        return task

    async def stop(self, agent_id: str) -> None:
        task = self._tasks.pop(agent_id, None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def aclose(self) -> None:
        for agent_id in list(self._tasks):
            await self.stop(agent_id)

    async def _run(self, agent_id: str, subscription: Any) -> None:
        group = agent_group(agent_id)
        record = self._harness.get_agent_status(agent_id)
        try:
            if record is not None:
                await self._broadcaster.publish(
                    group, "AgentStarted", to_payload(RunningAgentInfo.from_instance(record)),
                )
            async for event in subscription:
                await self._publish_event(group, event)
            await self._broadcaster.publish(group, "AgentStopped", {"agentId": agent_id})
        finally:
            subscription.close()

    async def _publish_event(self, group: str, event: AgentEvent) -> None:
        await self._broadcaster.publish(group, "AgentEvent", to_payload(event))


class NotificationRelay:
    """Forwards registry observations to the broadcaster.

    Registry observers may fire on any thread; they hand off to this
    relay's event loop through a queue drained by one task.
    """

    def __init__(self, registry: NotificationRegistry, broadcaster: Broadcaster) -> None:
        self._registry = registry
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[tuple[str, Notification]] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[None] | None = None
        self._unsubscribe: Any = None

    def start(self) -> None:
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self._registry.subscribe(
            on_added=lambda n: self._enqueue("NotificationAdded", n),
            on_dismissed=lambda n: self._enqueue("NotificationDismissed", n),
        )
        self._task = asyncio.create_task(self._pump(), name="notification-relay")

    async def aclose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            # Let hand-offs already scheduled from observer callbacks land
            await asyncio.sleep(0)
            await self._queue.join()
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def _enqueue(self, kind: str, notification: Notification) -> None:
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, (kind, notification))

    async def _pump(self) -> None:
        while True:
            kind, notification = await self._queue.get()
            try:
                await self._deliver(kind, notification)
            except Exception as exc:
                logger.warning("Failed to broadcast %s for %s: %s", kind, notification.id, exc)
            finally:
                self._queue.task_done()

    async def _deliver(self, kind: str, notification: Notification) -> None:
        if kind == "NotificationDismissed":
            await self._broadcaster.publish(GLOBAL_GROUP, kind, notification.id)
            return
        payload = to_payload(notification)
        await self._broadcaster.publish(GLOBAL_GROUP, kind, payload)
        if notification.project_id:
            await self._broadcaster.publish(project_group(notification.project_id), kind, payload)
