"""Tests for relaying agent events and notifications to listeners."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

import pytest

from homespun.agents.types import AgentEventType, AgentStartOptions
from homespun.broadcast import (
    GLOBAL_GROUP,
    AgentEventRelay,
    NotificationRelay,
    agent_group,
    project_group,
    to_payload,
)
from homespun.notifications import Notification, NotificationRegistry
from tests.helpers import FakeHarness, RecordingBroadcaster, wait_for


class _Color(Enum):
    RED = "red"


@dataclass
class _Item:
    name: str
    color: _Color
    at: datetime
    tags: tuple[str, ...]


class TestToPayload:
    def test_nested_conversion(self) -> None:
        item = _Item("x", _Color.RED, datetime(2026, 1, 2, tzinfo=UTC), ("a", "b"))
        assert to_payload({"item": item, 1: [item.color]}) == {
            "item": {"name": "x", "color": "red", "at": "2026-01-02T00:00:00+00:00", "tags": ["a", "b"]},
            "1": ["red"],
        }

    def test_groups(self) -> None:
        assert agent_group("a1") == "agent-a1"
        assert project_group("p1") == "project-p1"


class TestAgentEventRelay:
    @pytest.mark.asyncio
    async def test_relays_lifecycle(self, harness: FakeHarness, workdir: Path) -> None:
        broadcaster = RecordingBroadcaster()
        relay = AgentEventRelay(harness, broadcaster)
        agent = await harness.start_agent(AgentStartOptions(entity_id="e1", working_directory=str(workdir)))
        task = relay.start(agent.agent_id)
        assert relay.start(agent.agent_id) is task

        harness.runtimes[agent.agent_id].emit(AgentEventType.TOOL_STARTED, tool_name="bash")
        group = agent_group(agent.agent_id)
        await wait_for(lambda: any(
            kind == "AgentEvent" and payload["tool_name"] == "bash"
            for g, kind, payload in broadcaster.published if g == group
        ))
        await harness.stop_agent(agent.agent_id)
        await asyncio.wait_for(task, timeout=2)

        kinds = broadcaster.kinds(group)
        assert kinds[0] == "AgentStarted"
        assert kinds[-1] == "AgentStopped"
        started = broadcaster.published[0][2]
        assert started["entity_id"] == "e1"
        assert started["status"] == "running"
        assert started["port"] == 9999
        assert broadcaster.published[-1][2] == {"agentId": agent.agent_id}

    @pytest.mark.asyncio
    async def test_stop_cancels_relay(self, harness: FakeHarness, workdir: Path) -> None:
        relay = AgentEventRelay(harness, RecordingBroadcaster())
        agent = await harness.start_agent(AgentStartOptions(entity_id="e1", working_directory=str(workdir)))
        task = relay.start(agent.agent_id)
        await relay.aclose()
        assert task.done()
        await harness.aclose()


class TestNotificationRelay:
    @pytest.mark.asyncio
    async def test_added_and_dismissed(self) -> None:
        registry = NotificationRegistry()
        broadcaster = RecordingBroadcaster()
        relay = NotificationRelay(registry, broadcaster)
        relay.start()

        scoped = registry.add(Notification(title="PR merged", project_id="p1"))
        registry.add(Notification(title="Global"))
        registry.dismiss(scoped.id)
        await wait_for(lambda: len(broadcaster.published) == 4)
        await relay.aclose()

        assert broadcaster.published[0][:2] == (GLOBAL_GROUP, "NotificationAdded")
        assert broadcaster.published[0][2]["title"] == "PR merged"
        assert broadcaster.published[1][:2] == (project_group("p1"), "NotificationAdded")
        assert broadcaster.published[2][:2] == (GLOBAL_GROUP, "NotificationAdded")
        assert broadcaster.published[3] == (GLOBAL_GROUP, "NotificationDismissed", scoped.id)

    @pytest.mark.asyncio
    async def test_aclose_flushes_and_unsubscribes(self) -> None:
        registry = NotificationRegistry()
        broadcaster = RecordingBroadcaster()
        relay = NotificationRelay(registry, broadcaster)
        relay.start()
        registry.add(Notification(title="last"))
        await relay.aclose()
        assert broadcaster.kinds() == ["NotificationAdded"]
        registry.add(Notification(title="after close"))
        await asyncio.sleep(0.01)
        assert broadcaster.kinds() == ["NotificationAdded"]

    @pytest.mark.asyncio
    async def test_observer_on_other_thread(self) -> None:
        registry = NotificationRegistry()
        broadcaster = RecordingBroadcaster()
        relay = NotificationRelay(registry, broadcaster)
        relay.start()
        await asyncio.to_thread(registry.add, Notification(title="from worker"))
        await wait_for(lambda: len(broadcaster.published) == 1)
        await relay.aclose()
