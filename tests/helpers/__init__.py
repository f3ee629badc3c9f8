"""Shared test helpers for the homespun test suite."""

from __future__ import annotations

from tests.helpers.fakes import (
    FakeCommandRunner,
    FakeHarness,
    FakeLauncher,
    FakeProcess,
    FakeRuntime,
    InMemoryStore,
    RecordingBroadcaster,
    RecordingTracker,
    SseFeed,
    aiter_list,
    wait_for,
)

__all__ = [
    "FakeCommandRunner",
    "FakeHarness",
    "FakeLauncher",
    "FakeProcess",
    "FakeRuntime",
    "InMemoryStore",
    "RecordingBroadcaster",
    "RecordingTracker",
    "SseFeed",
    "aiter_list",
    "wait_for",
]
