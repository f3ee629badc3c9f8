"""Tests for the deduplicating notification registry."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from homespun.notifications import Notification, NotificationRegistry

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def registry() -> NotificationRegistry:
    return NotificationRegistry()


class TestAdd:
    def test_add_and_get(self, registry: NotificationRegistry) -> None:
        n = registry.add(Notification(title="Build failed"))
        assert registry.get_active() == [n]
        assert len(registry) == 1

    def test_same_key_replaces(self, registry: NotificationRegistry) -> None:
        registry.add(Notification(title="first", deduplication_key="pr-1"))
        second = registry.add(Notification(title="second", deduplication_key="pr-1"))
        assert registry.get_active() == [second]
        assert registry.has_key("pr-1")

    def test_empty_key_does_not_deduplicate(self, registry: NotificationRegistry) -> None:
        registry.add(Notification(title="a", deduplication_key=""))
        registry.add(Notification(title="b", deduplication_key=""))
        assert len(registry) == 2

    def test_duplicate_id_rejected(self, registry: NotificationRegistry) -> None:
        registry.add(Notification(title="a", id="n1"))
        with pytest.raises(ValueError, match="n1"):
            registry.add(Notification(title="b", id="n1"))

    def test_concurrent_same_key_leaves_one(self, registry: NotificationRegistry) -> None:
        barrier = threading.Barrier(8)

        def worker(i: int) -> None:
            barrier.wait()
            registry.add(Notification(title=f"n{i}", deduplication_key="shared"))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(registry.get_active()) == 1


class TestDismiss:
    def test_dismiss_removes(self, registry: NotificationRegistry) -> None:
        n = registry.add(Notification(title="x", deduplication_key="k"))
        assert registry.dismiss(n.id) is True
        assert registry.get_active() == []
        assert not registry.has_key("k")

    def test_dismiss_unknown_is_noop(self, registry: NotificationRegistry) -> None:
        assert registry.dismiss("missing") is False

    def test_double_dismiss_notifies_once(self, registry: NotificationRegistry) -> None:
        dismissed: list[Notification] = []
        registry.subscribe(on_dismissed=dismissed.append)
        n = registry.add(Notification(title="x"))
        registry.dismiss(n.id)
        registry.dismiss(n.id)
        assert dismissed == [n]

    def test_dismiss_replaced_notification_is_noop(self, registry: NotificationRegistry) -> None:
        first = registry.add(Notification(title="first", deduplication_key="k"))
        second = registry.add(Notification(title="second", deduplication_key="k"))
        assert registry.dismiss(first.id) is False
        assert registry.get_active() == [second]
        assert registry.has_key("k")

    def test_dismiss_by_key(self, registry: NotificationRegistry) -> None:
        registry.add(Notification(title="a", deduplication_key="k"))
        registry.add(Notification(title="b", deduplication_key="other"))
        assert registry.dismiss_by_key("k") == 1
        assert registry.dismiss_by_key("k") == 0
        assert [n.title for n in registry.get_active()] == ["b"]


class TestGetActive:
    def test_newest_first(self, registry: NotificationRegistry) -> None:
        old = registry.add(Notification(title="old", created_at=T0))
        new = registry.add(Notification(title="new", created_at=T0 + timedelta(minutes=5)))
        mid = registry.add(Notification(title="mid", created_at=T0 + timedelta(minutes=1)))
        assert registry.get_active() == [new, mid, old]

    def test_equal_timestamps_latest_insert_first(self, registry: NotificationRegistry) -> None:
        a = registry.add(Notification(title="a", created_at=T0))
        b = registry.add(Notification(title="b", created_at=T0))
        assert registry.get_active() == [b, a]

    def test_project_filter_includes_global(self, registry: NotificationRegistry) -> None:
        global_n = registry.add(Notification(title="global", created_at=T0))
        mine = registry.add(Notification(title="mine", project_id="p1", created_at=T0 + timedelta(seconds=1)))
        registry.add(Notification(title="theirs", project_id="p2", created_at=T0 + timedelta(seconds=2)))
        assert registry.get_active("p1") == [mine, global_n]

    def test_no_filter_returns_everything(self, registry: NotificationRegistry) -> None:
        registry.add(Notification(title="a", project_id="p1"))
        registry.add(Notification(title="b", project_id="p2"))
        assert len(registry.get_active()) == 2


class TestObservers:
    def test_added_fires_once_per_insert(self, registry: NotificationRegistry) -> None:
        added: list[str] = []
        registry.subscribe(on_added=lambda n: added.append(n.title))
        registry.add(Notification(title="a", deduplication_key="k"))
        registry.add(Notification(title="b", deduplication_key="k"))
        assert added == ["a", "b"]

    def test_unsubscribe(self, registry: NotificationRegistry) -> None:
        added: list[Notification] = []
        unsubscribe = registry.subscribe(on_added=added.append)
        unsubscribe()
        registry.add(Notification(title="x"))
        assert added == []

    def test_observer_error_does_not_propagate(self, registry: NotificationRegistry) -> None:
        seen: list[Notification] = []

        def bad(n: Notification) -> None:
            raise RuntimeError("boom")

        registry.subscribe(on_added=bad)
        registry.subscribe(on_added=seen.append)
        n = registry.add(Notification(title="x"))
        assert seen == [n]
        assert registry.get_active() == [n]

    def test_observer_may_call_back_into_registry(self, registry: NotificationRegistry) -> None:
        registry.subscribe(on_added=lambda n: registry.dismiss(n.id))
        registry.add(Notification(title="short-lived"))
        assert registry.get_active() == []
