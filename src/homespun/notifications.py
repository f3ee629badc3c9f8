"""Deduplicating registry of transient, user-facing notifications.

At most one active notification exists per non-empty deduplication key;
adding a second one replaces the first. Observers are told about every
successful insert and every dismissal exactly once. A same-key
replacement is silent: only the new notification is announced.
"""

from __future__ import annotations

import itertools
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from homespun.agents.types import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Notification:
    title: str
    message: str = ""
    project_id: str | None = None
    deduplication_key: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)


AddedCallback = Callable[[Notification], object]
DismissedCallback = Callable[[Notification], object]


@dataclass(slots=True)
class _Observer:
    on_added: AddedCallback | None
    on_dismissed: DismissedCallback | None


class NotificationRegistry:
    """Thread-safe notification store.

    All state changes happen under one lock; observers are invoked after
    the lock is released so they may call back into the registry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: dict[str, tuple[int, Notification]] = {}
        self._by_key: dict[str, str] = {}
        self._seq = itertools.count()
        self._observers: list[_Observer] = []

    def subscribe(
        self,
        *,
        on_added: AddedCallback | None = None,
        on_dismissed: DismissedCallback | None = None,
    ) -> Callable[[], None]:
        """Register observers. Returns a callable that unregisters them."""
        observer = _Observer(on_added, on_dismissed)
        with self._lock:
            self._observers = [*self._observers, observer]

        def unsubscribe() -> None:
            with self._lock:
                self._observers = [o for o in self._observers if o is not observer]

        return unsubscribe

    def add(self, notification: Notification) -> Notification:
        key = notification.deduplication_key or None
        with self._lock:
            if notification.id in self._by_id:
                raise ValueError(f"Notification {notification.id} is already active")
            if key is not None:
                replaced_id = self._by_key.pop(key, None)
                if replaced_id is not None:
                    self._by_id.pop(replaced_id, None)
                    logger.debug("Replaced notification %s with deduplication key %s", replaced_id, key)
                self._by_key[key] = notification.id
            self._by_id[notification.id] = (next(self._seq), notification)
            observers = self._observers
        logger.info("Added notification %s: %s", notification.id, notification.title)
        self._notify(observers, added=notification)
        return notification

    def dismiss(self, notification_id: str) -> bool:
        """Remove a notification. Unknown or already dismissed ids are a no-op."""
        with self._lock:
            entry = self._by_id.pop(notification_id, None)
            if entry is None:
                return False
            notification = entry[1]
            key = notification.deduplication_key
            if key and self._by_key.get(key) == notification_id:
                del self._by_key[key]
            observers = self._observers
        logger.info("Dismissed notification %s: %s", notification_id, notification.title)
        self._notify(observers, dismissed=notification)
        return True

    def dismiss_by_key(self, deduplication_key: str) -> int:
        """Dismiss every active notification carrying *deduplication_key*."""
        with self._lock:
            ids = [n.id for _, n in self._by_id.values() if n.deduplication_key == deduplication_key]
        return sum(1 for notification_id in ids if self.dismiss(notification_id))

    def get_active(self, project_id: str | None = None) -> list[Notification]:
        """Newest first. With *project_id*, global notifications plus that project's."""
        with self._lock:
            entries = list(self._by_id.values())
        if project_id is not None:
            entries = [(s, n) for s, n in entries if n.project_id is None or n.project_id == project_id]
        entries.sort(key=lambda e: (e[1].created_at, e[0]), reverse=True)
        return [n for _, n in entries]

    def has_key(self, deduplication_key: str) -> bool:
        with self._lock:
            return deduplication_key in self._by_key

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def _notify(
        self,
        observers: list[_Observer],
        *,
        added: Notification | None = None,
        dismissed: Notification | None = None,
    ) -> None:
        for observer in observers:
            callback = observer.on_added if added is not None else observer.on_dismissed
            if callback is None:
                continue
            try:
                callback(added if added is not None else dismissed)
            except Exception as exc:
                logger.warning("Notification observer error: %s", exc)
