"""Port pool for harness variants that run one HTTP server per agent."""

from __future__ import annotations

import logging
import threading

from homespun.errors import StartFailedError

logger = logging.getLogger(__name__)


class PortAllocator:
    """Hands out ports from ``base_port .. base_port + size - 1``, lowest first."""

    def __init__(self, base_port: int, size: int) -> None:
        if size < 1:
            raise ValueError("port pool size must be at least 1")
        self._base_port = base_port
        self._size = size
        self._in_use: set[int] = set()
        self._lock = threading.Lock()

    @property
    def in_use(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._in_use)

    def acquire(self) -> int:
        with self._lock:
            for port in range(self._base_port, self._base_port + self._size):
                if port not in self._in_use:
                    self._in_use.add(port)
                    return port
        raise StartFailedError(
            f"No free ports in {self._base_port}-{self._base_port + self._size - 1} "
            f"({self._size} servers already running)"
        )

    def release(self, port: int) -> None:
        with self._lock:
            self._in_use.discard(port)
        logger.debug("Released port %d", port)
