"""Fan-out of one agent's upstream event stream to many subscribers.

One reader task owns the upstream async iterator. Each subscriber gets
its own bounded buffer; a full buffer drops its *oldest* event so a slow
consumer catches up to current state instead of stalling on history.
Nothing a subscriber does can block the reader or other subscribers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from typing import Any

from homespun.agents.types import AgentEvent, AgentEventType

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 256

EventCallback = Callable[[AgentEvent], Any]
CrashCallback = Callable[[BaseException], Any]


async def _empty() -> AsyncIterator[AgentEvent]:
    return
    yield


class Subscription:
    """A cancellable, independently buffered view of the event stream.

    Use as an async iterator; ``close()`` (or leaving ``async with``)
    stops delivery and releases the buffer.
    """

    def __init__(self, multiplexer: EventMultiplexer, buffer_size: int) -> None:
        self._multiplexer = multiplexer
        self._buffer: deque[AgentEvent] = deque(maxlen=buffer_size)
        self._wakeup = asyncio.Event()
        self._finished = False
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, event: AgentEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(event)
        self._wakeup.set()

    def _finish(self) -> None:
        self._finished = True
        self._wakeup.set()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        self._multiplexer._unsubscribe(self)
        self._wakeup.set()

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> AgentEvent:
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._buffer:
                return self._buffer.popleft()
            if self._finished:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventMultiplexer:
    """Single-producer, multi-consumer broadcast for one agent.

    ``close()`` ends every subscription gracefully. If the upstream raises
    or ends on its own, each subscriber first receives a synthetic
    ``agent.disconnected`` event carrying the error, then its sequence
    ends, and ``on_crash`` is invoked.
    """

    def __init__(
        self,
        agent_id: str,
        source: AsyncIterator[AgentEvent],
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        on_event: EventCallback | None = None,
        on_crash: CrashCallback | None = None,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self._agent_id = agent_id
        self._source = source
        self._buffer_size = buffer_size
        self._on_event = on_event
        self._on_crash = on_crash
        self._subscribers: list[Subscription] = []
        self._task: asyncio.Task[None] | None = None
        self._closing = False
        self._done = False
        self._terminal_event: AgentEvent | None = None

    @classmethod
    def finished(cls, agent_id: str, terminal_event: AgentEvent | None = None) -> EventMultiplexer:
        """A multiplexer whose stream has already ended.

        Subscribers receive *terminal_event* (if any) and then complete.
        """
        mux = cls(agent_id, _empty())
        mux._done = True
        mux._terminal_event = terminal_event
        return mux

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def done(self) -> bool:
        return self._done

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def start(self) -> None:
        if self._task is None and not self._done:
            self._task = asyncio.create_task(self._pump(), name=f"event-pump-{self._agent_id}")

    def subscribe(self) -> Subscription:
        """Subscribe to events emitted from now on.

        After the stream has ended the subscription is already complete
        (preceded by the disconnect event if the stream crashed).
        """
        sub = Subscription(self, self._buffer_size)
        if self._done:
            if self._terminal_event is not None:
                sub._push(self._terminal_event)
            sub._finish()
            return sub
        self._subscribers.append(sub)
        return sub

    async def close(self) -> None:
        """Stop reading upstream and complete every subscription without error."""
        self._closing = True
        if self._done:
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        # A pump cancelled before its first step never ran its own cleanup
        await self._complete(None)

    def _unsubscribe(self, sub: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(sub)

    def _publish(self, event: AgentEvent) -> None:
        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception as exc:
                logger.debug("Event observer error for agent %s: %s", self._agent_id, exc)
        for sub in list(self._subscribers):
            sub._push(event)

    async def _pump(self) -> None:
        try:
            async for event in self._source:
                self._publish(event)
        except asyncio.CancelledError:
            await self._complete(None)
            raise
        except Exception as exc:
            logger.warning("Event stream for agent %s failed: %s", self._agent_id, exc)
            await self._complete(exc)
        else:
            if self._closing:
                await self._complete(None)
            else:
                await self._complete(ConnectionError("event stream ended unexpectedly"))

    async def _complete(self, error: BaseException | None) -> None:
        if self._done:
            return
        self._done = True
        if error is not None:
            self._terminal_event = AgentEvent(
                type=AgentEventType.DISCONNECTED,
                agent_id=self._agent_id,
                error=str(error) or type(error).__name__,
                properties={"synthetic": True},
            )
            self._publish(self._terminal_event)
        for sub in self._subscribers:
            sub._finish()
        self._subscribers.clear()

        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(Exception):
                await aclose()

        if error is not None and self._on_crash is not None:
            try:
                result = self._on_crash(error)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.warning("Crash handler failed for agent %s: %s", self._agent_id, exc)
