"""Agent harness capability interface and the lifecycle shared by all variants.

A harness owns every instance it starts. The instance record lives in an
:class:`InstanceRegistry`; the variant-specific resources (process, HTTP
client, port, ...) are an opaque *runtime* attached to that record. Each
running instance has exactly one upstream event source wrapped in an
:class:`EventMultiplexer`.

Variants subclass :class:`BaseHarness` and implement the ``_launch`` /
``_check_health`` / ``_event_source`` / ``_post_prompt`` / ``_terminate``
hooks. Start, stop, prompt correlation and health checks are handled
here, identically for every variant.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from homespun.agents.instance_registry import InstanceRegistry
from homespun.agents.multiplexer import DEFAULT_BUFFER_SIZE, EventMultiplexer, Subscription
from homespun.agents.types import (
    AgentEvent,
    AgentEventType,
    AgentInstance,
    AgentInstanceStatus,
    AgentMessage,
    AgentMessagePart,
    AgentPrompt,
    AgentStartOptions,
)
from homespun.errors import (
    ConflictError,
    HomespunError,
    InvalidStateError,
    NotFoundError,
    ProcessError,
    PromptTimeoutError,
    StartFailedError,
    StartTimeoutError,
)
from homespun.logger import agent_context

logger = logging.getLogger(__name__)

_LIVE = frozenset({AgentInstanceStatus.STARTING, AgentInstanceStatus.RUNNING})

READY_POLL_INITIAL = 0.1
READY_POLL_MAX = 1.0


@runtime_checkable
class AgentHarness(Protocol):
    """Capability set every harness variant exposes."""

    @property
    def harness_type(self) -> str: ...

    async def start_agent(self, options: AgentStartOptions) -> AgentInstance: ...

    async def stop_agent(self, agent_id: str) -> None: ...

    async def send_prompt(self, agent_id: str, prompt: AgentPrompt) -> AgentMessage: ...

    async def send_prompt_no_wait(self, agent_id: str, prompt: AgentPrompt) -> None: ...

    def get_agent_status(self, agent_id: str) -> AgentInstance | None: ...

    def get_agent_for_entity(self, entity_id: str) -> AgentInstance | None: ...

    def get_running_agents(self) -> list[AgentInstance]: ...

    def subscribe_to_events(self, agent_id: str) -> Subscription: ...

    async def is_healthy(self, agent_id: str) -> bool: ...

    async def aclose(self) -> None: ...


class BaseHarness(ABC):
    """Shared lifecycle over variant hooks.

    Stop wins races with start: a runtime is only attached while the
    instance is still ``STARTING``, and start never moves an instance that
    a stop has already claimed into ``RUNNING`` or ``FAILED``.
    """

    harness_type: str = ""

    def __init__(
        self,
        *,
        start_timeout: float,
        prompt_timeout: float = 600.0,
        health_timeout: float = 5.0,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self._start_timeout = start_timeout
        self._prompt_timeout = prompt_timeout
        self._health_timeout = health_timeout
        self._buffer_size = buffer_size
        self._registry = InstanceRegistry()
        self._multiplexers: dict[str, EventMultiplexer] = {}
        self._stopping: dict[str, asyncio.Event] = {}
        self._prompt_locks: dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> InstanceRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Variant hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _launch(self, agent_id: str, options: AgentStartOptions) -> Any:
        """Start the backend and return its runtime handle."""

    @abstractmethod
    async def _check_health(self, runtime: Any) -> bool:
        """One liveness check against the runtime."""

    @abstractmethod
    def _event_source(self, agent_id: str, runtime: Any) -> AsyncIterator[AgentEvent]:
        """The single upstream event sequence for an instance."""

    @abstractmethod
    async def _post_prompt(self, record: AgentInstance, runtime: Any, prompt: AgentPrompt) -> str | None:
        """Dispatch a prompt without waiting for the answer.

        Returns a token identifying the response when the backend offers
        one, else ``None`` and the next completed reply is taken as the answer.
        """

    @abstractmethod
    async def _terminate(self, runtime: Any) -> None:
        """Release everything the runtime holds."""

    async def _open_session(self, agent_id: str, runtime: Any, options: AgentStartOptions) -> str | None:
        return None

    def _instance_fields(self, runtime: Any, session_id: str | None) -> dict[str, Any]:
        """Record fields (``api_base_url``, ``web_view_url``, ``metadata``) for a ready runtime."""
        return {}

    def _is_response_to(self, event: AgentEvent, token: str) -> bool:
        """Whether a message event starts the response identified by *token*."""
        return event.message_id == token

    def _exit_code(self, runtime: Any) -> int | None:
        return None

    def _stderr_tail(self, runtime: Any) -> str:
        return ""

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_agent(self, options: AgentStartOptions) -> AgentInstance:
        existing = self._registry.for_entity(options.entity_id)
        if existing is not None and not existing.status.is_terminal:
            if options.continue_session and existing.status == AgentInstanceStatus.RUNNING:
                logger.info("Reusing agent %s for entity %s", existing.agent_id, options.entity_id)
                return existing
            raise ConflictError(options.entity_id, existing.agent_id)

        agent_id = f"{self.harness_type}-{uuid.uuid4().hex[:12]}"
        self._registry.register(AgentInstance(
            agent_id=agent_id,
            entity_id=options.entity_id,
            harness_type=self.harness_type,
            working_directory=options.working_directory,
        ))
        with agent_context(agent_id, entity_id=options.entity_id, harness=self.harness_type):
            logger.info("Starting %s agent %s for entity %s", self.harness_type, agent_id, options.entity_id)
            return await self._start_registered(agent_id, options)

    async def _start_registered(self, agent_id: str, options: AgentStartOptions) -> AgentInstance:
        try:
            async with asyncio.timeout(self._start_timeout):
                session_id = await self._bring_up(agent_id, options)
        except asyncio.CancelledError:
            await self._fail(agent_id, "start cancelled")
            raise
        except TimeoutError:
            exc = StartTimeoutError(agent_id, self._start_timeout)
            await self._fail_start(agent_id, exc)
            raise exc from None
        except Exception as exc:
            error = StartFailedError(f"Agent {agent_id} failed to start: {exc}", agent_id=agent_id)
            await self._fail_start(agent_id, error)
            raise error from exc

        runtime = self._registry.runtime(agent_id)
        if runtime is None:
            raise StartFailedError(
                f"Agent {agent_id} was stopped while starting", agent_id=agent_id, retryable=False,
            )
        if session_id:
            self._registry.update(agent_id, active_session_id=session_id)
        fields = self._instance_fields(runtime, session_id)
        if fields:
            self._registry.update(agent_id, **fields)

        mux = EventMultiplexer(
            agent_id,
            self._event_source(agent_id, runtime),
            buffer_size=self._buffer_size,
            on_event=lambda event: self._observe_event(agent_id, event),
            on_crash=lambda exc: self._on_stream_crash(agent_id, exc),
        )
        self._multiplexers[agent_id] = mux
        mux.start()

        record = self._registry.try_transition(
            agent_id, AgentInstanceStatus.RUNNING, expected={AgentInstanceStatus.STARTING},
        )
        if record is None:
            if self._multiplexers.get(agent_id) is mux:
                del self._multiplexers[agent_id]
            await mux.close()
            current = self._registry.get(agent_id)
            reason = current.error if current and current.error else "agent was stopped while starting"
            raise StartFailedError(f"Agent {agent_id} did not reach running: {reason}", agent_id=agent_id)

        if options.initial_prompt is not None:
            try:
                await self.send_prompt_no_wait(agent_id, options.initial_prompt)
            except HomespunError as exc:
                logger.warning("Initial prompt for agent %s failed: %s", agent_id, exc)
            record = self._registry.get(agent_id) or record

        return record

    async def _bring_up(self, agent_id: str, options: AgentStartOptions) -> str | None:
        runtime = await self._launch(agent_id, options)
        if not self._registry.attach_runtime(agent_id, runtime):
            await self._safe_terminate(agent_id, runtime)
            raise StartFailedError("agent was stopped while starting", agent_id=agent_id, retryable=False)
        await self._wait_until_ready(agent_id, runtime)
        return await self._open_session(agent_id, runtime, options)

    async def _wait_until_ready(self, agent_id: str, runtime: Any) -> None:
        """Poll the health check with capped exponential backoff."""
        delay = READY_POLL_INITIAL
        while True:
            exit_code = self._exit_code(runtime)
            if exit_code is not None:
                raise ProcessError(
                    f"Agent {agent_id} exited with code {exit_code} before becoming ready",
                    agent_id=agent_id,
                    exit_code=exit_code,
                    stderr=self._stderr_tail(runtime),
                )
            try:
                async with asyncio.timeout(self._health_timeout):
                    if await self._check_health(runtime):
                        logger.debug("Agent %s is ready", agent_id)
                        return
            except Exception as exc:
                logger.debug("Agent %s not ready yet: %s", agent_id, exc)
            await asyncio.sleep(delay)
            delay = min(delay * 2, READY_POLL_MAX)

    async def _fail_start(self, agent_id: str, error: HomespunError) -> None:
        if not await self._fail(agent_id, str(error)):
            logger.info("Start of agent %s ended by a concurrent stop", agent_id)
        else:
            logger.warning("%s", error)

    # ------------------------------------------------------------------
    # Failure and cleanup
    # ------------------------------------------------------------------

    async def _fail(self, agent_id: str, message: str, *, emit: bool = True) -> bool:
        """Move a live instance to ``FAILED`` and release its resources.

        Returns ``False`` when the instance was no longer live (a stop
        claimed it first); nothing is changed in that case.
        """
        record = self._registry.try_transition(
            agent_id, AgentInstanceStatus.FAILED, expected=_LIVE, error=message,
        )
        if record is None:
            return False
        if emit:
            self._registry.record_event(agent_id, AgentEvent(
                type=AgentEventType.DISCONNECTED,
                agent_id=agent_id,
                session_id=record.active_session_id,
                error=message,
            ))
        await self._release(agent_id)
        return True

    async def _release(self, agent_id: str) -> None:
        self._prompt_locks.pop(agent_id, None)
        mux = self._multiplexers.pop(agent_id, None)
        if mux is not None:
            await mux.close()
        runtime = self._registry.detach_runtime(agent_id)
        if runtime is not None:
            await self._safe_terminate(agent_id, runtime)

    async def _safe_terminate(self, agent_id: str, runtime: Any) -> None:
        try:
            await self._terminate(runtime)
        except Exception as exc:
            logger.warning("Error terminating agent %s: %s", agent_id, exc)

    def _observe_event(self, agent_id: str, event: AgentEvent) -> None:
        self._registry.record_event(agent_id, event)
        if event.type == AgentEventType.SESSION_CREATED and event.session_id:
            record = self._registry.get(agent_id)
            if record is not None and not record.active_session_id:
                runtime = self._registry.runtime(agent_id)
                fields = self._instance_fields(runtime, event.session_id) if runtime is not None else {}
                fields["active_session_id"] = event.session_id
                self._registry.update(agent_id, **fields)

    async def _on_stream_crash(self, agent_id: str, exc: BaseException) -> None:
        error = ProcessError(f"Agent {agent_id} disconnected: {exc}", agent_id=agent_id)
        if await self._fail(agent_id, str(error), emit=False):
            logger.error("%s", error)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop_agent(self, agent_id: str) -> None:
        with agent_context(agent_id, harness=self.harness_type):
            await self._stop(agent_id)

    async def _stop(self, agent_id: str) -> None:
        record = self._registry.get(agent_id)
        if record is None:
            raise NotFoundError(f"No agent with id {agent_id}", agent_id=agent_id)
        if record.status == AgentInstanceStatus.STOPPED:
            return
        if record.status == AgentInstanceStatus.FAILED:
            await self._release(agent_id)
            self._registry.remove(agent_id)
            logger.info("Removed failed agent %s", agent_id)
            return

        pending = self._stopping.get(agent_id)
        if pending is not None:
            await pending.wait()
            return

        done = asyncio.Event()
        self._stopping[agent_id] = done
        try:
            claimed = self._registry.try_transition(
                agent_id, AgentInstanceStatus.STOPPING, expected=_LIVE,
            )
            if claimed is None:
                current = self._registry.get(agent_id)
                if current is not None and current.status == AgentInstanceStatus.FAILED:
                    await self._release(agent_id)
                    self._registry.remove(agent_id)
                return
            await self._release(agent_id)
            self._registry.transition(
                agent_id, AgentInstanceStatus.STOPPED, expected={AgentInstanceStatus.STOPPING},
            )
        finally:
            self._stopping.pop(agent_id, None)
            done.set()

    async def aclose(self) -> None:
        """Stop every live instance."""
        for record in self._registry.all():
            if record.status.is_terminal:
                continue
            try:
                await self.stop_agent(record.agent_id)
            except HomespunError as exc:
                logger.warning("Failed to stop agent %s: %s", record.agent_id, exc)

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def _require_running(self, agent_id: str) -> tuple[AgentInstance, Any]:
        record = self._registry.get(agent_id)
        if record is None:
            raise NotFoundError(f"No agent with id {agent_id}", agent_id=agent_id)
        runtime = self._registry.runtime(agent_id)
        if record.status != AgentInstanceStatus.RUNNING or runtime is None:
            raise InvalidStateError(
                f"Agent {agent_id} is {record.status}, not running",
                agent_id=agent_id,
                status=str(record.status),
            )
        return record, runtime

    async def send_prompt_no_wait(self, agent_id: str, prompt: AgentPrompt) -> None:
        record, runtime = self._require_running(agent_id)
        await self._post_prompt(record, runtime, prompt)

    async def send_prompt(self, agent_id: str, prompt: AgentPrompt) -> AgentMessage:
        """Send *prompt* and wait for the response to it.

        Blocking prompts to one agent run one at a time. The response is
        complete when the session goes ``idle`` after at least one message
        event belonging to this prompt.
        """
        with agent_context(agent_id, harness=self.harness_type):
            return await self._send_prompt(agent_id, prompt)

    async def _send_prompt(self, agent_id: str, prompt: AgentPrompt) -> AgentMessage:
        self._require_running(agent_id)
        lock = self._prompt_locks.setdefault(agent_id, asyncio.Lock())
        try:
            async with asyncio.timeout(self._prompt_timeout):
                async with lock:
                    record, runtime = self._require_running(agent_id)
                    mux = self._multiplexers.get(agent_id)
                    if mux is None:
                        raise InvalidStateError(f"Agent {agent_id} has no event stream", agent_id=agent_id)
                    subscription = mux.subscribe()
                    try:
                        token = await self._post_prompt(record, runtime, prompt)
                        return await self._collect_response(record, subscription, token)
                    finally:
                        subscription.close()
        except TimeoutError:
            raise PromptTimeoutError(agent_id, self._prompt_timeout) from None

    async def _collect_response(
        self,
        record: AgentInstance,
        subscription: Subscription,
        token: str | None,
    ) -> AgentMessage:
        agent_id = record.agent_id
        session_id = record.active_session_id
        owned: set[str] = set()
        message_id: str | None = None
        texts: dict[str, str] = {}
        seen_message = False

        def belongs(event: AgentEvent) -> bool:
            if token is None:
                return True
            if self._is_response_to(event, token):
                if event.message_id:
                    owned.add(event.message_id)
                return True
            return event.message_id in owned

        async for event in subscription:
            if event.type == AgentEventType.DISCONNECTED:
                raise ProcessError(event.error or f"Agent {agent_id} disconnected", agent_id=agent_id)
            if session_id and event.session_id and event.session_id != session_id:
                continue
            if event.type == AgentEventType.SESSION_CREATED and not session_id:
                session_id = event.session_id
            elif event.type == AgentEventType.STATUS_CHANGED and event.status == "error":
                raise ProcessError(event.error or f"Agent {agent_id} reported an error", agent_id=agent_id)
            elif event.type in (AgentEventType.MESSAGE_CREATED, AgentEventType.MESSAGE_UPDATED):
                if not belongs(event):
                    continue
                seen_message = True
                message_id = event.message_id or message_id
                if event.type == AgentEventType.MESSAGE_UPDATED and event.content:
                    part = str(event.properties.get("partId") or len(texts))
                    texts[part] = event.content
            elif event.status == "idle" and seen_message and event.type in (
                AgentEventType.STATUS_CHANGED,
                AgentEventType.SESSION_UPDATED,
            ):
                # Idle events tagged with another prompt's message end that prompt, not this one
                if token is not None and event.message_id and event.message_id not in owned:
                    continue
                return AgentMessage(
                    id=message_id or uuid.uuid4().hex,
                    agent_id=agent_id,
                    role="assistant",
                    parts=[AgentMessagePart(type="text", text="".join(texts.values()))],
                )

        raise ProcessError(f"Event stream for agent {agent_id} ended before the response completed", agent_id=agent_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_agent_status(self, agent_id: str) -> AgentInstance | None:
        return self._registry.get(agent_id)

    def get_agent_for_entity(self, entity_id: str) -> AgentInstance | None:
        return self._registry.for_entity(entity_id)

    def get_running_agents(self) -> list[AgentInstance]:
        return self._registry.running()

    def subscribe_to_events(self, agent_id: str) -> Subscription:
        """Live events for *agent_id*.

        For a stopped or failed instance the subscription is already
        complete; a failed one first yields its disconnect event.
        """
        record = self._registry.get(agent_id)
        if record is None:
            raise NotFoundError(f"No agent with id {agent_id}", agent_id=agent_id)
        mux = self._multiplexers.get(agent_id)
        if mux is not None:
            return mux.subscribe()
        if record.status == AgentInstanceStatus.STARTING:
            raise InvalidStateError(
                f"Agent {agent_id} is still starting", agent_id=agent_id, status=str(record.status),
            )
        last = record.last_event
        terminal = last if last is not None and last.type == AgentEventType.DISCONNECTED else None
        return EventMultiplexer.finished(agent_id, terminal).subscribe()

    async def is_healthy(self, agent_id: str) -> bool:
        record = self._registry.get(agent_id)
        runtime = self._registry.runtime(agent_id)
        if record is None or runtime is None or record.status != AgentInstanceStatus.RUNNING:
            return False
        try:
            async with asyncio.timeout(self._health_timeout):
                return await self._check_health(runtime)
        except Exception as exc:
            logger.debug("Health check for agent %s failed: %s", agent_id, exc)
            return False
