"""Shared plumbing for variants that run one local HTTP server per agent."""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from homespun.agents.harness import BaseHarness
from homespun.agents.ports import PortAllocator
from homespun.agents.sse import iter_sse_json
from homespun.agents.types import AgentEvent, AgentStartOptions
from homespun.commands import ManagedProcess, ProcessLauncher, SubprocessLauncher, resolve_executable
from homespun.errors import ProcessError

logger = logging.getLogger(__name__)

LOCAL_HOST = "127.0.0.1"


@dataclass(slots=True)
class ServerRuntime:
    agent_id: str
    port: int
    base_url: str
    process: ManagedProcess
    client: httpx.AsyncClient
    working_directory: str
    session_id: str | None = None
    tasks: set[asyncio.Task[None]] = field(default_factory=set)


class ServerHarness(BaseHarness):
    """Launches ``executable`` on a pooled port and talks to it over HTTP.

    ``launcher`` and ``transport`` are injectable so the variants can be
    exercised without real binaries or sockets.
    """

    def __init__(
        self,
        *,
        executable: str,
        base_port: int,
        max_servers: int,
        start_timeout: float,
        external_hostname: str | None = None,
        launcher: ProcessLauncher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(start_timeout=start_timeout, **kwargs)
        self._executable = executable
        self._ports = PortAllocator(base_port, max_servers)
        self._external_hostname = external_hostname
        self._launcher = launcher or SubprocessLauncher()
        self._transport = transport

    @property
    def ports(self) -> PortAllocator:
        return self._ports

    @abstractmethod
    def _server_args(self, port: int, options: AgentStartOptions) -> list[str]: ...

    def _server_env(self, port: int, options: AgentStartOptions) -> dict[str, str] | None:
        return None

    def _prepare(self, options: AgentStartOptions) -> None:
        """Hook run before the server process is launched."""

    def external_base_url(self, port: int) -> str:
        if self._external_hostname:
            return f"https://{self._external_hostname}:{port}"
        return f"http://{LOCAL_HOST}:{port}"

    async def _launch(self, agent_id: str, options: AgentStartOptions) -> ServerRuntime:
        self._prepare(options)
        port = self._ports.acquire()
        try:
            process = await self._launcher.launch(
                resolve_executable(self._executable),
                self._server_args(port, options),
                cwd=options.working_directory,
                env=self._server_env(port, options),
            )
        except BaseException:
            self._ports.release(port)
            raise

        base_url = f"http://{LOCAL_HOST}:{port}"
        client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(30.0, connect=5.0),
            transport=self._transport,
        )
        logger.info("Agent %s server on %s (pid %s)", agent_id, base_url, process.pid)
        return ServerRuntime(
            agent_id=agent_id,
            port=port,
            base_url=base_url,
            process=process,
            client=client,
            working_directory=options.working_directory,
        )

    async def _terminate(self, runtime: ServerRuntime) -> None:
        for task in list(runtime.tasks):
            task.cancel()
        try:
            await runtime.client.aclose()
            await runtime.process.terminate()
        finally:
            self._ports.release(runtime.port)
        logger.info("Agent %s server on port %d terminated", runtime.agent_id, runtime.port)

    def _exit_code(self, runtime: ServerRuntime) -> int | None:
        return runtime.process.returncode

    def _stderr_tail(self, runtime: ServerRuntime) -> str:
        return runtime.process.stderr_tail

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(self, runtime: ServerRuntime, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await runtime.client.request(method, path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise ProcessError(
                f"{method} {path} returned {e.response.status_code}: {e.response.text[:500]}",
                agent_id=runtime.agent_id,
            ) from e
        except httpx.RequestError as e:
            raise ProcessError(f"{method} {path} failed: {e}", agent_id=runtime.agent_id) from e

    async def _stream_json(
        self,
        runtime: ServerRuntime,
        path: str,
        params: dict[str, str] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        try:
            async with runtime.client.stream(
                "GET",
                path,
                params=params,
                timeout=httpx.Timeout(None, connect=5.0),
            ) as response:
                if response.status_code >= 400:
                    # Must read body inside async-with before response closes
                    await response.aread()
                    raise ProcessError(
                        f"GET {path} returned {response.status_code}: {response.text[:500]}",
                        agent_id=runtime.agent_id,
                    )
                async for payload in iter_sse_json(response.aiter_lines()):
                    yield payload
        except httpx.RequestError as e:
            raise ProcessError(f"Event stream {path} failed: {e}", agent_id=runtime.agent_id) from e

    @abstractmethod
    def _map_event(self, agent_id: str, payload: dict[str, Any]) -> AgentEvent | None: ...

    @abstractmethod
    def _events_request(self, runtime: ServerRuntime) -> tuple[str, dict[str, str] | None]: ...

    async def _event_source(self, agent_id: str, runtime: ServerRuntime) -> AsyncIterator[AgentEvent]:
        path, params = self._events_request(runtime)
        async for payload in self._stream_json(runtime, path, params):
            event = self._map_event(agent_id, payload)
            if event is not None:
                yield event
