"""Claude Code UI harness: one ``cloudcli`` web server per agent.

The server runs in platform mode (no interactive login) and keeps its
auth database inside the agent's working directory. Prompts go to
``POST /api/agent``; events are read from ``GET /api/events``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

import httpx

from homespun.agents.server import ServerHarness, ServerRuntime
from homespun.agents.types import AgentEvent, AgentEventType, AgentInstance, AgentPrompt, AgentStartOptions
from homespun.config import ClaudeUIConfig
from homespun.errors import ProcessError

logger = logging.getLogger(__name__)

AUTH_DB_NAME = ".cloudcli-auth.db"
DEFAULT_USER = {"username": "homespun", "password": "homespun"}

OPUS_MODEL = "claude-opus-4-20250514"
HAIKU_MODEL = "claude-haiku-3-5-20241022"
SONNET_MODEL = "claude-sonnet-4-20250514"


def map_model(model: str | None) -> str | None:
    if not model:
        return None
    lowered = model.lower()
    if "opus" in lowered:
        return OPUS_MODEL
    if "haiku" in lowered:
        return HAIKU_MODEL
    return SONNET_MODEL


class ClaudeUIHarness(ServerHarness):
    harness_type = "claudeui"

    def __init__(self, config: ClaudeUIConfig | None = None, **kwargs: Any) -> None:
        cfg = config or ClaudeUIConfig()
        super().__init__(
            executable=cfg.executable,
            base_port=cfg.base_port,
            max_servers=cfg.max_servers,
            start_timeout=cfg.start_timeout_seconds,
            **kwargs,
        )
        self._extra_env = dict(cfg.env)

    def _server_args(self, port: int, options: AgentStartOptions) -> list[str]:
        return ["--port", str(port)]

    def _server_env(self, port: int, options: AgentStartOptions) -> dict[str, str]:
        return {
            "ANTHROPIC_API_KEY": os.environ.get("ANTHROPIC_API_KEY", ""),
            "VITE_IS_PLATFORM": "true",
            "DATABASE_PATH": str(Path(options.working_directory) / AUTH_DB_NAME),
            **self._extra_env,
        }

    async def _check_health(self, runtime: ServerRuntime) -> bool:
        await self._request(runtime, "GET", "/")
        return True

    async def _open_session(self, agent_id: str, runtime: ServerRuntime, options: AgentStartOptions) -> str | None:
        # Registration only succeeds on an empty database; 403 means a user exists
        try:
            response = await runtime.client.post("/api/auth/register", json=DEFAULT_USER)
        except httpx.RequestError as e:
            raise ProcessError(f"Could not register platform user: {e}", agent_id=agent_id) from e
        if response.status_code >= 400 and response.status_code != 403:
            logger.warning(
                "Failed to ensure default user for agent %s: %s %s",
                agent_id, response.status_code, response.text[:200],
            )
        return None

    def _instance_fields(self, runtime: ServerRuntime, session_id: str | None) -> dict[str, Any]:
        external = self.external_base_url(runtime.port)
        return {
            "api_base_url": runtime.base_url,
            "web_view_url": f"{external}/session/{session_id}" if session_id else external,
            "metadata": {"port": runtime.port, "pid": runtime.process.pid},
        }

    async def _post_prompt(self, record: AgentInstance, runtime: ServerRuntime, prompt: AgentPrompt) -> None:
        body: dict[str, Any] = {
            "message": prompt.text,
            "projectPath": record.working_directory,
            "provider": "claude",
            "stream": True,
        }
        if model := map_model(prompt.model):
            body["model"] = model
        if record.active_session_id:
            body["sessionId"] = record.active_session_id

        request = runtime.client.build_request("POST", "/api/agent", json=body)
        try:
            response = await runtime.client.send(request, stream=True)
        except httpx.RequestError as e:
            raise ProcessError(f"POST /api/agent failed: {e}", agent_id=record.agent_id) from e
        if response.status_code >= 400:
            await response.aread()
            await response.aclose()
            raise ProcessError(
                f"POST /api/agent returned {response.status_code}: {response.text[:500]}",
                agent_id=record.agent_id,
            )

        # The reply streams on this response too; events are consumed from /api/events
        task = asyncio.create_task(self._drain(record.agent_id, response))
        runtime.tasks.add(task)
        task.add_done_callback(runtime.tasks.discard)

    async def _drain(self, agent_id: str, response: httpx.Response) -> None:
        try:
            async for _ in response.aiter_bytes():
                pass
        except httpx.HTTPError as exc:
            logger.debug("Prompt stream for agent %s ended: %s", agent_id, exc)
        finally:
            await response.aclose()

    def _events_request(self, runtime: ServerRuntime) -> tuple[str, dict[str, str] | None]:
        if runtime.session_id:
            return "/api/events", {"sessionId": runtime.session_id}
        return "/api/events", None

    def _map_event(self, agent_id: str, payload: dict[str, Any]) -> AgentEvent | None:
        wire_type = payload.get("type")
        if not isinstance(wire_type, str):
            return None
        session_id = payload.get("sessionId")
        props = {"originalType": wire_type}

        if wire_type == "session-created":
            return AgentEvent(type=AgentEventType.SESSION_CREATED, agent_id=agent_id,
                              session_id=session_id, properties=props)
        if wire_type == "claude-response":
            return AgentEvent(type=AgentEventType.MESSAGE_UPDATED, agent_id=agent_id,
                              session_id=session_id, content=payload.get("text"),
                              tool_name=payload.get("toolName"), properties=props)
        if wire_type == "claude-complete":
            return AgentEvent(type=AgentEventType.STATUS_CHANGED, agent_id=agent_id,
                              session_id=session_id, status="idle", properties=props)
        if wire_type == "claude-error":
            return AgentEvent(type=AgentEventType.STATUS_CHANGED, agent_id=agent_id,
                              session_id=session_id, status="error",
                              error=payload.get("error"), properties=props)

        status = payload.get("status")
        if isinstance(status, str):
            return AgentEvent(type=AgentEventType.STATUS_CHANGED, agent_id=agent_id,
                              session_id=session_id, status=status, properties=props)
        logger.debug("Dropping Claude UI event %s for agent %s", wire_type, agent_id)
        return None
