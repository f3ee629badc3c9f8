"""OpenCode harness: one ``opencode serve`` process per agent.

Endpoints used:

- ``GET /global/health`` -> ``{"healthy": true, "version": "..."}``
- ``POST /session`` -> ``{"id": "..."}``
- ``POST /session/{id}/prompt_async`` (fire-and-forget prompt)
- ``GET /event`` (SSE of ``{"type": ..., "properties": {...}}``)
"""

from __future__ import annotations

import base64
import itertools
import json
import logging
import secrets
import string
import time
from pathlib import Path
from typing import Any

from homespun.agents.server import ServerHarness, ServerRuntime
from homespun.agents.types import AgentEvent, AgentEventType, AgentInstance, AgentPrompt, AgentStartOptions
from homespun.config import OpenCodeConfig

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "opencode.json"
CONFIG_SCHEMA = "https://opencode.ai/config.json"

_ID_ALPHABET = string.digits + string.ascii_letters
_id_counter = itertools.count()

EVENT_TYPE_MAP: dict[str, AgentEventType] = {
    "server.connected": AgentEventType.CONNECTED,
    "session.created": AgentEventType.SESSION_CREATED,
    "session.updated": AgentEventType.SESSION_UPDATED,
    "session.status": AgentEventType.STATUS_CHANGED,
    "session.idle": AgentEventType.STATUS_CHANGED,
    "message.created": AgentEventType.MESSAGE_CREATED,
    "message.updated": AgentEventType.MESSAGE_UPDATED,
    "message.part.updated": AgentEventType.MESSAGE_UPDATED,
    "part.updated": AgentEventType.MESSAGE_UPDATED,
    "tool.start": AgentEventType.TOOL_STARTED,
    "tool.complete": AgentEventType.TOOL_COMPLETED,
}


def status_value(raw: Any) -> str | None:
    """Status arrives either as a string or as ``{"type": "busy"}``."""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict) and isinstance(raw.get("type"), str):
        return raw["type"]
    return None


def base64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def new_message_id() -> str:
    """An id in OpenCode's ascending ``msg_`` format.

    Twelve hex digits of millisecond time and a counter, then fourteen
    random base62 characters, so ids sort by creation.
    """
    stamp = (int(time.time() * 1000) * 0x1000 + next(_id_counter) % 0x1000) & 0xFFFFFFFFFFFF
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(14))
    return f"msg_{stamp:012x}{suffix}"


def build_prompt_request(prompt: AgentPrompt, message_id: str | None = None) -> dict[str, Any]:
    """Map a prompt to OpenCode's request body.

    ``provider/model`` becomes ``{"providerID", "modelID"}``; any other
    model string is ignored so the server default applies. *message_id*
    becomes the user message id, which the reply carries as ``parentID``.
    """
    parts: list[dict[str, Any]] = [{"type": "text", "text": prompt.text}]
    parts.extend({"type": "file", "path": path} for path in prompt.file_paths)
    body: dict[str, Any] = {"parts": parts}
    if message_id:
        body["messageID"] = message_id
    if prompt.system_prompt:
        body["system"] = prompt.system_prompt
    if prompt.model:
        provider, sep, model = prompt.model.partition("/")
        if sep and provider and model and "/" not in model:
            body["model"] = {"providerID": provider, "modelID": model}
    return body


def default_config(model: str) -> dict[str, Any]:
    return {
        "$schema": CONFIG_SCHEMA,
        "model": model,
        "permission": {
            "edit": "allow",
            "bash": "allow",
            "write": "allow",
            "read": "allow",
            "webfetch": "allow",
        },
        "autoupdate": False,
        "compaction": {"auto": True, "prune": True},
    }


class OpenCodeHarness(ServerHarness):
    harness_type = "opencode"

    def __init__(self, config: OpenCodeConfig | None = None, **kwargs: Any) -> None:
        cfg = config or OpenCodeConfig()
        super().__init__(
            executable=cfg.executable,
            base_port=cfg.base_port,
            max_servers=cfg.max_servers,
            start_timeout=cfg.start_timeout_seconds,
            **kwargs,
        )
        self._default_model = cfg.default_model

    def _prepare(self, options: AgentStartOptions) -> None:
        config_path = Path(options.working_directory) / CONFIG_FILE_NAME
        config_path.write_text(
            json.dumps(default_config(options.model or self._default_model), indent=2),
            encoding="utf-8",
        )
        logger.info("Generated OpenCode config at %s", config_path)

    def _server_args(self, port: int, options: AgentStartOptions) -> list[str]:
        args = ["serve", "--port", str(port), "--hostname", "127.0.0.1"]
        if options.continue_session:
            args.append("--continue")
        return args

    async def _check_health(self, runtime: ServerRuntime) -> bool:
        response = await self._request(runtime, "GET", "/global/health")
        data = response.json()
        return isinstance(data, dict) and bool(data.get("healthy"))

    async def _open_session(self, agent_id: str, runtime: ServerRuntime, options: AgentStartOptions) -> str | None:
        title = options.session_title or f"Homespun: {options.entity_id}"
        response = await self._request(runtime, "POST", "/session", json={"title": title})
        session_id = response.json().get("id")
        runtime.session_id = session_id
        logger.info("Agent %s session %s created on port %d", agent_id, session_id, runtime.port)
        return session_id

    def _instance_fields(self, runtime: ServerRuntime, session_id: str | None) -> dict[str, Any]:
        external = self.external_base_url(runtime.port)
        web_view_url = (
            f"{external}/{base64url(runtime.working_directory)}/session/{session_id}"
            if session_id else None
        )
        return {
            "api_base_url": runtime.base_url,
            "web_view_url": web_view_url,
            "metadata": {"port": runtime.port, "pid": runtime.process.pid},
        }

    async def _post_prompt(self, record: AgentInstance, runtime: ServerRuntime, prompt: AgentPrompt) -> str:
        session_id = record.active_session_id or runtime.session_id
        if not session_id:
            session_id = await self._open_session(record.agent_id, runtime, AgentStartOptions(
                entity_id=record.entity_id, working_directory=record.working_directory,
            ))
        message_id = new_message_id()
        await self._request(
            runtime, "POST", f"/session/{session_id}/prompt_async", json=build_prompt_request(prompt, message_id),
        )
        return message_id

    def _is_response_to(self, event: AgentEvent, token: str) -> bool:
        return event.properties.get("parentId") == token

    def _events_request(self, runtime: ServerRuntime) -> tuple[str, dict[str, str] | None]:
        return "/event", None

    def _map_event(self, agent_id: str, payload: dict[str, Any]) -> AgentEvent | None:
        wire_type = payload.get("type")
        if not isinstance(wire_type, str):
            return None
        props = payload.get("properties")
        props = props if isinstance(props, dict) else {}
        part = props.get("part") if isinstance(props.get("part"), dict) else {}
        info = props.get("info") if isinstance(props.get("info"), dict) else {}
        message = info if wire_type.startswith("message.") else {}

        status = status_value(props.get("status"))
        if wire_type == "session.idle":
            status = "idle"
        elif wire_type == "session.error":
            status = "error"

        event_type = EVENT_TYPE_MAP.get(wire_type)
        if event_type is None:
            if status is None:
                logger.debug("Dropping OpenCode event %s for agent %s", wire_type, agent_id)
                return None
            event_type = AgentEventType.STATUS_CHANGED

        session_id = props.get("sessionID") or part.get("sessionID") or message.get("sessionID")
        if event_type == AgentEventType.SESSION_CREATED and not session_id:
            session_id = info.get("id")

        return AgentEvent(
            type=event_type,
            agent_id=agent_id,
            session_id=session_id,
            message_id=props.get("messageID") or part.get("messageID") or message.get("id"),
            content=props.get("content") or part.get("text"),
            tool_name=props.get("toolName") or part.get("tool"),
            status=status,
            error=_error_text(props.get("error")),
            properties={
                "originalType": wire_type,
                "partId": props.get("partID") or part.get("id") or "",
                "role": message.get("role"),
                "parentId": message.get("parentID"),
            },
        )


def _error_text(raw: Any) -> str | None:
    if raw is None or isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        data = raw.get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
        if isinstance(raw.get("message"), str):
            return raw["message"]
    return str(raw)
