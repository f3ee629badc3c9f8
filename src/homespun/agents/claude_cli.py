"""Claude CLI harness: one ``claude -p`` invocation per prompt.

There is no long-lived server. An instance is a working directory plus
the CLI session id returned by the last call; each prompt resumes that
session. Results are turned into events on an in-memory queue which is
the instance's upstream event source. A failed call (non-zero exit,
``is_error`` or unparsable output) ends that source with an error, which
fails the instance.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from homespun.agents.harness import BaseHarness
from homespun.agents.types import AgentEvent, AgentEventType, AgentInstance, AgentPrompt, AgentStartOptions
from homespun.commands import CommandRunner, SubprocessCommandRunner, resolve_executable
from homespun.config import ClaudeCliConfig
from homespun.errors import ProcessError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CliRuntime:
    agent_id: str
    working_directory: str
    model: str | None = None
    session_id: str | None = None
    queue: asyncio.Queue[AgentEvent | BaseException] = field(default_factory=asyncio.Queue)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: set[asyncio.Task[None]] = field(default_factory=set)


def parse_cli_output(raw: str) -> dict[str, Any]:
    """Parse ``claude --output-format json`` output.

    Expected schema::

        {"result": "...", "is_error": false, "session_id": "...", ...}

    Falls back to the last JSON line when the output has a preamble.
    """
    if not raw.strip():
        raise ValueError("empty output from claude")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        for line in reversed(raw.strip().splitlines()):
            try:
                data = json.loads(line)
                break
            except json.JSONDecodeError:
                continue
        else:
            raise ValueError(f"unparsable output from claude: {raw[:500]}") from None
    if not isinstance(data, dict):
        raise ValueError(f"unexpected output from claude: {raw[:500]}")
    return data


def cli_model(model: str | None) -> str | None:
    """``provider/model`` -> ``model``; bare names pass through."""
    if not model:
        return None
    return model.rpartition("/")[2] or None


class ClaudeCliHarness(BaseHarness):
    harness_type = "claude"

    def __init__(
        self,
        config: ClaudeCliConfig | None = None,
        *,
        runner: CommandRunner | None = None,
        **kwargs: Any,
    ) -> None:
        cfg = config or ClaudeCliConfig()
        super().__init__(start_timeout=cfg.start_timeout_seconds, **kwargs)
        self._config = cfg
        self._runner = runner or SubprocessCommandRunner()

    def _executable(self) -> str:
        return resolve_executable(self._config.executable)

    def build_args(self, prompt: AgentPrompt, *, session_id: str | None, model: str | None) -> list[str]:
        text = prompt.text
        if prompt.file_paths:
            text = text + "\n\n" + "\n".join(f"@{path}" for path in prompt.file_paths)
        args = ["-p", text, "--output-format", "json"]
        if self._config.skip_permissions:
            args.append("--dangerously-skip-permissions")
        if self._config.allowed_tools:
            args.extend(["--allowedTools", ",".join(self._config.allowed_tools)])
        if chosen := cli_model(prompt.model or model):
            args.extend(["--model", chosen])
        if prompt.system_prompt:
            args.extend(["--append-system-prompt", prompt.system_prompt])
        if session_id:
            args.extend(["--resume", session_id])
        return args

    async def _launch(self, agent_id: str, options: AgentStartOptions) -> CliRuntime:
        return CliRuntime(
            agent_id=agent_id,
            working_directory=options.working_directory,
            model=options.model,
        )

    async def _check_health(self, runtime: CliRuntime) -> bool:
        result = await self._runner.run(
            self._executable(), ["--version"], runtime.working_directory, timeout=self._health_timeout,
        )
        return result.success

    async def _wait_until_ready(self, agent_id: str, runtime: CliRuntime) -> None:
        result = await self._runner.run(self._executable(), ["--version"], runtime.working_directory)
        if not result.success:
            raise ProcessError(
                f"claude --version failed with code {result.exit_code}: {result.error.strip()[:500]}",
                agent_id=agent_id,
                exit_code=result.exit_code,
                stderr=result.error,
            )
        logger.debug("Agent %s using %s", agent_id, result.output.strip())

    async def _event_source(self, agent_id: str, runtime: CliRuntime) -> AsyncIterator[AgentEvent]:
        yield AgentEvent(type=AgentEventType.CONNECTED, agent_id=agent_id)
        while True:
            item = await runtime.queue.get()
            if isinstance(item, BaseException):
                raise item
            yield item

    async def _post_prompt(self, record: AgentInstance, runtime: CliRuntime, prompt: AgentPrompt) -> str:
        message_id = uuid.uuid4().hex
        task = asyncio.create_task(self._run_prompt(runtime, prompt, message_id))
        runtime.tasks.add(task)
        task.add_done_callback(runtime.tasks.discard)
        return message_id

    async def _run_prompt(self, runtime: CliRuntime, prompt: AgentPrompt, message_id: str) -> None:
        agent_id = runtime.agent_id
        async with runtime.lock:
            session_id = runtime.session_id
            runtime.queue.put_nowait(AgentEvent(
                type=AgentEventType.MESSAGE_CREATED,
                agent_id=agent_id,
                session_id=session_id,
                message_id=message_id,
            ))
            try:
                result = await self._runner.run(
                    self._executable(),
                    self.build_args(prompt, session_id=session_id, model=runtime.model),
                    runtime.working_directory,
                )
                if not result.success:
                    raise ProcessError(
                        f"claude exited with code {result.exit_code}: {result.error.strip()[:500]}",
                        agent_id=agent_id,
                        exit_code=result.exit_code,
                        stderr=result.error,
                    )
                try:
                    data = parse_cli_output(result.output)
                except ValueError as exc:
                    raise ProcessError(str(exc), agent_id=agent_id) from exc
                if data.get("is_error"):
                    raise ProcessError(
                        f"claude reported an error: {str(data.get('result', ''))[:500]}",
                        agent_id=agent_id,
                    )
            except ProcessError as exc:
                logger.warning("Prompt for agent %s failed: %s", agent_id, exc)
                runtime.queue.put_nowait(exc)
                return

            new_session = data.get("session_id") or session_id
            if new_session and new_session != session_id:
                runtime.session_id = new_session
                runtime.queue.put_nowait(AgentEvent(
                    type=AgentEventType.SESSION_CREATED, agent_id=agent_id, session_id=new_session,
                ))
            runtime.queue.put_nowait(AgentEvent(
                type=AgentEventType.MESSAGE_UPDATED,
                agent_id=agent_id,
                session_id=new_session,
                message_id=message_id,
                content=str(data.get("result") or ""),
                properties={"cost_usd": data.get("total_cost_usd"), "num_turns": data.get("num_turns")},
            ))
            runtime.queue.put_nowait(AgentEvent(
                type=AgentEventType.STATUS_CHANGED,
                agent_id=agent_id,
                session_id=new_session,
                message_id=message_id,
                status="idle",
            ))

    async def _terminate(self, runtime: CliRuntime) -> None:
        tasks = list(runtime.tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
