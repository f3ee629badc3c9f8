"""Tests for the Claude CLI harness."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from homespun.agents.claude_cli import ClaudeCliHarness, cli_model, parse_cli_output
from homespun.agents.types import AgentInstanceStatus, AgentPrompt, AgentStartOptions
from homespun.commands import CommandResult
from homespun.config import ClaudeCliConfig
from homespun.errors import ProcessError, StartFailedError
from tests.helpers import FakeCommandRunner, wait_for


def _reply(text: str, session_id: str = "cli-sess", **extra: object) -> CommandResult:
    payload = {"type": "result", "result": text, "is_error": False, "session_id": session_id,
               "total_cost_usd": 0.01, "num_turns": 1, **extra}
    return CommandResult(success=True, output=json.dumps(payload))


def _harness(runner: FakeCommandRunner, **config: object) -> ClaudeCliHarness:
    return ClaudeCliHarness(ClaudeCliConfig(**config), runner=runner, prompt_timeout=2.0)


def _options(workdir: Path, **kwargs: object) -> AgentStartOptions:
    return AgentStartOptions(entity_id="issue-1", working_directory=str(workdir), **kwargs)


class TestParseOutput:
    def test_plain_json(self) -> None:
        assert parse_cli_output('{"result": "ok"}')["result"] == "ok"

    def test_last_json_line_after_preamble(self) -> None:
        raw = 'Update available\n{"result": "first"}\n{"result": "last"}\n'
        assert parse_cli_output(raw)["result"] == "last"

    @pytest.mark.parametrize("raw", ["", "   ", "not json", "[1, 2]"])
    def test_rejects(self, raw: str) -> None:
        with pytest.raises(ValueError):
            parse_cli_output(raw)


class TestBuildArgs:
    def test_defaults(self) -> None:
        harness = _harness(FakeCommandRunner())
        args = harness.build_args(AgentPrompt(text="hi"), session_id=None, model=None)
        assert args == ["-p", "hi", "--output-format", "json", "--dangerously-skip-permissions"]

    def test_everything(self) -> None:
        harness = _harness(FakeCommandRunner(), skip_permissions=False, allowed_tools=["Read", "Edit"])
        prompt = AgentPrompt(text="fix", model="anthropic/claude-opus-4-5", system_prompt="Be brief",
                             file_paths=["a.py"])
        args = harness.build_args(prompt, session_id="s1", model="sonnet")
        assert args == [
            "-p", "fix\n\n@a.py",
            "--output-format", "json",
            "--allowedTools", "Read,Edit",
            "--model", "claude-opus-4-5",
            "--append-system-prompt", "Be brief",
            "--resume", "s1",
        ]

    def test_cli_model(self) -> None:
        assert cli_model("anthropic/claude-sonnet-4-5") == "claude-sonnet-4-5"
        assert cli_model("opus") == "opus"
        assert cli_model(None) is None
        assert cli_model("anthropic/") is None


class TestClaudeCliLifecycle:
    @pytest.mark.asyncio
    async def test_start_checks_binary(self, workdir: Path) -> None:
        runner = FakeCommandRunner()
        harness = _harness(runner)
        agent = await harness.start_agent(_options(workdir))
        try:
            assert agent.status == AgentInstanceStatus.RUNNING
            assert agent.active_session_id is None
            assert runner.calls == [["--version"]]
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_missing_binary_fails_start(self, workdir: Path) -> None:
        runner = FakeCommandRunner()
        runner.version_result = CommandResult(success=False, error="claude: not found", exit_code=-1)
        harness = _harness(runner)
        with pytest.raises(StartFailedError, match="not found"):
            await harness.start_agent(_options(workdir))
        assert harness.get_agent_for_entity("issue-1").status == AgentInstanceStatus.FAILED

    @pytest.mark.asyncio
    async def test_prompt_resumes_session(self, workdir: Path) -> None:
        runner = FakeCommandRunner(lambda argv: _reply("Done."))
        harness = _harness(runner)
        agent = await harness.start_agent(_options(workdir, model="anthropic/claude-sonnet-4-5"))
        try:
            message = await harness.send_prompt(agent.agent_id, AgentPrompt(text="Do it"))
            assert message.text == "Done."
            await wait_for(lambda: harness.get_agent_status(agent.agent_id).active_session_id == "cli-sess")

            await harness.send_prompt(agent.agent_id, AgentPrompt(text="Again"))
            first, second = runner.calls[1], runner.calls[2]
            assert "--resume" not in first
            assert first[first.index("--model") + 1] == "claude-sonnet-4-5"
            assert second[-2:] == ["--resume", "cli-sess"]
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_initial_prompt(self, workdir: Path) -> None:
        runner = FakeCommandRunner(lambda argv: _reply("started"))
        harness = _harness(runner)
        await harness.start_agent(_options(workdir, initial_prompt=AgentPrompt(text="Begin")))
        try:
            await wait_for(lambda: len(runner.calls) == 2)
            assert runner.calls[1][:2] == ["-p", "Begin"]
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_prompt_after_initial_prompt_gets_its_own_reply(self, workdir: Path) -> None:
        runner = FakeCommandRunner(lambda argv: _reply(f"reply to {argv[1]}"))
        harness = _harness(runner)
        agent = await harness.start_agent(_options(workdir, initial_prompt=AgentPrompt(text="first")))
        try:
            message = await harness.send_prompt(agent.agent_id, AgentPrompt(text="second"))
            assert message.text == "reply to second"
            assert [call[1] for call in runner.calls[1:]] == ["first", "second"]
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_concurrent_prompts_get_their_own_replies(self, workdir: Path) -> None:
        runner = FakeCommandRunner(lambda argv: _reply(f"reply to {argv[1]}"))
        harness = _harness(runner)
        agent = await harness.start_agent(_options(workdir))
        try:
            a, b = await asyncio.gather(
                harness.send_prompt(agent.agent_id, AgentPrompt(text="A")),
                harness.send_prompt(agent.agent_id, AgentPrompt(text="B")),
            )
            assert (a.text, b.text) == ("reply to A", "reply to B")
            assert a.id != b.id
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_non_zero_exit_fails_agent(self, workdir: Path) -> None:
        runner = FakeCommandRunner(lambda argv: CommandResult(success=False, error="rate limited", exit_code=1))
        harness = _harness(runner)
        agent = await harness.start_agent(_options(workdir))
        with pytest.raises(ProcessError, match="rate limited"):
            await harness.send_prompt(agent.agent_id, AgentPrompt(text="hi"))
        await wait_for(lambda: harness.get_agent_status(agent.agent_id).status == AgentInstanceStatus.FAILED)

    @pytest.mark.asyncio
    async def test_reported_error_fails_prompt(self, workdir: Path) -> None:
        runner = FakeCommandRunner(lambda argv: _reply("Credit balance too low", is_error=True))
        harness = _harness(runner)
        agent = await harness.start_agent(_options(workdir))
        with pytest.raises(ProcessError, match="Credit balance"):
            await harness.send_prompt(agent.agent_id, AgentPrompt(text="hi"))

    @pytest.mark.asyncio
    async def test_stop(self, workdir: Path) -> None:
        harness = _harness(FakeCommandRunner())
        agent = await harness.start_agent(_options(workdir))
        await harness.stop_agent(agent.agent_id)
        assert harness.get_agent_status(agent.agent_id).status == AgentInstanceStatus.STOPPED
        assert await harness.is_healthy(agent.agent_id) is False
