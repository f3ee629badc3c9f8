"""Tests for process execution helpers."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from homespun.commands import SubprocessCommandRunner, SubprocessLauncher, resolve_executable


class TestSubprocessCommandRunner:
    @pytest.mark.asyncio
    async def test_success(self, tmp_path: Path) -> None:
        result = await SubprocessCommandRunner().run(
            sys.executable, ["-c", "import os; print(os.getcwd())"], str(tmp_path),
        )
        assert result.success
        assert result.exit_code == 0
        assert Path(result.output.strip()).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_string_arguments_are_split(self, tmp_path: Path) -> None:
        result = await SubprocessCommandRunner().run(sys.executable, "-c 'print(\"a b\")'", str(tmp_path))
        assert result.output.strip() == "a b"

    @pytest.mark.asyncio
    async def test_failure_captures_stderr(self, tmp_path: Path) -> None:
        result = await SubprocessCommandRunner().run(
            sys.executable, ["-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"], str(tmp_path),
        )
        assert not result.success
        assert result.exit_code == 3
        assert result.error == "bad"

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path: Path) -> None:
        result = await SubprocessCommandRunner().run("homespun-no-such-binary", [], str(tmp_path))
        assert not result.success
        assert result.exit_code == -1

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path) -> None:
        result = await SubprocessCommandRunner().run(
            sys.executable, ["-c", "import time; time.sleep(30)"], str(tmp_path), timeout=0.5,
        )
        assert not result.success
        assert result.exit_code == -1
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_extra_env(self, tmp_path: Path) -> None:
        runner = SubprocessCommandRunner(env={"HOMESPUN_TEST_VALUE": "42"})
        result = await runner.run(
            sys.executable, ["-c", "import os; print(os.environ['HOMESPUN_TEST_VALUE'])"], str(tmp_path),
        )
        assert result.output.strip() == "42"


class TestSubprocessLauncher:
    @pytest.mark.asyncio
    async def test_launch_and_terminate(self, tmp_path: Path) -> None:
        handle = await SubprocessLauncher().launch(
            sys.executable, ["-c", "import time; time.sleep(30)"], cwd=str(tmp_path),
        )
        assert handle.pid is not None
        assert handle.returncode is None
        await handle.terminate(timeout=5)
        assert handle.returncode is not None

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            await SubprocessLauncher().launch(sys.executable, ["-c", "pass"], cwd=str(tmp_path / "missing"))


class TestResolveExecutable:
    def test_absolute_path(self) -> None:
        assert resolve_executable(sys.executable) == sys.executable

    def test_unknown_falls_back_to_name(self) -> None:
        assert resolve_executable("homespun-no-such-binary") == "homespun-no-such-binary"
