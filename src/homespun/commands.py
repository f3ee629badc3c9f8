"""Process execution.

Two shapes of process use:

- :class:`SubprocessCommandRunner` runs a command to completion and
  captures its output (used by the CLI harness and readiness checks).
- :class:`SubprocessLauncher` starts a long-lived server process and
  returns a :class:`ManagedProcess` handle that can be terminated later.

Both use ``asyncio.create_subprocess_exec`` with an argv list; nothing is
passed through a shell.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 4000


@dataclass(slots=True)
class CommandResult:
    success: bool
    output: str = ""
    error: str = ""
    exit_code: int = 0


class CommandRunner(Protocol):
    async def run(
        self,
        command: str,
        arguments: str | Sequence[str],
        working_directory: str,
        *,
        timeout: float | None = None,
    ) -> CommandResult: ...


def _argv(arguments: str | Sequence[str]) -> list[str]:
    return shlex.split(arguments) if isinstance(arguments, str) else list(arguments)


class SubprocessCommandRunner:
    """Run a command and capture stdout/stderr.

    Launch errors and timeouts are reported in the result with exit code
    ``-1`` rather than raised.
    """

    def __init__(self, env: dict[str, str] | None = None) -> None:
        self._env = env

    async def run(
        self,
        command: str,
        arguments: str | Sequence[str],
        working_directory: str,
        *,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = _argv(arguments)
        logger.debug("Running %s %s in %s", command, argv, working_directory)
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=working_directory,
                env=self._merged_env(),
            )
        except OSError as exc:
            return CommandResult(success=False, error=str(exc), exit_code=-1)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            return CommandResult(
                success=False,
                error=f"{command} timed out after {timeout}s",
                exit_code=-1,
            )
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        exit_code = process.returncode if process.returncode is not None else -1
        return CommandResult(
            success=exit_code == 0,
            output=stdout.decode("utf-8", errors="replace"),
            error=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    def _merged_env(self) -> dict[str, str] | None:
        if not self._env:
            return None
        return {**os.environ, **self._env}


# ---------------------------------------------------------------------------
# Long-lived processes
# ---------------------------------------------------------------------------


class ManagedProcess(Protocol):
    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    @property
    def stderr_tail(self) -> str: ...

    async def terminate(self, timeout: float = 5.0) -> None: ...


class ProcessLauncher(Protocol):
    async def launch(
        self,
        binary: str,
        args: Sequence[str],
        *,
        cwd: str,
        env: dict[str, str] | None = None,
    ) -> ManagedProcess: ...


@dataclass(slots=True)
class SubprocessHandle:
    """A running child process with its output drained in the background."""

    process: asyncio.subprocess.Process
    stderr_tail: str = ""
    _pumps: list[asyncio.Task[None]] = field(default_factory=list)

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    async def terminate(self, timeout: float = 5.0) -> None:
        if self.process.returncode is None:
            self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=timeout)
            except TimeoutError:
                self.process.kill()
                await self.process.wait()
        for pump in self._pumps:
            pump.cancel()

    async def _drain(self, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip("\n")
            if name == "stderr" and text:
                self.stderr_tail = (self.stderr_tail + "\n" + text).strip()[-_STDERR_TAIL_CHARS:]
            logger.debug("[pid %s %s] %s", self.process.pid, name, text)


class SubprocessLauncher:
    async def launch(
        self,
        binary: str,
        args: Sequence[str],
        *,
        cwd: str,
        env: dict[str, str] | None = None,
    ) -> SubprocessHandle:
        workdir = Path(cwd).resolve()
        if not workdir.is_dir():
            raise FileNotFoundError(f"Working directory does not exist: {workdir}")

        logger.info("Starting %s %s in %s", binary, " ".join(args), workdir)
        process = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workdir),
            env={**os.environ, **env} if env else None,
        )
        handle = SubprocessHandle(process=process)
        handle._pumps.extend([
            asyncio.create_task(handle._drain(process.stdout, "stdout")),
            asyncio.create_task(handle._drain(process.stderr, "stderr")),
        ])
        logger.info("Started %s with pid %s", binary, process.pid)
        return handle


_EXTRA_SEARCH_DIRS = (
    "~/.npm-global/bin",
    "~/.local/bin",
    "~/.local/share/pnpm",
    "~/.yarn/bin",
    "~/.volta/bin",
    "~/.asdf/shims",
    "/usr/local/bin",
    "/opt/homebrew/bin",
)


def resolve_executable(name: str) -> str:
    """Locate *name* on PATH or in common Node.js install locations.

    Falls back to *name* itself so that the launch fails with a clear error.
    """
    if os.path.isabs(name) and os.path.isfile(name):
        return name
    found = shutil.which(name)
    if found:
        return found
    for directory in _EXTRA_SEARCH_DIRS:
        candidate = Path(directory).expanduser() / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    logger.warning("Could not find %r on PATH or in common install locations", name)
    return name
