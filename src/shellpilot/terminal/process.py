"""Asyncio-backed command execution with coalesced line streaming."""

from __future__ import annotations

import asyncio
import codecs
import logging as py_logging
import os
import signal as py_signal
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress

from shellpilot.errors import ExitCode, ShellPilotError, SpawnError
from shellpilot.terminal.models import ProcessResult, TerminalSession

logger = py_logging.getLogger(__name__)

DEFAULT_COALESCE_WINDOW = 0.1
DEFAULT_MAX_COALESCE = 1.0
DEFAULT_TERMINATION_GRACE = 5.0
_READ_SIZE = 4096

ProcessSpawn = Callable[..., Awaitable[asyncio.subprocess.Process]]
CompletionCallback = Callable[["ProcessHandle"], None]


def default_shell(platform: str = sys.platform) -> str:
    if platform == "win32":
        return os.environ.get("COMSPEC") or "cmd.exe"
    return os.environ.get("SHELL") or "/bin/sh"


def build_shell_command(shell: str, command: str, *, platform: str = sys.platform) -> list[str]:
    if not shell.strip():
        raise ShellPilotError(
            "Shell program cannot be empty.",
            code=ExitCode.VALIDATION_ERROR,
            hint="Configure a shell or unset it to use the platform default.",
        )
    if not command.strip():
        raise ShellPilotError(
            "Command cannot be empty.",
            code=ExitCode.VALIDATION_ERROR,
            hint="Provide a shell command to run.",
        )
    if platform == "win32":
        return [shell, "/c", command]
    return [shell, "-c", command]


def _session_kwargs() -> dict[str, bool]:
    if sys.platform == "win32":
        return {}
    return {"start_new_session": True}


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the command's whole process group, not just the shell."""
    if sys.platform == "win32":
        with suppress(ProcessLookupError):
            if sig == py_signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        return
    # The shell leads its own session, so its pid is the group id even after it has been reaped.
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, sig)


def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


class LineBuffer:
    """Merged stdout/stderr text split into lines in arrival order."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []
        self._pending = ""

    @property
    def output(self) -> str:
        return "".join(self._parts)

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes) -> None:
        self._append(self._decoder.decode(chunk))

    def drain(self) -> list[str]:
        """Return complete lines, oldest first; the trailing partial line stays buffered."""
        if "\n" not in self._pending:
            return []
        *complete, self._pending = self._pending.split("\n")
        return [_strip_cr(line) for line in complete]

    def flush(self) -> list[str]:
        self._append(self._decoder.decode(b"", final=True))
        lines = self.drain()
        if self._pending:
            lines.append(_strip_cr(self._pending))
            self._pending = ""
        return lines

    def _append(self, text: str) -> None:
        if text:
            self._parts.append(text)
            self._pending += text


class ProcessHandle:
    """One command execution: a finite line stream, a result, and a termination handle.

    Lines are delivered through ``lines()`` (single consumer) and the final
    ``ProcessResult`` through ``await wait()``. While output keeps arriving within
    ``coalesce_window`` seconds the handle stays hot and holds complete lines back;
    they are flushed once the output goes quiet, or every ``max_coalesce`` seconds
    for output that never does. A spawn failure raises ``SpawnError`` from
    ``start()`` and ``wait()`` and never produces a result.
    """

    def __init__(
        self,
        session_id: str,
        command: str,
        argv: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        coalesce_window: float = DEFAULT_COALESCE_WINDOW,
        max_coalesce: float = DEFAULT_MAX_COALESCE,
        termination_grace: float = DEFAULT_TERMINATION_GRACE,
        timeout: float | None = None,
        spawn: ProcessSpawn | None = None,
    ) -> None:
        self.session_id = session_id
        self.command = command
        self.argv = list(argv)
        self.cwd = cwd
        self._env = env
        self._coalesce_window = coalesce_window
        self._max_coalesce = max(max_coalesce, coalesce_window)
        self._termination_grace = termination_grace
        self._timeout = timeout
        self._spawn = spawn or asyncio.create_subprocess_exec

        self._buffer = LineBuffer()
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._emitted: list[str] = []
        self._finished = asyncio.Event()
        self._callbacks: list[CompletionCallback] = []

        self._process: asyncio.subprocess.Process | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._cool_timer: asyncio.TimerHandle | None = None
        self._kill_timer: asyncio.TimerHandle | None = None
        self._timeout_timer: asyncio.TimerHandle | None = None
        self._hot = False
        self._hot_since = 0.0
        self._started_at = 0.0
        self._terminating = False
        self._timed_out = False
        self._exit_code: int | None = None
        self._result: ProcessResult | None = None
        self._error: SpawnError | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def hot(self) -> bool:
        return self._hot

    @property
    def completed(self) -> bool:
        return self._result is not None

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def output(self) -> str:
        return self._buffer.output

    @property
    def error(self) -> SpawnError | None:
        return self._error

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    @property
    def terminating(self) -> bool:
        return self._terminating

    def add_done_callback(self, callback: CompletionCallback) -> None:
        """Run ``callback`` synchronously when the process completes."""
        if self._result is not None:
            callback(self)
            return
        self._callbacks.append(callback)

    async def start(self) -> None:
        if self._process is not None or self._error is not None:
            raise ShellPilotError(
                f"Process already started: {self.command}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Create a new handle for each command execution.",
            )
        loop = asyncio.get_running_loop()
        self._started_at = loop.time()
        logger.debug("Spawning session=%s argv=%s cwd=%s", self.session_id, self.argv, self.cwd)
        try:
            self._process = await self._spawn(
                *self.argv,
                cwd=self.cwd,
                env=self._env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **_session_kwargs(),
            )
        except OSError as exc:
            self._error = SpawnError(
                f"Failed to start command: {self.command}",
                hint=exc.strerror or str(exc) or "Check the shell program and working directory.",
            )
            self._queue.put_nowait(None)
            logger.error(
                "Spawn failed session=%s command=%s error=%s",
                self.session_id,
                self.command,
                exc,
            )
            raise self._error from exc

        if self._timeout:
            self._timeout_timer = loop.call_later(self._timeout, self._on_timeout)
        self._pump_task = loop.create_task(self._pump())

    async def lines(self) -> AsyncIterator[str]:
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line

    async def wait(self) -> ProcessResult:
        if self._error is not None:
            raise self._error
        if self._process is None:
            raise ShellPilotError(
                f"Process not started: {self.command}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Await start() before waiting for completion.",
            )
        await self._finished.wait()
        assert self._result is not None
        return self._result

    def terminate(self) -> None:
        """Send a graceful stop, escalating to a kill after the grace period.

        Never blocks; repeated calls and calls after exit are no-ops.
        """
        process = self._process
        if process is None or self._result is not None or self._terminating:
            return
        self._terminating = True
        logger.info("Terminating session=%s pid=%s", self.session_id, process.pid)
        _signal_group(process, py_signal.SIGTERM)
        loop = asyncio.get_running_loop()
        self._kill_timer = loop.call_later(self._termination_grace, self._force_kill)

    def _force_kill(self) -> None:
        self._kill_timer = None
        process = self._process
        if process is None or self._result is not None:
            return
        logger.warning(
            "Process ignored termination for %.1fs; killing session=%s pid=%s",
            self._termination_grace,
            self.session_id,
            process.pid,
        )
        _signal_group(process, getattr(py_signal, "SIGKILL", py_signal.SIGTERM))

    def _on_timeout(self) -> None:
        self._timeout_timer = None
        if self._result is not None:
            return
        self._timed_out = True
        logger.warning("Command timed out after %.1fs session=%s", self._timeout or 0.0, self.session_id)
        self.terminate()

    async def _pump(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None
        while True:
            chunk = await process.stdout.read(_READ_SIZE)
            if not chunk:
                break
            self._on_chunk(chunk)
        returncode = await process.wait()
        self._finish(returncode)

    def _on_chunk(self, chunk: bytes) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        self._buffer.feed(chunk)
        if not self._hot:
            self._hot = True
            self._hot_since = now
        elif now - self._hot_since >= self._max_coalesce:
            self._emit(self._buffer.drain())
            self._hot_since = now
        if self._cool_timer is not None:
            self._cool_timer.cancel()
        self._cool_timer = loop.call_later(self._coalesce_window, self._cool_down)

    def _cool_down(self) -> None:
        self._cool_timer = None
        self._hot = False
        self._emit(self._buffer.drain())

    def _emit(self, lines: list[str]) -> None:
        for line in lines:
            self._emitted.append(line)
            self._queue.put_nowait(line)

    def _finish(self, returncode: int) -> None:
        for timer in (self._cool_timer, self._kill_timer, self._timeout_timer):
            if timer is not None:
                timer.cancel()
        self._cool_timer = self._kill_timer = self._timeout_timer = None
        self._hot = False
        self._emit(self._buffer.flush())

        signal_name = ""
        exit_code: int | None = returncode
        if returncode < 0:
            exit_code = None
            try:
                signal_name = py_signal.Signals(-returncode).name
            except ValueError:
                signal_name = f"SIG{-returncode}"

        duration = asyncio.get_running_loop().time() - self._started_at
        result = ProcessResult(
            session_id=self.session_id,
            command=self.command,
            exit_code=exit_code,
            signal=signal_name,
            output=self._buffer.output,
            duration_seconds=duration,
            lines=tuple(self._emitted),
        )
        self._exit_code = exit_code
        self._result = result
        self._queue.put_nowait(None)
        self._finished.set()
        logger.debug(
            "Process completed session=%s exit_code=%s signal=%s lines=%s",
            self.session_id,
            exit_code,
            signal_name or "-",
            len(self._emitted),
        )
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)


class ProcessRunner:
    def __init__(
        self,
        *,
        shell: str = "",
        coalesce_window: float = DEFAULT_COALESCE_WINDOW,
        max_coalesce: float = DEFAULT_MAX_COALESCE,
        termination_grace: float = DEFAULT_TERMINATION_GRACE,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        spawn: ProcessSpawn | None = None,
    ) -> None:
        self.shell = shell.strip() or default_shell()
        self.coalesce_window = coalesce_window
        self.max_coalesce = max_coalesce
        self.termination_grace = termination_grace
        self.timeout = timeout or None
        self._extra_env = dict(env or {})
        self._spawn = spawn

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["TERM"] = "xterm-256color"
        env.update(self._extra_env)
        return env

    def prepare(self, session: TerminalSession, command: str) -> ProcessHandle:
        argv = build_shell_command(session.shell or self.shell, command)
        return ProcessHandle(
            session.session_id,
            command,
            argv,
            cwd=session.working_directory,
            env=self.build_env(),
            coalesce_window=self.coalesce_window,
            max_coalesce=self.max_coalesce,
            termination_grace=self.termination_grace,
            timeout=self.timeout,
            spawn=self._spawn,
        )

    async def run(self, session: TerminalSession, command: str) -> ProcessHandle:
        handle = self.prepare(session, command)
        await handle.start()
        return handle
