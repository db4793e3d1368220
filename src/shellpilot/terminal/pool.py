"""Reusable terminal sessions keyed by working directory."""

from __future__ import annotations

import logging as py_logging
import os
from collections import deque
from pathlib import Path

from shellpilot.errors import ExitCode, InvariantViolation, ShellPilotError, SpawnError
from shellpilot.logging import format_event
from shellpilot.terminal.models import TerminalEvent, TerminalSession
from shellpilot.terminal.process import ProcessHandle, ProcessRunner

logger = py_logging.getLogger(__name__)


class TerminalPool:
    def __init__(
        self,
        *,
        runner: ProcessRunner | None = None,
        max_sessions: int = 16,
        event_limit: int = 1000,
    ) -> None:
        if max_sessions < 1:
            raise ShellPilotError(
                f"Invalid max session count: {max_sessions}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a positive session limit.",
            )
        self.runner = runner or ProcessRunner()
        self.max_sessions = max_sessions
        self._sessions: dict[str, TerminalSession] = {}
        self._handles: dict[str, ProcessHandle] = {}
        self._events: deque[TerminalEvent] = deque(maxlen=max(event_limit, 1))
        self._next_id = 1

    def list_sessions(self) -> list[TerminalSession]:
        return list(self._sessions.values())

    def list_events(self) -> list[TerminalEvent]:
        return list(self._events)

    def get(self, session_id: str) -> TerminalSession | None:
        return self._sessions.get(session_id)

    def active_handle(self, session_id: str) -> ProcessHandle | None:
        return self._handles.get(session_id)

    def get_or_create(self, working_directory: str | Path | None = None) -> TerminalSession:
        target = _normalize_directory(working_directory)
        for session in self._sessions.values():
            if session.working_directory == target and not session.busy:
                self._record(session.session_id, "reuse", f"Reusing session for {target}.")
                return session

        self._make_room()
        number = self._next_id
        self._next_id += 1
        session = TerminalSession(
            session_id=f"terminal-{number}",
            working_directory=target,
            shell=self.runner.shell,
            name=f"ShellPilot Terminal {number}",
        )
        self._sessions[session.session_id] = session
        self._record(session.session_id, "create", f"Created session for {target}.")
        return session

    async def run_command(self, session: TerminalSession, command: str) -> ProcessHandle:
        if self._sessions.get(session.session_id) is not session:
            raise ShellPilotError(
                f"Session not found: {session.session_id}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Request a session from the pool before running commands.",
            )
        if session.busy:
            raise InvariantViolation(
                f"Session is busy: {session.session_id}",
                hint="Wait for the running command or request another session.",
            )

        handle = self.runner.prepare(session, command)
        session.busy = True
        session.last_command = command
        self._handles[session.session_id] = handle
        handle.add_done_callback(self._on_completed)
        try:
            await handle.start()
        except SpawnError as exc:
            self._release(handle)
            self._record(session.session_id, "spawn-failed", exc.hint or exc.message)
            raise
        session.commands_run += 1
        self._record(session.session_id, "run", command)
        return handle

    def terminate(self, session_id: str) -> None:
        handle = self._handles.get(session_id)
        if handle is None:
            return
        handle.terminate()
        self._record(session_id, "terminate", "Termination requested.")

    def dispose(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.debug("Dispose ignored for unknown session=%s", session_id)
            return
        handle = self._handles.pop(session_id, None)
        if handle is not None:
            handle.terminate()
        session.busy = False
        self._record(session_id, "dispose", "Session disposed.")

    def dispose_all(self) -> None:
        for session_id in list(self._sessions):
            self.dispose(session_id)

    def _make_room(self) -> None:
        if len(self._sessions) < self.max_sessions:
            return
        for session in self._sessions.values():
            if not session.busy:
                self.dispose(session.session_id)
                return
        raise ShellPilotError(
            f"Terminal limit reached: {self.max_sessions}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Wait for a running command to finish before starting another.",
        )

    def _on_completed(self, handle: ProcessHandle) -> None:
        self._release(handle)
        self._record(
            handle.session_id,
            "complete",
            f"exit_code={handle.exit_code} command={handle.command}",
        )

    def _release(self, handle: ProcessHandle) -> None:
        if self._handles.get(handle.session_id) is handle:
            del self._handles[handle.session_id]
        session = self._sessions.get(handle.session_id)
        if session is not None:
            session.busy = False

    def _record(self, session_id: str, step: str, message: str) -> None:
        self._events.append(TerminalEvent(session_id=session_id, step=step, message=message))
        logger.info(format_event("terminal", session=session_id, step=step, message=message))


def _normalize_directory(working_directory: str | Path | None) -> str:
    if working_directory is None or not str(working_directory).strip():
        return os.getcwd()
    return os.path.abspath(os.path.expanduser(str(working_directory).strip()))
