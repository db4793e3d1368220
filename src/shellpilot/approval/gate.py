"""Confirmation gate between proposed commands and the terminal pool."""

from __future__ import annotations

import asyncio
import logging as py_logging
import os
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from shellpilot.approval.policy import ApprovalPolicy
from shellpilot.errors import (
    ExitCode,
    InvariantViolation,
    ShellPilotError,
    StaleApprovalSignal,
)
from shellpilot.logging import format_event
from shellpilot.terminal.models import ProcessResult
from shellpilot.terminal.pool import TerminalPool

logger = py_logging.getLogger(__name__)


class ApprovalState(str, Enum):
    PROPOSED = "proposed"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


_TRANSITIONS: dict[ApprovalState | None, frozenset[ApprovalState]] = {
    None: frozenset({ApprovalState.PROPOSED}),
    ApprovalState.PROPOSED: frozenset({ApprovalState.PENDING_APPROVAL, ApprovalState.AUTO_APPROVED}),
    ApprovalState.PENDING_APPROVAL: frozenset({ApprovalState.APPROVED, ApprovalState.REJECTED}),
}


_SETTLED_STATES = frozenset({ApprovalState.APPROVED, ApprovalState.REJECTED, ApprovalState.AUTO_APPROVED})
DEFAULT_STATE_HISTORY = 256


class CommandStatus(str, Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PendingCommand:
    command_id: str
    command: str
    working_directory: str
    description: str = ""
    auto_approve: bool = False
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CommandOutcome:
    command: PendingCommand
    status: CommandStatus
    result: ProcessResult | None = None
    error: str = ""

    @property
    def executed(self) -> bool:
        return self.status == CommandStatus.EXECUTED

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.succeeded

    def describe(self, line_limit: int = 500) -> str:
        text = self.command.command
        if self.status == CommandStatus.REJECTED:
            return f"Command `{text}` was rejected by the user."
        if self.status == CommandStatus.FAILED or self.result is None:
            return f"Command `{text}` could not be executed: {self.error or 'unknown error'}"

        output = self.result.tail(line_limit).strip()
        if self.result.succeeded:
            return output or f"Command `{text}` ran successfully without output."
        if self.result.exit_code is not None:
            status = f"exit code {self.result.exit_code}"
        else:
            status = f"signal {self.result.signal or 'unknown'}"
        summary = f"Command `{text}` failed with {status}."
        return f"{summary}\n{output}" if output else summary


class ApprovalSurface(Protocol):
    def pending_command_surfaced(self, command: PendingCommand) -> None: ...

    def command_auto_approved(self, command: PendingCommand) -> None: ...

    def command_output(self, command: PendingCommand, line: str) -> None: ...

    def command_resolved(self, command: PendingCommand, state: ApprovalState) -> None: ...


def _new_command_id() -> str:
    return f"cmd-{uuid.uuid4().hex[:12]}"


class CommandConfirmationGate:
    def __init__(
        self,
        pool: TerminalPool,
        *,
        policy: ApprovalPolicy | None = None,
        surface: ApprovalSurface | None = None,
        strict: bool = False,
        id_factory: Callable[[], str] | None = None,
        state_history: int = DEFAULT_STATE_HISTORY,
    ) -> None:
        self.pool = pool
        self.policy = policy or ApprovalPolicy()
        self.surface = surface
        self.strict = strict
        self._id_factory = id_factory or _new_command_id
        self._states: dict[str, ApprovalState] = {}
        self._settled: deque[str] = deque()
        self._state_history = max(state_history, 1)
        self._pending: dict[str, PendingCommand] = {}
        self._decisions: dict[str, asyncio.Future[bool]] = {}

    @property
    def busy(self) -> bool:
        return bool(self._pending)

    def pending(self) -> list[PendingCommand]:
        return list(self._pending.values())

    def state(self, command_id: str) -> ApprovalState | None:
        return self._states.get(command_id)

    async def submit(
        self,
        command: str,
        working_directory: str | Path | None = None,
        description: str = "",
        *,
        requires_approval: bool = True,
    ) -> CommandOutcome:
        if self.busy:
            raise ShellPilotError(
                "Another command is awaiting approval.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Approve or reject the pending command first.",
            )
        needs_approval = self.policy.requires_approval(command, requested=requires_approval)
        pending = PendingCommand(
            command_id=self._id_factory(),
            command=command,
            working_directory=str(working_directory) if working_directory else os.getcwd(),
            description=description,
            auto_approve=not needs_approval,
        )
        self._transition(pending.command_id, ApprovalState.PROPOSED)

        if not needs_approval:
            self._transition(pending.command_id, ApprovalState.AUTO_APPROVED)
            self._notify("command_auto_approved", pending)
            return await self._execute(pending)

        decision: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[pending.command_id] = pending
        self._decisions[pending.command_id] = decision
        self._transition(pending.command_id, ApprovalState.PENDING_APPROVAL)
        self._notify("pending_command_surfaced", pending)

        try:
            approved = await decision
        except asyncio.CancelledError:
            if self._states.get(pending.command_id) == ApprovalState.PENDING_APPROVAL:
                self._resolve(pending.command_id, approved=False)
            raise

        if not approved:
            return CommandOutcome(command=pending, status=CommandStatus.REJECTED)
        return await self._execute(pending)

    def approve(self, command_id: str) -> bool:
        return self._resolve(command_id, approved=True)

    def reject(self, command_id: str) -> bool:
        return self._resolve(command_id, approved=False)

    def cancel_all(self) -> int:
        ids = list(self._pending)
        for command_id in ids:
            self._resolve(command_id, approved=False)
        return len(ids)

    def _resolve(self, command_id: str, *, approved: bool) -> bool:
        current = self._states.get(command_id)
        if current != ApprovalState.PENDING_APPROVAL:
            signal = StaleApprovalSignal(
                f"Command is not pending approval: {command_id}",
                hint=f"Current state: {current.value if current else 'unknown'}.",
            )
            if self.strict:
                raise signal
            logger.warning("Ignoring stale approval signal: %s", signal)
            return False

        pending = self._pending.pop(command_id)
        decision = self._decisions.pop(command_id)
        target = ApprovalState.APPROVED if approved else ApprovalState.REJECTED
        self._transition(command_id, target)
        if not decision.done():
            decision.set_result(approved)
        self._notify("command_resolved", pending, target)
        return True

    def _transition(self, command_id: str, target: ApprovalState) -> None:
        current = self._states.get(command_id)
        if target not in _TRANSITIONS.get(current, frozenset()):
            raise InvariantViolation(
                f"Illegal approval transition for {command_id}: "
                f"{current.value if current else 'none'} -> {target.value}",
            )
        self._states[command_id] = target
        if target in _SETTLED_STATES:
            self._forget_settled(command_id)
        logger.debug(format_event("approval", command=command_id, state=target.value))

    def _forget_settled(self, command_id: str) -> None:
        # Only the most recent settled ids stay queryable through state().
        self._settled.append(command_id)
        while len(self._settled) > self._state_history:
            self._states.pop(self._settled.popleft(), None)

    async def _execute(self, pending: PendingCommand) -> CommandOutcome:
        try:
            session = self.pool.get_or_create(pending.working_directory)
            handle = await self.pool.run_command(session, pending.command)
        except InvariantViolation:
            raise
        except ShellPilotError as exc:
            logger.warning("Command could not be executed command=%s error=%s", pending.command_id, exc)
            return CommandOutcome(command=pending, status=CommandStatus.FAILED, error=str(exc))

        try:
            async for line in handle.lines():
                self._notify("command_output", pending, line)
            result = await handle.wait()
        except BaseException:
            if not handle.completed:
                handle.terminate()
            raise
        logger.info(
            "Command finished command=%s exit_code=%s session=%s",
            pending.command_id,
            result.exit_code,
            session.session_id,
        )
        return CommandOutcome(command=pending, status=CommandStatus.EXECUTED, result=result)

    def _notify(self, event: str, *args: object) -> None:
        if self.surface is None:
            return
        handler = getattr(self.surface, event, None)
        if callable(handler):
            handler(*args)
