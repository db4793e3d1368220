"""Terminal-based approval prompts and output echo."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import TextIO

from shellpilot.approval.gate import ApprovalState, CommandConfirmationGate, PendingCommand

_YES = {"y", "yes"}


@dataclass(frozen=True)
class ConsoleEvent:
    command_id: str
    state: str
    message: str


class ConsoleApprovalSurface:
    def __init__(
        self,
        *,
        stream: TextIO | None = None,
        prompt: Callable[[str], str] = input,
        echo_output: bool = True,
    ) -> None:
        self.stream = stream or sys.stdout
        self.prompt = prompt
        self.echo_output = echo_output
        self.events: list[ConsoleEvent] = []
        self._gate: CommandConfirmationGate | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    def bind(self, gate: CommandConfirmationGate) -> None:
        self._gate = gate

    def pending_command_surfaced(self, command: PendingCommand) -> None:
        self.events.append(ConsoleEvent(command.command_id, "pending", command.command))
        self._write(f"Command to run in {command.working_directory}:")
        if command.description:
            self._write(f"  {command.description}")
        self._write(f"  $ {command.command}")
        task = asyncio.get_running_loop().create_task(self._ask(command))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def command_auto_approved(self, command: PendingCommand) -> None:
        self.events.append(ConsoleEvent(command.command_id, "auto-approved", command.command))
        self._write(f"Auto-running in {command.working_directory}: $ {command.command}")

    def command_output(self, command: PendingCommand, line: str) -> None:
        if self.echo_output:
            self._write(line)

    def command_resolved(self, command: PendingCommand, state: ApprovalState) -> None:
        self.events.append(ConsoleEvent(command.command_id, state.value, command.command))
        if state == ApprovalState.REJECTED:
            self._write("Command cancelled.")

    async def _ask(self, command: PendingCommand) -> None:
        loop = asyncio.get_running_loop()
        try:
            answer = await loop.run_in_executor(None, self.prompt, "Run this command? [y/N] ")
        except EOFError:
            answer = ""
        if self._gate is None:
            return
        if answer.strip().lower() in _YES:
            self._gate.approve(command.command_id)
        else:
            self._gate.reject(command.command_id)

    def _write(self, text: str) -> None:
        print(text, file=self.stream, flush=True)
