"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    SPAWN_ERROR = 5
    APPROVAL_ERROR = 6
    VALIDATION_ERROR = 7
    UNRESOLVED_TASK = 8
    REJECTED = 9


@dataclass
class ShellPilotError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


@dataclass
class SpawnError(ShellPilotError):
    """The shell or child process could not be started."""

    code: ExitCode = ExitCode.SPAWN_ERROR


@dataclass
class StaleApprovalSignal(ShellPilotError):
    """Approve/reject received for a command id that is no longer pending."""

    code: ExitCode = ExitCode.APPROVAL_ERROR


@dataclass
class InvariantViolation(ShellPilotError):
    code: ExitCode = ExitCode.RUNTIME_ERROR


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
