"""Auto-approve policy for proposed shell commands."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from enum import Enum

from shellpilot.config import AppConfig

READ_COMMANDS = frozenset(
    {"cat", "head", "tail", "less", "more", "wc", "grep", "stat", "file", "pwd", "whoami", "which", "type", "echo"}
)
LIST_COMMANDS = frozenset({"ls", "dir", "tree", "du", "df"})

# Anything that chains, pipes, substitutes or redirects is treated as arbitrary execution.
_SHELL_OPERATORS = (";", "&", "|", ">", "<", "`", "$(", "\n")


class CommandClass(str, Enum):
    READ = "read"
    LIST = "list"
    EXECUTE = "execute"


def classify_command(command: str) -> CommandClass:
    if any(operator in command for operator in _SHELL_OPERATORS):
        return CommandClass.EXECUTE
    try:
        argv = shlex.split(command)
    except ValueError:
        return CommandClass.EXECUTE
    if not argv:
        return CommandClass.EXECUTE
    program = argv[0].rsplit("/", 1)[-1]
    if program in LIST_COMMANDS:
        return CommandClass.LIST
    if program in READ_COMMANDS:
        return CommandClass.READ
    return CommandClass.EXECUTE


@dataclass(frozen=True)
class ApprovalPolicy:
    auto_run_commands: bool = False
    confirm_dangerous: bool = True
    auto_approve_read: bool = False
    auto_approve_list: bool = False

    @classmethod
    def from_config(cls, config: AppConfig) -> ApprovalPolicy:
        return cls(**config.safety_settings())

    def requires_approval(self, command: str, *, requested: bool = True) -> bool:
        if self.auto_run_commands:
            return False
        command_class = classify_command(command)
        if command_class == CommandClass.READ:
            return not self.auto_approve_read
        if command_class == CommandClass.LIST:
            return not self.auto_approve_list
        return self.confirm_dangerous or requested
