"""Terminal sessions, process execution and output streaming."""

from .models import ProcessResult, TerminalEvent, TerminalSession
from .pool import TerminalPool
from .process import (
    LineBuffer,
    ProcessHandle,
    ProcessRunner,
    build_shell_command,
    default_shell,
)

__all__ = [
    "build_shell_command",
    "default_shell",
    "LineBuffer",
    "ProcessHandle",
    "ProcessResult",
    "ProcessRunner",
    "TerminalEvent",
    "TerminalPool",
    "TerminalSession",
]
