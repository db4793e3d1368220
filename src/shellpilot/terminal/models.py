"""Terminal session and process result models."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class TerminalSession:
    session_id: str
    working_directory: str
    shell: str
    name: str = ""
    busy: bool = False
    last_command: str = ""
    commands_run: int = 0


@dataclass(frozen=True)
class TerminalEvent:
    session_id: str
    step: str
    message: str


@dataclass(frozen=True)
class ProcessResult:
    session_id: str
    command: str
    exit_code: int | None
    signal: str = ""
    output: str = ""
    duration_seconds: float = 0.0
    lines: tuple[str, ...] = field(default=(), repr=False)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def tail(self, limit: int) -> str:
        if limit <= 0 or len(self.lines) <= limit:
            return "\n".join(self.lines)
        return "\n".join(self.lines[-limit:])
