"""Conversation turns exchanged with the agent."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    USER = "user"
    SYSTEM = "system"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str
    ts: float = field(default_factory=time.time)


class ConversationHistory:
    def __init__(self, turns: list[Turn] | None = None) -> None:
        self._turns: list[Turn] = list(turns or [])

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, role: Role, text: str) -> Turn:
        turn = Turn(role=role, text=text)
        self._turns.append(turn)
        return turn

    def recent(self, limit: int = 10) -> list[Turn]:
        if limit <= 0:
            return []
        return self._turns[-limit:]

    def render(self, limit: int = 10) -> str:
        lines: list[str] = []
        for turn in self.recent(limit):
            if not turn.text:
                continue
            prefix = "AI" if turn.role == Role.ASSISTANT else "User/System"
            lines.append(f"{prefix}: {turn.text}")
        return "\n".join(lines)
