"""Structured contract between the execution core and the AI agent."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Sequence
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shellpilot.agent.history import Turn

logger = py_logging.getLogger(__name__)


class Verdict(str, Enum):
    SATISFIED = "satisfied"
    CONTINUE = "continue"


class CommandProposal(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: str = Field(min_length=1)
    working_directory: str = ""
    description: str = ""
    requires_approval: bool = True

    @field_validator("command")
    @classmethod
    def _validate_command(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Command cannot be blank")
        return value.strip()


class Evaluation(BaseModel):
    model_config = ConfigDict(frozen=True)

    verdict: Verdict
    reason: str = ""

    @property
    def satisfied(self) -> bool:
        return self.verdict == Verdict.SATISFIED

    @classmethod
    def from_payload(cls, payload: object) -> Evaluation:
        """Validate an evaluator reply; anything malformed means keep going."""
        if isinstance(payload, Evaluation):
            return payload
        try:
            if isinstance(payload, (str, bytes)):
                return cls.model_validate_json(payload)
            return cls.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Malformed evaluation payload treated as continue: %s", exc)
            return cls(verdict=Verdict.CONTINUE, reason="Malformed evaluation payload.")


class Correction(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: str = Field(min_length=1)
    working_directory: str | None = None
    description: str = ""

    @field_validator("command")
    @classmethod
    def _validate_command(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Command cannot be blank")
        return value.strip()


class AgentCollaborator(Protocol):
    async def propose_command(self, context: str) -> CommandProposal: ...

    async def evaluate(self, result: str, objective: str) -> Evaluation: ...

    async def correct(self, objective: str, last_failure: str, history: Sequence[Turn]) -> Correction: ...
