"""Bounded run, evaluate and correct cycle for one user objective."""

from __future__ import annotations

import logging as py_logging
from dataclasses import dataclass, field
from enum import Enum

from shellpilot.agent.collaborator import AgentCollaborator, CommandProposal, Evaluation, Verdict
from shellpilot.agent.history import ConversationHistory, Role
from shellpilot.approval.gate import CommandConfirmationGate, CommandStatus
from shellpilot.errors import ExitCode, ShellPilotError

logger = py_logging.getLogger(__name__)

MAX_CORRECTION_ATTEMPTS = 5
DEFAULT_HISTORY_WINDOW = 10
DEFAULT_OUTPUT_LINE_LIMIT = 500


class LoopStatus(str, Enum):
    SUCCEEDED = "succeeded"
    UNRESOLVED = "unresolved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class CorrectionPolicy:
    max_attempts: int = MAX_CORRECTION_ATTEMPTS
    history_window: int = DEFAULT_HISTORY_WINDOW
    output_line_limit: int = DEFAULT_OUTPUT_LINE_LIMIT

    def __post_init__(self) -> None:
        if self.max_attempts < 1 or self.max_attempts > MAX_CORRECTION_ATTEMPTS:
            raise ShellPilotError(
                f"Invalid attempt ceiling: {self.max_attempts}",
                code=ExitCode.VALIDATION_ERROR,
                hint=f"Use a value between 1 and {MAX_CORRECTION_ATTEMPTS}.",
            )
        if self.history_window < 1:
            raise ShellPilotError(
                f"Invalid history window: {self.history_window}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a positive number of turns.",
            )


@dataclass
class CorrectionOutcome:
    objective: str
    status: LoopStatus
    attempts: int
    commands: list[str] = field(default_factory=list)
    last_result: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == LoopStatus.SUCCEEDED


def _normalize_command(command: str) -> str:
    return " ".join(command.split())


class CorrectionLoop:
    """Runs the agent's command, asks the evaluator, and retries with corrections.

    Attempts are strictly sequential and capped at ``policy.max_attempts``. Only the
    evaluator decides satisfaction: spawn failures, non-zero exits and semantic
    failures all lead to a correction request. A corrected command that already
    failed is never executed again; it uses up an attempt instead.
    """

    def __init__(
        self,
        agent: AgentCollaborator,
        gate: CommandConfirmationGate,
        *,
        policy: CorrectionPolicy | None = None,
        history: ConversationHistory | None = None,
    ) -> None:
        self.agent = agent
        self.gate = gate
        self.policy = policy or CorrectionPolicy()
        self.history = history if history is not None else ConversationHistory()

    async def run_with_correction(
        self,
        objective: str,
        *,
        initial: CommandProposal | None = None,
    ) -> CorrectionOutcome:
        history = self.history
        history.append(Role.USER, objective)
        proposal = initial or await self.agent.propose_command(self._context(objective))

        command = proposal.command
        working_directory = proposal.working_directory or None
        description = proposal.description
        requested = proposal.requires_approval

        outcome = CorrectionOutcome(objective=objective, status=LoopStatus.UNRESOLVED, attempts=0)
        failed: set[str] = set()

        while outcome.attempts < self.policy.max_attempts:
            outcome.attempts += 1
            logger.info(
                "Correction attempt %s/%s command=%s",
                outcome.attempts,
                self.policy.max_attempts,
                command,
            )
            key = _normalize_command(command)
            if key in failed:
                outcome.last_result = (
                    f"Command `{command}` already failed in an earlier attempt; "
                    "propose a different command."
                )
                logger.warning("Skipping repeated failed command=%s", command)
                history.append(Role.SYSTEM, outcome.last_result)
            else:
                outcome.commands.append(command)
                history.append(Role.ASSISTANT, f"Running `{command}`")
                result = await self.gate.submit(
                    command,
                    working_directory,
                    description,
                    requires_approval=requested,
                )
                outcome.last_result = result.describe(self.policy.output_line_limit)
                history.append(Role.SYSTEM, outcome.last_result)
                if result.status == CommandStatus.REJECTED:
                    outcome.status = LoopStatus.REJECTED
                    logger.info("Command rejected by user; stopping correction loop")
                    return outcome

                evaluation = await self._evaluate(outcome.last_result, objective)
                if evaluation.satisfied:
                    outcome.status = LoopStatus.SUCCEEDED
                    logger.info("Objective satisfied after %s attempt(s)", outcome.attempts)
                    return outcome
                failed.add(key)

            if outcome.attempts >= self.policy.max_attempts:
                break
            try:
                correction = await self.agent.correct(
                    objective,
                    outcome.last_result,
                    history.recent(self.policy.history_window),
                )
            except Exception:
                logger.error("Correction request failed; stopping", exc_info=True)
                return outcome
            command = correction.command
            working_directory = correction.working_directory or working_directory
            description = correction.description or description
            history.append(Role.ASSISTANT, f"Proposed alternative `{command}`")

        logger.warning(
            "Attempt ceiling reached (%s) without satisfying objective", self.policy.max_attempts
        )
        return outcome

    async def _evaluate(self, result: str, objective: str) -> Evaluation:
        try:
            evaluation = Evaluation.from_payload(await self.agent.evaluate(result, objective))
        except Exception:
            logger.warning("Evaluator failed; treating result as unresolved", exc_info=True)
            evaluation = Evaluation(verdict=Verdict.CONTINUE, reason="Evaluator failed.")
        suffix = f": {evaluation.reason}" if evaluation.reason else ""
        self.history.append(Role.ASSISTANT, f"Evaluation {evaluation.verdict.value}{suffix}")
        return evaluation

    def _context(self, objective: str) -> str:
        recent = self.history.render(self.policy.history_window)
        return f"Objective: {objective}\n\nRecent conversation:\n{recent}" if recent else objective
