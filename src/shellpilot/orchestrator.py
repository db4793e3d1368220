"""Runtime wiring from configuration to the correction loop."""

from __future__ import annotations

import logging as py_logging

from shellpilot.agent.collaborator import AgentCollaborator, CommandProposal
from shellpilot.agent.correction import CorrectionLoop, CorrectionOutcome, CorrectionPolicy
from shellpilot.agent.history import ConversationHistory
from shellpilot.approval.gate import ApprovalSurface, CommandConfirmationGate
from shellpilot.approval.policy import ApprovalPolicy
from shellpilot.config import AppConfig
from shellpilot.terminal import ProcessRunner, TerminalPool

logger = py_logging.getLogger(__name__)


def build_runner(config: AppConfig) -> ProcessRunner:
    return ProcessRunner(
        shell=config.shell,
        coalesce_window=config.coalesce_window_ms / 1000,
        max_coalesce=config.max_coalesce_ms / 1000,
        termination_grace=config.termination_grace_seconds,
        timeout=config.command_timeout_seconds or None,
    )


def build_gate(
    config: AppConfig,
    *,
    surface: ApprovalSurface | None = None,
    pool: TerminalPool | None = None,
) -> CommandConfirmationGate:
    terminal_pool = pool or TerminalPool(runner=build_runner(config), max_sessions=config.max_sessions)
    return CommandConfirmationGate(
        terminal_pool,
        policy=ApprovalPolicy.from_config(config),
        surface=surface,
    )


class ShellPilot:
    def __init__(
        self,
        agent: AgentCollaborator,
        *,
        config: AppConfig | None = None,
        surface: ApprovalSurface | None = None,
        pool: TerminalPool | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.agent = agent
        self.gate = build_gate(self.config, surface=surface, pool=pool)
        self.history = ConversationHistory()
        self.policy = CorrectionPolicy(
            history_window=self.config.history_window,
            output_line_limit=self.config.output_line_limit,
        )
        logger.debug(
            "ShellPilot ready auto_run=%s confirm_dangerous=%s shell=%s",
            self.config.auto_run_commands,
            self.config.confirm_dangerous,
            self.pool.runner.shell,
        )

    @property
    def pool(self) -> TerminalPool:
        return self.gate.pool

    async def solve(
        self,
        objective: str,
        *,
        initial: CommandProposal | None = None,
    ) -> CorrectionOutcome:
        loop = CorrectionLoop(self.agent, self.gate, policy=self.policy, history=self.history)
        outcome = await loop.run_with_correction(objective, initial=initial)
        logger.info(
            "Objective finished status=%s attempts=%s",
            outcome.status.value,
            outcome.attempts,
        )
        return outcome

    def approve(self, command_id: str) -> bool:
        return self.gate.approve(command_id)

    def reject(self, command_id: str) -> bool:
        return self.gate.reject(command_id)

    def shutdown(self) -> None:
        cancelled = self.gate.cancel_all()
        if cancelled:
            logger.info("Rejected %s pending command(s) during shutdown", cancelled)
        self.pool.dispose_all()
