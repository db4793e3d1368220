"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import logging as py_logging
import shlex
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TextIO

from .approval.gate import CommandConfirmationGate, CommandOutcome, CommandStatus
from .config import load_config
from .errors import ExitCode, ShellPilotError, user_facing_error
from .logging import configure_logging, default_log_path
from .orchestrator import build_gate
from .ui.console import ConsoleApprovalSurface

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _timeout_type(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("--timeout must be a number") from exc
    if seconds <= 0:
        raise argparse.ArgumentTypeError("--timeout must be positive")
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shellpilot",
        description="Run a shell command through the confirmation gate and terminal pool.",
    )
    parser.add_argument("--cwd", type=Path, default=None, help="Working directory for the command")
    parser.add_argument("--auto-run", action="store_true", help="Skip the confirmation prompt")
    parser.add_argument("--description", default="", help="Shown next to the approval prompt")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--timeout", type=_timeout_type, default=None)
    parser.add_argument("--log-level", type=_log_level_type, default="WARN")
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


def resolve_command(parts: Sequence[str]) -> str:
    words = list(parts)
    if words and words[0] == "--":
        words = words[1:]
    if not words or not any(word.strip() for word in words):
        raise ShellPilotError(
            "No command given.",
            code=ExitCode.INVALID_ARGS,
            hint="Pass the command to run after the options, e.g. shellpilot -- ls -la",
        )
    if len(words) == 1:
        return words[0]
    return shlex.join(words)


def exit_code_for(outcome: CommandOutcome) -> int:
    if outcome.status == CommandStatus.REJECTED:
        return int(ExitCode.REJECTED)
    if outcome.status == CommandStatus.FAILED or outcome.result is None:
        return int(ExitCode.SPAWN_ERROR)
    if outcome.result.exit_code is None:
        return int(ExitCode.RUNTIME_ERROR)
    return outcome.result.exit_code


async def _submit(gate: CommandConfirmationGate, command: str, namespace: argparse.Namespace) -> CommandOutcome:
    try:
        return await gate.submit(
            command,
            namespace.cwd,
            namespace.description,
        )
    finally:
        gate.pool.dispose_all()


def run_command_flow(
    namespace: argparse.Namespace,
    *,
    prompt: Callable[[str], str] = input,
    stream: TextIO | None = None,
) -> int:
    command = resolve_command(namespace.command)
    config = load_config(namespace.config)
    if namespace.auto_run:
        config.auto_run_commands = True
    if namespace.timeout:
        config.command_timeout_seconds = namespace.timeout

    surface = ConsoleApprovalSurface(stream=stream, prompt=prompt)
    gate = build_gate(config, surface=surface)
    surface.bind(gate)

    outcome = asyncio.run(_submit(gate, command, namespace))
    if outcome.status == CommandStatus.FAILED:
        raise ShellPilotError(
            outcome.error or "Command could not be executed.",
            code=ExitCode.SPAWN_ERROR,
            hint="Check the shell and working directory.",
        )
    return exit_code_for(outcome)


def main(
    argv: Sequence[str] | None = None,
    *,
    prompt: Callable[[str], str] = input,
    stream: TextIO | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging("WARN", log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path)

    try:
        logger.debug("Starting command flow")
        return run_command_flow(namespace, prompt=prompt, stream=stream)
    except ShellPilotError as exc:
        logger.error(
            "Handled ShellPilotError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return int(ExitCode.REJECTED)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        try:
            hint = f"Inspect logs: {log_path}"
            print(user_facing_error("Unexpected runtime failure", hint=hint), file=sys.stderr)
        except Exception:
            pass
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
