from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from shellpilot.approval.gate import (
    ApprovalState,
    CommandConfirmationGate,
    CommandOutcome,
    CommandStatus,
    PendingCommand,
)
from shellpilot.approval.policy import ApprovalPolicy
from shellpilot.errors import ExitCode, ShellPilotError, StaleApprovalSignal
from shellpilot.terminal import ProcessResult, ProcessRunner, TerminalPool

pytestmark = pytest.mark.posix_only


class RecordingSurface:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.output: list[str] = []
        self.surfaced = asyncio.Event()
        self.last: PendingCommand | None = None

    def pending_command_surfaced(self, command: PendingCommand) -> None:
        self.events.append(("pending", command.command_id))
        self.last = command
        self.surfaced.set()

    def command_auto_approved(self, command: PendingCommand) -> None:
        self.events.append(("auto", command.command_id))

    def command_output(self, command: PendingCommand, line: str) -> None:
        self.output.append(line)

    def command_resolved(self, command: PendingCommand, state: ApprovalState) -> None:
        self.events.append((state.value, command.command_id))


def _ids(*values: str):
    remaining = list(values)
    return lambda: remaining.pop(0)


def _run_count(pool: TerminalPool) -> int:
    return sum(1 for event in pool.list_events() if event.step == "run")


@pytest.mark.asyncio
async def test_approve_executes_exactly_once(pool: TerminalPool, tmp_path: Path) -> None:
    surface = RecordingSurface()
    gate = CommandConfirmationGate(pool, surface=surface, id_factory=_ids("cmd-1"))

    task = asyncio.create_task(gate.submit("echo hi", tmp_path, "Say hi"))
    await asyncio.wait_for(surface.surfaced.wait(), timeout=3)

    assert gate.busy is True
    assert gate.state("cmd-1") == ApprovalState.PENDING_APPROVAL
    assert [pending.command for pending in gate.pending()] == ["echo hi"]
    assert surface.last is not None and surface.last.description == "Say hi"
    assert gate.approve("cmd-1") is True
    assert gate.approve("cmd-1") is False
    assert gate.reject("cmd-1") is False

    outcome = await asyncio.wait_for(task, timeout=5)

    assert outcome.status == CommandStatus.EXECUTED
    assert outcome.succeeded is True
    assert outcome.result is not None and outcome.result.lines == ("hi",)
    assert surface.output == ["hi"]
    assert gate.state("cmd-1") == ApprovalState.APPROVED
    assert gate.busy is False
    assert _run_count(pool) == 1
    assert surface.events == [("pending", "cmd-1"), ("approved", "cmd-1")]


@pytest.mark.asyncio
async def test_reject_never_reaches_the_pool(pool: TerminalPool, tmp_path: Path) -> None:
    surface = RecordingSurface()
    gate = CommandConfirmationGate(pool, surface=surface, id_factory=_ids("cmd-1"))

    task = asyncio.create_task(gate.submit("rm -rf build", tmp_path))
    await asyncio.wait_for(surface.surfaced.wait(), timeout=3)
    assert gate.reject("cmd-1") is True
    assert gate.approve("cmd-1") is False

    outcome = await task

    assert outcome.status == CommandStatus.REJECTED
    assert outcome.executed is False
    assert outcome.describe() == "Command `rm -rf build` was rejected by the user."
    assert pool.list_sessions() == []
    assert gate.state("cmd-1") == ApprovalState.REJECTED


@pytest.mark.asyncio
async def test_auto_approved_command_runs_without_prompt(pool: TerminalPool, tmp_path: Path) -> None:
    surface = RecordingSurface()
    gate = CommandConfirmationGate(
        pool,
        policy=ApprovalPolicy(auto_approve_list=True),
        surface=surface,
        id_factory=_ids("cmd-1"),
    )
    (tmp_path / "file.txt").write_text("x", encoding="utf-8")

    outcome = await gate.submit("ls", tmp_path)

    assert outcome.status == CommandStatus.EXECUTED
    assert outcome.command.auto_approve is True
    assert surface.events == [("auto", "cmd-1")]
    assert surface.output == ["file.txt"]
    assert gate.state("cmd-1") == ApprovalState.AUTO_APPROVED


@pytest.mark.asyncio
async def test_unknown_id_is_ignored_unless_strict(pool: TerminalPool) -> None:
    lenient = CommandConfirmationGate(pool)
    strict = CommandConfirmationGate(pool, strict=True)

    assert lenient.approve("cmd-missing") is False
    with pytest.raises(StaleApprovalSignal) as caught:
        strict.reject("cmd-missing")

    assert caught.value.code == ExitCode.APPROVAL_ERROR


@pytest.mark.asyncio
async def test_strict_gate_flags_second_decision(pool: TerminalPool, tmp_path: Path) -> None:
    surface = RecordingSurface()
    gate = CommandConfirmationGate(pool, surface=surface, strict=True, id_factory=_ids("cmd-1"))

    task = asyncio.create_task(gate.submit("true", tmp_path))
    await asyncio.wait_for(surface.surfaced.wait(), timeout=3)
    gate.reject("cmd-1")

    with pytest.raises(StaleApprovalSignal):
        gate.approve("cmd-1")
    assert (await task).status == CommandStatus.REJECTED


@pytest.mark.asyncio
async def test_gate_refuses_second_command_while_one_is_pending(pool: TerminalPool, tmp_path: Path) -> None:
    surface = RecordingSurface()
    gate = CommandConfirmationGate(pool, surface=surface, id_factory=_ids("cmd-1", "cmd-2"))

    task = asyncio.create_task(gate.submit("true", tmp_path))
    await asyncio.wait_for(surface.surfaced.wait(), timeout=3)

    with pytest.raises(ShellPilotError) as caught:
        await gate.submit("false", tmp_path)

    assert caught.value.code == ExitCode.VALIDATION_ERROR
    assert gate.cancel_all() == 1
    assert (await task).status == CommandStatus.REJECTED


@pytest.mark.asyncio
async def test_cancelling_a_pending_submit_rejects_it(pool: TerminalPool, tmp_path: Path) -> None:
    surface = RecordingSurface()
    gate = CommandConfirmationGate(pool, surface=surface, id_factory=_ids("cmd-1"))

    task = asyncio.create_task(gate.submit("true", tmp_path))
    await asyncio.wait_for(surface.surfaced.wait(), timeout=3)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert gate.state("cmd-1") == ApprovalState.REJECTED
    assert gate.busy is False
    assert pool.list_sessions() == []


@pytest.mark.asyncio
async def test_cancelling_a_running_command_terminates_it(pool: TerminalPool, tmp_path: Path) -> None:
    gate = CommandConfirmationGate(pool, policy=ApprovalPolicy(auto_run_commands=True))

    task = asyncio.create_task(gate.submit("exec sleep 5", tmp_path))
    handle = None
    for _ in range(300):
        sessions = pool.list_sessions()
        handle = pool.active_handle(sessions[0].session_id) if sessions else None
        if handle is not None and handle.pid is not None:
            break
        await asyncio.sleep(0.01)
    assert handle is not None

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    result = await asyncio.wait_for(handle.wait(), timeout=3)

    assert result.signal == "SIGTERM"


@pytest.mark.asyncio
async def test_spawn_failure_is_reported_as_failed_outcome(pool: TerminalPool, tmp_path: Path) -> None:
    gate = CommandConfirmationGate(pool, policy=ApprovalPolicy(auto_run_commands=True))

    outcome = await gate.submit("echo hi", tmp_path / "missing")

    assert outcome.status == CommandStatus.FAILED
    assert outcome.result is None
    assert outcome.describe().startswith("Command `echo hi` could not be executed: Failed to start command")
    assert pool.list_sessions()[0].busy is False


@pytest.mark.asyncio
async def test_default_ids_are_unique(pool: TerminalPool, tmp_path: Path) -> None:
    gate = CommandConfirmationGate(pool, policy=ApprovalPolicy(auto_run_commands=True))

    first = await gate.submit("true", tmp_path)
    second = await gate.submit("true", tmp_path)

    assert first.command.command_id.startswith("cmd-")
    assert first.command.command_id != second.command.command_id


def _outcome(exit_code: int | None, lines: tuple[str, ...] = (), signal: str = "") -> CommandOutcome:
    pending = PendingCommand(command_id="cmd-1", command="make test", working_directory="/repo")
    result = ProcessResult(
        session_id="terminal-1",
        command="make test",
        exit_code=exit_code,
        signal=signal,
        output="".join(f"{line}\n" for line in lines),
        lines=lines,
    )
    return CommandOutcome(command=pending, status=CommandStatus.EXECUTED, result=result)


def test_describe_success_without_output() -> None:
    assert _outcome(0).describe() == "Command `make test` ran successfully without output."


def test_describe_success_returns_output_tail() -> None:
    lines = tuple(f"line {index}" for index in range(20))

    assert _outcome(0, lines).describe(line_limit=3) == "line 17\nline 18\nline 19"


def test_describe_failure_includes_exit_code_and_output() -> None:
    text = _outcome(2, ("error: missing target",)).describe()

    assert text == "Command `make test` failed with exit code 2.\nerror: missing target"


def test_describe_signal_termination() -> None:
    assert _outcome(None, signal="SIGKILL").describe() == "Command `make test` failed with signal SIGKILL."


class FailingOutputSurface:
    def command_output(self, command: PendingCommand, line: str) -> None:
        raise RuntimeError("display closed")


@pytest.mark.asyncio
async def test_full_pool_is_reported_as_failed_outcome(fast_runner: ProcessRunner, tmp_path: Path) -> None:
    pool = TerminalPool(runner=fast_runner, max_sessions=1)
    pool.get_or_create(tmp_path).busy = True
    gate = CommandConfirmationGate(pool, policy=ApprovalPolicy(auto_run_commands=True))

    outcome = await gate.submit("echo hi", tmp_path)

    assert outcome.status == CommandStatus.FAILED
    assert "Terminal limit reached" in outcome.error


@pytest.mark.asyncio
async def test_surface_error_terminates_running_command(pool: TerminalPool, tmp_path: Path) -> None:
    gate = CommandConfirmationGate(
        pool,
        policy=ApprovalPolicy(auto_run_commands=True),
        surface=FailingOutputSurface(),
    )

    with pytest.raises(RuntimeError):
        await asyncio.wait_for(gate.submit("echo first; sleep 20", tmp_path), timeout=4)

    session = pool.list_sessions()[0]
    handle = pool.active_handle(session.session_id)
    assert handle is not None and handle.terminating is True
    result = await asyncio.wait_for(handle.wait(), timeout=4)

    assert result.signal == "SIGTERM"
    assert session.busy is False
    assert pool.active_handle(session.session_id) is None


@pytest.mark.asyncio
async def test_settled_states_are_bounded(pool: TerminalPool, tmp_path: Path) -> None:
    gate = CommandConfirmationGate(
        pool,
        policy=ApprovalPolicy(auto_run_commands=True),
        id_factory=_ids("cmd-1", "cmd-2", "cmd-3"),
        state_history=2,
    )

    for _ in range(3):
        await gate.submit("true", tmp_path)

    assert gate.state("cmd-1") is None
    assert gate.state("cmd-2") == ApprovalState.AUTO_APPROVED
    assert gate.state("cmd-3") == ApprovalState.AUTO_APPROVED
