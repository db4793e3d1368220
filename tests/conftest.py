from __future__ import annotations

import sys
from pathlib import Path

import pytest

from shellpilot.terminal import ProcessRunner, TerminalPool

_SLOW_TEST_FILES = {
    "test_termination_escalation.py",
}


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(item.path))
        name = path.name

        if "integration" in path.parts:
            item.add_marker(pytest.mark.integration)

        if name in _SLOW_TEST_FILES:
            item.add_marker(pytest.mark.slow)

        if sys.platform == "win32" and "posix_only" in item.keywords:
            item.add_marker(pytest.mark.skip(reason="requires a POSIX shell"))


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "posix_only: needs /bin/sh and POSIX signals")


@pytest.fixture
def fast_runner() -> ProcessRunner:
    return ProcessRunner(
        shell="/bin/sh",
        coalesce_window=0.02,
        max_coalesce=0.5,
        termination_grace=0.5,
    )


@pytest.fixture
def pool(fast_runner: ProcessRunner) -> TerminalPool:
    return TerminalPool(runner=fast_runner)
