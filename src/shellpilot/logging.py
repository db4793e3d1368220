"""Logging setup for the shellpilot logger tree and key=value event lines."""

from __future__ import annotations

import logging as py_logging
import os
import sys
from pathlib import Path
from typing import TextIO

LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "WARNING": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
LOG_LEVEL_ENV = "SHELLPILOT_LOG_LEVEL"
ROOT_LOGGER = "shellpilot"
DEFAULT_LOG_PATH = Path("~/.config/shellpilot/logs/shellpilot.log")
_FALLBACK_LOG_PATH = Path(".shellpilot/logs/shellpilot.log")
_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d %(message)s"


def _absolute(path: Path, fallback: Path | None = None) -> Path:
    # expanduser raises RuntimeError when no home directory can be determined.
    try:
        expanded = path.expanduser()
    except RuntimeError:
        expanded = Path.cwd() / fallback if fallback is not None else path
    return expanded if expanded.is_absolute() else expanded.resolve()


def default_log_path() -> Path:
    return _absolute(DEFAULT_LOG_PATH, _FALLBACK_LOG_PATH)


def resolve_level(level: str | None) -> int:
    """Map a level name to a logging constant; unknown names mean INFO."""
    raw = level if level is not None else os.getenv(LOG_LEVEL_ENV, "INFO")
    return LOG_LEVELS.get(raw.strip().upper(), py_logging.INFO)


def format_event(kind: str, **fields: object) -> str:
    pairs = " ".join(f"{key}={value}" for key, value in fields.items())
    return f"{kind}-event {pairs}" if pairs else f"{kind}-event"


def _attach_file_handler(logger: py_logging.Logger, log_file: str | Path, formatter: py_logging.Formatter) -> bool:
    log_path = _absolute(Path(log_file))
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = py_logging.FileHandler(log_path, encoding="utf-8")
    except OSError:
        return False
    file_handler.setLevel(py_logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return True


def configure_logging(
    level: str | None = None,
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    resolved = resolve_level(level)
    logger = py_logging.getLogger(ROOT_LOGGER)
    logger.setLevel(resolved)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    formatter = py_logging.Formatter(_FORMAT)
    console = py_logging.StreamHandler(stream or sys.stderr)
    console.setLevel(resolved)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        _attach_file_handler(logger, log_file, formatter)

    logger.propagate = False
    return logger
