"""XDG config loading/saving."""

from __future__ import annotations

import os
import sys
from contextlib import suppress
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import TypedDict

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

DEFAULT_CONFIG_PATH = Path("~/.config/shellpilot/config.toml").expanduser()
AUTO_RUN_ENV = "SHELLPILOT_AUTO_RUN"

DEFAULT_COALESCE_WINDOW_MS = 100
DEFAULT_MAX_COALESCE_MS = 1000
DEFAULT_TERMINATION_GRACE_SECONDS = 5.0
DEFAULT_OUTPUT_LINE_LIMIT = 500
DEFAULT_HISTORY_WINDOW = 10
DEFAULT_MAX_SESSIONS = 16

_TRUTHY = {"1", "true", "yes", "on"}


class SafetySettings(TypedDict):
    auto_run_commands: bool
    confirm_dangerous: bool
    auto_approve_read: bool
    auto_approve_list: bool


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    auto_run_commands: bool = False
    confirm_dangerous: bool = True
    auto_approve_read: bool = False
    auto_approve_list: bool = False
    shell: str = ""
    coalesce_window_ms: int = Field(default=DEFAULT_COALESCE_WINDOW_MS, ge=10, le=1000)
    max_coalesce_ms: int = Field(default=DEFAULT_MAX_COALESCE_MS, ge=100, le=10000)
    termination_grace_seconds: float = Field(default=DEFAULT_TERMINATION_GRACE_SECONDS, ge=0.1, le=60.0)
    output_line_limit: int = Field(default=DEFAULT_OUTPUT_LINE_LIMIT, ge=10, le=100000)
    history_window: int = Field(default=DEFAULT_HISTORY_WINDOW, ge=1, le=50)
    max_sessions: int = Field(default=DEFAULT_MAX_SESSIONS, ge=1, le=64)
    command_timeout_seconds: float = Field(default=0.0, ge=0.0)

    def safety_settings(self) -> SafetySettings:
        return SafetySettings(
            auto_run_commands=self.auto_run_commands,
            confirm_dangerous=self.confirm_dangerous,
            auto_approve_read=self.auto_approve_read,
            auto_approve_list=self.auto_approve_list,
        )


_BOOL_KEYS = ("auto_run_commands", "confirm_dangerous", "auto_approve_read", "auto_approve_list")
_INT_RANGES: dict[str, tuple[int, int]] = {
    "coalesce_window_ms": (10, 1000),
    "max_coalesce_ms": (100, 10000),
    "output_line_limit": (10, 100000),
    "history_window": (1, 50),
    "max_sessions": (1, 64),
}
_FLOAT_RANGES: dict[str, tuple[float, float]] = {
    "termination_grace_seconds": (0.1, 60.0),
    "command_timeout_seconds": (0.0, 86400.0),
}


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return f'"{_escape(value)}"'
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()

    for key in _BOOL_KEYS:
        value = raw.get(key)
        if isinstance(value, bool):
            setattr(cfg, key, value)

    shell = raw.get("shell", cfg.shell)
    if isinstance(shell, str):
        cfg.shell = shell.strip()

    for key, (low, high) in _INT_RANGES.items():
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and low <= value <= high:
            setattr(cfg, key, value)

    for key, (low, high) in _FLOAT_RANGES.items():
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and low <= value <= high:
            setattr(cfg, key, float(value))

    return cfg


def _apply_env(cfg: AppConfig) -> AppConfig:
    if os.getenv(AUTO_RUN_ENV, "").strip().lower() in _TRUTHY:
        cfg.auto_run_commands = True
    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return _apply_env(AppConfig())
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return _apply_env(AppConfig())
    if not isinstance(raw, dict):
        return _apply_env(AppConfig())
    return _apply_env(_sanitize(raw))


def save_config(config: AppConfig, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)

    lines = [f"{key} = {_toml_scalar(getattr(config, key))}" for key in _BOOL_KEYS]
    lines.append(f"shell = {_toml_scalar(config.shell)}")
    lines.extend(f"{key} = {_toml_scalar(getattr(config, key))}" for key in _INT_RANGES)
    lines.extend(f"{key} = {_toml_scalar(float(getattr(config, key)))}" for key in _FLOAT_RANGES)

    resolved.write_text("\n".join(lines) + "\n", encoding="utf-8")
    with suppress(OSError):
        resolved.chmod(0o600)
    return resolved
