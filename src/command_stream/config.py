"""Environment-driven configuration.

Environment variables:
    COMMAND_STREAM_VERBOSE: enable DEBUG trace logging
        - true/1/yes/on = enabled
        - false/0/no = disabled (default)

    COMMAND_STREAM_TRACE: alias of COMMAND_STREAM_VERBOSE

    COMMAND_STREAM_LOG_FILE: write log records to this file instead of stderr

    COMMAND_STREAM_SIGINT_MODE: what the shared interrupt handler does
        - forward = kill(SIGINT) every active runner (default)
        - forward_then_exit = forward, then defer to the previous handler

    COMMAND_STREAM_SHELL: shell used for the real-shell fallback
        - unset = auto-detect (/bin/sh, then sh/bash/zsh on PATH)

    COMMAND_STREAM_TERM_TIMEOUT: grace period used by escalate()
        - default 2.0 seconds, clamped to 0.1-60
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

__all__ = [
    "Config",
    "SigintMode",
    "load_config",
    "get_config",
    "reload_config",
    "trace_enabled",
]

TRACE_ENV_VARS = ("COMMAND_STREAM_VERBOSE", "COMMAND_STREAM_TRACE")
DEFAULT_TERM_TIMEOUT = 2.0


class SigintMode(Enum):
    """How the supervisor reacts to SIGINT.

    - FORWARD: kill(SIGINT) every active runner and keep the host alive
    - FORWARD_THEN_EXIT: forward, then run the previously installed handler
    """

    FORWARD = "forward"
    FORWARD_THEN_EXIT = "forward_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """Parse a mode name; unknown values fall back to FORWARD."""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.FORWARD


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_sigint_mode(value: str | None) -> SigintMode:
    if not value:
        return SigintMode.FORWARD
    return SigintMode.from_string(value)


def _parse_term_timeout(value: str | None) -> float:
    if not value:
        return DEFAULT_TERM_TIMEOUT
    try:
        timeout = float(value)
        return max(0.1, min(timeout, 60.0))
    except ValueError:
        return DEFAULT_TERM_TIMEOUT


@dataclass
class Config:
    """command-stream configuration.

    Attributes:
        verbose: DEBUG trace logging for the command_stream namespace
        log_file: log destination; None means stderr
        sigint_mode: behaviour of the shared interrupt handler
        shell: explicit fallback shell, or None for auto-detection
        term_timeout: default grace period between SIGTERM and SIGKILL
    """

    verbose: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.FORWARD
    shell: str | None = None
    term_timeout: float = DEFAULT_TERM_TIMEOUT

    def __repr__(self) -> str:
        return (
            f"Config(verbose={self.verbose}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"shell={self.shell or 'auto'}, "
            f"term_timeout={self.term_timeout})"
        )


def trace_enabled() -> bool:
    """Read the trace switch straight from the environment.

    Called once per invocation so toggling the variable between commands
    takes effect without reloading the cached config.
    """
    return any(_parse_bool(os.environ.get(name)) for name in TRACE_ENV_VARS)


def load_config() -> Config:
    """Load configuration from the environment."""
    return Config(
        verbose=trace_enabled(),
        log_file=os.environ.get("COMMAND_STREAM_LOG_FILE") or None,
        sigint_mode=_parse_sigint_mode(os.environ.get("COMMAND_STREAM_SIGINT_MODE")),
        shell=os.environ.get("COMMAND_STREAM_SHELL") or None,
        term_timeout=_parse_term_timeout(os.environ.get("COMMAND_STREAM_TERM_TIMEOUT")),
    )


# Lazily created global instance
_config: Config | None = None


def get_config() -> Config:
    """Return the cached global config."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload config from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
