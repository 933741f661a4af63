"""Exception hierarchy for command-stream.

Most failures are reported as exit codes on a CommandResult rather than
raised. The exceptions here cover the few places where Python-level errors
are the better signal: template rendering, runner misuse, and the opt-in
rejection of non-zero results.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .runtime.types import CommandResult

__all__ = [
    "CommandStreamError",
    "ShellSyntaxError",
    "UnboundVariableError",
    "RunnerStateError",
    "CommandError",
    "VirtualCommandExit",
]


class CommandStreamError(Exception):
    """Base class for all command-stream errors."""


class ShellSyntaxError(CommandStreamError):
    """Raised by the tokenizer/parser for text it cannot represent."""

    def __init__(self, message: str, position: int | None = None):
        self.position = position
        if position is not None:
            message = f"{message} (at offset {position})"
        super().__init__(message)


class UnboundVariableError(CommandStreamError):
    """A None value was interpolated while nounset is enabled."""

    def __init__(self, index: int):
        self.index = index
        super().__init__(f"interpolated value #{index} is unbound (nounset)")


class RunnerStateError(CommandStreamError):
    """An operation was attempted in the wrong runner state."""


class CommandError(CommandStreamError):
    """A command finished with a non-zero exit code and rejection was on."""

    def __init__(self, command: str, result: CommandResult):
        self.command = command
        self.result = result
        self.code = result.code
        self.stdout = result.stdout
        self.stderr = result.stderr
        detail = result.stderr.text.strip()
        message = f"Command failed with exit code {result.code}: {command}"
        if detail:
            message = f"{message}\n{detail}"
        super().__init__(message)


class VirtualCommandExit(CommandStreamError):
    """Raised inside a virtual handler to finish with a chosen code."""

    def __init__(self, code: int, message: str = "", stdout: Any = ""):
        self.code = code
        self.message = message
        self.stdout = stdout
        super().__init__(message or f"exit {code}")
