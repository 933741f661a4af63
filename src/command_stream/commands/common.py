"""Helpers shared by the built-in virtual commands."""

from __future__ import annotations

import errno
from collections.abc import Iterable

from .registry import VirtualResult

__all__ = [
    "describe_os_error",
    "join_lines",
    "missing_operand",
    "split_flags",
    "split_lines",
]


def split_flags(args: Iterable[str]) -> tuple[set[str], list[str]]:
    """Split ``-abc`` style flags from operands; ``--`` ends flag parsing."""
    flags: set[str] = set()
    operands: list[str] = []
    only_operands = False
    for arg in args:
        if only_operands or arg == "-" or not arg.startswith("-"):
            operands.append(arg)
        elif arg == "--":
            only_operands = True
        else:
            flags.update(arg[1:])
    return flags, operands


def missing_operand(command: str, message: str | None = None) -> VirtualResult:
    return VirtualResult.error(message or f"{command}: missing operand")


def split_lines(text: str) -> list[str]:
    """Split on newlines, dropping the empty piece after a trailing newline."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def join_lines(lines: list[str]) -> str:
    return "\n".join(lines) + ("\n" if lines else "")


def describe_os_error(error: OSError) -> str:
    if error.errno == errno.ENOENT:
        return "No such file or directory"
    if error.errno == errno.EISDIR:
        return "Is a directory"
    if error.errno == errno.ENOTDIR:
        return "Not a directory"
    if error.errno == errno.EEXIST:
        return "File exists"
    if error.errno in (errno.EACCES, errno.EPERM):
        return "Permission denied"
    return error.strerror or str(error)
