"""Process and environment built-ins: sleep, which, test, env, true, false, exit."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import stat
from collections.abc import Callable

from .common import missing_operand
from .registry import CommandRegistry, VirtualCommandContext, VirtualHandler, VirtualResult

__all__ = ["COMMANDS", "make_which"]

logger = logging.getLogger(__name__)

_DURATION = re.compile(r"^(\d+(?:\.\d*)?|\.\d+)([smhd]?)$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


async def cmd_sleep(ctx: VirtualCommandContext) -> VirtualResult:
    """Sleep for the summed durations; returns early when cancelled."""
    if not ctx.args:
        return missing_operand("sleep")

    seconds = 0.0
    for arg in ctx.args:
        match = _DURATION.match(arg)
        if not match:
            return VirtualResult.error(f"sleep: invalid time interval '{arg}'")
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]

    logger.debug(f"sleep: {seconds}s")
    try:
        signum = await asyncio.wait_for(ctx.wait_cancelled(), timeout=seconds)
    except asyncio.TimeoutError:
        return VirtualResult()
    return VirtualResult(code=128 + signum)


def make_which(registry: CommandRegistry) -> VirtualHandler:
    """Build ``which`` bound to the registry it reports on."""

    def cmd_which(ctx: VirtualCommandContext) -> VirtualResult:
        if not ctx.args:
            return VirtualResult(code=1)
        lines: list[str] = []
        code = 0
        for name in ctx.args:
            if registry.enabled and name in registry:
                lines.append(f"{name}: shell builtin")
                continue
            found = shutil.which(name, path=ctx.env.get("PATH"))
            if found:
                lines.append(found)
            else:
                code = 1
        return VirtualResult(stdout="".join(f"{line}\n" for line in lines), code=code)

    return cmd_which


# =============================================================================
# test
# =============================================================================


def _file_test(flag: str, ctx: VirtualCommandContext, operand: str) -> bool:
    path = ctx.resolve_path(operand)
    try:
        st = path.stat()
    except OSError:
        return False
    if flag == "-e":
        return True
    if flag == "-f":
        return stat.S_ISREG(st.st_mode)
    if flag == "-d":
        return stat.S_ISDIR(st.st_mode)
    if flag == "-s":
        return st.st_size > 0
    if flag == "-r":
        return os.access(path, os.R_OK)
    if flag == "-w":
        return os.access(path, os.W_OK)
    if flag == "-x":
        return os.access(path, os.X_OK)
    raise AssertionError(flag)


_FILE_FLAGS = {"-e", "-f", "-d", "-s", "-r", "-w", "-x"}

_INT_OPERATORS: dict[str, Callable[[int, int], bool]] = {
    "-eq": lambda a, b: a == b,
    "-ne": lambda a, b: a != b,
    "-lt": lambda a, b: a < b,
    "-le": lambda a, b: a <= b,
    "-gt": lambda a, b: a > b,
    "-ge": lambda a, b: a >= b,
}


class _TestSyntaxError(ValueError):
    pass


def _evaluate(ctx: VirtualCommandContext, args: list[str]) -> bool:
    if not args:
        return False
    if args[0] == "!":
        return not _evaluate(ctx, args[1:])
    if len(args) == 1:
        return args[0] != ""
    if len(args) == 2:
        flag, operand = args
        if flag in _FILE_FLAGS:
            return _file_test(flag, ctx, operand)
        if flag == "-z":
            return operand == ""
        if flag == "-n":
            return operand != ""
        raise _TestSyntaxError(f"test: {flag}: unary operator expected")
    if len(args) == 3:
        left, op, right = args
        if op in ("=", "=="):
            return left == right
        if op == "!=":
            return left != right
        if op in _INT_OPERATORS:
            try:
                return _INT_OPERATORS[op](int(left), int(right))
            except ValueError:
                bad = left if not _is_int(left) else right
                raise _TestSyntaxError(f"test: {bad}: integer expression expected") from None
        raise _TestSyntaxError(f"test: {op}: binary operator expected")
    raise _TestSyntaxError("test: too many arguments")


def _is_int(value: str) -> bool:
    try:
        int(value)
    except ValueError:
        return False
    return True


def cmd_test(ctx: VirtualCommandContext) -> VirtualResult:
    """Evaluate a POSIX test expression: 0 if true, 1 if false, 2 on error."""
    try:
        return VirtualResult(code=0 if _evaluate(ctx, list(ctx.args)) else 1)
    except _TestSyntaxError as e:
        return VirtualResult.error(str(e), code=2)


# =============================================================================
# env / true / false / exit
# =============================================================================


def cmd_env(ctx: VirtualCommandContext) -> VirtualResult:
    env = dict(ctx.env)
    for arg in ctx.args:
        if "=" not in arg or arg.startswith("="):
            return VirtualResult.error(f"env: '{arg}': running commands is not supported by the built-in env", code=125)
        key, _, value = arg.partition("=")
        env[key] = value
    return VirtualResult.ok("".join(f"{key}={value}\n" for key, value in sorted(env.items())))


def cmd_true(ctx: VirtualCommandContext) -> VirtualResult:
    return VirtualResult()


def cmd_false(ctx: VirtualCommandContext) -> VirtualResult:
    return VirtualResult(code=1)


def cmd_exit(ctx: VirtualCommandContext) -> VirtualResult:
    """Finish with the given code (default 0), truncated to 0-255."""
    if not ctx.args:
        return VirtualResult()
    try:
        code = int(ctx.args[0])
    except ValueError:
        return VirtualResult.error(f"exit: {ctx.args[0]}: numeric argument required", code=2)
    return VirtualResult(code=code & 0xFF)


COMMANDS: dict[str, VirtualHandler] = {
    "sleep": cmd_sleep,
    "test": cmd_test,
    "env": cmd_env,
    "true": cmd_true,
    "false": cmd_false,
    "exit": cmd_exit,
}
