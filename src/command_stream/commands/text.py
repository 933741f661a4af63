"""Text built-ins: echo, seq, yes, head, tail, basename, dirname, sort, uniq, tee.

``seq`` and ``yes`` stream: they validate their arguments and then return
an async generator, so each line reaches consumers as its own chunk.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import AsyncIterator

from .common import describe_os_error, join_lines, missing_operand, split_flags, split_lines
from .registry import VirtualCommandContext, VirtualHandler, VirtualResult, streams_stdin

__all__ = ["COMMANDS"]

logger = logging.getLogger(__name__)

_ECHO_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "\\": "\\",
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "0": "\0",
}


def _interpret_escapes(text: str) -> tuple[str, bool]:
    """Expand echo -e escapes. The flag is False when ``\\c`` stopped output."""
    out: list[str] = []
    i = 0
    while i < len(text):
        c = text[i]
        if c == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt == "c":
                return "".join(out), False
            if nxt in _ECHO_ESCAPES:
                out.append(_ECHO_ESCAPES[nxt])
                i += 2
                continue
        out.append(c)
        i += 1
    return "".join(out), True


def cmd_echo(ctx: VirtualCommandContext) -> VirtualResult:
    args = list(ctx.args)
    newline = True
    escapes = False
    while args and len(args[0]) > 1 and args[0][0] == "-" and set(args[0][1:]) <= {"n", "e", "E"}:
        flags = args.pop(0)[1:]
        newline = newline and "n" not in flags
        if "e" in flags:
            escapes = True
        if "E" in flags:
            escapes = False

    text = " ".join(args)
    if escapes:
        text, keep_going = _interpret_escapes(text)
        newline = newline and keep_going
    return VirtualResult.ok(text + ("\n" if newline else ""))


# =============================================================================
# seq / yes
# =============================================================================


def _parse_number(value: str) -> int | float:
    try:
        return int(value)
    except ValueError:
        return float(value)


def _format_number(value: int | float, decimals: int) -> str:
    if decimals:
        return f"{value:.{decimals}f}"
    return str(int(value))


def cmd_seq(ctx: VirtualCommandContext) -> VirtualResult | AsyncIterator[str]:
    """seq LAST | seq FIRST LAST | seq FIRST INCREMENT LAST"""
    args = ctx.args
    if not args:
        return missing_operand("seq")
    if len(args) > 3:
        return VirtualResult.error(f"seq: extra operand '{args[3]}'")

    try:
        numbers = [_parse_number(a) for a in args]
    except ValueError:
        bad = next(a for a in args if not _is_number(a))
        return VirtualResult.error(f"seq: invalid floating point argument: '{bad}'")

    first, step, last = 1, 1, numbers[-1]
    if len(numbers) >= 2:
        first = numbers[0]
    if len(numbers) == 3:
        step = numbers[1]
    if step == 0:
        return VirtualResult.error(f"seq: invalid Zero increment value: '{args[1]}'")

    decimals = max((len(a.split(".", 1)[1]) for a in args if "." in a), default=0)
    return _count(ctx, first, step, last, decimals)


def _is_number(value: str) -> bool:
    try:
        float(value)
    except ValueError:
        return False
    return True


async def _count(
    ctx: VirtualCommandContext,
    first: int | float,
    step: int | float,
    last: int | float,
    decimals: int,
) -> AsyncIterator[str]:
    index = 0
    while not ctx.is_cancelled():
        value = first + index * step
        if (step > 0 and value > last) or (step < 0 and value < last):
            return
        yield _format_number(value, decimals) + "\n"
        index += 1
        # Give kill() a chance between lines of long sequences
        if index % 256 == 0:
            await asyncio.sleep(0)


def cmd_yes(ctx: VirtualCommandContext) -> AsyncIterator[str]:
    """Repeat a line until cancelled."""
    line = (" ".join(ctx.args) if ctx.args else "y") + "\n"
    return _repeat(ctx, line)


async def _repeat(ctx: VirtualCommandContext, line: str) -> AsyncIterator[str]:
    while not ctx.is_cancelled():
        yield line
        await asyncio.sleep(0)


# =============================================================================
# head / tail
# =============================================================================


def _parse_line_count(command: str, args: list[str]) -> tuple[int, list[str]] | VirtualResult:
    """Accepts ``-n N``, ``-nN`` and ``-N``; defaults to 10."""
    count = 10
    files: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "-n" and i + 1 < len(args):
            raw = args[i + 1]
            i += 1
        elif arg.startswith("-n"):
            raw = arg[2:]
        elif arg.startswith("-") and arg != "-":
            raw = arg[1:]
            if not raw.isdigit():
                return VirtualResult.error(f"{command}: invalid option -- '{raw}'")
        else:
            files.append(arg)
            i += 1
            continue
        if not raw.isdigit():
            return VirtualResult.error(f"{command}: invalid number of lines: '{raw}'")
        count = int(raw)
        i += 1
    return count, files


async def _head_or_tail(ctx: VirtualCommandContext, command: str) -> VirtualResult:
    parsed = _parse_line_count(command, ctx.args)
    if isinstance(parsed, VirtualResult):
        return parsed
    count, files = parsed

    def pick(lines: list[str]) -> list[str]:
        if command == "head":
            return lines[:count]
        return lines[-count:] if count else []

    if not files:
        if command == "head" and ctx.stdin_stream is not None:
            return VirtualResult.ok(await _first_lines(ctx.stdin_stream, count))
        return VirtualResult.ok(join_lines(pick(split_lines(await ctx.read_stdin()))))

    output: list[str] = []
    for index, name in enumerate(files):
        if ctx.is_cancelled():
            return VirtualResult(stdout="".join(output), code=130)
        try:
            content = await ctx.read_stdin() if name == "-" else ctx.resolve_path(name).read_text()
        except IsADirectoryError:
            return VirtualResult.error(f"{command}: error reading '{name}': Is a directory")
        except OSError as e:
            return VirtualResult.error(f"{command}: cannot open '{name}' for reading: {describe_os_error(e)}")
        if len(files) > 1:
            output.append(("\n" if index else "") + f"==> {name} <==\n")
        output.append(join_lines(pick(split_lines(content))))
    return VirtualResult.ok("".join(output))


async def _first_lines(lines: AsyncIterator[str], count: int) -> str:
    """Read ``count`` lines and stop; the rest of the input is never consumed."""
    taken: list[str] = []
    if count:
        async for line in lines:
            taken.append(line)
            if len(taken) >= count:
                break
    if taken and not taken[-1].endswith("\n"):
        taken[-1] += "\n"
    return "".join(taken)


@streams_stdin
async def cmd_head(ctx: VirtualCommandContext) -> VirtualResult:
    return await _head_or_tail(ctx, "head")


async def cmd_tail(ctx: VirtualCommandContext) -> VirtualResult:
    return await _head_or_tail(ctx, "tail")


# =============================================================================
# basename / dirname
# =============================================================================


def cmd_basename(ctx: VirtualCommandContext) -> VirtualResult:
    if not ctx.args:
        return missing_operand("basename")
    path = ctx.args[0]
    stripped = path.rstrip("/")
    if not stripped:
        return VirtualResult.ok("/\n" if path else "\n")
    name = posixpath.basename(stripped)
    if len(ctx.args) > 1:
        suffix = ctx.args[1]
        if suffix and name.endswith(suffix) and name != suffix:
            name = name[: -len(suffix)]
    return VirtualResult.ok(name + "\n")


def cmd_dirname(ctx: VirtualCommandContext) -> VirtualResult:
    if not ctx.args:
        return missing_operand("dirname")
    path = ctx.args[0]
    stripped = path.rstrip("/")
    if not stripped:
        return VirtualResult.ok("/\n" if path else ".\n")
    parent = posixpath.dirname(stripped).rstrip("/")
    if not parent:
        parent = "/" if stripped.startswith("/") else "."
    return VirtualResult.ok(parent + "\n")


# =============================================================================
# sort / uniq / tee
# =============================================================================


def _read_inputs(ctx: VirtualCommandContext, command: str, files: list[str]) -> list[str] | VirtualResult:
    if not files:
        return split_lines(ctx.stdin)
    lines: list[str] = []
    for name in files:
        try:
            content = ctx.stdin if name == "-" else ctx.resolve_path(name).read_text()
        except OSError as e:
            return VirtualResult.error(f"{command}: cannot read: {name}: {describe_os_error(e)}")
        lines.extend(split_lines(content))
    return lines


def _numeric_key(line: str) -> tuple[int, float, str]:
    try:
        return (0, float(line.strip().split()[0]), line)
    except (ValueError, IndexError):
        return (1, 0.0, line)


def cmd_sort(ctx: VirtualCommandContext) -> VirtualResult:
    flags, files = split_flags(ctx.args)
    unknown = flags - {"r", "n", "u"}
    if unknown:
        return VirtualResult.error(f"sort: invalid option -- '{sorted(unknown)[0]}'")

    lines = _read_inputs(ctx, "sort", files)
    if isinstance(lines, VirtualResult):
        return lines
    if "u" in flags:
        lines = list(dict.fromkeys(lines))
    if "n" in flags:
        lines.sort(key=_numeric_key)
    else:
        lines.sort()
    if "r" in flags:
        lines.reverse()
    return VirtualResult.ok(join_lines(lines))


def cmd_uniq(ctx: VirtualCommandContext) -> VirtualResult:
    flags, files = split_flags(ctx.args)
    unknown = flags - {"c", "d", "u", "i"}
    if unknown:
        return VirtualResult.error(f"uniq: invalid option -- '{sorted(unknown)[0]}'")
    if {"d", "u"} <= flags:
        return VirtualResult.error("uniq: printing duplicated lines and unique lines is meaningless")

    lines = _read_inputs(ctx, "uniq", files[:1])
    if isinstance(lines, VirtualResult):
        return lines

    groups: list[tuple[str, int]] = []
    for line in lines:
        key = line.lower() if "i" in flags else line
        if groups:
            previous, count = groups[-1]
            previous_key = previous.lower() if "i" in flags else previous
            if previous_key == key:
                groups[-1] = (previous, count + 1)
                continue
        groups.append((line, 1))

    output: list[str] = []
    for line, count in groups:
        if "d" in flags and count < 2:
            continue
        if "u" in flags and count > 1:
            continue
        output.append(f"{count:>7} {line}" if "c" in flags else line)
    return VirtualResult.ok(join_lines(output))


def cmd_tee(ctx: VirtualCommandContext) -> VirtualResult:
    flags, files = split_flags(ctx.args)
    mode = "a" if "a" in flags else "w"
    errors: list[str] = []
    for name in files:
        try:
            with open(ctx.resolve_path(name), mode, encoding="utf-8") as f:
                f.write(ctx.stdin)
        except OSError as e:
            errors.append(f"tee: {name}: {describe_os_error(e)}\n")
    return VirtualResult(stdout=ctx.stdin, stderr="".join(errors), code=1 if errors else 0)


COMMANDS: dict[str, VirtualHandler] = {
    "echo": cmd_echo,
    "seq": cmd_seq,
    "yes": cmd_yes,
    "head": cmd_head,
    "tail": cmd_tail,
    "basename": cmd_basename,
    "dirname": cmd_dirname,
    "sort": cmd_sort,
    "uniq": cmd_uniq,
    "tee": cmd_tee,
}
