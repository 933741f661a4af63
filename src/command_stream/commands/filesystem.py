"""Filesystem built-ins: cd, pwd, ls, cat, cp, mv, rm, mkdir, touch."""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path

from .common import describe_os_error, missing_operand, split_flags
from .registry import VirtualCommandContext, VirtualHandler, VirtualResult, streams_stdin

__all__ = ["COMMANDS"]

logger = logging.getLogger(__name__)


def cmd_cd(ctx: VirtualCommandContext) -> VirtualResult:
    """Change the working directory for the rest of the command."""
    if ctx.args and ctx.args[0] != "~":
        target = ctx.args[0]
        if target == "-":
            target = ctx.env.get("OLDPWD") or ctx.cwd
    else:
        target = ctx.env.get("HOME") or str(Path.home())

    path = ctx.resolve_path(target)
    if not path.exists():
        return VirtualResult.error(f"cd: {target}: No such file or directory")
    if not path.is_dir():
        return VirtualResult.error(f"cd: {target}: Not a directory")

    resolved = str(path.resolve())
    logger.debug(f"cd: {ctx.cwd} -> {resolved}")
    return VirtualResult(cwd=resolved)


def cmd_pwd(ctx: VirtualCommandContext) -> VirtualResult:
    return VirtualResult.ok(f"{ctx.cwd}\n")


def _long_entry(path: Path, name: str) -> str:
    stats = path.stat()
    mode = "drwxr-xr-x" if path.is_dir() else "-rw-r--r--"
    mtime = datetime.fromtimestamp(stats.st_mtime).strftime("%Y-%m-%d")
    return f"{mode}  1 user group {stats.st_size:>8} {mtime} {name}\n"


def cmd_ls(ctx: VirtualCommandContext) -> VirtualResult:
    flags, paths = split_flags(ctx.args)
    show_all = "a" in flags
    long_format = "l" in flags
    if not paths:
        paths = ["."]

    output: list[str] = []
    for target in paths:
        path = ctx.resolve_path(target)
        try:
            if path.is_dir():
                entries = sorted(os.listdir(path))
                if not show_all:
                    entries = [e for e in entries if not e.startswith(".")]
                if len(paths) > 1:
                    output.append(f"{target}:\n")
                if long_format:
                    output.extend(_long_entry(path / e, e) for e in entries)
                elif entries:
                    output.append("\n".join(entries) + "\n")
            elif path.exists():
                output.append(_long_entry(path, path.name) if long_format else f"{path.name}\n")
            else:
                return VirtualResult.error(f"ls: {target}: No such file or directory")
        except OSError as e:
            return VirtualResult.error(f"ls: {target}: {describe_os_error(e)}")

    return VirtualResult.ok("".join(output))


@streams_stdin
async def cmd_cat(ctx: VirtualCommandContext) -> VirtualResult | AsyncIterator[str]:
    """Concatenate files, or stdin when no file (or ``-``) is given.

    Piped stdin with no operands is passed through line by line.
    """
    if not ctx.args:
        if ctx.stdin_stream is not None:
            return ctx.stdin_stream
        return VirtualResult.ok(ctx.stdin)

    output: list[bytes] = []
    for name in ctx.args:
        if name == "-":
            output.append((await ctx.read_stdin()).encode())
            continue
        try:
            output.append(ctx.resolve_path(name).read_bytes())
        except OSError as e:
            return VirtualResult(stdout=b"".join(output), stderr=f"cat: {name}: {describe_os_error(e)}\n", code=1)
    return VirtualResult.ok(b"".join(output))


def cmd_cp(ctx: VirtualCommandContext) -> VirtualResult:
    flags, paths = split_flags(ctx.args)
    recursive = bool(flags & {"r", "R"})
    if not paths:
        return missing_operand("cp", "cp: missing file operand")
    if len(paths) < 2:
        return missing_operand("cp", f"cp: missing destination file operand after '{paths[0]}'")

    *sources, destination = paths
    dest_path = ctx.resolve_path(destination)
    if len(sources) > 1 and not dest_path.is_dir():
        return VirtualResult.error(f"cp: target '{destination}' is not a directory")

    for source in sources:
        src_path = ctx.resolve_path(source)
        if not src_path.exists():
            return VirtualResult.error(f"cp: cannot stat '{source}': No such file or directory")
        target = dest_path / src_path.name if dest_path.is_dir() else dest_path
        try:
            if src_path.is_dir():
                if not recursive:
                    return VirtualResult.error(f"cp: -r not specified; omitting directory '{source}'")
                shutil.copytree(src_path, target, dirs_exist_ok=True)
            else:
                shutil.copy2(src_path, target)
        except OSError as e:
            return VirtualResult.error(f"cp: cannot copy '{source}': {describe_os_error(e)}")
    return VirtualResult()


def cmd_mv(ctx: VirtualCommandContext) -> VirtualResult:
    flags, paths = split_flags(ctx.args)
    force = "f" in flags
    if len(paths) < 2:
        return VirtualResult.error("mv: missing destination file operand")

    *sources, destination = paths
    dest_path = ctx.resolve_path(destination)
    dest_is_dir = dest_path.is_dir()
    if len(sources) > 1 and dest_path.exists() and not dest_is_dir:
        return VirtualResult.error(f"mv: target '{destination}' is not a directory")

    for source in sources:
        src_path = ctx.resolve_path(source)
        if not src_path.exists():
            return VirtualResult.error(f"mv: cannot stat '{source}': No such file or directory")
        target = dest_path / src_path.name if dest_is_dir else dest_path
        if target.exists() and not force:
            return VirtualResult.error(f"mv: cannot move '{source}': File exists")
        try:
            shutil.move(str(src_path), str(target))
        except OSError as e:
            return VirtualResult.error(f"mv: cannot move '{source}': {describe_os_error(e)}")
    return VirtualResult()


def cmd_rm(ctx: VirtualCommandContext) -> VirtualResult:
    flags, paths = split_flags(ctx.args)
    recursive = bool(flags & {"r", "R"})
    force = "f" in flags
    if not paths:
        if force:
            return VirtualResult()
        return missing_operand("rm")

    for name in paths:
        path = ctx.resolve_path(name)
        if not path.exists() and not path.is_symlink():
            if force:
                continue
            return VirtualResult.error(f"rm: cannot remove '{name}': No such file or directory")
        try:
            if path.is_dir() and not path.is_symlink():
                if not recursive:
                    return VirtualResult.error(f"rm: cannot remove '{name}': Is a directory")
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            return VirtualResult.error(f"rm: cannot remove '{name}': {describe_os_error(e)}")
    return VirtualResult()


def cmd_mkdir(ctx: VirtualCommandContext) -> VirtualResult:
    flags, paths = split_flags(ctx.args)
    parents = "p" in flags
    if not paths:
        return missing_operand("mkdir")

    for name in paths:
        try:
            ctx.resolve_path(name).mkdir(parents=parents, exist_ok=parents)
        except OSError as e:
            return VirtualResult.error(f"mkdir: cannot create directory '{name}': {describe_os_error(e)}")
    return VirtualResult()


def cmd_touch(ctx: VirtualCommandContext) -> VirtualResult:
    _, paths = split_flags(ctx.args)
    if not paths:
        return missing_operand("touch", "touch: missing file operand")

    for name in paths:
        try:
            ctx.resolve_path(name).touch()
        except OSError as e:
            return VirtualResult.error(f"touch: cannot touch '{name}': {describe_os_error(e)}")
    return VirtualResult()


COMMANDS: dict[str, VirtualHandler] = {
    "cd": cmd_cd,
    "pwd": cmd_pwd,
    "ls": cmd_ls,
    "cat": cmd_cat,
    "cp": cmd_cp,
    "mv": cmd_mv,
    "rm": cmd_rm,
    "mkdir": cmd_mkdir,
    "touch": cmd_touch,
}
