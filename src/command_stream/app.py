"""command-stream CLI entry point.

Subcommands:
    repl    line-based shell over the command-stream runtime
    dev     poll a directory tree and re-run a command on change
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import TextIO

from . import __version__
from .commands import list_commands
from .config import get_config
from .shell import Shell, run
from .tracing import configure_logging

__all__ = ["build_parser", "configure_logging", "main", "run_dev", "run_repl"]

logger = logging.getLogger(__name__)

REPL_PROMPT = "> "
REPL_HELP = """\
Available commands:
  help        Show this help message
  exit        Exit the REPL
  .commands   List the registered virtual commands

Anything else runs as a shell command.
"""

# Directories the dev watcher never descends into
IGNORED_DIRS = {".git", ".hg", ".svn", "__pycache__", "node_modules", ".venv", ".mypy_cache", ".pytest_cache"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="command-stream",
        description="Run shell commands with virtual built-ins and streaming output.",
    )
    subparsers = parser.add_subparsers(dest="subcommand")

    subparsers.add_parser("repl", help="start an interactive shell")

    dev = subparsers.add_parser("dev", help="watch files and re-run a command on change")
    dev.add_argument("--path", default=".", help="directory to watch (default: .)")
    dev.add_argument("--interval", type=float, default=1.0, help="poll interval in seconds (default: 1.0)")
    dev.add_argument("--repl", action="store_true", help="start the REPL instead of watching")
    dev.add_argument("command", nargs="?", help="command to run at start and after each change")
    return parser


# =============================================================================
# REPL
# =============================================================================


async def run_repl(
    shell: Shell | None = None,
    *,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> int:
    """Read commands line by line until ``exit`` or EOF.

    Returns the code of the last command that ran.
    """
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    shell = shell or run.with_options(reject=False)
    loop = asyncio.get_running_loop()

    stdout.write(f"command-stream REPL v{__version__}\n")
    stdout.write('Type "help" for commands, "exit" or Ctrl+D to quit\n')

    code = 0
    while True:
        stdout.write(REPL_PROMPT)
        stdout.flush()
        line = await loop.run_in_executor(None, stdin.readline)
        if not line:
            stdout.write("\n")
            return code

        text = line.strip()
        if not text:
            continue
        if text == "exit":
            return code
        if text == "help":
            stdout.write(REPL_HELP)
            continue
        if text == ".commands":
            stdout.write("Registered virtual commands: " + ", ".join(list_commands()) + "\n")
            continue

        result = await shell.sh(text)
        code = result.code
        logger.debug(f"REPL command finished: {text!r} code={code}")


# =============================================================================
# dev
# =============================================================================


def snapshot(root: Path) -> dict[str, float]:
    """Map every file under ``root`` to its mtime."""
    mtimes: dict[str, float] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if name not in IGNORED_DIRS]
        for name in filenames:
            path = os.path.join(dirpath, name)
            try:
                mtimes[path] = os.stat(path).st_mtime
            except OSError:
                continue
    return mtimes


def changed_files(before: dict[str, float], after: dict[str, float]) -> list[str]:
    changed = {path for path, mtime in after.items() if before.get(path) != mtime}
    changed.update(path for path in before if path not in after)
    return sorted(changed)


async def run_dev(
    path: str = ".",
    interval: float = 1.0,
    command: str | None = None,
    *,
    use_repl: bool = False,
    shell: Shell | None = None,
    rounds: int | None = None,
    stdout: TextIO | None = None,
) -> int:
    """Poll ``path`` every ``interval`` seconds; re-run ``command`` on change.

    ``rounds`` bounds the number of polls (None polls until interrupted).
    """
    if use_repl:
        return await run_repl(shell)

    stdout = stdout or sys.stdout
    shell = shell or run.with_options(reject=False)
    root = Path(path).resolve()
    if not root.is_dir():
        sys.stderr.write(f"dev: {path}: not a directory\n")
        return 1

    stdout.write(f"Watching {root} every {interval}s (Ctrl+C to stop)\n")
    stdout.flush()
    previous = await asyncio.to_thread(snapshot, root)
    code = 0
    if command:
        code = (await shell.sh(command)).code

    polls = 0
    while rounds is None or polls < rounds:
        await asyncio.sleep(interval)
        polls += 1
        current = await asyncio.to_thread(snapshot, root)
        changed = changed_files(previous, current)
        previous = current
        if not changed:
            continue
        for file in changed:
            stdout.write(f"changed: {os.path.relpath(file, root)}\n")
        stdout.flush()
        logger.debug(f"dev: {len(changed)} file(s) changed")
        if command:
            code = (await shell.sh(command)).code
    return code


# =============================================================================
# main
# =============================================================================


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = sys.argv[1:] if argv is None else list(argv)
    parser = build_parser()

    if not args or args[0] not in ("repl", "dev"):
        parser.print_usage(sys.stderr)
        sys.exit(1)

    try:
        options = parser.parse_args(args)
    except SystemExit as e:
        sys.exit(1 if e.code else 0)

    configure_logging(get_config())

    try:
        if options.subcommand == "repl":
            code = asyncio.run(run_repl())
        else:
            code = asyncio.run(
                run_dev(options.path, options.interval, options.command, use_repl=options.repl)
            )
    except KeyboardInterrupt:
        logger.debug("Interrupted")
        code = 130
    sys.exit(code)
