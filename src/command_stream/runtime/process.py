"""OS child processes: spawning, signal delivery and termination.

Key design points:
- POSIX: start_new_session=True so signals reach the whole process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Termination escalates SIGTERM -> timeout -> SIGKILL
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..config import get_config
from .io import InputMode

__all__ = [
    "DEFAULT_KILL_TIMEOUT",
    "DEFAULT_TERM_TIMEOUT",
    "IS_WINDOWS",
    "ProcessSpec",
    "clear_shell_cache",
    "exit_code_for",
    "find_shell",
    "send_signal",
    "shell_argv",
    "spawn",
    "terminate_process",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

# Line-oriented readers must accept very long lines
STREAM_LIMIT = 8 * 1024 * 1024

SIGKILL = getattr(signal, "SIGKILL", 9)


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        env: Environment variables (None = inherit parent)
        stdin: How stdin is wired (PIPE for data/stream/pipe input)
    """

    argv: list[str]
    cwd: Path | str
    env: Mapping[str, str] | None = None
    stdin: InputMode = InputMode.IGNORE


def exit_code_for(returncode: int | None) -> int:
    """Map a Popen returncode to a shell-style exit code (-15 -> 143)."""
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 - returncode
    return returncode


def build_subprocess_kwargs(spec: ProcessSpec) -> dict[str, Any]:
    """Build platform-specific kwargs for asyncio.create_subprocess_exec."""
    kwargs: dict[str, Any] = {"limit": STREAM_LIMIT}

    if spec.env is not None:
        kwargs["env"] = dict(spec.env)

    # An inheriting child keeps our process group so it can use the terminal
    if spec.stdin is InputMode.INHERIT:
        return kwargs

    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    return kwargs


def _stdin_for(mode: InputMode) -> Any:
    if mode in (InputMode.DATA, InputMode.STREAM, InputMode.PIPE):
        return asyncio.subprocess.PIPE
    if mode is InputMode.INHERIT:
        return None
    return asyncio.subprocess.DEVNULL


async def spawn(spec: ProcessSpec) -> asyncio.subprocess.Process:
    """Start ``spec`` with stdout/stderr piped.

    Raises:
        FileNotFoundError: the executable or cwd does not exist
        PermissionError: the executable is not runnable
    """
    process = await asyncio.create_subprocess_exec(
        *spec.argv,
        stdin=_stdin_for(spec.stdin),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(spec.cwd),
        **build_subprocess_kwargs(spec),
    )
    logger.debug(
        f"Started subprocess pid={process.pid} "
        f"argv={spec.argv[0]} cwd={spec.cwd}"
    )
    return process


def send_signal(process: asyncio.subprocess.Process, sig: int) -> bool:
    """Deliver ``sig`` to the child's process group.

    Returns False when the process has already exited.
    """
    if process.returncode is not None:
        return False
    pid = process.pid
    try:
        if IS_WINDOWS:
            if sig == SIGKILL:
                process.kill()
            else:
                # Works because the child got CREATE_NEW_PROCESS_GROUP
                os.kill(pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent signal {sig} to pid={pid}")
            return True

        try:
            pgid = os.getpgid(pid)
            if pgid == os.getpgrp():
                # Shares our group (stdin="inherit"); signal just the child
                process.send_signal(sig)
            else:
                os.killpg(pgid, sig)
            logger.debug(f"Sent signal {sig} to process group pgid={pgid}")
        except ProcessLookupError:
            return False
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            process.send_signal(sig)
        return True
    except ProcessLookupError:
        logger.debug(f"Subprocess already exited pid={pid}")
        return False


async def terminate_process(
    process: asyncio.subprocess.Process,
    term_timeout: float = DEFAULT_TERM_TIMEOUT,
    kill_timeout: float = DEFAULT_KILL_TIMEOUT,
) -> int | None:
    """Terminate gracefully, then forcefully if needed.

    Termination strategy:
    1. Send SIGTERM (CTRL_BREAK_EVENT on Windows) to the process group
    2. Wait up to term_timeout for graceful exit
    3. If still running, send SIGKILL
    4. Wait up to kill_timeout for forced exit

    Returns the process returncode, or None if it never exited.
    """
    pid = process.pid
    logger.debug(f"Terminating subprocess pid={pid}")

    try:
        if not send_signal(process, signal.SIGTERM):
            return process.returncode

        try:
            await asyncio.wait_for(process.wait(), timeout=term_timeout)
            logger.debug(
                f"Subprocess terminated gracefully pid={pid} "
                f"returncode={process.returncode}"
            )
            return process.returncode
        except asyncio.TimeoutError:
            pass

        logger.debug(f"Force killing subprocess pid={pid}")
        send_signal(process, SIGKILL)

        try:
            await asyncio.wait_for(process.wait(), timeout=kill_timeout)
            logger.debug(f"Subprocess killed pid={pid} returncode={process.returncode}")
        except asyncio.TimeoutError:
            logger.warning(f"Subprocess did not exit after kill pid={pid}")

    except ProcessLookupError:
        logger.debug(f"Subprocess already exited pid={pid}")
    except Exception as e:
        logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    return process.returncode


# =============================================================================
# Shell detection
# =============================================================================

_shell_cache: str | None = None

_POSIX_SHELL_PATHS = ("/bin/sh", "/usr/bin/sh")
_PATH_SHELLS = ("sh", "bash", "zsh")
_WINDOWS_SHELL_PATHS = (
    r"C:\Program Files\Git\bin\bash.exe",
    r"C:\Program Files (x86)\Git\bin\bash.exe",
)


def find_shell() -> str:
    """Locate the shell used for the real-shell fallback."""
    global _shell_cache
    if _shell_cache is not None:
        return _shell_cache

    configured = get_config().shell
    candidates: list[str] = []
    if configured:
        candidates.append(configured)
    if IS_WINDOWS:
        candidates.extend(_WINDOWS_SHELL_PATHS)
    else:
        candidates.extend(_POSIX_SHELL_PATHS)

    for candidate in candidates:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            _shell_cache = candidate
            break
        found = shutil.which(candidate)
        if found:
            _shell_cache = found
            break
    else:
        for name in _PATH_SHELLS:
            found = shutil.which(name)
            if found:
                _shell_cache = found
                break
        else:
            _shell_cache = os.environ.get("COMSPEC", "cmd.exe") if IS_WINDOWS else "sh"

    logger.debug(f"Using shell: {_shell_cache}")
    return _shell_cache


def clear_shell_cache() -> None:
    global _shell_cache
    _shell_cache = None


def shell_argv(text: str) -> list[str]:
    """argv that runs ``text`` through the detected shell."""
    shell = find_shell()
    if os.path.basename(shell).lower() == "cmd.exe":
        return [shell, "/d", "/s", "/c", text]
    return [shell, "-c", text]
