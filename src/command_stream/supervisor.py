"""SIGINT supervision for running runners.

Holds the set of runners that are currently executing and owns exactly one
SIGINT handler while that set is non-empty:
- First register(): save the previous handler, install ours
- Last unregister(): remove ours, restore the previous one
- On SIGINT: kill(SIGINT) every tracked runner

Supported configuration:
- COMMAND_STREAM_SIGINT_MODE: forward | forward_then_exit
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading
from collections.abc import Callable
from typing import Any, Optional

from .config import SigintMode, get_config

__all__ = ["RunnerSupervisor", "get_supervisor"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class RunnerSupervisor:
    """Tracks running runners and forwards SIGINT to them.

    Example:
        ```python
        supervisor = RunnerSupervisor()
        runner = ProcessRunner("sleep 10", supervisor=supervisor)
        runner.start()
        assert supervisor.handler_count == 1
        ```

    Attributes:
        sigint_mode: what happens after the signal has been forwarded
    """

    def __init__(self, sigint_mode: Optional[SigintMode] = None) -> None:
        self.sigint_mode = sigint_mode if sigint_mode is not None else get_config().sigint_mode
        self._runners: dict[int, Any] = {}
        self._on_empty_callbacks: list[Callable[[], None]] = []
        self._installed = False
        # "loop", "signal" or "logical" once installed
        self._hook: str | None = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handler: Any = None

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, runner: Any) -> None:
        key = id(runner)
        if key in self._runners:
            return
        self._runners[key] = runner
        logger.debug(f"Runner registered: {runner!r} (active: {len(self._runners)})")
        if not self._installed:
            self._install()

    def unregister(self, runner: Any) -> bool:
        """Stop tracking ``runner``; returns False if it was not tracked."""
        if self._runners.pop(id(runner), None) is None:
            return False
        logger.debug(f"Runner unregistered: {runner!r} (active: {len(self._runners)})")
        if not self._runners:
            self._uninstall()
            for callback in list(self._on_empty_callbacks):
                try:
                    callback()
                except Exception as e:
                    logger.warning(f"Error in on_empty callback: {e}")
        return True

    def add_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` every time the last runner unregisters."""
        self._on_empty_callbacks.append(callback)

    def remove_on_empty_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._on_empty_callbacks:
            self._on_empty_callbacks.remove(callback)

    def list_active(self) -> list[Any]:
        return list(self._runners.values())

    @property
    def active_count(self) -> int:
        return len(self._runners)

    @property
    def handler_count(self) -> int:
        return 1 if self._installed else 0

    @property
    def is_handler_installed(self) -> bool:
        return self._installed

    def kill_all(self, sig: int = signal.SIGTERM) -> int:
        """kill(sig) every tracked runner; returns how many were signalled."""
        runners = self.list_active()
        for runner in runners:
            runner.kill(sig)
        return len(runners)

    def __len__(self) -> int:
        return len(self._runners)

    def __contains__(self, runner: object) -> bool:
        return id(runner) in self._runners

    # =========================================================================
    # Handler installation
    # =========================================================================

    def _install(self) -> None:
        self._installed = True
        if threading.current_thread() is not threading.main_thread():
            self._hook = "logical"
            logger.debug("Not on the main thread; SIGINT handler is tracked but not installed")
            return

        self._previous_handler = signal.getsignal(signal.SIGINT)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None and not IS_WINDOWS:
            try:
                loop.add_signal_handler(signal.SIGINT, self._handle_interrupt)
                self._loop = loop
                self._hook = "loop"
                logger.debug(f"SIGINT handler installed on event loop (mode={self.sigint_mode.value})")
                return
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug(f"add_signal_handler unavailable, falling back: {e}")

        try:
            signal.signal(signal.SIGINT, lambda signum, frame: self._handle_interrupt())
            self._hook = "signal"
            logger.debug(f"SIGINT handler installed with signal.signal (mode={self.sigint_mode.value})")
        except (ValueError, OSError) as e:
            self._hook = "logical"
            logger.debug(f"Could not install SIGINT handler: {e}")

    def _uninstall(self) -> None:
        hook = self._hook
        self._installed = False
        self._hook = None

        if hook == "loop" and self._loop is not None:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
            except (RuntimeError, ValueError) as e:
                logger.debug(f"Error removing signal handler: {e}")
            self._loop = None

        if hook in ("loop", "signal") and self._previous_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._previous_handler)
            except (ValueError, OSError, TypeError) as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")
        self._previous_handler = None
        logger.debug("SIGINT handler removed")

    def _handle_interrupt(self) -> None:
        runners = self.list_active()
        logger.info(f"SIGINT received (mode={self.sigint_mode.value}), forwarding to {len(runners)} runner(s)")
        previous = self._previous_handler
        for runner in runners:
            runner.kill(signal.SIGINT)

        if self.sigint_mode is SigintMode.FORWARD_THEN_EXIT:
            self._chain(previous)

    def _chain(self, previous: Any) -> None:
        if previous is signal.SIG_IGN:
            return
        if callable(previous) and previous is not signal.default_int_handler:
            previous(signal.SIGINT, None)
            return
        raise KeyboardInterrupt


# Lazily created default supervisor
_supervisor: RunnerSupervisor | None = None


def get_supervisor() -> RunnerSupervisor:
    global _supervisor
    if _supervisor is None:
        _supervisor = RunnerSupervisor()
    return _supervisor
