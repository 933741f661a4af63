"""Cancellation token and cancellable async streams.

A CancelToken is the single place a runner records "stop now": kill()
marks it, virtual handlers either await ``wait()`` or poll
``is_cancelled()``, and CancellableStream races every ``__anext__`` of a
streaming handler against it.
"""

from __future__ import annotations

import asyncio
import logging
from signal import SIGTERM
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

__all__ = ["CancelToken", "CancellableStream"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation flag with an awaitable and callbacks.

    The first ``cancel()`` wins; later calls are ignored so the recorded
    signal is stable.
    """

    def __init__(self) -> None:
        self._signal: int | None = None
        self._event: asyncio.Event | None = None
        self._callbacks: list[Callable[[int], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._signal is not None

    @property
    def signal(self) -> int | None:
        """Signal number passed to the first ``cancel()``, if any."""
        return self._signal

    def is_cancelled(self) -> bool:
        return self._signal is not None

    def cancel(self, signum: int = SIGTERM) -> bool:
        """Mark the token cancelled. Returns False if it already was."""
        if self._signal is not None:
            return False
        self._signal = int(signum)
        if self._event is not None:
            self._event.set()
        for callback in list(self._callbacks):
            try:
                callback(self._signal)
            except Exception as e:
                logger.warning(f"Error in cancel callback: {e}")
        self._callbacks.clear()
        return True

    def add_callback(self, callback: Callable[[int], None]) -> None:
        """Run ``callback(signum)`` on cancel; immediately if already cancelled."""
        if self._signal is not None:
            callback(self._signal)
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[int], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def wait(self) -> int:
        """Suspend until cancelled; returns the signal number."""
        if self._signal is None:
            if self._event is None:
                self._event = asyncio.Event()
            await self._event.wait()
        assert self._signal is not None
        return self._signal

    def __repr__(self) -> str:
        state = f"cancelled signal={self._signal}" if self.cancelled else "active"
        return f"CancelToken({state})"


class CancellableStream(Generic[T]):
    """Wrap an async iterator so each step can be interrupted by a token.

    When the token fires while a step is pending, the pending step is
    cancelled, the source is closed, and iteration stops.
    """

    def __init__(self, source: AsyncIterator[T], token: CancelToken):
        self._source = source
        self._token = token
        self._closed = False

    def __aiter__(self) -> "CancellableStream[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed or self._token.cancelled:
            await self.aclose()
            raise StopAsyncIteration

        step = asyncio.ensure_future(self._source.__anext__())
        waiter = asyncio.ensure_future(self._token.wait())
        try:
            done, _ = await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            step.cancel()
            waiter.cancel()
            raise

        if step in done:
            waiter.cancel()
            try:
                return step.result()
            except StopAsyncIteration:
                self._closed = True
                raise

        step.cancel()
        try:
            await step
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        except Exception as e:
            logger.debug(f"Stream raised while being cancelled: {e}")
        await self.aclose()
        raise StopAsyncIteration

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError as e:
                # "aclose(): asynchronous generator is already running"
                logger.debug(f"Stream close skipped: {e}")
