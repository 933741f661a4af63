"""Typed event subscriptions for runners.

Each event kind has its own ordered slot of subscriptions. Payloads:

- DATA: StreamChunk
- STDOUT / STDERR: bytes
- END: CommandResult
- EXIT: int exit code
- ERROR: the exception that aborted execution
- CLOSE: int exit code, fired last
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

__all__ = ["EventKind", "RunnerEvents", "Subscription"]

logger = logging.getLogger(__name__)


class EventKind(Enum):
    DATA = "data"
    STDOUT = "stdout"
    STDERR = "stderr"
    END = "end"
    EXIT = "exit"
    ERROR = "error"
    CLOSE = "close"

    @classmethod
    def from_name(cls, name: "str | EventKind") -> "EventKind":
        if isinstance(name, cls):
            return name
        try:
            return cls(str(name).lower())
        except ValueError:
            valid = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Unknown event {name!r}; expected one of: {valid}") from None


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``subscribe``; ``cancel()`` detaches the callback."""

    kind: EventKind
    callback: Callable[..., Any]
    _owner: "RunnerEvents | None" = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._owner is not None and self in self._owner._slots[self.kind]

    def cancel(self) -> bool:
        if self._owner is None:
            return False
        removed = self._owner._remove(self)
        self._owner = None
        return removed


class RunnerEvents:
    """Per-runner subscription table."""

    def __init__(self) -> None:
        self._slots: dict[EventKind, list[Subscription]] = {kind: [] for kind in EventKind}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, kind: EventKind | str, callback: Callable[..., Any]) -> Subscription:
        if not callable(callback):
            raise TypeError("callback must be callable")
        kind = EventKind.from_name(kind)
        subscription = Subscription(kind, callback, self)
        self._slots[kind].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> bool:
        slot = self._slots[subscription.kind]
        if subscription in slot:
            slot.remove(subscription)
            return True
        return False

    def emit(self, kind: EventKind, *args: Any) -> None:
        """Deliver to every subscriber; callback errors are logged, not raised."""
        for subscription in list(self._slots[kind]):
            try:
                result = subscription.callback(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception as e:
                logger.warning(f"Error in {kind.value} listener: {e}")

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Error in async listener: {task.exception()}")

    def listener_count(self, kind: EventKind | str | None = None) -> int:
        if kind is None:
            return sum(len(slot) for slot in self._slots.values())
        return len(self._slots[EventKind.from_name(kind)])

    def clear(self) -> None:
        for subscriptions in self._slots.values():
            for subscription in subscriptions:
                subscription._owner = None
            subscriptions.clear()
