"""Virtual command registry.

Maps command names to in-process handlers. Lookup is virtual-first, then
``PATH``; a name that resolves to neither is reported as missing (127).
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..cancel import CancelToken

__all__ = [
    "CommandRegistry",
    "Registration",
    "Resolution",
    "ResolutionKind",
    "VirtualCommandContext",
    "VirtualHandler",
    "VirtualResult",
    "streams_stdin",
    "wants_stdin_stream",
]

logger = logging.getLogger(__name__)

VirtualHandler = Callable[["VirtualCommandContext"], Any]


@dataclass
class VirtualCommandContext:
    """Everything a virtual handler gets to see.

    Attributes:
        args: arguments after the command name
        stdin: buffered stdin text; empty when ``stdin_stream`` is set
        stdin_stream: stdin as an async iterator of lines, for handlers
            marked with ``streams_stdin`` whose input is a stream or pipe
        cwd: working directory to resolve relative paths against
        env: environment mapping
        cancel_token: fired by ``kill()``; await ``wait_cancelled()`` or
            poll ``is_cancelled()``
        name: the command name the handler was invoked as
    """

    args: list[str]
    stdin: str = ""
    cwd: str = field(default_factory=os.getcwd)
    env: dict[str, str] = field(default_factory=lambda: dict(os.environ))
    cancel_token: CancelToken = field(default_factory=CancelToken)
    name: str = ""
    stdin_stream: Optional[AsyncIterator[str]] = None

    @property
    def cancel_signal(self) -> CancelToken:
        return self.cancel_token

    def is_cancelled(self) -> bool:
        return self.cancel_token.is_cancelled()

    async def wait_cancelled(self) -> int:
        return await self.cancel_token.wait()

    def resolve_path(self, path: str) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return Path(self.cwd) / candidate

    async def read_stdin(self) -> str:
        """All of stdin as text, draining ``stdin_stream`` if there is one."""
        if self.stdin_stream is None:
            return self.stdin
        parts = [line async for line in self.stdin_stream]
        self.stdin = "".join(parts)
        self.stdin_stream = None
        return self.stdin


def streams_stdin(handler: VirtualHandler) -> VirtualHandler:
    """Mark ``handler`` as reading stdin incrementally through ``ctx.stdin_stream``.

    Such a handler can stop early; the upstream stage then sees a closed pipe.
    """
    handler.streams_stdin = True  # type: ignore[attr-defined]
    return handler


def wants_stdin_stream(handler: VirtualHandler) -> bool:
    return bool(getattr(handler, "streams_stdin", False))


@dataclass
class VirtualResult:
    """Result of a non-streaming virtual handler.

    ``cwd`` is set by handlers that change directory (``cd``).
    """

    stdout: str | bytes = ""
    stderr: str | bytes = ""
    code: int = 0
    cwd: str | None = None

    @classmethod
    def ok(cls, stdout: str | bytes = "") -> "VirtualResult":
        return cls(stdout=stdout)

    @classmethod
    def error(cls, message: str, code: int = 1) -> "VirtualResult":
        if message and not message.endswith("\n"):
            message += "\n"
        return cls(stderr=message, code=code)

    @classmethod
    def coerce(cls, value: Any) -> "VirtualResult":
        """Normalise whatever a handler returned."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            return cls(code=0 if value else 1)
        if isinstance(value, int):
            return cls(code=value)
        if isinstance(value, (str, bytes)):
            return cls(stdout=value)
        if isinstance(value, Mapping):
            return cls(
                stdout=value.get("stdout") or "",
                stderr=value.get("stderr") or "",
                code=int(value.get("code", 0) or 0),
                cwd=value.get("cwd"),
            )
        raise TypeError(f"Unsupported virtual command result: {type(value).__name__}")


@dataclass(frozen=True, eq=False)
class Registration:
    """Capability token returned by ``register``; required to unregister."""

    name: str
    handler: VirtualHandler


class ResolutionKind(Enum):
    VIRTUAL = "virtual"
    PATH = "path"
    MISSING = "missing"


@dataclass(frozen=True)
class Resolution:
    kind: ResolutionKind
    name: str
    handler: Optional[VirtualHandler] = None
    path: str | None = None


class CommandRegistry:
    """Name -> handler table with token-guarded removal.

    Example:
        ```python
        registry = CommandRegistry()
        token = registry.register("upper", lambda ctx: ctx.stdin.upper())
        ...
        registry.unregister(token)
        ```
    """

    def __init__(self) -> None:
        self._entries: dict[str, Registration] = {}
        self._enabled = True

    def register(self, name: str, handler: VirtualHandler) -> Registration:
        """Add or replace ``name``; returns the token for ``unregister``."""
        if not name or any(c.isspace() for c in name):
            raise ValueError(f"Invalid command name: {name!r}")
        if not callable(handler):
            raise TypeError(f"Handler for {name!r} must be callable")
        registration = Registration(name, handler)
        if name in self._entries:
            logger.debug(f"Replacing virtual command: {name}")
        self._entries[name] = registration
        logger.debug(f"Registered virtual command: {name}")
        return registration

    def unregister(self, token: Registration) -> bool:
        """Remove the entry only if ``token`` is still its current registration."""
        current = self._entries.get(token.name)
        if current is not token:
            logger.debug(f"Stale registration token for {token.name}, ignoring")
            return False
        del self._entries[token.name]
        logger.debug(f"Unregistered virtual command: {token.name}")
        return True

    def get(self, name: str) -> VirtualHandler | None:
        entry = self._entries.get(name)
        return entry.handler if entry else None

    def list_commands(self) -> list[str]:
        return sorted(self._entries)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        """Route every command to PATH, as if no virtual commands existed."""
        self._enabled = False

    def resolve(self, name: str, env: Mapping[str, str] | None = None) -> Resolution:
        if self._enabled:
            handler = self.get(name)
            if handler is not None:
                return Resolution(ResolutionKind.VIRTUAL, name, handler=handler)

        if os.sep in name or (os.altsep and os.altsep in name):
            return Resolution(ResolutionKind.PATH, name, path=name)

        search_path = env.get("PATH") if env is not None else None
        found = shutil.which(name, path=search_path)
        if found:
            return Resolution(ResolutionKind.PATH, name, path=found)
        return Resolution(ResolutionKind.MISSING, name)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)
