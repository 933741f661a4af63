"""Runtime data model: chunks, results and run options."""

from __future__ import annotations

import io
import time
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from ..cancel import CancelToken
    from .io import StdinHandle

__all__ = [
    "CapturedOutput",
    "ChunkType",
    "CommandResult",
    "RunOptions",
    "RunnerState",
    "StdinOption",
    "StreamChunk",
]


class RunnerState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"


class ChunkType(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class StreamChunk:
    """One delivered unit of output.

    Attributes:
        type: which stream produced the bytes
        data: raw bytes
        timestamp: ``time.time()`` at emission
        stream_index: source position, set by ``merge()``
        analytics: running metrics, set by ``analyze()``
    """

    type: ChunkType
    data: bytes
    timestamp: float = field(default_factory=time.time)
    stream_index: int | None = None
    analytics: Any = None

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    @property
    def is_stdout(self) -> bool:
        return self.type is ChunkType.STDOUT

    @property
    def is_stderr(self) -> bool:
        return self.type is ChunkType.STDERR


class CapturedOutput(bytes):
    """Captured stdout/stderr bytes with text and stream views.

    Compares equal to ``str`` values by decoded text, so
    ``result.stdout == "hi\\n"`` works alongside ``== b"hi\\n"``.
    """

    @property
    def text(self) -> str:
        return self.decode("utf-8", errors="replace")

    def lines(self) -> list[str]:
        return self.text.splitlines()

    def reader(self) -> io.BytesIO:
        """A fresh binary file object over the captured bytes."""
        return io.BytesIO(self)

    async def stream(self, chunk_size: int = 65536) -> AsyncIterator[bytes]:
        for offset in range(0, len(self), chunk_size):
            yield bytes(self[offset:offset + chunk_size])

    def __eq__(self, other: object) -> bool:
        if isinstance(other, str):
            return self.text == other
        return bytes.__eq__(self, other)

    def __ne__(self, other: object) -> bool:
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    __hash__ = bytes.__hash__

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"CapturedOutput({bytes(self)!r})"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished runner."""

    code: int
    stdout: CapturedOutput = field(default_factory=CapturedOutput)
    stderr: CapturedOutput = field(default_factory=CapturedOutput)
    stdin: StdinHandle | None = None

    @property
    def success(self) -> bool:
        return self.code == 0

    @property
    def text(self) -> str:
        return self.stdout.text


StdinOption = Union[str, bytes, AsyncIterator[bytes], None]


@dataclass(frozen=True)
class RunOptions:
    """Per-invocation options.

    Attributes:
        mirror: copy output to this process's stdout/stderr while running
        capture: keep output in memory for the result
        stdin: text, bytes, an async iterable of bytes, a readable file
            object, or one of ``"inherit"``, ``"ignore"``, ``"pipe"``
        cwd: working directory; None uses the current one
        env: environment; None inherits ``os.environ``
        signal: external CancelToken that kills the runner when fired
        reject: raise CommandError from ``await`` on a non-zero code
    """

    mirror: bool = True
    capture: bool = True
    stdin: Any = None
    cwd: str | None = None
    env: Mapping[str, str] | None = None
    signal: CancelToken | None = None
    reject: bool = True

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "RunOptions":
        return cls().merged(**options)

    def merged(self, **overrides: Any) -> "RunOptions":
        known = {item.name for item in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown run option(s): {', '.join(sorted(unknown))}")
        if "cwd" in overrides and overrides["cwd"] is not None:
            overrides["cwd"] = str(overrides["cwd"])
        return replace(self, **overrides)
