"""stdin sources for runners."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterable, AsyncIterator
from enum import Enum
from typing import Any

__all__ = ["InputMode", "InputSource", "StdinHandle"]

logger = logging.getLogger(__name__)

# Bytes requested per blocking read from a file-like stdin
FILE_READ_SIZE = 65536


async def _read_file(file: Any, size: int = FILE_READ_SIZE) -> AsyncIterator[bytes]:
    """Pump a blocking file object from a worker thread. The file is not closed."""
    while True:
        data = await asyncio.to_thread(file.read, size)
        if not data:
            return
        yield data.encode() if isinstance(data, str) else data


class StdinHandle:
    """Writable stdin for a runner started with ``stdin="pipe"``.

    Writes are queued and consumed by exactly one reader (the command).
    ``close()`` signals end-of-input.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._closed = False
        self._reader_done = asyncio.Event()
        self._consumed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: str | bytes) -> None:
        if self._closed:
            raise ValueError("write to closed stdin")
        if isinstance(data, str):
            data = data.encode()
        if data:
            self._queue.put_nowait(bytes(data))

    async def drain(self) -> None:
        """Wait until the command has taken everything written so far."""
        if self._reader_done.is_set() or self._queue.empty():
            return
        joined = asyncio.ensure_future(self._queue.join())
        finished = asyncio.ensure_future(self._reader_done.wait())
        try:
            await asyncio.wait({joined, finished}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            joined.cancel()
            finished.cancel()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def detach(self) -> None:
        """Called by the reader once it stops consuming."""
        self._reader_done.set()
        self.close()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("stdin pipe can only be read once")
        self._consumed = True
        try:
            while True:
                item = await self._queue.get()
                self._queue.task_done()
                if item is None:
                    return
                yield item
        finally:
            self._reader_done.set()


class InputMode(Enum):
    IGNORE = "ignore"
    INHERIT = "inherit"
    DATA = "data"
    STREAM = "stream"
    PIPE = "pipe"


class InputSource:
    """Normalised view over the ``stdin`` run option.

    Accepts None, ``"ignore"``, ``"inherit"``, ``"pipe"``, a StdinHandle, str,
    bytes, an async iterable of bytes, or a file-like object with ``read()``.
    """

    def __init__(self, option: Any = None):
        self.data: bytes = b""
        self.handle: StdinHandle | None = None
        self._stream: AsyncIterable[bytes] | None = None
        self._consumed = False

        if option is None or option == "ignore":
            self.mode = InputMode.IGNORE
        elif option == "inherit":
            self.mode = InputMode.INHERIT
        elif option == "pipe":
            self.mode = InputMode.PIPE
            self.handle = StdinHandle()
        elif isinstance(option, StdinHandle):
            self.mode = InputMode.PIPE
            self.handle = option
        elif isinstance(option, str):
            self.mode = InputMode.DATA
            self.data = option.encode()
        elif isinstance(option, (bytes, bytearray, memoryview)):
            self.mode = InputMode.DATA
            self.data = bytes(option)
        elif isinstance(option, AsyncIterable):
            self.mode = InputMode.STREAM
            self._stream = option
        elif callable(getattr(option, "read", None)):
            self.mode = InputMode.STREAM
            self._stream = _read_file(option)
        else:
            raise TypeError(f"Unsupported stdin option: {type(option).__name__}")

    @classmethod
    def from_stream(cls, stream: AsyncIterable[bytes]) -> "InputSource":
        return cls(stream)

    @property
    def has_input(self) -> bool:
        return self.mode in (InputMode.DATA, InputMode.STREAM, InputMode.PIPE)

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield stdin bytes. Streams and pipes can be consumed only once."""
        if self.mode is InputMode.DATA:
            if self.data:
                yield self.data
            return
        if self.mode not in (InputMode.STREAM, InputMode.PIPE):
            return
        if self._consumed:
            raise RuntimeError("stdin stream was already consumed")
        self._consumed = True

        if self.mode is InputMode.PIPE:
            assert self.handle is not None
            async for chunk in self.handle:
                yield chunk
            return

        assert self._stream is not None
        stream = self._stream
        try:
            async for chunk in stream:
                if isinstance(chunk, str):
                    chunk = chunk.encode()
                yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def read_all(self) -> bytes:
        if self.mode is InputMode.DATA:
            return self.data
        parts: list[bytes] = []
        async with contextlib.aclosing(self.chunks()) as chunks:
            async for chunk in chunks:
                parts.append(chunk)
        return b"".join(parts)

    def close(self) -> None:
        if self.handle is not None:
            self.handle.detach()

    def __repr__(self) -> str:
        return f"InputSource(mode={self.mode.value})"
