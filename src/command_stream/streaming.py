"""Composable transforms over runner output.

A ChunkStream wraps a zero-argument factory of async chunk iterators, so
each iteration is a fresh pass over its source (for a runner: a fresh
``stream()`` that replays history). Every transform returns a new
ChunkStream; closing a transformed iteration closes everything upstream,
which kills the source runner if it is still running.

Line callbacks (map, filter, reduce, analyze extractors) receive stdout
text with the trailing newline removed. Non-stdout items pass through
map and filter untouched.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import inspect
import logging
import math
import time
from collections.abc import AsyncIterable, AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import anyio
from pydantic import BaseModel, Field

from .runtime.types import ChunkType, StreamChunk

__all__ = [
    "AnalyzeConfig",
    "Batch",
    "ChunkStream",
    "SplitStreams",
    "StreamAnalytics",
    "Window",
    "merge",
]

logger = logging.getLogger(__name__)

ChunkFactory = Callable[[], AsyncIterator[Any]]


class Batch(BaseModel):
    """Up to ``size`` consecutive chunks."""

    type: str = "batch"
    data: list[Any]
    size: int
    timestamp: float = Field(default_factory=time.time)


class Window(BaseModel):
    """The last ``size`` chunks, emitted once per arriving chunk."""

    type: str = "window"
    data: list[Any]
    size: int
    timestamp: float = Field(default_factory=time.time)


class StreamAnalytics(BaseModel):
    """Running metrics attached to each chunk by ``analyze()``."""

    total_count: int = 0
    error_count: int = 0
    error_rate: float = 0.0
    response_times: list[float] = Field(default_factory=list)
    avg_response_time: float = 0.0
    custom_metrics: dict[str, list[Any]] = Field(default_factory=dict)
    elapsed_time: float = 0.0
    throughput: float = 0.0
    stream_counts: dict[int, int] = Field(default_factory=dict)


@dataclass
class AnalyzeConfig:
    """Extractors for ``analyze()``.

    Attributes:
        error_rate: ``line -> bool``; true lines count as errors
        response_time: ``line -> number | None``
        custom_metrics: name -> ``line -> value``; None results are skipped
    """

    error_rate: Callable[[str], Any] | None = None
    response_time: Callable[[str], Any] | None = None
    custom_metrics: dict[str, Callable[[str], Any]] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> "AnalyzeConfig":
        """Build from an AnalyzeConfig, a mapping or None.

        Entries that are not callable are skipped with a warning. Unknown
        callable keys in a mapping become custom metrics.
        """
        if value is None:
            return cls()
        if isinstance(value, cls):
            mapping: Mapping[str, Any] = {
                "error_rate": value.error_rate,
                "response_time": value.response_time,
                "custom_metrics": value.custom_metrics,
            }
        elif isinstance(value, Mapping):
            mapping = value
        else:
            raise TypeError(f"analyze() expects a mapping or AnalyzeConfig, got {type(value).__name__}")

        config = cls()
        for key, extractor in mapping.items():
            if key == "custom_metrics":
                metrics = extractor if isinstance(extractor, Mapping) else {}
                if not isinstance(extractor, Mapping) and extractor is not None:
                    logger.warning("analyze: custom_metrics must be a mapping, ignoring")
                for name, fn in metrics.items():
                    if callable(fn):
                        config.custom_metrics[name] = fn
                    else:
                        logger.warning(f"analyze: custom metric {name!r} is not callable, skipping")
                continue
            if extractor is None:
                continue
            if not callable(extractor):
                logger.warning(f"analyze: {key!r} is not callable, skipping")
                continue
            if key in ("error_rate", "response_time"):
                setattr(config, key, extractor)
            else:
                config.custom_metrics[key] = extractor
        return config


# =============================================================================
# Helpers
# =============================================================================


@contextlib.asynccontextmanager
async def _opened(source: AsyncIterable[Any]):
    """Iterate ``source`` and always close its iterator afterwards."""
    iterator = source.__aiter__()
    try:
        yield iterator
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


def _line(chunk: StreamChunk) -> str:
    text = chunk.text
    return text[:-1] if text.endswith("\n") else text


def _is_stdout(item: Any) -> bool:
    return isinstance(item, StreamChunk) and item.type is ChunkType.STDOUT


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def _stop(task: asyncio.Task) -> None:
    """Cancel ``task`` if still running and surface its failure, if any."""
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def _pump(source: AsyncIterable[Any], send: anyio.abc.ObjectSendStream) -> None:
    async with send:
        async with _opened(source) as items:
            async for item in items:
                try:
                    await send.send(item)
                except anyio.BrokenResourceError:
                    return


# =============================================================================
# ChunkStream
# =============================================================================


class ChunkStream:
    """Re-iterable, chainable view over an async chunk source.

    Example:
        ```python
        async for batch in run("seq 1 10").map(int).batch(3):
            print([c.text for c in batch.data])
        ```
    """

    def __init__(self, factory: ChunkFactory):
        self._factory = factory

    @classmethod
    def of(cls, source: Any) -> "ChunkStream":
        """Wrap a runner, a ChunkStream or any async iterable."""
        if isinstance(source, ChunkStream):
            return source
        stream = getattr(source, "stream", None)
        if callable(stream):
            return cls(stream)
        if isinstance(source, AsyncIterable):
            return cls(source.__aiter__)
        raise TypeError(f"Cannot stream from {type(source).__name__}")

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._factory().__aiter__()

    def _then(self, transform: Callable[..., AsyncIterator[Any]], *args: Any) -> "ChunkStream":
        return ChunkStream(lambda: transform(self, *args))

    def map(self, fn: Callable[[str], Any]) -> "ChunkStream":
        return self._then(_map, fn)

    def filter(self, fn: Callable[[str], Any]) -> "ChunkStream":
        return self._then(_filter, fn)

    async def reduce(self, fn: Callable[[Any, str], Any], seed: Any) -> Any:
        """Fold ``fn(acc, line)`` over stdout lines; consumes the stream."""
        acc = seed
        async with _opened(self) as items:
            async for item in items:
                if _is_stdout(item):
                    acc = await _call(fn, acc, _line(item))
        return acc

    def batch(self, size: int, timeout: float | None = None) -> "ChunkStream":
        if size < 1:
            raise ValueError("batch size must be at least 1")
        if timeout is None:
            return self._then(_batch, size)
        return self._then(_timed_batch, size, timeout)

    def sliding_window(self, size: int) -> "ChunkStream":
        if size < 1:
            raise ValueError("window size must be at least 1")
        return self._then(_sliding_window, size)

    def split(self, predicate: Callable[[str], Any]) -> "SplitStreams":
        return SplitStreams(self, predicate)

    def analyze(self, config: AnalyzeConfig | Mapping[str, Any] | None = None) -> "ChunkStream":
        return self._then(_analyze, AnalyzeConfig.from_value(config))

    async def collect(self) -> list[Any]:
        return [item async for item in self]


# =============================================================================
# Transforms
# =============================================================================


async def _map(source: AsyncIterable[Any], fn: Callable[[str], Any]) -> AsyncIterator[Any]:
    async with _opened(source) as items:
        async for item in items:
            if not _is_stdout(item):
                yield item
                continue
            result = await _call(fn, _line(item))
            if result is None:
                continue
            if isinstance(result, StreamChunk):
                yield result
                continue
            data = result if isinstance(result, bytes) else str(result).encode()
            if item.data.endswith(b"\n") and not data.endswith(b"\n"):
                data += b"\n"
            yield replace(item, data=data)


async def _filter(source: AsyncIterable[Any], fn: Callable[[str], Any]) -> AsyncIterator[Any]:
    async with _opened(source) as items:
        async for item in items:
            if not _is_stdout(item) or await _call(fn, _line(item)):
                yield item


async def _batch(source: AsyncIterable[Any], size: int) -> AsyncIterator[Batch]:
    pending: list[Any] = []
    async with _opened(source) as items:
        async for item in items:
            pending.append(item)
            if len(pending) >= size:
                yield Batch(data=pending, size=len(pending))
                pending = []
    if pending:
        yield Batch(data=pending, size=len(pending))


async def _timed_batch(source: AsyncIterable[Any], size: int, timeout: float) -> AsyncIterator[Batch]:
    send, receive = anyio.create_memory_object_stream(max_buffer_size=max(size, 16))
    pump = asyncio.create_task(_pump(source, send))
    pending: list[Any] = []
    deadline: float | None = None
    timed_out = object()
    try:
        async with receive:
            while True:
                item: Any = timed_out
                try:
                    if deadline is None:
                        item = await receive.receive()
                    else:
                        with anyio.move_on_after(max(0.0, deadline - anyio.current_time())):
                            item = await receive.receive()
                except anyio.EndOfStream:
                    break

                if item is not timed_out:
                    if not pending:
                        deadline = anyio.current_time() + timeout
                    pending.append(item)
                if pending and (item is timed_out or len(pending) >= size):
                    yield Batch(data=pending, size=len(pending))
                    pending = []
                    deadline = None
        if pending:
            yield Batch(data=pending, size=len(pending))
    finally:
        await _stop(pump)


async def _sliding_window(source: AsyncIterable[Any], size: int) -> AsyncIterator[Window]:
    window: collections.deque[Any] = collections.deque(maxlen=size)
    async with _opened(source) as items:
        async for item in items:
            window.append(item)
            if len(window) == size:
                yield Window(data=list(window), size=size)


async def _analyze(source: AsyncIterable[Any], config: AnalyzeConfig) -> AsyncIterator[Any]:
    stats = StreamAnalytics()
    started = time.monotonic()

    def extract(name: str, fn: Callable[[str], Any], line: str) -> Any:
        try:
            return fn(line)
        except Exception as e:
            logger.warning(f"analyze: {name} extractor failed: {e}")
            return None

    async with _opened(source) as items:
        async for item in items:
            if not isinstance(item, StreamChunk):
                yield item
                continue

            line = _line(item)
            stats.total_count += 1
            index = item.stream_index if item.stream_index is not None else 0
            stats.stream_counts[index] = stats.stream_counts.get(index, 0) + 1

            if config.error_rate is not None and extract("error_rate", config.error_rate, line):
                stats.error_count += 1
            stats.error_rate = stats.error_count / stats.total_count

            if config.response_time is not None:
                value = extract("response_time", config.response_time, line)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    stats.response_times.append(float(value))
                    stats.avg_response_time = sum(stats.response_times) / len(stats.response_times)

            for name, fn in config.custom_metrics.items():
                value = extract(name, fn, line)
                if value is not None:
                    stats.custom_metrics.setdefault(name, []).append(value)

            stats.elapsed_time = time.monotonic() - started
            stats.throughput = stats.total_count / stats.elapsed_time if stats.elapsed_time > 0 else 0.0
            yield replace(item, analytics=stats.model_copy(deep=True))


# =============================================================================
# split / merge
# =============================================================================


class SplitStreams:
    """Two single-use streams fed by one pump.

    ``matched`` receives stdout chunks whose line satisfies the predicate;
    ``unmatched`` receives everything else, stderr included. Both sides are
    buffered, so they can be read concurrently or one after the other.
    """

    def __init__(self, source: AsyncIterable[Any], predicate: Callable[[str], Any]):
        self._source = source
        self._predicate = predicate
        self._pump_task: asyncio.Task | None = None
        matched_send, matched_receive = anyio.create_memory_object_stream(max_buffer_size=math.inf)
        unmatched_send, unmatched_receive = anyio.create_memory_object_stream(max_buffer_size=math.inf)
        self._sends = (matched_send, unmatched_send)
        self._claimed: set[str] = set()
        self.matched = ChunkStream(lambda: self._side("matched", matched_receive))
        self.unmatched = ChunkStream(lambda: self._side("unmatched", unmatched_receive))

    def __iter__(self):
        return iter((self.matched, self.unmatched))

    def _ensure_pump(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        matched, unmatched = self._sends
        alive = {id(matched): True, id(unmatched): True}
        async with matched, unmatched:
            async with _opened(self._source) as items:
                async for item in items:
                    target = matched if _is_stdout(item) and await _call(self._predicate, _line(item)) else unmatched
                    if not alive[id(target)]:
                        continue
                    try:
                        await target.send(item)
                    except anyio.BrokenResourceError:
                        alive[id(target)] = False
                        if not any(alive.values()):
                            return

    async def _side(self, name: str, receive: anyio.abc.ObjectReceiveStream) -> AsyncIterator[Any]:
        if name in self._claimed:
            raise RuntimeError(f"split().{name} can only be iterated once")
        self._claimed.add(name)
        self._ensure_pump()
        async with receive:
            async for item in receive:
                yield item
        assert self._pump_task is not None
        if self._pump_task.done() and not self._pump_task.cancelled() and self._pump_task.exception():
            raise self._pump_task.exception()


def merge(*sources: Any) -> ChunkStream:
    """Interleave several runners or streams in arrival order.

    Each StreamChunk gets ``stream_index`` set to its source position.
    Closing the merged iteration early stops every source.
    """
    streams = [ChunkStream.of(source) for source in sources]
    return ChunkStream(lambda: _merge(streams))


async def _merge(streams: list[ChunkStream]) -> AsyncIterator[Any]:
    send, receive = anyio.create_memory_object_stream(max_buffer_size=64)

    async def pump(index: int, stream: ChunkStream, out: anyio.abc.ObjectSendStream) -> None:
        async with out:
            async with _opened(stream) as items:
                async for item in items:
                    if isinstance(item, StreamChunk):
                        item = replace(item, stream_index=index)
                    try:
                        await out.send(item)
                    except anyio.BrokenResourceError:
                        return

    async with send:
        tasks = [asyncio.create_task(pump(index, stream, send.clone())) for index, stream in enumerate(streams)]
    try:
        async with receive:
            async for item in receive:
                yield item
        for task in tasks:
            await task
    finally:
        for task in tasks:
            await _stop(task)
