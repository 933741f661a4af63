"""Process runner: one command invocation, awaited, streamed or synced.

This module provides:
- A PENDING -> RUNNING -> FINISHED state machine with an idempotent finish
- A single output path that captures, mirrors, notifies and streams
- Cooperative kill() that reaches virtual handlers and child process groups
- escalate() for callers that want SIGTERM -> timeout -> SIGKILL

Key design points:
- Nothing runs until the runner is awaited, iterated or start()ed
- The runner is registered with the supervisor only while it runs
- Cleanup of children is cancel-safe (asyncio.shield)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections.abc import AsyncIterator, Callable, Mapping
from typing import TYPE_CHECKING, Any

import anyio

from ..cancel import CancelToken
from ..commands import CommandRegistry, get_registry
from ..config import get_config
from ..errors import CommandError, RunnerStateError
from ..quoting import CommandSpec
from ..settings import shell_settings
from ..streaming import ChunkStream
from ..supervisor import RunnerSupervisor, get_supervisor
from ..tracing import apply_trace_switch
from .events import EventKind, RunnerEvents
from .executor import Executor, Session
from .io import InputSource, StdinHandle
from .process import SIGKILL, send_signal
from .types import CapturedOutput, ChunkType, CommandResult, RunnerState, RunOptions, StreamChunk

if TYPE_CHECKING:
    from .pipeline import PipelineRunner

__all__ = ["ProcessRunner", "escalate"]

logger = logging.getLogger(__name__)


class ProcessRunner:
    """A lazily started command.

    Example:
        ```python
        runner = ProcessRunner("echo hi | sort", {"mirror": False})
        result = await runner
        assert result.stdout == "hi\\n"
        ```

    Args:
        command: shell text or a CommandSpec from ``build_command``
        options: RunOptions or a mapping of its fields
        registry: virtual command table (default: the shared one)
        supervisor: SIGINT supervisor (default: the shared one)
    """

    def __init__(
        self,
        command: str | CommandSpec,
        options: RunOptions | Mapping[str, Any] | None = None,
        *,
        registry: CommandRegistry | None = None,
        supervisor: RunnerSupervisor | None = None,
    ):
        self.spec = command if isinstance(command, CommandSpec) else CommandSpec(str(command))
        if options is None:
            options = RunOptions()
        elif not isinstance(options, RunOptions):
            options = RunOptions.from_mapping(options)
        self.options: RunOptions = options
        self.state = RunnerState.PENDING
        self.cancel_token = CancelToken()
        self.events = RunnerEvents()

        self._registry = registry
        self._supervisor = supervisor
        self._input = InputSource(options.stdin)
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._history: list[StreamChunk] = []
        self._queues: list[asyncio.Queue[StreamChunk | None]] = []
        self._processes: set[asyncio.subprocess.Process] = set()
        self._task: asyncio.Task | None = None
        self._done = asyncio.Event()
        self._result: CommandResult | None = None
        self._kill_signal: int | None = None
        self._signal_callback: Callable[[int], None] | None = None
        self._errexit = False

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def command(self) -> str:
        return self.spec.text

    @property
    def registry(self) -> CommandRegistry:
        return self._registry if self._registry is not None else get_registry()

    @property
    def supervisor(self) -> RunnerSupervisor:
        if self._supervisor is None:
            self._supervisor = get_supervisor()
        return self._supervisor

    @property
    def stdin(self) -> StdinHandle | None:
        """Writable handle when started with ``stdin="pipe"``."""
        return self._input.handle

    @property
    def result(self) -> CommandResult | None:
        return self._result

    @property
    def started(self) -> bool:
        return self.state is not RunnerState.PENDING

    @property
    def finished(self) -> bool:
        return self.state is RunnerState.FINISHED

    # =========================================================================
    # Configuration
    # =========================================================================

    def quiet(self) -> "ProcessRunner":
        """Disable mirroring; only valid before the runner starts."""
        if self.state is not RunnerState.PENDING:
            raise RunnerStateError("quiet() must be called before the runner starts")
        self.options = self.options.merged(mirror=False)
        return self

    def on(self, event: EventKind | str, callback: Callable[..., Any]) -> "ProcessRunner":
        self.events.subscribe(event, callback)
        return self

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> "ProcessRunner":
        """Schedule execution on the running loop; no-op once started."""
        if self.state is not RunnerState.PENDING:
            return self
        asyncio.get_running_loop()
        apply_trace_switch()

        self._errexit = shell_settings().errexit
        self.state = RunnerState.RUNNING
        self.supervisor.register(self)
        logger.debug(f"Starting runner: {self.command!r}")

        if self.options.signal is not None:
            self._signal_callback = self.kill
            self.options.signal.add_callback(self._signal_callback)

        self._task = asyncio.create_task(self._run())
        return self

    async def _run(self) -> None:
        code = 1
        try:
            code = await self._execute()
        except asyncio.CancelledError:
            code = 128 + (self._kill_signal or signal.SIGTERM)
            raise
        except Exception as e:
            logger.debug(f"Runner failed: {self.command!r}: {e}", exc_info=True)
            self.events.emit(EventKind.ERROR, e)
            self._emit(ChunkType.STDERR, f"{e}\n".encode())
            code = 1
        finally:
            if self.cancel_token.cancelled:
                code = 128 + (self._kill_signal or self.cancel_token.signal or signal.SIGTERM)
            self.finish(code)

    def _session(self) -> Session:
        env = dict(self.options.env) if self.options.env is not None else dict(os.environ)
        if self.options.cwd is not None:
            return Session(self.options.cwd, env)
        return Session(os.getcwd(), env, persist_cwd=True)

    async def _execute(self) -> int:
        executor = Executor(
            token=self.cancel_token,
            emit=self._emit,
            registry=self.registry,
            settings=shell_settings(),
            session=self._session(),
            processes=self._processes,
            term_timeout=get_config().term_timeout,
        )
        return await executor.run(self.command, self._input)

    def finish(self, result: CommandResult | int) -> CommandResult:
        """Record the outcome once; later calls return the stored result."""
        if self._result is not None:
            return self._result
        if not isinstance(result, CommandResult):
            result = CommandResult(
                code=int(result),
                stdout=CapturedOutput(self._stdout),
                stderr=CapturedOutput(self._stderr),
                stdin=self._input.handle,
            )
        self._result = result
        self.state = RunnerState.FINISHED
        self._input.close()

        if self._signal_callback is not None and self.options.signal is not None:
            self.options.signal.remove_callback(self._signal_callback)
            self._signal_callback = None
        self.supervisor.unregister(self)

        for queue in self._queues:
            queue.put_nowait(None)
        self._done.set()

        logger.debug(f"Runner finished: {self.command!r} code={result.code}")
        self.events.emit(EventKind.END, result)
        self.events.emit(EventKind.EXIT, result.code)
        self.events.emit(EventKind.CLOSE, result.code)
        self.events.clear()
        return result

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """Stop the command with ``sig``. Never raises; no-op once finished."""
        if self.state is RunnerState.FINISHED:
            return
        try:
            self._kill_signal = int(sig)
            self.cancel_token.cancel(sig)
            self._signal_children(int(sig))
            if self.state is RunnerState.PENDING:
                self.finish(128 + int(sig))
        except Exception as e:
            logger.warning(f"Error killing runner {self.command!r}: {e}")

    def _signal_children(self, sig: int) -> None:
        for process in list(self._processes):
            send_signal(process, sig)

    # =========================================================================
    # Waiting
    # =========================================================================

    async def _wait_result(self) -> CommandResult:
        self.start()
        await self._done.wait()
        assert self._result is not None
        return self._result

    async def wait(self) -> CommandResult:
        """Run to completion.

        Raises:
            CommandError: the code is non-zero and ``reject`` is set, or
                errexit was on when the runner started
        """
        result = await self._wait_result()
        if result.code != 0 and (self.options.reject or self._errexit):
            raise CommandError(self.command, result)
        return result

    def __await__(self):
        return self.wait().__await__()

    async def text(self) -> str:
        return (await self.wait()).stdout.text

    def sync(self) -> CommandResult:
        """Block the calling thread until finished (own event loop)."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            raise RuntimeError("sync() cannot be used inside a running event loop; await the runner instead")
        return anyio.run(self.wait)

    # =========================================================================
    # Output
    # =========================================================================

    def _emit(self, kind: ChunkType, data: bytes) -> None:
        if not data:
            return
        chunk = StreamChunk(kind, bytes(data))
        if self.options.capture:
            (self._stdout if chunk.is_stdout else self._stderr).extend(chunk.data)
            self._history.append(chunk)
        if self.options.mirror:
            self._mirror(chunk)

        self.events.emit(EventKind.DATA, chunk)
        self.events.emit(EventKind.STDOUT if chunk.is_stdout else EventKind.STDERR, chunk.data)
        for queue in self._queues:
            queue.put_nowait(chunk)

    def _mirror(self, chunk: StreamChunk) -> None:
        target = sys.stdout if chunk.is_stdout else sys.stderr
        try:
            buffer = getattr(target, "buffer", None)
            if buffer is None:
                target.write(chunk.text)
                target.flush()
                return
            target.flush()
            buffer.write(chunk.data)
            buffer.flush()
        except (OSError, ValueError) as e:
            logger.debug(f"Mirror write failed: {e}")

    async def stream(self) -> AsyncIterator[StreamChunk]:
        """Replay captured history, then yield live chunks until finished.

        Leaving the iteration early kills the runner when the generator is
        closed. After a bare ``break`` that happens when the generator is
        finalized; wrap the iteration in ``contextlib.aclosing(runner.stream())``
        or call ``aclose()`` on it to kill the runner at the point of exit.
        """
        backlog = list(self._history)
        queue: asyncio.Queue[StreamChunk | None] = asyncio.Queue()
        live = self.state is not RunnerState.FINISHED
        if live:
            self._queues.append(queue)
        try:
            self.start()
            for chunk in backlog:
                yield chunk
            if not live:
                return
            while True:
                chunk = await queue.get()
                if chunk is None:
                    return
                yield chunk
        finally:
            if queue in self._queues:
                self._queues.remove(queue)
            if self.state is not RunnerState.FINISHED:
                logger.debug(f"Stream closed early, killing runner: {self.command!r}")
                self.kill()

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        return self.stream()

    def chunks(self) -> ChunkStream:
        return ChunkStream(self.stream)

    def map(self, fn: Callable[[str], Any]) -> ChunkStream:
        return self.chunks().map(fn)

    def filter(self, fn: Callable[[str], Any]) -> ChunkStream:
        return self.chunks().filter(fn)

    async def reduce(self, fn: Callable[[Any, str], Any], seed: Any) -> Any:
        return await self.chunks().reduce(fn, seed)

    def batch(self, size: int, timeout: float | None = None) -> ChunkStream:
        return self.chunks().batch(size, timeout)

    def sliding_window(self, size: int) -> ChunkStream:
        return self.chunks().sliding_window(size)

    def split(self, predicate: Callable[[str], Any]):
        return self.chunks().split(predicate)

    def analyze(self, config: Any = None) -> ChunkStream:
        return self.chunks().analyze(config)

    # =========================================================================
    # Composition
    # =========================================================================

    def pipe(self, other: "ProcessRunner | str | CommandSpec") -> "PipelineRunner":
        """Feed this runner's stdout into ``other``; both must be pending."""
        from .pipeline import PipelineRunner

        if not isinstance(other, ProcessRunner):
            other = ProcessRunner(
                other,
                self.options.merged(stdin=None, signal=None),
                registry=self._registry,
                supervisor=self._supervisor,
            )
        return PipelineRunner([self, other], registry=self._registry, supervisor=self._supervisor)

    def __repr__(self) -> str:
        code = f" code={self._result.code}" if self._result is not None else ""
        return f"{type(self).__name__}({self.command!r} {self.state.value}{code})"


async def escalate(runner: ProcessRunner, term_timeout: float | None = None) -> CommandResult:
    """kill(SIGTERM), wait up to ``term_timeout``, then kill(SIGKILL).

    Returns the final result without rejecting.
    """
    if term_timeout is None:
        term_timeout = get_config().term_timeout
    runner.kill(signal.SIGTERM)
    try:
        return await asyncio.wait_for(asyncio.shield(runner._wait_result()), timeout=term_timeout)
    except asyncio.TimeoutError:
        logger.debug(f"Runner ignored SIGTERM for {term_timeout}s, sending SIGKILL: {runner.command!r}")
        runner.kill(SIGKILL)
        return await runner._wait_result()
