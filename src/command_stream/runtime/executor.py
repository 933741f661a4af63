"""Walks a parsed command tree and runs it.

Simple commands resolve virtual-first, then to a child process. Pipelines
between virtual stages are connected with anyio memory-object streams;
a pipeline made only of real commands is handed to one real shell.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import inspect
import logging
import os
import signal
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO

import anyio

from ..cancel import CancelToken, CancellableStream
from ..commands import CommandRegistry, ResolutionKind, VirtualCommandContext, VirtualResult
from ..commands.common import describe_os_error
from ..commands.registry import wants_stdin_stream
from ..errors import VirtualCommandExit
from ..parser import (
    Node,
    Operator,
    Pipeline,
    Sequence,
    SimpleCommand,
    Subshell,
    needs_real_shell,
    parse_shell_command,
    render,
)
from ..quoting import quote_word
from ..settings import ShellSettings
from .io import InputMode, InputSource
from .process import (
    DEFAULT_TERM_TIMEOUT,
    ProcessSpec,
    exit_code_for,
    send_signal,
    shell_argv,
    spawn,
    terminate_process,
)
from .types import ChunkType

__all__ = ["Executor", "OutputSink", "Session"]

logger = logging.getLogger(__name__)

OutputSink = Callable[[bytes], Awaitable[None]]

SIGPIPE = getattr(signal, "SIGPIPE", signal.SIGTERM)
EXIT_SIGPIPE = 141
EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126

# Capacity of the channel between two in-process pipeline stages
PIPE_BUFFER = 64

# Largest single read from a child's stdout or stderr
READ_SIZE = 65536

_CANCELLED = object()


@dataclass
class Session:
    """Working directory and environment seen by the commands of one run.

    ``persist_cwd`` makes ``cd`` also change this process's directory.
    """

    cwd: str
    env: dict[str, str] = field(default_factory=lambda: dict(os.environ))
    persist_cwd: bool = False

    def copy(self) -> "Session":
        return Session(self.cwd, dict(self.env), persist_cwd=False)


def _encode(item: Any) -> bytes:
    if isinstance(item, bytes):
        return item
    if isinstance(item, (bytearray, memoryview)):
        return bytes(item)
    if isinstance(item, str):
        return item.encode()
    return str(item).encode()


async def _receive_bytes(receive: anyio.abc.ObjectReceiveStream) -> Any:
    async for data in receive:
        yield data


async def read_pieces(stream: asyncio.StreamReader, size: int = READ_SIZE) -> AsyncIterator[bytes]:
    """Yield output as it arrives, one piece per line.

    A read that ends mid-line yields the partial line at once.
    """
    while True:
        data = await stream.read(size)
        if not data:
            return
        for piece in data.splitlines(keepends=True):
            yield piece


async def stdin_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Decode stdin bytes and yield them one line at a time."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    async with contextlib.aclosing(chunks):
        async for chunk in chunks:
            pending += decoder.decode(chunk)
            *lines, pending = pending.split("\n")
            for line in lines:
                yield line + "\n"
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending


class Executor:
    """Runs command text for one runner.

    Args:
        token: the runner's cancellation token
        emit: callback that delivers output bytes to the runner
        registry: virtual command table
        settings: shell options snapshot for this run
        session: cwd/env the top-level commands run in
        processes: live children; the runner signals these on kill()
        term_timeout: grace period before SIGKILL during cleanup
    """

    def __init__(
        self,
        *,
        token: CancelToken,
        emit: Callable[[ChunkType, bytes], None],
        registry: CommandRegistry,
        settings: ShellSettings,
        session: Session,
        processes: set[asyncio.subprocess.Process],
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
    ):
        self.token = token
        self.registry = registry
        self.settings = settings
        self.session = session
        self.processes = processes
        self.term_timeout = term_timeout
        self._emit = emit

    async def _stdout(self, data: bytes) -> None:
        self._emit(ChunkType.STDOUT, data)

    async def _stderr(self, data: bytes) -> None:
        self._emit(ChunkType.STDERR, data)

    def _cancel_code(self) -> int:
        return 128 + (self.token.signal or signal.SIGTERM)

    async def run(self, text: str, stdin: InputSource) -> int:
        """Execute ``text``; returns the exit code."""
        if not text.strip():
            return 0
        if self.settings.verbose:
            await self._stderr(f"{text}\n".encode())

        node = None if needs_real_shell(text) else parse_shell_command(text)
        if node is None:
            logger.debug(f"Running through real shell: {text!r}")
            return await self.run_process(shell_argv(text), self.session, stdin, self._stdout)
        return await self.run_node(node, self.session, stdin, self._stdout)

    async def run_node(self, node: Node, session: Session, stdin: InputSource, stdout: OutputSink) -> int:
        if isinstance(node, Sequence):
            return await self.run_sequence(node, session, stdin, stdout)
        if isinstance(node, Pipeline):
            return await self.run_pipeline(node, session, stdin, stdout)
        if isinstance(node, Subshell):
            return await self.run_node(node.command, session.copy(), stdin, stdout)
        if isinstance(node, SimpleCommand):
            return await self.run_simple(node, session, stdin, stdout)
        raise TypeError(f"Unknown node type: {type(node).__name__}")

    # =========================================================================
    # Sequences and pipelines
    # =========================================================================

    async def run_sequence(self, node: Sequence, session: Session, stdin: InputSource, stdout: OutputSink) -> int:
        code = 0
        last = len(node.commands) - 1
        for index, command in enumerate(node.commands):
            if index > 0:
                operator = node.operators[index - 1]
                if operator is Operator.AND and code != 0:
                    continue
                if operator is Operator.OR and code == 0:
                    continue
            if self.token.cancelled:
                break

            # Only the first command sees the caller's stdin
            command_stdin = stdin if index == 0 else InputSource()
            code = await self.run_node(command, session, command_stdin, stdout)

            guarded = index < last and node.operators[index] in (Operator.AND, Operator.OR)
            if self.settings.errexit and code != 0 and not guarded:
                logger.debug(f"errexit: stopping sequence after code {code}")
                break
        return code

    def _runs_in_real_shell(self, node: Pipeline, session: Session) -> bool:
        for command in node.commands:
            if not isinstance(command, SimpleCommand) or command.redirects:
                return False
            if self.registry.resolve(command.cmd, session.env).kind is not ResolutionKind.PATH:
                return False
        return True

    async def run_pipeline(self, node: Pipeline, session: Session, stdin: InputSource, stdout: OutputSink) -> int:
        if self._runs_in_real_shell(node, session):
            return await self.run_process(shell_argv(render(node)), session, stdin, stdout)

        stages = node.commands
        codes = [0] * len(stages)
        channels = [anyio.create_memory_object_stream(max_buffer_size=PIPE_BUFFER) for _ in stages[1:]]

        async def run_stage(index: int) -> None:
            stage_stdin = stdin if index == 0 else InputSource.from_stream(_receive_bytes(channels[index - 1][1]))
            send = channels[index][0] if index < len(channels) else None
            try:
                codes[index] = await self.run_node(
                    stages[index], session.copy(), stage_stdin, send.send if send is not None else stdout
                )
            except anyio.BrokenResourceError:
                codes[index] = EXIT_SIGPIPE
            finally:
                if send is not None:
                    await send.aclose()
                if index > 0:
                    await channels[index - 1][1].aclose()

        async with anyio.create_task_group() as tg:
            for index in range(len(stages)):
                tg.start_soon(run_stage, index)

        if self.settings.pipefail:
            for code in reversed(codes):
                if code != 0:
                    return code
            return 0
        return codes[-1]

    # =========================================================================
    # Simple commands
    # =========================================================================

    async def run_simple(
        self, node: SimpleCommand, session: Session, stdin: InputSource, stdout: OutputSink
    ) -> int:
        argv = node.argv
        if self.settings.xtrace:
            await self._stderr(("+ " + " ".join(quote_word(arg) for arg in argv) + "\n").encode())

        outfile: BinaryIO | None = None
        try:
            for redirect in node.redirects:
                path = Path(session.cwd) / redirect.target
                try:
                    if redirect.kind == "<":
                        stdin = InputSource(path.read_bytes())
                        continue
                    if outfile is not None:
                        outfile.close()
                    outfile = open(path, "ab" if redirect.kind == ">>" else "wb")
                except OSError as e:
                    await self._stderr(f"{redirect.target}: {describe_os_error(e)}\n".encode())
                    return 1

            if outfile is not None:
                target = outfile

                async def write_file(data: bytes) -> None:
                    target.write(data)

                stdout = write_file

            return await self._dispatch(node, session, stdin, stdout)
        finally:
            if outfile is not None:
                outfile.close()

    async def _dispatch(self, node: SimpleCommand, session: Session, stdin: InputSource, stdout: OutputSink) -> int:
        resolution = self.registry.resolve(node.cmd, session.env)
        args = [word.value for word in node.args]

        if resolution.kind is ResolutionKind.VIRTUAL:
            assert resolution.handler is not None
            return await self.run_virtual(resolution.handler, node.cmd, args, session, stdin, stdout)
        if resolution.kind is ResolutionKind.PATH:
            return await self.run_process([node.cmd, *args], session, stdin, stdout, executable=resolution.path)

        await self._stderr(f"{node.cmd}: command not found\n".encode())
        return EXIT_NOT_FOUND

    # =========================================================================
    # Virtual commands
    # =========================================================================

    async def _race(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the token fires first."""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Virtual handler raised while being cancelled: {e}")
        return _CANCELLED

    async def run_virtual(
        self,
        handler: Callable[[VirtualCommandContext], Any],
        name: str,
        args: list[str],
        session: Session,
        stdin: InputSource,
        stdout: OutputSink,
    ) -> int:
        lines = None
        if wants_stdin_stream(handler) and stdin.mode in (InputMode.STREAM, InputMode.PIPE):
            lines = stdin_lines(stdin.chunks())
            data = b""
        else:
            data = await stdin.read_all() if stdin.has_input else b""
        if self.token.cancelled:
            return self._cancel_code()

        ctx = VirtualCommandContext(
            args=args,
            stdin=data.decode("utf-8", errors="replace"),
            cwd=session.cwd,
            env=dict(session.env),
            cancel_token=self.token,
            name=name,
            stdin_stream=lines,
        )
        logger.debug(f"Virtual command: {name} args={args}")

        try:
            return await self._run_handler(handler, ctx, session, stdout)
        finally:
            if lines is not None:
                with contextlib.suppress(RuntimeError):
                    await lines.aclose()

    async def _run_handler(
        self,
        handler: Callable[[VirtualCommandContext], Any],
        ctx: VirtualCommandContext,
        session: Session,
        stdout: OutputSink,
    ) -> int:
        name = ctx.name
        try:
            outcome = handler(ctx)
            if inspect.isawaitable(outcome):
                outcome = await self._race(outcome)
            if outcome is _CANCELLED:
                return self._cancel_code()

            if isinstance(outcome, AsyncIterable):
                return await self._stream_virtual(outcome, stdout)
            if inspect.isgenerator(outcome):
                for item in outcome:
                    if self.token.cancelled:
                        outcome.close()
                        return self._cancel_code()
                    await stdout(_encode(item))
                return 0

            result = VirtualResult.coerce(outcome)
        except VirtualCommandExit as e:
            if e.stdout:
                await stdout(_encode(e.stdout))
            if e.message:
                message = e.message if e.message.endswith("\n") else e.message + "\n"
                await self._stderr(message.encode())
            return e.code
        except anyio.BrokenResourceError:
            return EXIT_SIGPIPE
        except Exception as e:
            logger.debug(f"Virtual command {name} failed: {e}", exc_info=True)
            await self._stderr(f"{name}: {e}\n".encode())
            return 1

        if result.stdout:
            await stdout(_encode(result.stdout))
        if result.stderr:
            await self._stderr(_encode(result.stderr))
        if result.cwd is not None:
            session.env["OLDPWD"] = session.cwd
            session.env["PWD"] = result.cwd
            session.cwd = result.cwd
            if session.persist_cwd:
                os.chdir(result.cwd)
        return result.code

    async def _stream_virtual(self, source: AsyncIterable[Any], stdout: OutputSink) -> int:
        stream = CancellableStream(source.__aiter__(), self.token)
        try:
            async for item in stream:
                data = _encode(item)
                if data:
                    await stdout(data)
        except anyio.BrokenResourceError:
            return EXIT_SIGPIPE
        finally:
            await stream.aclose()
        if self.token.cancelled:
            return self._cancel_code()
        return 0

    # =========================================================================
    # Real processes
    # =========================================================================

    async def run_process(
        self,
        argv: list[str],
        session: Session,
        stdin: InputSource,
        stdout: OutputSink,
        *,
        executable: str | None = None,
    ) -> int:
        """Spawn ``argv`` and relay its output; never raises on spawn failure."""
        spec = ProcessSpec(
            argv=[executable or argv[0], *argv[1:]],
            cwd=session.cwd,
            env=session.env,
            stdin=stdin.mode,
        )
        try:
            process = await spawn(spec)
        except FileNotFoundError as e:
            missing = argv[0] if not e.filename or e.filename == spec.argv[0] else e.filename
            await self._stderr(f"{missing}: {describe_os_error(e)}\n".encode())
            return EXIT_NOT_FOUND
        except OSError as e:
            # PermissionError, exec format errors
            await self._stderr(f"{argv[0]}: {describe_os_error(e)}\n".encode())
            return EXIT_NOT_EXECUTABLE

        self.processes.add(process)
        if self.token.cancelled:
            send_signal(process, self.token.signal or signal.SIGTERM)

        feeder = asyncio.create_task(self._feed(process, stdin)) if process.stdin is not None else None
        errors = asyncio.create_task(self._relay_stderr(process))
        code: int | None = None
        try:
            assert process.stdout is not None
            try:
                async for piece in read_pieces(process.stdout):
                    await stdout(piece)
            except anyio.BrokenResourceError:
                logger.debug(f"Downstream closed, sending SIGPIPE to pid={process.pid}")
                send_signal(process, SIGPIPE)
                code = EXIT_SIGPIPE
                async for _ in read_pieces(process.stdout):
                    pass
            await errors
            returncode = await process.wait()
        finally:
            await asyncio.shield(self._cleanup(process, feeder, errors))
            self.processes.discard(process)

        if code is None:
            code = exit_code_for(returncode)
        logger.debug(f"Process exited pid={process.pid} code={code}")
        return code

    async def _feed(self, process: asyncio.subprocess.Process, stdin: InputSource) -> None:
        assert process.stdin is not None
        try:
            async with contextlib.aclosing(stdin.chunks()) as chunks:
                async for chunk in chunks:
                    process.stdin.write(chunk)
                    await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Child closed stdin early pid={process.pid}: {e}")
        finally:
            stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError, RuntimeError):
                process.stdin.close()

    async def _relay_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        async for piece in read_pieces(process.stderr):
            await self._stderr(piece)

    async def _cleanup(
        self,
        process: asyncio.subprocess.Process,
        feeder: asyncio.Task | None,
        errors: asyncio.Task,
    ) -> None:
        if process.returncode is None:
            await terminate_process(process, term_timeout=self.term_timeout)
        for task in (feeder, errors):
            if task is None:
                continue
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Stream task failed pid={process.pid}: {e}")
