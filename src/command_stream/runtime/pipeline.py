"""Composite runner built by ``ProcessRunner.pipe()``."""

from __future__ import annotations

import logging
import signal
from collections.abc import AsyncIterator, Iterable

from ..commands import CommandRegistry
from ..settings import shell_settings
from ..supervisor import RunnerSupervisor
from .events import EventKind
from .io import InputSource
from .process_runner import ProcessRunner
from .types import ChunkType, RunnerState

__all__ = ["PipelineRunner"]

logger = logging.getLogger(__name__)

SIGPIPE = getattr(signal, "SIGPIPE", signal.SIGTERM)


async def _stdout_bytes(runner: ProcessRunner) -> AsyncIterator[bytes]:
    """The runner's stdout as raw bytes; stopping early kills it with SIGPIPE."""
    stream = runner.stream()
    try:
        async for chunk in stream:
            if chunk.is_stdout:
                yield chunk.data
    finally:
        if runner.state is not RunnerState.FINISHED:
            runner.kill(SIGPIPE)
        await stream.aclose()


class PipelineRunner(ProcessRunner):
    """Stages connected stdout -> stdin, run as one runner.

    The composite emits the last stage's stdout and every stage's stderr.
    Its code is the last stage's, or the rightmost non-zero one under
    pipefail. kill() reaches every stage.
    """

    def __init__(
        self,
        stages: Iterable[ProcessRunner],
        *,
        registry: CommandRegistry | None = None,
        supervisor: RunnerSupervisor | None = None,
    ):
        flat: list[ProcessRunner] = []
        for stage in stages:
            if stage.state is not RunnerState.PENDING:
                raise ValueError(f"Cannot pipe a runner that has already started: {stage.command!r}")
            if isinstance(stage, PipelineRunner):
                flat.extend(stage.stages)
            else:
                flat.append(stage)
        if len(flat) < 2:
            raise ValueError("A pipeline needs at least two stages")

        options = flat[0].options.merged(stdin=None)
        super().__init__(
            " | ".join(stage.command for stage in flat),
            options,
            registry=registry,
            supervisor=supervisor,
        )
        self.stages = flat
        # The composite's stdin is the first stage's stdin
        self._input = flat[0]._input

        for index, stage in enumerate(flat):
            stage.options = stage.options.merged(mirror=False, capture=True)
            if index > 0:
                stage._input = InputSource.from_stream(_stdout_bytes(flat[index - 1]))

    async def _execute(self) -> int:
        for stage in self.stages:
            stage.events.subscribe(EventKind.STDERR, lambda data: self._emit(ChunkType.STDERR, data))
        self.stages[-1].events.subscribe(EventKind.STDOUT, lambda data: self._emit(ChunkType.STDOUT, data))

        for stage in self.stages:
            stage.start()
        codes = [(await stage._wait_result()).code for stage in self.stages]
        logger.debug(f"Pipeline stage codes: {codes}")

        if shell_settings().pipefail:
            return next((code for code in reversed(codes) if code != 0), 0)
        return codes[-1]

    def _signal_children(self, sig: int) -> None:
        for stage in self.stages:
            stage.kill(sig)
