"""User-facing entry points: ``run``, ``create`` and the Shell factory."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from typing import Any

from .commands import CommandRegistry
from .quoting import CommandSpec, Interpolation, InterpolationKind, build_command, quote_word
from .runtime.pipeline import PipelineRunner
from .runtime.process_runner import ProcessRunner
from .runtime.types import RunOptions
from .settings import shell_settings
from .supervisor import RunnerSupervisor

__all__ = ["Shell", "create", "run"]


class Shell:
    """Builds runners that share default options.

    Example:
        ```python
        quiet = run({"mirror": False})
        result = await quiet("echo {}", "hello world")
        ```

    Calling a Shell with a command template returns a pending
    ProcessRunner; calling it with a mapping (or RunOptions) returns a new
    Shell with those options merged in.
    """

    def __init__(
        self,
        options: RunOptions | Mapping[str, Any] | None = None,
        *,
        registry: CommandRegistry | None = None,
        supervisor: RunnerSupervisor | None = None,
    ):
        if options is None:
            options = RunOptions()
        elif not isinstance(options, RunOptions):
            options = RunOptions.from_mapping(options)
        self.options = options
        self.registry = registry
        self.supervisor = supervisor

    def __call__(self, command: Any = None, *values: Any, **options: Any) -> "ProcessRunner | Shell":
        if command is None or isinstance(command, (Mapping, RunOptions)):
            if values:
                raise TypeError("Interpolation values need a command template")
            return self.with_options(command, **options)
        return self.run(command, *values, **options)

    def _runner(self, spec: CommandSpec, options: Mapping[str, Any]) -> ProcessRunner:
        return ProcessRunner(
            spec,
            self.options.merged(**options),
            registry=self.registry,
            supervisor=self.supervisor,
        )

    def run(self, template: str | CommandSpec, *values: Any, **options: Any) -> ProcessRunner:
        """Interpolate ``values`` into ``template`` (quoted) and return a runner.

        Raises:
            UnboundVariableError: a value is None while ``set -u`` is on
        """
        if isinstance(template, CommandSpec):
            spec = template
        else:
            spec = build_command(str(template), values, nounset=shell_settings().nounset)
        return self._runner(spec, options)

    def sh(self, text: str, **options: Any) -> ProcessRunner:
        """Run ``text`` exactly as written; no interpolation."""
        return self._runner(CommandSpec(text), options)

    def exec(self, file: str | os.PathLike, args: Iterable[Any] = (), **options: Any) -> ProcessRunner:
        """Run ``file`` with ``args``, each quoted as a single word."""
        argv = [os.fspath(file), *(str(arg) for arg in args)]
        words = [Interpolation(part, quote_word(part), InterpolationKind.QUOTED) for part in argv]
        return self._runner(CommandSpec(" ".join(word.rendered for word in words), tuple(words)), options)

    def pipe(self, *commands: ProcessRunner | str) -> PipelineRunner:
        """Connect ``commands`` stdout -> stdin as one runner."""
        stages = [command if isinstance(command, ProcessRunner) else self.sh(str(command)) for command in commands]
        return PipelineRunner(stages, registry=self.registry, supervisor=self.supervisor)

    def with_options(self, options: RunOptions | Mapping[str, Any] | None = None, **overrides: Any) -> "Shell":
        merged = self.options
        if isinstance(options, RunOptions):
            merged = options
        elif options:
            merged = merged.merged(**dict(options))
        if overrides:
            merged = merged.merged(**overrides)
        return Shell(merged, registry=self.registry, supervisor=self.supervisor)

    def __repr__(self) -> str:
        return f"Shell({self.options!r})"


run = Shell()


def create(**defaults: Any) -> Shell:
    """A new Shell with ``defaults`` as its options."""
    return Shell(RunOptions.from_mapping(defaults))
