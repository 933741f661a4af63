"""command-stream runtime: runners, execution and process control."""

from .events import EventKind, RunnerEvents, Subscription
from .executor import Executor, Session
from .io import InputMode, InputSource, StdinHandle
from .pipeline import PipelineRunner
from .process import (
    IS_WINDOWS,
    ProcessSpec,
    exit_code_for,
    find_shell,
    send_signal,
    spawn,
    terminate_process,
)
from .process_runner import ProcessRunner, escalate
from .types import (
    CapturedOutput,
    ChunkType,
    CommandResult,
    RunnerState,
    RunOptions,
    StreamChunk,
)

__all__ = [
    "CapturedOutput",
    "ChunkType",
    "CommandResult",
    "EventKind",
    "Executor",
    "InputMode",
    "InputSource",
    "IS_WINDOWS",
    "PipelineRunner",
    "ProcessRunner",
    "ProcessSpec",
    "RunOptions",
    "RunnerEvents",
    "RunnerState",
    "Session",
    "StdinHandle",
    "StreamChunk",
    "Subscription",
    "escalate",
    "exit_code_for",
    "find_shell",
    "send_signal",
    "spawn",
    "terminate_process",
]
