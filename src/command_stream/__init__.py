"""command-stream - run shell commands from asyncio and stream their output.

Environment variables:
    COMMAND_STREAM_VERBOSE / COMMAND_STREAM_TRACE: DEBUG trace logging
    COMMAND_STREAM_LOG_FILE: write logs to a file instead of stderr
    COMMAND_STREAM_SIGINT_MODE: forward (default) | forward_then_exit
    COMMAND_STREAM_SHELL: shell used for syntax the parser does not model
    COMMAND_STREAM_TERM_TIMEOUT: seconds between SIGTERM and SIGKILL

Usage:
    from command_stream import run

    result = await run("echo {} | sort", "hello", mirror=False)
"""

__version__ = "0.1.0"

# Import order matters: runtime must load before streaming and shell
from .config import Config, SigintMode, get_config, reload_config
from .errors import (
    CommandError,
    CommandStreamError,
    RunnerStateError,
    ShellSyntaxError,
    UnboundVariableError,
    VirtualCommandExit,
)
from .settings import (
    ShellSettings,
    override_settings,
    reset_settings,
    set_option,
    shell_settings,
    unset_option,
)
from .quoting import CommandSpec, build_command, quote, raw
from .parser import needs_real_shell, parse_shell_command
from .cancel import CancelToken, CancellableStream
from .commands import (
    CommandRegistry,
    Registration,
    VirtualCommandContext,
    VirtualResult,
    disable_virtual_commands,
    enable_virtual_commands,
    get_registry,
    list_commands,
    register,
    unregister,
)
from .runtime import (
    CapturedOutput,
    ChunkType,
    CommandResult,
    EventKind,
    PipelineRunner,
    ProcessRunner,
    RunnerState,
    RunOptions,
    StdinHandle,
    StreamChunk,
    escalate,
)
from .streaming import AnalyzeConfig, Batch, ChunkStream, SplitStreams, StreamAnalytics, Window, merge
from .supervisor import RunnerSupervisor, get_supervisor
from .shell import Shell, create, run

__all__ = [
    "AnalyzeConfig",
    "Batch",
    "CancelToken",
    "CancellableStream",
    "CapturedOutput",
    "ChunkStream",
    "ChunkType",
    "CommandError",
    "CommandRegistry",
    "CommandResult",
    "CommandSpec",
    "CommandStreamError",
    "Config",
    "EventKind",
    "PipelineRunner",
    "ProcessRunner",
    "Registration",
    "RunOptions",
    "RunnerState",
    "RunnerStateError",
    "RunnerSupervisor",
    "Shell",
    "ShellSettings",
    "ShellSyntaxError",
    "SigintMode",
    "SplitStreams",
    "StdinHandle",
    "StreamAnalytics",
    "StreamChunk",
    "UnboundVariableError",
    "VirtualCommandContext",
    "VirtualCommandExit",
    "VirtualResult",
    "Window",
    "__version__",
    "build_command",
    "create",
    "disable_virtual_commands",
    "enable_virtual_commands",
    "escalate",
    "get_config",
    "get_registry",
    "get_supervisor",
    "list_commands",
    "merge",
    "needs_real_shell",
    "override_settings",
    "parse_shell_command",
    "quote",
    "raw",
    "register",
    "reload_config",
    "reset_settings",
    "run",
    "set_option",
    "shell_settings",
    "unregister",
    "unset_option",
]
