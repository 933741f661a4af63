"""Virtual commands: the registry and the built-in utilities."""

from __future__ import annotations

from . import filesystem, system, text
from .registry import (
    CommandRegistry,
    Registration,
    Resolution,
    ResolutionKind,
    VirtualCommandContext,
    VirtualHandler,
    VirtualResult,
    streams_stdin,
)

__all__ = [
    "CommandRegistry",
    "Registration",
    "Resolution",
    "ResolutionKind",
    "VirtualCommandContext",
    "VirtualHandler",
    "VirtualResult",
    "disable_virtual_commands",
    "enable_virtual_commands",
    "get_registry",
    "list_commands",
    "register",
    "register_builtins",
    "streams_stdin",
    "unregister",
]


def register_builtins(registry: CommandRegistry) -> CommandRegistry:
    """Seed ``registry`` with the built-in utilities."""
    for module in (filesystem, text, system):
        for name, handler in module.COMMANDS.items():
            registry.register(name, handler)
    registry.register("which", system.make_which(registry))
    return registry


# Lazily created default registry
_registry: CommandRegistry | None = None


def get_registry() -> CommandRegistry:
    global _registry
    if _registry is None:
        _registry = register_builtins(CommandRegistry())
    return _registry


def register(name: str, handler: VirtualHandler) -> Registration:
    return get_registry().register(name, handler)


def unregister(token: Registration) -> bool:
    return get_registry().unregister(token)


def list_commands() -> list[str]:
    return get_registry().list_commands()


def enable_virtual_commands() -> None:
    get_registry().enable()


def disable_virtual_commands() -> None:
    get_registry().disable()
