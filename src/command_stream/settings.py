"""Process-wide shell option toggles (set -e / -x / -u / -v / -o pipefail)."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, fields, replace
from typing import Iterator

__all__ = [
    "ShellSettings",
    "set_option",
    "unset_option",
    "shell_settings",
    "reset_settings",
    "override_settings",
]

logger = logging.getLogger(__name__)


@dataclass
class ShellSettings:
    """Current shell options.

    Attributes:
        errexit: stop a sequence at the first unguarded failure (set -e)
        verbose: echo each command's text to stderr before running it (set -v)
        xtrace: print "+ cmd args" to stderr for each simple command (set -x)
        nounset: reject None interpolations (set -u)
        pipefail: a pipeline's code is its rightmost non-zero code (set -o pipefail)
    """

    errexit: bool = False
    verbose: bool = False
    xtrace: bool = False
    nounset: bool = False
    pipefail: bool = False


_OPTION_NAMES = {
    "e": "errexit",
    "errexit": "errexit",
    "v": "verbose",
    "verbose": "verbose",
    "x": "xtrace",
    "xtrace": "xtrace",
    "u": "nounset",
    "nounset": "nounset",
    "o pipefail": "pipefail",
    "pipefail": "pipefail",
}

_settings = ShellSettings()


def _option_field(option: str) -> str:
    key = option.strip()
    # "-e", "+e" and "-o pipefail" are accepted the way `set` spells them
    if key[:1] in ("-", "+"):
        key = key[1:]
    key = " ".join(key.split())
    try:
        return _OPTION_NAMES[key]
    except KeyError:
        raise ValueError(f"Unknown shell option: {option!r}") from None


def set_option(option: str) -> ShellSettings:
    """Enable an option, e.g. ``set_option("e")`` or ``set_option("o pipefail")``."""
    name = _option_field(option)
    setattr(_settings, name, True)
    logger.debug(f"Shell option enabled: {name}")
    return shell_settings()


def unset_option(option: str) -> ShellSettings:
    """Disable an option."""
    name = _option_field(option)
    setattr(_settings, name, False)
    logger.debug(f"Shell option disabled: {name}")
    return shell_settings()


def shell_settings() -> ShellSettings:
    """Return a snapshot of the current options."""
    return replace(_settings)


def reset_settings() -> None:
    for item in fields(ShellSettings):
        setattr(_settings, item.name, item.default)


@contextlib.contextmanager
def override_settings(**options: bool) -> Iterator[ShellSettings]:
    """Temporarily change options, restoring the previous values on exit."""
    previous = shell_settings()
    for name, value in options.items():
        if not hasattr(_settings, name):
            raise ValueError(f"Unknown shell option: {name!r}")
        setattr(_settings, name, bool(value))
    try:
        yield shell_settings()
    finally:
        for item in fields(ShellSettings):
            setattr(_settings, item.name, getattr(previous, item.name))
