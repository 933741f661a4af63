"""Shell quoting and command template rendering.

``quote()`` turns an arbitrary value into exactly one POSIX shell word.
``build_command()`` renders a ``{}``-style template by quoting each
interpolated value, producing an immutable CommandSpec.
"""

from __future__ import annotations

import re
import string
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

from .errors import UnboundVariableError

__all__ = [
    "CommandSpec",
    "Interpolation",
    "InterpolationKind",
    "Raw",
    "build_command",
    "quote",
    "quote_word",
    "raw",
]

SAFE_WORD = re.compile(r"^[A-Za-z0-9_\-./=,+@:]+$")

_formatter = string.Formatter()


@dataclass(frozen=True)
class Raw:
    """A value inserted into command text without any quoting."""

    value: str

    def __str__(self) -> str:
        return self.value


def raw(value: Any) -> Raw:
    """Mark ``value`` to be interpolated verbatim."""
    return Raw(str(value))


class InterpolationKind(Enum):
    QUOTED = "quoted"
    USER_QUOTED = "user_quoted"
    RAW = "raw"


@dataclass(frozen=True)
class Interpolation:
    """One interpolated value and how it was rendered."""

    original: Any
    rendered: str
    kind: InterpolationKind


@dataclass(frozen=True)
class CommandSpec:
    """Rendered command text plus the interpolations that produced it."""

    text: str
    args: tuple[Interpolation, ...] = ()

    def __str__(self) -> str:
        return self.text


def _single_quote(value: str) -> str:
    return "'" + value.replace("'", "'\\''") + "'"


def _is_user_quoted(value: str) -> bool:
    if len(value) >= 2 and value[0] == "'" and value[-1] == "'":
        return "'" not in value[1:-1]
    return len(value) > 2 and value[0] == '"' and value[-1] == '"'


def quote(value: Any) -> str:
    """Quote ``value`` as a single shell word.

    - None and the empty string become ``''``
    - lists and tuples are quoted element-wise and joined with spaces
    - a value already wrapped in single quotes (with none inside) is kept
    - a value wrapped in double quotes is re-wrapped in single quotes,
      so the double quotes survive as literal characters
    - values made only of safe characters are left bare
    - everything else is single-quoted with ``'`` written as ``'\\''``
    """
    if value is None:
        return "''"
    if isinstance(value, Raw):
        return value.value
    if isinstance(value, (list, tuple)):
        return " ".join(quote(item) for item in value)
    if not isinstance(value, str):
        value = str(value)
    if value == "":
        return "''"

    if len(value) >= 2 and value[0] == "'" and value[-1] == "'":
        if "'" not in value[1:-1]:
            return value
    if len(value) > 2 and value[0] == '"' and value[-1] == '"':
        return _single_quote(value)

    if SAFE_WORD.match(value):
        return value
    return _single_quote(value)


def quote_word(value: str) -> str:
    """Quote a literal word, never treating surrounding quotes as pre-quoting.

    Used when turning an already-unwrapped parse tree back into shell text.
    """
    if value and SAFE_WORD.match(value):
        return value
    return _single_quote(value)


def _interpolate(value: Any, index: int, nounset: bool) -> Interpolation:
    if value is None:
        if nounset:
            raise UnboundVariableError(index)
        return Interpolation(value, "''", InterpolationKind.QUOTED)
    if isinstance(value, Raw):
        return Interpolation(value, value.value, InterpolationKind.RAW)
    if isinstance(value, str) and _is_user_quoted(value):
        return Interpolation(value, quote(value), InterpolationKind.USER_QUOTED)
    if isinstance(value, (list, tuple)) and nounset and any(v is None for v in value):
        raise UnboundVariableError(index)
    return Interpolation(value, quote(value), InterpolationKind.QUOTED)


def build_command(
    template: str,
    values: Sequence[Any] = (),
    *,
    nounset: bool = False,
) -> CommandSpec:
    """Render ``template`` with ``values`` interpolated at ``{}`` / ``{N}``.

    With no values the template is taken verbatim, so shell syntax such as
    ``${HOME}`` needs no escaping. Once values are given, literal braces
    are written as ``{{`` and ``}}``.

    Raises:
        UnboundVariableError: a value is None and ``nounset`` is set
        ValueError: a placeholder is not positional
        IndexError: a placeholder refers past the end of ``values``
    """
    if not values:
        return CommandSpec(text=template)

    parts: list[str] = []
    interpolations: list[Interpolation] = []
    auto_index = 0

    for literal, field_name, format_spec, conversion in _formatter.parse(template):
        parts.append(literal)
        if field_name is None:
            continue
        if format_spec or conversion:
            raise ValueError(f"Format specs are not supported in command templates: {{{field_name}}}")
        if field_name == "":
            index = auto_index
            auto_index += 1
        elif field_name.isdigit():
            index = int(field_name)
        else:
            raise ValueError(f"Only positional placeholders are supported, got {{{field_name}}}")
        if index >= len(values):
            raise IndexError(f"Placeholder {{{index}}} has no matching value")

        item = _interpolate(values[index], index, nounset)
        interpolations.append(item)
        parts.append(item.rendered)

    return CommandSpec(text="".join(parts), args=tuple(interpolations))
