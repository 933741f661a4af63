"""Shell operator parser.

Handles the subset of shell grammar command-stream executes itself:
``&&``, ``||``, ``;``, ``|``, ``( ... )`` subshells and the ``<``, ``>``,
``>>`` redirections. Anything outside that subset is detected by
``needs_real_shell()`` and the whole text is handed to a real shell.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Union

from .errors import ShellSyntaxError
from .quoting import quote_word

__all__ = [
    "Operator",
    "Pipeline",
    "Redirect",
    "REAL_SHELL_MARKERS",
    "Sequence",
    "ShellParser",
    "SimpleCommand",
    "Subshell",
    "Token",
    "TokenType",
    "Word",
    "needs_real_shell",
    "parse_shell_command",
    "render",
    "tokenize",
]

logger = logging.getLogger(__name__)


class TokenType(Enum):
    WORD = "word"
    AND = "&&"
    OR = "||"
    SEMICOLON = ";"
    PIPE = "|"
    LPAREN = "("
    RPAREN = ")"
    REDIRECT_OUT = ">"
    REDIRECT_APPEND = ">>"
    REDIRECT_IN = "<"


class Operator(Enum):
    """Sequence connectors."""

    AND = "&&"
    OR = "||"
    SEQ = ";"


_SEQUENCE_OPERATORS = {
    TokenType.AND: Operator.AND,
    TokenType.OR: Operator.OR,
    TokenType.SEMICOLON: Operator.SEQ,
}

_REDIRECTS = (TokenType.REDIRECT_OUT, TokenType.REDIRECT_APPEND, TokenType.REDIRECT_IN)

_TWO_CHAR_OPERATORS = {
    "&&": TokenType.AND,
    "||": TokenType.OR,
    ">>": TokenType.REDIRECT_APPEND,
}

_ONE_CHAR_OPERATORS = {
    "|": TokenType.PIPE,
    ";": TokenType.SEMICOLON,
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    ">": TokenType.REDIRECT_OUT,
    "<": TokenType.REDIRECT_IN,
}

# Characters a backslash escapes inside double quotes
_DQUOTE_ESCAPABLE = '"\\$`'


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: str
    quoted: bool = False
    quote_char: str | None = None
    position: int = 0


@dataclass(frozen=True)
class Word:
    """An unwrapped argument; ``quoted`` records whether quotes were used."""

    value: str
    quoted: bool = False
    quote_char: str | None = None


@dataclass(frozen=True)
class Redirect:
    kind: str  # ">", ">>" or "<"
    target: str


@dataclass(frozen=True)
class SimpleCommand:
    cmd: str
    args: tuple[Word, ...] = ()
    redirects: tuple[Redirect, ...] = ()

    @property
    def argv(self) -> list[str]:
        return [self.cmd, *(word.value for word in self.args)]


@dataclass(frozen=True)
class Pipeline:
    commands: tuple["Node", ...]


@dataclass(frozen=True)
class Sequence:
    commands: tuple["Node", ...]
    operators: tuple[Operator, ...]


@dataclass(frozen=True)
class Subshell:
    command: "Node"


Node = Union[SimpleCommand, Pipeline, Sequence, Subshell]


# =============================================================================
# Tokenizer
# =============================================================================


def _is_word_boundary(text: str, i: int) -> bool:
    c = text[i]
    return c.isspace() or c in _ONE_CHAR_OPERATORS or text.startswith("&&", i)


def tokenize(text: str) -> list[Token]:
    """Split ``text`` into word and operator tokens.

    Raises:
        ShellSyntaxError: on an unterminated quote
    """
    tokens: list[Token] = []
    i = 0
    n = len(text)

    while i < n:
        c = text[i]
        if c.isspace():
            i += 1
            continue

        two = text[i:i + 2]
        if two in _TWO_CHAR_OPERATORS:
            tokens.append(Token(_TWO_CHAR_OPERATORS[two], two, position=i))
            i += 2
            continue
        if c in _ONE_CHAR_OPERATORS:
            tokens.append(Token(_ONE_CHAR_OPERATORS[c], c, position=i))
            i += 1
            continue

        start = i
        chars: list[str] = []
        quoted = False
        quote_char: str | None = None

        while i < n and not _is_word_boundary(text, i):
            c = text[i]
            if c == "'":
                end = text.find("'", i + 1)
                if end == -1:
                    raise ShellSyntaxError("unterminated single quote", i)
                chars.append(text[i + 1:end])
                quoted = True
                quote_char = quote_char or "'"
                i = end + 1
            elif c == '"':
                i += 1
                closed = False
                while i < n:
                    c = text[i]
                    if c == "\\" and i + 1 < n and text[i + 1] in _DQUOTE_ESCAPABLE:
                        chars.append(text[i + 1])
                        i += 2
                    elif c == "\\" and i + 1 < n and text[i + 1] == "\n":
                        i += 2
                    elif c == '"':
                        closed = True
                        i += 1
                        break
                    else:
                        chars.append(c)
                        i += 1
                if not closed:
                    raise ShellSyntaxError("unterminated double quote", start)
                quoted = True
                quote_char = quote_char or '"'
            elif c == "\\" and i + 1 < n:
                chars.append(text[i + 1])
                i += 2
            else:
                chars.append(c)
                i += 1

        tokens.append(Token(TokenType.WORD, "".join(chars), quoted, quote_char, start))

    return tokens


# =============================================================================
# Parser
# =============================================================================


class ShellParser:
    """Recursive-descent parser over a token list.

    Grammar::

        sequence := pipeline ((&& | || | ;) pipeline)* [;]
        pipeline := command (| command)*
        command  := ( sequence ) | simple
        simple   := (WORD | redirect)+
        redirect := (> | >> | <) WORD
    """

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.pos = 0

    def _peek(self) -> Token | None:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _at_sequence_end(self) -> bool:
        token = self._peek()
        return token is None or token.type is TokenType.RPAREN

    def parse(self) -> Node:
        node = self.parse_sequence()
        token = self._peek()
        if token is not None:
            raise ShellSyntaxError(f"unexpected token {token.value!r}", token.position)
        return node

    def parse_sequence(self) -> Node:
        commands = [self.parse_pipeline()]
        operators: list[Operator] = []

        while (token := self._peek()) is not None and token.type in _SEQUENCE_OPERATORS:
            self._advance()
            if self._at_sequence_end():
                if token.type is TokenType.SEMICOLON:
                    break
                raise ShellSyntaxError(f"expected a command after {token.value!r}", token.position)
            operators.append(_SEQUENCE_OPERATORS[token.type])
            commands.append(self.parse_pipeline())

        if len(commands) == 1:
            return commands[0]
        return Sequence(tuple(commands), tuple(operators))

    def parse_pipeline(self) -> Node:
        commands = [self.parse_command()]
        while (token := self._peek()) is not None and token.type is TokenType.PIPE:
            self._advance()
            commands.append(self.parse_command())
        if len(commands) == 1:
            return commands[0]
        return Pipeline(tuple(commands))

    def parse_command(self) -> Node:
        token = self._peek()
        if token is not None and token.type is TokenType.LPAREN:
            self._advance()
            inner = self.parse_sequence()
            closing = self._peek()
            if closing is None or closing.type is not TokenType.RPAREN:
                raise ShellSyntaxError("expected ')'", token.position)
            self._advance()
            return Subshell(inner)
        return self.parse_simple_command()

    def parse_simple_command(self) -> SimpleCommand:
        words: list[Word] = []
        redirects: list[Redirect] = []

        while (token := self._peek()) is not None:
            if token.type is TokenType.WORD:
                self._advance()
                words.append(Word(token.value, token.quoted, token.quote_char))
            elif token.type in _REDIRECTS:
                self._advance()
                target = self._peek()
                if target is None or target.type is not TokenType.WORD:
                    raise ShellSyntaxError(f"missing target for {token.value!r}", token.position)
                self._advance()
                redirects.append(Redirect(token.value, target.value))
            else:
                break

        if not words:
            token = self._peek()
            where = token.position if token is not None else None
            raise ShellSyntaxError("expected a command", where)

        return SimpleCommand(words[0].value, tuple(words[1:]), tuple(redirects))


def parse_shell_command(text: str) -> Node | None:
    """Parse ``text``; returns None when it cannot be represented."""
    try:
        node = ShellParser(tokenize(text)).parse()
    except ShellSyntaxError as e:
        logger.debug(f"Parse deferred to real shell: {e} text={text!r}")
        return None
    logger.debug(f"Parsed command: {node!r}")
    return node


# =============================================================================
# Real-shell detection
# =============================================================================

# Substrings the parser does not model. Extend this tuple to route more
# syntax to the real shell.
REAL_SHELL_MARKERS: tuple[str, ...] = (
    "`",
    "$(",
    "${",
    "$",
    "*",
    "?",
    "[",
    "2>",
    "&>",
    ">&",
    "<<",
    "<<<",
    "\n",
)

_LEADING_TILDE = re.compile(r"(?:^|[\s;&|(])~")
_COMMENT = re.compile(r"(?:^|\s)#")
_BACKGROUND = re.compile(r"(?<!&)&(?!&)")


def needs_real_shell(text: str) -> bool:
    """Whether ``text`` uses syntax only a real shell can run correctly."""
    if any(marker in text for marker in REAL_SHELL_MARKERS):
        return True
    return bool(
        _LEADING_TILDE.search(text)
        or _COMMENT.search(text)
        or _BACKGROUND.search(text)
    )


# =============================================================================
# Rendering
# =============================================================================


def render(node: Node) -> str:
    """Turn a parse tree back into equivalent shell text."""
    if isinstance(node, SimpleCommand):
        parts = [quote_word(node.cmd)]
        parts.extend(quote_word(word.value) for word in node.args)
        parts.extend(f"{r.kind} {quote_word(r.target)}" for r in node.redirects)
        return " ".join(parts)
    if isinstance(node, Pipeline):
        return " | ".join(render(command) for command in node.commands)
    if isinstance(node, Sequence):
        parts = [render(node.commands[0])]
        for operator, command in zip(node.operators, node.commands[1:]):
            separator = "; " if operator is Operator.SEQ else f" {operator.value} "
            parts.append(separator + render(command))
        return "".join(parts)
    if isinstance(node, Subshell):
        return f"( {render(node.command)} )"
    raise TypeError(f"Unknown node type: {type(node).__name__}")
