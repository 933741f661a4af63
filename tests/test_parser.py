"""Shell operator parser tests.

Test coverage:
- Tokenizing quotes, escapes and operators
- Sequence / pipeline / subshell / redirect trees
- needs_real_shell() detection
- render() round trips
"""

from __future__ import annotations

import shutil
import subprocess

import pytest

from command_stream.errors import ShellSyntaxError
from command_stream.parser import (
    Operator,
    Pipeline,
    Redirect,
    Sequence,
    ShellParser,
    SimpleCommand,
    Subshell,
    TokenType,
    needs_real_shell,
    parse_shell_command,
    render,
    tokenize,
)
from command_stream.runtime import ProcessRunner

PARITY_COMMANDS = [
    "true && echo a",
    "false && echo a",
    "false || echo b",
    "true || echo b",
    "echo a; echo b",
    "false; echo c",
    "echo x | cat",
    "false && echo a || echo b",
    "true && false || echo c && echo d",
    'echo "a" && exit 1 || echo "b"',
    "echo a | cat; false",
    "(false) || echo e",
    "echo one two | cat && echo three",
    "true | false",
    "false | true",
]


class TestTokenize:
    """tokenize()."""

    def test_words_and_operators(self):
        tokens = tokenize("a && b || c; d | e")
        assert [t.type for t in tokens] == [
            TokenType.WORD,
            TokenType.AND,
            TokenType.WORD,
            TokenType.OR,
            TokenType.WORD,
            TokenType.SEMICOLON,
            TokenType.WORD,
            TokenType.PIPE,
            TokenType.WORD,
        ]

    def test_operators_without_spaces(self):
        tokens = tokenize("a&&b|c")
        assert [t.value for t in tokens] == ["a", "&&", "b", "|", "c"]

    def test_single_quotes_are_literal(self):
        (token,) = tokenize("'a && b'")
        assert token.value == "a && b"
        assert token.quoted
        assert token.quote_char == "'"

    def test_double_quote_escapes(self):
        (token,) = tokenize(r'"say \"hi\" \\ now"')
        assert token.value == 'say "hi" \\ now'
        assert token.quote_char == '"'

    def test_adjacent_quotes_join(self):
        (token,) = tokenize("a'b c'\"d\"")
        assert token.value == "ab cd"

    def test_backslash_escape(self):
        (token,) = tokenize(r"a\ b")
        assert token.value == "a b"

    def test_unterminated_quote(self):
        with pytest.raises(ShellSyntaxError):
            tokenize("echo 'oops")
        with pytest.raises(ShellSyntaxError):
            tokenize('echo "oops')


class TestParse:
    """ShellParser trees."""

    def test_simple_command(self):
        node = parse_shell_command("echo hello world")
        assert isinstance(node, SimpleCommand)
        assert node.argv == ["echo", "hello", "world"]

    def test_sequence_is_left_to_right(self):
        node = parse_shell_command("a && b || c ; d")
        assert isinstance(node, Sequence)
        assert node.operators == (Operator.AND, Operator.OR, Operator.SEQ)
        assert [c.cmd for c in node.commands] == ["a", "b", "c", "d"]

    def test_pipeline_binds_tighter_than_and(self):
        node = parse_shell_command("a | b && c")
        assert isinstance(node, Sequence)
        assert isinstance(node.commands[0], Pipeline)
        assert [c.cmd for c in node.commands[0].commands] == ["a", "b"]

    def test_subshell(self):
        node = parse_shell_command("(cd /tmp && pwd) ; pwd")
        assert isinstance(node, Sequence)
        assert isinstance(node.commands[0], Subshell)
        inner = node.commands[0].command
        assert isinstance(inner, Sequence)

    def test_redirects(self):
        node = parse_shell_command("sort < in.txt > out.txt")
        assert isinstance(node, SimpleCommand)
        assert node.redirects == (Redirect("<", "in.txt"), Redirect(">", "out.txt"))

    def test_append_redirect(self):
        node = parse_shell_command("echo hi >> log.txt")
        assert node.redirects == (Redirect(">>", "log.txt"),)

    def test_trailing_semicolon(self):
        node = parse_shell_command("echo a;")
        assert isinstance(node, SimpleCommand)

    def test_quoted_word_keeps_metadata(self):
        node = parse_shell_command("echo 'a b'")
        assert node.args[0].quoted
        assert node.args[0].value == "a b"

    @pytest.mark.parametrize("text", ["&& a", "a &&", "a |", "(a", "a >", "a )"])
    def test_invalid_returns_none(self, text: str):
        assert parse_shell_command(text) is None

    def test_parser_raises_on_invalid(self):
        with pytest.raises(ShellSyntaxError):
            ShellParser(tokenize("a ||")).parse()


class TestNeedsRealShell:
    """needs_real_shell() detection."""

    @pytest.mark.parametrize(
        "text",
        [
            "echo $(date)",
            "echo `date`",
            "echo ${HOME}",
            "echo $HOME",
            "ls *.py",
            "ls file?.txt",
            "ls [ab].txt",
            "cmd 2> err.log",
            "cmd &> all.log",
            "cmd 2>&1",
            "cat << EOF",
            "cat <<< word",
            "echo a # comment",
            "sleep 1 &",
            "cd ~/src",
            "echo a\necho b",
        ],
    )
    def test_detected(self, text: str):
        assert needs_real_shell(text)

    @pytest.mark.parametrize(
        "text",
        [
            "echo hello",
            "a && b || c",
            "seq 1 5 | sort -r",
            "(cd /tmp && pwd)",
            "echo hi > out.txt",
            "echo issue#12",
        ],
    )
    def test_not_detected(self, text: str):
        assert not needs_real_shell(text)


class TestRender:
    """render() turns trees back into equivalent text."""

    @pytest.mark.parametrize(
        "text",
        [
            "echo 'a b' c",
            "a && b || c; d",
            "seq 1 3 | sort -r",
            "( cd /tmp && pwd )",
            "sort < in.txt > out.txt",
        ],
    )
    def test_reparse_gives_same_tree(self, text: str):
        node = parse_shell_command(text)
        assert parse_shell_command(render(node)) == node

    @pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX sh")
    @pytest.mark.parametrize("text", PARITY_COMMANDS)
    def test_render_runs_like_original(self, text: str):
        original = subprocess.run(["sh", "-c", text], capture_output=True)
        rendered = subprocess.run(["sh", "-c", render(parse_shell_command(text))], capture_output=True)
        assert (rendered.returncode, rendered.stdout) == (original.returncode, original.stdout)


@pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX sh")
class TestRealShellParity:
    """Executing a parsed tree matches what sh does with the same text."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", PARITY_COMMANDS)
    async def test_same_output_and_code(self, text: str, registry, supervisor):
        expected = subprocess.run(["sh", "-c", text], capture_output=True)
        result = await ProcessRunner(text, {"mirror": False, "reject": False}, registry=registry, supervisor=supervisor)

        assert result.stdout == expected.stdout.decode()
        assert result.code == expected.returncode
