"""Virtual command tests.

Test coverage:
- Registry lookup, replacement and token-guarded unregister
- Every built-in, run end to end through ProcessRunner
- Custom handlers: sync, async, generators, errors, VirtualCommandExit
- Redirects, cd persistence and the missing-command path
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import sys
from pathlib import Path

import pytest

from command_stream.commands import (
    CommandRegistry,
    ResolutionKind,
    VirtualCommandContext,
    VirtualResult,
    list_commands,
    register,
    streams_stdin,
    unregister,
)
from command_stream.commands.text import cmd_echo, cmd_seq
from command_stream.errors import VirtualCommandExit
from command_stream.runtime import ProcessRunner
from command_stream.settings import override_settings

IS_WINDOWS = sys.platform == "win32"

BUILTINS = {
    "cd", "pwd", "ls", "cat", "cp", "mv", "rm", "mkdir", "touch",
    "echo", "seq", "yes", "head", "tail", "basename", "dirname", "sort", "uniq", "tee",
    "sleep", "which", "test", "env", "true", "false", "exit",
}


@pytest.fixture
def sh(registry, supervisor):
    """Run a command quietly against the private registry."""

    async def _run(command: str, **options):
        options.setdefault("mirror", False)
        options.setdefault("reject", False)
        return await ProcessRunner(command, options, registry=registry, supervisor=supervisor)

    return _run


class TestRegistry:
    """CommandRegistry behaviour."""

    def test_builtins_registered(self, registry):
        assert BUILTINS <= set(registry.list_commands())

    def test_default_registry_lists_builtins(self):
        assert BUILTINS <= set(list_commands())

    def test_resolve_virtual_first(self, registry):
        resolution = registry.resolve("echo")
        assert resolution.kind is ResolutionKind.VIRTUAL
        assert resolution.handler is not None

    def test_resolve_missing(self, registry):
        assert registry.resolve("definitely-not-a-command-xyz").kind is ResolutionKind.MISSING

    def test_resolve_path_with_separator(self, registry):
        resolution = registry.resolve(sys.executable)
        assert resolution.kind is ResolutionKind.PATH
        assert resolution.path == sys.executable

    def test_disable_routes_to_path(self, registry):
        registry.disable()
        assert not registry.enabled
        assert registry.resolve("definitely-not-a-command-xyz").kind is ResolutionKind.MISSING
        assert registry.resolve("echo").kind is not ResolutionKind.VIRTUAL
        registry.enable()
        assert registry.resolve("echo").kind is ResolutionKind.VIRTUAL

    def test_unregister_requires_current_token(self):
        registry = CommandRegistry()
        first = registry.register("greet", lambda ctx: "one\n")
        second = registry.register("greet", lambda ctx: "two\n")

        assert registry.unregister(first) is False
        assert "greet" in registry
        assert registry.unregister(second) is True
        assert "greet" not in registry
        assert registry.unregister(second) is False

    def test_invalid_registration(self):
        registry = CommandRegistry()
        with pytest.raises(ValueError):
            registry.register("two words", lambda ctx: None)
        with pytest.raises(ValueError):
            registry.register("", lambda ctx: None)
        with pytest.raises(TypeError):
            registry.register("x", "not callable")

    def test_module_level_register(self):
        token = register("cs-test-hello", lambda ctx: "hello\n")
        try:
            assert "cs-test-hello" in list_commands()
        finally:
            assert unregister(token)
        assert "cs-test-hello" not in list_commands()


class TestVirtualResult:
    """VirtualResult.coerce()."""

    def test_coerce_values(self):
        assert VirtualResult.coerce(None).code == 0
        assert VirtualResult.coerce("out").stdout == "out"
        assert VirtualResult.coerce(3).code == 3
        assert VirtualResult.coerce(False).code == 1
        coerced = VirtualResult.coerce({"stdout": "a", "stderr": "b", "code": 2})
        assert (coerced.stdout, coerced.stderr, coerced.code) == ("a", "b", 2)

    def test_error_appends_newline(self):
        assert VirtualResult.error("bad").stderr == "bad\n"

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            VirtualResult.coerce(object())


class TestHandlersDirect:
    """Handlers called with a hand-built context."""

    def test_echo_flags(self):
        assert cmd_echo(VirtualCommandContext(args=["-n", "hi"])).stdout == "hi"
        assert cmd_echo(VirtualCommandContext(args=["-e", "a\\tb"])).stdout == "a\tb\n"
        assert cmd_echo(VirtualCommandContext(args=["-e", "stop\\chere"])).stdout == "stop"

    def test_seq_validates_before_streaming(self):
        result = cmd_seq(VirtualCommandContext(args=["1", "0", "5"]))
        assert isinstance(result, VirtualResult)
        assert result.code == 1
        assert "Zero increment" in result.stderr


@pytest.mark.asyncio
class TestTextCommands:
    """echo, seq, yes, head, tail, sort, uniq, tee, basename, dirname."""

    async def test_echo(self, sh):
        result = await sh("echo hello   world")
        assert result.code == 0
        assert result.stdout == "hello world\n"

    async def test_echo_quoted_spacing(self, sh):
        assert (await sh("echo 'hello   world'")).stdout == "hello   world\n"

    async def test_seq(self, sh):
        assert (await sh("seq 3")).stdout == "1\n2\n3\n"
        assert (await sh("seq 1 2 7")).stdout == "1\n3\n5\n7\n"
        assert (await sh("seq 3 -1 1")).stdout == "3\n2\n1\n"
        assert (await sh("seq 0 0.5 1")).stdout == "0.0\n0.5\n1.0\n"

    async def test_seq_streams_one_chunk_per_line(self, registry, supervisor):
        runner = ProcessRunner("seq 4", {"mirror": False}, registry=registry, supervisor=supervisor)
        chunks = [chunk async for chunk in runner]
        assert [chunk.text for chunk in chunks] == ["1\n", "2\n", "3\n", "4\n"]

    async def test_seq_errors(self, sh):
        result = await sh("seq")
        assert result.code == 1
        assert result.stderr == "seq: missing operand\n"
        assert (await sh("seq a")).code == 1

    @pytest.mark.timeout(10)
    async def test_yes_stops_when_stream_closes(self, registry, supervisor):
        runner = ProcessRunner("yes ok", {"mirror": False, "reject": False}, registry=registry, supervisor=supervisor)
        received = []
        async with contextlib.aclosing(runner.stream()) as chunks:
            async for chunk in chunks:
                received.append(chunk.text)
                if len(received) == 3:
                    break
        result = await runner.wait()
        assert received == ["ok\n"] * 3
        assert result.code == 143

    async def test_head_and_tail(self, sh):
        assert (await sh("seq 20 | head -n 3")).stdout == "1\n2\n3\n"
        assert (await sh("seq 20 | head -2")).stdout == "1\n2\n"
        assert (await sh("seq 20 | tail -n 2")).stdout == "19\n20\n"
        assert (await sh("tail -1", stdin="a\nb\n")).stdout == "b\n"
        assert (await sh("seq 3 | head -n 1 -")).stdout == "1\n"
        assert (await sh("seq 3 | head -n 0")).stdout == ""

    @pytest.mark.timeout(10)
    async def test_head_stops_unbounded_input(self, sh):
        result = await asyncio.wait_for(sh("yes | head -n 1"), timeout=5)
        assert result.stdout == "y\n"
        assert result.code == 0

    @pytest.mark.timeout(10)
    async def test_head_closes_pipe_upstream(self, sh):
        with override_settings(pipefail=True):
            result = await asyncio.wait_for(sh("yes | head -n 2"), timeout=5)
        assert result.stdout == "y\ny\n"
        assert result.code == 141

    @pytest.mark.timeout(10)
    async def test_cat_passes_piped_lines_through(self, sh):
        result = await asyncio.wait_for(sh("yes ab | cat | head -n 2"), timeout=5)
        assert result.stdout == "ab\nab\n"
        assert result.code == 0

    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    async def test_head_last_line_without_newline(self, sh):
        assert (await sh("printf 'a\\nb' | head -n 5")).stdout == "a\nb\n"

    async def test_head_invalid_count(self, sh):
        result = await sh("head -n x", stdin="a\n")
        assert result.code == 1
        assert "invalid number of lines" in result.stderr.text

    async def test_head_multiple_files(self, sh, tmp_path: Path):
        (tmp_path / "a.txt").write_text("1\n2\n")
        (tmp_path / "b.txt").write_text("3\n")
        result = await sh("head -n 1 a.txt b.txt", cwd=str(tmp_path))
        assert result.stdout == "==> a.txt <==\n1\n\n==> b.txt <==\n3\n"

    async def test_sort(self, sh):
        assert (await sh("sort", stdin="b\na\nc\n")).stdout == "a\nb\nc\n"
        assert (await sh("sort -r", stdin="b\na\nc\n")).stdout == "c\nb\na\n"
        assert (await sh("sort -n", stdin="10\n9\n100\n")).stdout == "9\n10\n100\n"
        assert (await sh("sort -u", stdin="b\na\nb\n")).stdout == "a\nb\n"

    async def test_uniq(self, sh):
        text = "a\na\nb\na\n"
        assert (await sh("uniq", stdin=text)).stdout == "a\nb\na\n"
        assert (await sh("uniq -c", stdin=text)).stdout == "      2 a\n      1 b\n      1 a\n"
        assert (await sh("uniq -d", stdin=text)).stdout == "a\n"

    async def test_sort_uniq_pipeline(self, sh):
        result = await sh("sort | uniq -c", stdin="b\na\nb\n")
        assert result.stdout == "      1 a\n      2 b\n"

    async def test_tee(self, sh, tmp_path: Path):
        result = await sh("tee out.txt", stdin="x\n", cwd=str(tmp_path))
        assert result.stdout == "x\n"
        assert (tmp_path / "out.txt").read_text() == "x\n"

        await sh("tee -a out.txt", stdin="y\n", cwd=str(tmp_path))
        assert (tmp_path / "out.txt").read_text() == "x\ny\n"

    async def test_basename_dirname(self, sh):
        assert (await sh("basename /a/b/c.txt")).stdout == "c.txt\n"
        assert (await sh("basename /a/b/c.txt .txt")).stdout == "c\n"
        assert (await sh("basename /a/b/")).stdout == "b\n"
        assert (await sh("dirname /a/b/c.txt")).stdout == "/a/b\n"
        assert (await sh("dirname file")).stdout == ".\n"
        assert (await sh("dirname /")).stdout == "/\n"


@pytest.mark.asyncio
class TestFilesystemCommands:
    """cd, pwd, ls, cat, cp, mv, rm, mkdir, touch."""

    async def test_ls(self, sh, tmp_path: Path):
        (tmp_path / "b.txt").write_text("")
        (tmp_path / "a.txt").write_text("")
        (tmp_path / ".hidden").write_text("")

        assert (await sh("ls", cwd=str(tmp_path))).stdout == "a.txt\nb.txt\n"
        assert (await sh("ls -a", cwd=str(tmp_path))).stdout == ".hidden\na.txt\nb.txt\n"

    async def test_ls_long(self, sh, tmp_path: Path):
        (tmp_path / "data.txt").write_text("12345")
        line = (await sh("ls -l", cwd=str(tmp_path))).stdout.text
        assert line.startswith("-rw-r--r--")
        assert line.rstrip().endswith("data.txt")
        assert "       5 " in line

    async def test_ls_missing(self, sh, tmp_path: Path):
        result = await sh("ls nope", cwd=str(tmp_path))
        assert result.code == 1
        assert result.stderr == "ls: nope: No such file or directory\n"

    async def test_cat(self, sh, tmp_path: Path):
        (tmp_path / "a.txt").write_text("A\n")
        (tmp_path / "b.txt").write_text("B\n")
        assert (await sh("cat a.txt b.txt", cwd=str(tmp_path))).stdout == "A\nB\n"
        assert (await sh("cat a.txt -", stdin="in\n", cwd=str(tmp_path))).stdout == "A\nin\n"

    async def test_cat_missing_file(self, sh, tmp_path: Path):
        result = await sh("cat nope.txt", cwd=str(tmp_path))
        assert result.code == 1
        assert result.stderr == "cat: nope.txt: No such file or directory\n"

    async def test_mkdir_touch_rm(self, sh, tmp_path: Path):
        cwd = str(tmp_path)
        assert (await sh("mkdir -p a/b/c", cwd=cwd)).code == 0
        assert (tmp_path / "a" / "b" / "c").is_dir()

        assert (await sh("touch a/b/c/file.txt", cwd=cwd)).code == 0
        assert (tmp_path / "a" / "b" / "c" / "file.txt").exists()

        result = await sh("rm a", cwd=cwd)
        assert result.code == 1
        assert "Is a directory" in result.stderr.text

        assert (await sh("rm -r a", cwd=cwd)).code == 0
        assert not (tmp_path / "a").exists()

    async def test_mkdir_existing_fails_without_p(self, sh, tmp_path: Path):
        (tmp_path / "d").mkdir()
        result = await sh("mkdir d", cwd=str(tmp_path))
        assert result.code == 1
        assert result.stderr == "mkdir: cannot create directory 'd': File exists\n"

    async def test_rm_force_ignores_missing(self, sh, tmp_path: Path):
        assert (await sh("rm -f nope", cwd=str(tmp_path))).code == 0
        assert (await sh("rm nope", cwd=str(tmp_path))).code == 1

    async def test_cp(self, sh, tmp_path: Path):
        (tmp_path / "src.txt").write_text("data")
        (tmp_path / "dir").mkdir()
        cwd = str(tmp_path)

        assert (await sh("cp src.txt copy.txt", cwd=cwd)).code == 0
        assert (tmp_path / "copy.txt").read_text() == "data"
        assert (await sh("cp src.txt dir", cwd=cwd)).code == 0
        assert (tmp_path / "dir" / "src.txt").read_text() == "data"

        result = await sh("cp dir other", cwd=cwd)
        assert result.code == 1
        assert "-r not specified" in result.stderr.text
        assert (await sh("cp -r dir other", cwd=cwd)).code == 0
        assert (tmp_path / "other" / "src.txt").exists()

    async def test_cp_missing_operand(self, sh):
        result = await sh("cp only")
        assert result.code == 1
        assert result.stderr == "cp: missing destination file operand after 'only'\n"

    async def test_mv(self, sh, tmp_path: Path):
        (tmp_path / "a.txt").write_text("a")
        (tmp_path / "b.txt").write_text("b")
        cwd = str(tmp_path)

        result = await sh("mv a.txt b.txt", cwd=cwd)
        assert result.code == 1
        assert "File exists" in result.stderr.text
        assert (tmp_path / "a.txt").exists()

        assert (await sh("mv -f a.txt b.txt", cwd=cwd)).code == 0
        assert not (tmp_path / "a.txt").exists()
        assert (tmp_path / "b.txt").read_text() == "a"

    async def test_cd_with_cwd_option_is_scoped(self, sh, tmp_path: Path):
        (tmp_path / "sub").mkdir()
        before = os.getcwd()
        result = await sh("cd sub && pwd", cwd=str(tmp_path))
        assert result.stdout == f"{(tmp_path / 'sub').resolve()}\n"
        assert os.getcwd() == before

    async def test_cd_persists_without_cwd_option(self, sh, tmp_path: Path, monkeypatch):
        (tmp_path / "sub").mkdir()
        monkeypatch.chdir(tmp_path)
        assert (await sh("cd sub")).code == 0
        assert Path(os.getcwd()) == (tmp_path / "sub").resolve()

    async def test_cd_dash_returns_to_previous(self, sh, tmp_path: Path):
        (tmp_path / "sub").mkdir()
        result = await sh("cd sub && cd - && pwd", cwd=str(tmp_path))
        assert result.stdout == f"{tmp_path.resolve()}\n"

    async def test_cd_errors(self, sh, tmp_path: Path):
        (tmp_path / "file").write_text("")
        result = await sh("cd nope", cwd=str(tmp_path))
        assert result.code == 1
        assert result.stderr == "cd: nope: No such file or directory\n"
        assert (await sh("cd file", cwd=str(tmp_path))).stderr == "cd: file: Not a directory\n"

    async def test_subshell_keeps_cwd(self, sh, tmp_path: Path):
        (tmp_path / "sub").mkdir()
        result = await sh("(cd sub && pwd); pwd", cwd=str(tmp_path))
        assert result.stdout == f"{(tmp_path / 'sub').resolve()}\n{tmp_path}\n"

    async def test_redirects(self, sh, tmp_path: Path):
        cwd = str(tmp_path)
        result = await sh("echo hi > out.txt", cwd=cwd)
        assert result.stdout == ""
        assert (tmp_path / "out.txt").read_text() == "hi\n"

        await sh("echo more >> out.txt", cwd=cwd)
        assert (tmp_path / "out.txt").read_text() == "hi\nmore\n"

        assert (await sh("sort -r < out.txt", cwd=cwd)).stdout == "more\nhi\n"

    async def test_redirect_missing_input(self, sh, tmp_path: Path):
        result = await sh("sort < nope.txt", cwd=str(tmp_path))
        assert result.code == 1
        assert result.stderr == "nope.txt: No such file or directory\n"


@pytest.mark.asyncio
class TestSystemCommands:
    """sleep, which, test, env, true, false, exit."""

    async def test_true_false_exit(self, sh):
        assert (await sh("true")).code == 0
        assert (await sh("false")).code == 1
        assert (await sh("exit 3")).code == 3
        assert (await sh("exit 256")).code == 0
        assert (await sh("exit x")).code == 2

    async def test_and_or(self, sh):
        assert (await sh("false || echo ok")).stdout == "ok\n"
        assert (await sh("true && echo ok")).stdout == "ok\n"
        assert (await sh("false && echo no")).stdout == ""
        assert (await sh("true || echo no; echo done")).stdout == "done\n"

    async def test_and_or_chain_is_left_to_right(self, sh):
        result = await sh('echo "a" && exit 1 || echo "b"')
        assert result.stdout == "a\nb\n"
        assert result.code == 0

    async def test_test_expressions(self, sh, tmp_path: Path):
        (tmp_path / "f.txt").write_text("x")
        cwd = str(tmp_path)
        assert (await sh("test -f f.txt", cwd=cwd)).code == 0
        assert (await sh("test -d f.txt", cwd=cwd)).code == 1
        assert (await sh("test -s f.txt", cwd=cwd)).code == 0
        assert (await sh("test ! -e nope", cwd=cwd)).code == 0
        assert (await sh("test 1 -lt 2")).code == 0
        assert (await sh("test a = b")).code == 1
        assert (await sh("test -z ''")).code == 0

        result = await sh("test 1 -lt x")
        assert result.code == 2
        assert result.stderr == "test: x: integer expression expected\n"

    async def test_env(self, sh):
        result = await sh("env FOO=bar", env={"A": "1"})
        assert result.stdout == "A=1\nFOO=bar\n"

    async def test_which(self, sh):
        assert (await sh("which echo")).stdout == "echo: shell builtin\n"
        assert (await sh("which definitely-not-a-command-xyz")).code == 1

    async def test_sleep(self, sh):
        assert (await sh("sleep 0.01")).code == 0
        result = await sh("sleep abc")
        assert result.code == 1
        assert result.stderr == "sleep: invalid time interval 'abc'\n"

    async def test_command_not_found(self, sh):
        result = await sh("definitely-not-a-command-xyz --flag")
        assert result.code == 127
        assert result.stderr == "definitely-not-a-command-xyz: command not found\n"


@pytest.mark.asyncio
class TestCustomHandlers:
    """User-registered virtual commands."""

    async def test_sync_handler_reads_stdin(self, registry, sh):
        registry.register("upper", lambda ctx: ctx.stdin.upper())
        assert (await sh("echo hi | upper")).stdout == "HI\n"

    async def test_async_handler(self, registry, sh):
        async def greet(ctx):
            return VirtualResult(stdout=f"hello {' '.join(ctx.args)}\n")

        registry.register("greet", greet)
        assert (await sh("greet a b")).stdout == "hello a b\n"

    async def test_async_generator_handler(self, registry, supervisor):
        async def count(ctx):
            for i in range(3):
                yield f"{i}\n"

        registry.register("count", count)
        runner = ProcessRunner("count", {"mirror": False}, registry=registry, supervisor=supervisor)
        assert [chunk.text async for chunk in runner] == ["0\n", "1\n", "2\n"]

    async def test_sync_generator_handler(self, registry, sh):
        def letters(ctx):
            yield "a\n"
            yield b"b\n"

        registry.register("letters", letters)
        assert (await sh("letters")).stdout == "a\nb\n"

    async def test_handler_exception_becomes_code_1(self, registry, sh):
        def boom(ctx):
            raise RuntimeError("kaput")

        registry.register("boom", boom)
        result = await sh("boom && echo unreachable")
        assert result.code == 1
        assert result.stdout == ""
        assert result.stderr == "boom: kaput\n"

    async def test_virtual_command_exit(self, registry, sh):
        def quit_early(ctx):
            raise VirtualCommandExit(4, "stopped", stdout="partial\n")

        registry.register("quit-early", quit_early)
        result = await sh("quit-early")
        assert result.code == 4
        assert result.stdout == "partial\n"
        assert result.stderr == "stopped\n"

    async def test_handler_sees_cwd_and_env(self, registry, sh, tmp_path: Path):
        registry.register("where", lambda ctx: f"{ctx.cwd} {ctx.env.get('MARK')}\n")
        result = await sh("where", cwd=str(tmp_path), env={"MARK": "x"})
        assert result.stdout == f"{tmp_path} x\n"

    @pytest.mark.timeout(10)
    async def test_stdin_stream_handler_stops_early(self, registry, sh):
        @streams_stdin
        async def first_word(ctx):
            async for line in ctx.stdin_stream:
                return line.split()[0] + "\n"
            return VirtualResult(code=1)

        registry.register("first-word", first_word)
        result = await asyncio.wait_for(sh("yes hello world | first-word"), timeout=5)
        assert result.stdout == "hello\n"
        assert result.code == 0

    async def test_stdin_stream_unset_for_text_stdin(self, registry, sh):
        seen = []

        @streams_stdin
        async def inspect_input(ctx):
            seen.append((ctx.stdin_stream, await ctx.read_stdin()))

        registry.register("inspect-input", inspect_input)
        await sh("inspect-input", stdin="abc\n")
        assert seen == [(None, "abc\n")]

    async def test_read_stdin_drains_stream(self, registry, sh):
        @streams_stdin
        async def count_lines(ctx):
            text = await ctx.read_stdin()
            return f"{len(text.splitlines())}\n"

        registry.register("count-lines", count_lines)
        assert (await sh("seq 4 | count-lines")).stdout == "4\n"

    @pytest.mark.skipif(IS_WINDOWS, reason="relies on a POSIX echo binary")
    async def test_disabled_registry_uses_path(self, registry, sh):
        registry.register("echo", lambda ctx: "virtual\n")
        registry.disable()
        assert (await sh("echo real")).stdout == "real\n"
