"""Shell factory tests.

Test coverage:
- Calling with options returns a new Shell; calling with a template runs
- Interpolation quoting and nounset
- sh(), exec() and create()
- Package-level exports
"""

from __future__ import annotations

import pytest

import command_stream
from command_stream.errors import UnboundVariableError
from command_stream.quoting import raw
from command_stream.runtime import ProcessRunner, RunOptions
from command_stream.settings import override_settings
from command_stream.shell import Shell, create, run


@pytest.fixture
def shell(registry, supervisor) -> Shell:
    return Shell({"mirror": False}, registry=registry, supervisor=supervisor)


class TestShellOptions:
    """Option handling."""

    def test_call_with_mapping_returns_shell(self, shell):
        quiet = shell({"reject": False})
        assert isinstance(quiet, Shell)
        assert quiet is not shell
        assert quiet.options.reject is False
        assert quiet.options.mirror is False
        assert shell.options.reject is True

    def test_call_with_run_options(self, shell):
        derived = shell(RunOptions(capture=False))
        assert derived.options == RunOptions(capture=False)

    def test_keeps_registry_and_supervisor(self, shell, registry, supervisor):
        derived = shell.with_options(cwd="/tmp")
        assert derived.registry is registry
        assert derived.supervisor is supervisor
        assert derived.options.cwd == "/tmp"

    def test_unknown_option(self, shell):
        with pytest.raises(TypeError):
            shell({"colour": True})

    def test_values_without_template(self, shell):
        with pytest.raises(TypeError):
            shell({"mirror": False}, "value")

    def test_create(self):
        created = create(mirror=False, reject=False)
        assert isinstance(created, Shell)
        assert created.options.mirror is False
        assert created.options.reject is False

    def test_default_run_shell(self):
        assert isinstance(run, Shell)
        assert run.options == RunOptions()


class TestShellRun:
    """Building and running commands."""

    def test_returns_pending_runner(self, shell):
        runner = shell("echo {}", "a b")
        assert isinstance(runner, ProcessRunner)
        assert not runner.started
        assert runner.command == "echo 'a b'"

    @pytest.mark.asyncio
    async def test_interpolated_value_is_one_word(self, shell):
        result = await shell("echo {} | cat", "x; echo injected")
        assert result.stdout == "x; echo injected\n"

    @pytest.mark.asyncio
    async def test_raw_value(self, shell):
        result = await shell("echo {}", raw("a && echo b"))
        assert result.stdout == "a\nb\n"

    @pytest.mark.asyncio
    async def test_per_call_options(self, shell):
        result = await shell("exit {}", 3, reject=False)
        assert result.code == 3

    def test_nounset(self, shell):
        assert shell("echo {}", None).command == "echo ''"
        with override_settings(nounset=True):
            with pytest.raises(UnboundVariableError):
                shell("echo {}", None)

    @pytest.mark.asyncio
    async def test_sh_is_verbatim(self, shell):
        runner = shell.sh("echo {} 'x'")
        assert runner.command == "echo {} 'x'"
        assert (await runner).stdout == "{} x\n"

    @pytest.mark.asyncio
    async def test_exec_quotes_every_argument(self, shell):
        runner = shell.exec("echo", ["a b", "c;d", ""])
        assert runner.command == "echo 'a b' 'c;d' ''"
        assert (await runner).stdout == "a b c;d \n"

    @pytest.mark.asyncio
    async def test_cwd_option(self, shell, tmp_path):
        result = await shell("pwd", cwd=tmp_path)
        assert result.stdout == f"{tmp_path}\n"


class TestPackageExports:
    """Top-level names."""

    def test_exports(self):
        for name in ("run", "create", "Shell", "ProcessRunner", "quote", "raw", "merge", "register", "set_option"):
            assert hasattr(command_stream, name), name
        assert command_stream.__version__
