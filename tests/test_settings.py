"""Shell settings tests."""

from __future__ import annotations

import pytest

from command_stream.settings import (
    ShellSettings,
    override_settings,
    reset_settings,
    set_option,
    shell_settings,
    unset_option,
)


class TestOptions:
    """set_option / unset_option spellings."""

    def test_defaults(self):
        assert shell_settings() == ShellSettings()

    @pytest.mark.parametrize(
        "option, field",
        [
            ("e", "errexit"),
            ("-e", "errexit"),
            ("errexit", "errexit"),
            ("v", "verbose"),
            ("x", "xtrace"),
            ("u", "nounset"),
            ("o pipefail", "pipefail"),
            ("-o  pipefail", "pipefail"),
            ("pipefail", "pipefail"),
        ],
    )
    def test_set_and_unset(self, option: str, field: str):
        assert getattr(set_option(option), field) is True
        assert getattr(shell_settings(), field) is True
        assert getattr(unset_option(option), field) is False

    def test_unknown_option(self):
        with pytest.raises(ValueError):
            set_option("z")
        with pytest.raises(ValueError):
            unset_option("o nothing")

    def test_snapshot_is_a_copy(self):
        snapshot = shell_settings()
        snapshot.errexit = True
        assert shell_settings().errexit is False

    def test_reset(self):
        set_option("e")
        set_option("x")
        reset_settings()
        assert shell_settings() == ShellSettings()


class TestOverride:
    """override_settings() context manager."""

    def test_restores_previous_values(self):
        set_option("x")
        with override_settings(errexit=True, xtrace=False) as current:
            assert current.errexit is True
            assert current.xtrace is False
            assert shell_settings().errexit is True
        assert shell_settings().errexit is False
        assert shell_settings().xtrace is True

    def test_restores_on_error(self):
        with pytest.raises(RuntimeError):
            with override_settings(pipefail=True):
                raise RuntimeError("boom")
        assert shell_settings().pipefail is False

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            with override_settings(colour=True):
                pass
