"""Tests for ProcessLogger."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

from pyexecd.process import ProcessLogger
from pyexecd.types import ShellOptions, SpawnOptions


class TestFormatCommand:
    def test_plain_arguments(self):
        assert ProcessLogger().format_command("python", ["-m", "pip"]) == "python -m pip"

    def test_arguments_with_spaces_are_quoted(self):
        formatted = ProcessLogger().format_command("python", ["my script.py"])
        assert formatted == "python 'my script.py'"

    def test_home_directory_shown_as_tilde(self):
        home = str(Path.home())
        formatted = ProcessLogger().format_command(f"{home}/venv/bin/python", ["-V"])
        assert formatted == "~/venv/bin/python -V"


class TestLogProcess:
    def test_logs_command_and_cwd(self, tmp_path):
        with patch("pyexecd.process._logger.logger") as mock_logger:
            ProcessLogger().log_process("python", ["-c", "pass"], SpawnOptions(cwd=tmp_path))

        mock_logger.info.assert_called_once()
        _, kwargs = mock_logger.info.call_args
        assert kwargs["command"] == "> python -c pass"
        assert kwargs["cwd"].endswith(tmp_path.name)

    def test_defaults_to_current_directory(self):
        with (
            patch("pyexecd.process._logger.logger") as mock_logger,
            patch("pyexecd.process._logger.os.getcwd", return_value="/work"),
        ):
            ProcessLogger().log_process("python", [], None)

        _, kwargs = mock_logger.info.call_args
        assert kwargs["cwd"] == "/work"

    def test_shell_command_logged_as_typed(self):
        with patch("pyexecd.process._logger.logger") as mock_logger:
            ProcessLogger().log_process("echo hi | wc -c", [], ShellOptions())

        _, kwargs = mock_logger.info.call_args
        assert kwargs["command"] == "> echo hi | wc -c"

    def test_shell_command_home_shown_as_tilde(self):
        home = str(Path.home())
        with patch("pyexecd.process._logger.logger") as mock_logger:
            ProcessLogger().log_process(f"{home}/bin/tool --all", [], ShellOptions())

        _, kwargs = mock_logger.info.call_args
        assert kwargs["command"] == "> ~/bin/tool --all"
