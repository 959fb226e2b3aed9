"""Tests for command execution utilities."""
import os
import subprocess
from unittest.mock import Mock

import pytest

from acorn_builder.artifacts.command_runners import run_checked_command, run_checked_to_file
from acorn_builder.exceptions import GeneratorError


class TestRunCheckedCommand:
    """Tests for run_checked_command function."""

    def test_successful_command(self, mock_subprocess_run):
        """Test successful command execution."""
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="output", stderr="")

        result = run_checked_command(["echo", "test"])

        assert result == "output"
        mock_subprocess_run.assert_called_once_with(
            ["echo", "test"],
            input=None,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=None,
            env=None,
        )

    def test_command_with_input(self, mock_subprocess_run):
        """Test command execution with input text."""
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="output", stderr="")

        result = run_checked_command(["cat"], input_text="input data")

        assert result == "output"
        assert mock_subprocess_run.call_args.kwargs["input"] == "input data"

    def test_arguments_are_stringified(self, mock_subprocess_run, tmp_path):
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="", stderr="")

        run_checked_command(["ls", tmp_path])

        assert mock_subprocess_run.call_args.args[0] == ["ls", str(tmp_path)]

    def test_extra_env_is_merged(self, mock_subprocess_run, monkeypatch):
        """Test extra environment is layered over the current one."""
        monkeypatch.setenv("PATH", "/usr/bin")
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="", stderr="")

        run_checked_command(["true"], env={"SOURCE_DATE_EPOCH": "1700000000"})

        env = mock_subprocess_run.call_args.kwargs["env"]
        assert env["SOURCE_DATE_EPOCH"] == "1700000000"
        assert env["PATH"] == "/usr/bin"
        assert "SOURCE_DATE_EPOCH" not in os.environ

    def test_command_failure_with_stderr(self, mock_subprocess_run):
        """Test command failure with stderr message."""
        mock_subprocess_run.return_value = Mock(returncode=1, stdout="", stderr="error message\n")

        with pytest.raises(GeneratorError, match="Command failed.*error message") as exc_info:
            run_checked_command(["false"], stage_id="iso")

        assert exc_info.value.stage_id == "iso"
        assert exc_info.value.diagnostic == "error message"

    def test_command_failure_with_stdout(self, mock_subprocess_run):
        """Test command failure with stdout message (no stderr)."""
        mock_subprocess_run.return_value = Mock(returncode=1, stdout="stdout error", stderr="")

        with pytest.raises(GeneratorError, match="Command failed.*stdout error"):
            run_checked_command(["false"])

    def test_command_failure_with_no_output(self, mock_subprocess_run):
        """Test command failure with no error output."""
        mock_subprocess_run.return_value = Mock(returncode=1, stdout="", stderr="")

        with pytest.raises(GeneratorError) as exc_info:
            run_checked_command(["false"])

        assert exc_info.value.diagnostic == "Command failed"

    def test_missing_binary(self, mock_subprocess_run):
        """Test a missing executable becomes a GeneratorError."""
        mock_subprocess_run.side_effect = FileNotFoundError(2, "No such file or directory", "mksquashfs")

        with pytest.raises(GeneratorError, match="No such file or directory") as exc_info:
            run_checked_command(["mksquashfs"], stage_id="rootfs-squashfs")

        assert exc_info.value.command == ["mksquashfs"]


class TestRunCheckedToFile:
    """Tests for run_checked_to_file function."""

    def test_stdout_goes_to_handle(self, mock_subprocess_run, tmp_path):
        mock_subprocess_run.return_value = Mock(returncode=0, stderr=b"")

        with open(tmp_path / "out.cpio", "wb") as handle:
            run_checked_to_file(["cpio", "-o"], handle, "init\n", cwd=tmp_path)

        kwargs = mock_subprocess_run.call_args.kwargs
        assert kwargs["stdout"] is handle
        assert kwargs["input"] == b"init\n"
        assert kwargs["cwd"] == tmp_path

    def test_failure_decodes_stderr(self, mock_subprocess_run, tmp_path):
        mock_subprocess_run.return_value = Mock(returncode=2, stderr=b"cpio: bad\n")

        with open(tmp_path / "out", "wb") as handle:
            with pytest.raises(GeneratorError, match="cpio: bad"):
                run_checked_to_file(["cpio", "-o"], handle, stage_id="initramfs")

    def test_real_process_output(self, tmp_path):
        """Test against a real child process."""
        target = tmp_path / "out.bin"

        with open(target, "wb") as handle:
            run_checked_to_file(["sh", "-c", "printf abc"], handle)

        assert target.read_bytes() == b"abc"
