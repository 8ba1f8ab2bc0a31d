"""Tests for external tool supervision, using the Python interpreter as the tool."""

import sys

import pytest

from rm01_flasher.core.errors import ExternalToolFailure
from rm01_flasher.hardware.runner import (
    EXIT_NOT_FOUND,
    EXIT_TIMEOUT,
    ExternalToolRunner,
    ToolResult,
)


def test_captures_stdout_and_exit_code():
    runner = ExternalToolRunner()
    result = runner.run(sys.executable, ["-c", "import sys; print('hello'); sys.exit(3)"])
    assert result.exit_code == 3
    assert result.stdout.strip() == "hello"
    assert not result.ok


def test_missing_program_gives_127():
    result = ExternalToolRunner().run("definitely-not-a-real-tool-rm01")
    assert result.exit_code == EXIT_NOT_FOUND
    assert not result.ok
    assert "definitely-not-a-real-tool-rm01" in result.stderr


def test_streaming_forwards_each_line():
    lines = []
    runner = ExternalToolRunner(on_output=lambda line, stream: lines.append((stream, line)))
    script = "import sys; print('one'); print('two'); print('oops', file=sys.stderr)"
    result = runner.run(sys.executable, ["-c", script], stream=True)
    assert result.ok
    assert ("stdout", "one") in lines
    assert ("stdout", "two") in lines
    assert ("stderr", "oops") in lines
    assert result.stdout.splitlines() == ["one", "two"]


def test_input_text_is_written_to_stdin():
    script = "import sys; print(sys.stdin.read().upper())"
    result = ExternalToolRunner().run(sys.executable, ["-c", script], input_text="label: dos\n")
    assert "LABEL: DOS" in result.stdout


def test_input_text_while_streaming():
    script = "import sys; print(len(sys.stdin.read()))"
    result = ExternalToolRunner(on_output=lambda line, stream: None).run(
        sys.executable, ["-c", script], input_text="abc", stream=True
    )
    assert result.stdout.strip() == "3"


def test_timeout_gives_124():
    result = ExternalToolRunner().run(
        sys.executable, ["-c", "import time; time.sleep(10)"], timeout=0.5
    )
    assert result.exit_code == EXIT_TIMEOUT
    assert "timed out" in result.stderr


def test_working_dir(tmp_path):
    result = ExternalToolRunner().run(
        sys.executable, ["-c", "import os; print(os.getcwd())"], working_dir=tmp_path
    )
    assert result.stdout.strip() == str(tmp_path.resolve())


def test_privileged_prefix_only_when_requested():
    runner = ExternalToolRunner(escalation=["sudo", "-n"])
    assert runner.build_command("partprobe", ["/dev/sdd"], privileged=True) == [
        "sudo", "-n", "partprobe", "/dev/sdd",
    ]
    assert runner.build_command("lsblk", ["/dev/sdd"]) == ["lsblk", "/dev/sdd"]


def test_privileged_without_escalation():
    assert ExternalToolRunner().build_command("umount", ["/dev/sdd1"], privileged=True) == [
        "umount", "/dev/sdd1",
    ]


class TestToolResult:

    def test_tail_and_output(self):
        result = ToolResult(command=["x"], exit_code=1, stdout="a\nb\nc\n", stderr="d")
        assert result.output == "a\nb\nc\nd"
        assert result.tail(2) == "c\nd"

    def test_raise_for_status(self):
        result = ToolResult(command=["esptool.py", "erase_flash"], exit_code=2, stderr="no port")
        with pytest.raises(ExternalToolFailure) as excinfo:
            result.raise_for_status("Flash erase failed")
        error = excinfo.value
        assert error.exit_code == 2
        assert error.reason == "Flash erase failed (exit code 2)"
        assert error.details["command"] == "esptool.py erase_flash"
        assert error.details["output_tail"] == "no port"

    def test_raise_for_status_passes_success(self):
        result = ToolResult(command=["true"], exit_code=0)
        assert result.raise_for_status("never") is result
