"""Tests for CLI parsing helpers and the offline commands."""

import pytest
from typer.testing import CliRunner

from rm01_flasher.cli import app
from rm01_flasher.core.parsing import parse_capacity, parse_port

runner = CliRunner()


class TestParseCapacity:

    def test_units(self):
        assert parse_capacity("256G") == 256 * 1024 ** 3
        assert parse_capacity("256GiB") == 256 * 1024 ** 3
        assert parse_capacity("1t") == 1024 ** 4
        assert parse_capacity("0.5T") == 512 * 1024 ** 3

    def test_plain_bytes(self):
        assert parse_capacity("274877906944") == 274877906944
        assert parse_capacity(" 100 GB ") == 100 * 1024 ** 3

    @pytest.mark.parametrize("value", ["", None, "big", "12X", "-5G"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_capacity(value)


class TestParsePort:

    def test_full_path_kept(self):
        assert parse_port("/dev/ttyACM0") == "/dev/ttyACM0"

    def test_bare_name(self):
        assert parse_port("ttyUSB1") == "/dev/ttyUSB1"

    def test_windows_name(self):
        assert parse_port("COM3") == "COM3"

    def test_empty(self):
        assert parse_port(None) is None
        assert parse_port("  ") is None


class TestPlanCommand:

    def test_256g_plan(self):
        result = runner.invoke(app, ["plan", "256G"])
        assert result.exit_code == 0, result.output
        assert "256G" in result.output
        assert "rm01models" in result.output
        assert "size=64GiB, type=83" in result.output

    def test_custom_prefix(self):
        result = runner.invoke(app, ["plan", "1T", "--prefix", "lab"])
        assert result.exit_code == 0
        assert "labrootfs" in result.output

    def test_undersized_card(self):
        result = runner.invoke(app, ["plan", "50G"])
        assert result.exit_code == 1
        assert "100 GiB" in result.output

    def test_unparseable_capacity(self):
        result = runner.invoke(app, ["plan", "lots"])
        assert result.exit_code == 2


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "rm01-flasher" in result.output


def test_logs_without_files(tmp_path):
    result = runner.invoke(app, ["logs", "--base-dir", str(tmp_path)])
    assert result.exit_code == 0
    assert "No log files" in result.output


def test_logs_shows_tail(tmp_path):
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    (log_dir / "rm01-flasher-20260101_120000.log").write_text("first\nsecond\nthird\n")
    result = runner.invoke(app, ["logs", "--base-dir", str(tmp_path), "-n", "2"])
    assert result.exit_code == 0
    assert "third" in result.output
    assert "first" not in result.output


def test_plan_for_large_card_uses_gpt():
    result = runner.invoke(app, ["plan", "4T"])
    assert result.exit_code == 0, result.output
    assert "label: gpt" in result.output
