"""Tests for the stage sequencer."""

import logging
from unittest.mock import MagicMock

from conftest import FakeRunner, SleepRecorder

from rm01_flasher.core.errors import ExternalToolFailure, VerificationMismatch
from rm01_flasher.core.results import StageStatus
from rm01_flasher.core.safety import ConfirmationGate
from rm01_flasher.core.sequencer import Precondition, Stage, StageSequencer
from rm01_flasher.stages import ProvisioningPlan


def _sequencer(gate=None):
    return StageSequencer(gate or ConfirmationGate.headless(True), sleep=SleepRecorder())


class TestIdempotentSkip:

    def test_existing_archive_skips_download_without_tool_calls(self, config, yes_gate):
        config.firmware_archive.parent.mkdir(parents=True)
        config.firmware_archive.write_bytes(b"PK")
        runner = FakeRunner()
        plan = ProvisioningPlan(config, yes_gate, runner=runner, sleep=SleepRecorder())

        result = _sequencer().run(plan.firmware_download())

        assert result.status == StageStatus.SKIPPED
        assert result.ok
        assert result.reason.startswith("skipped")
        assert runner.calls == []

    def test_marker_checked_before_preconditions(self):
        check = MagicMock(return_value=False)
        action = MagicMock()
        stage = Stage(
            name="cached",
            action=action,
            preconditions=[Precondition("device attached", check)],
            idempotent=True,
            completion_marker=lambda: True,
        )
        result = _sequencer().run(stage)
        assert result.status == StageStatus.SKIPPED
        check.assert_not_called()
        action.assert_not_called()

    def test_marker_ignored_for_non_idempotent_stage(self):
        action = MagicMock(return_value=True)
        stage = Stage(name="always", action=action, completion_marker=lambda: True)
        assert _sequencer().run(stage).status == StageStatus.SUCCESS
        action.assert_called_once()


class TestPreconditions:

    def test_unmet_precondition_fails_without_running_action(self):
        action = MagicMock()
        stage = Stage(
            name="storage-init",
            action=action,
            preconditions=[Precondition("CFE card present at /dev/sdd", lambda: False)],
        )
        result = _sequencer(ConfirmationGate.headless(False)).run(stage)
        assert result.status == StageStatus.FAILED
        assert "CFE card present at /dev/sdd" in result.reason
        assert result.metadata["error_kind"] == "E_PRECONDITION_UNMET"
        action.assert_not_called()

    def test_operator_remedy_rechecks(self):
        state = {"plugged": False}
        ack = MagicMock(side_effect=lambda message: state.update(plugged=True))
        gate = ConfirmationGate(interactive=True, prompt_acknowledge=ack,
                                prompt_confirmation=lambda q, d: False)
        stage = Stage(
            name="mcu-flash",
            action=lambda result: True,
            preconditions=[Precondition(
                "serial port ready",
                lambda: state["plugged"],
                operator_remedy="Connect the ESP32-S3",
            )],
        )
        result = _sequencer(gate).run(stage)
        assert result.status == StageStatus.SUCCESS
        ack.assert_called_once_with("Connect the ESP32-S3")

    def test_optional_precondition_continue(self):
        stage = Stage(
            name="optional",
            action=lambda result: True,
            preconditions=[Precondition("reset helper present", lambda: False, optional_continue=True)],
        )
        assert _sequencer(ConfirmationGate.headless(True)).run(stage).ok
        assert not _sequencer(ConfirmationGate.headless(False)).run(stage).ok

    def test_requires_failed_dependency(self):
        sequencer = _sequencer()
        sequencer.run(Stage(name="host-recovery", action=lambda result: False))
        result = sequencer.run(Stage(name="host-flash", action=MagicMock(), requires=["host-recovery"]))
        assert result.status == StageStatus.FAILED
        assert result.reason == "requires host-recovery"
        assert result.metadata["blocked_by"] == "host-recovery"

    def test_requires_skipped_dependency_is_fine(self):
        sequencer = _sequencer()
        sequencer.run(Stage(name="firmware-download", action=MagicMock(),
                            idempotent=True, completion_marker=lambda: True))
        result = sequencer.run(Stage(name="firmware-extract", action=lambda result: True,
                                     requires=["firmware-download"]))
        assert result.ok


class TestFailures:

    def test_tool_failure_becomes_diagnostics(self):
        def action(result):
            raise ExternalToolFailure("Firmware write failed (exit code 2)", exit_code=2,
                                      output="Connecting....\nA fatal error occurred: timed out")

        result = _sequencer().run(Stage(name="mcu-flash", action=action))
        assert result.status == StageStatus.FAILED
        assert result.reason == "Firmware write failed (exit code 2)"
        assert result.metadata["error_kind"] == "E_EXTERNAL_TOOL_FAILURE"
        assert result.metadata["exit_code"] == 2
        assert "A fatal error occurred: timed out" in result.diagnostics
        assert result.metadata["remediation"]

    def test_verification_mismatches_listed(self):
        def action(result):
            raise VerificationMismatch("1 of 3 partition(s) failed",
                                       mismatches=["[MISMATCH] /dev/sdd2: label 'x'"])

        result = _sequencer().run(Stage(name="storage-init", action=action))
        assert result.diagnostics == ["[MISMATCH] /dev/sdd2: label 'x'"]

    def test_retry_within_stage(self):
        calls = []

        def action(result):
            calls.append(1)
            return len(calls) >= 2

        result = _sequencer().run(Stage(name="flaky", action=action, max_attempts=3))
        assert result.ok
        assert result.attempts == 2

    def test_success_check_rejection(self):
        stage = Stage(name="firmware-extract", action=lambda result: "path", success=lambda value: False)
        result = _sequencer().run(stage)
        assert result.status == StageStatus.FAILED
        assert result.reason == "success check failed"

    def test_logs_captured_per_stage(self):
        def action(result):
            logging.getLogger("rm01_flasher.stages").info("erasing flash")
            return True

        result = _sequencer().run(Stage(name="mcu-flash", action=action))
        assert any("erasing flash" in line for line in result.logs)


class TestRunAll:

    def test_abort_on_failure_stops_run(self):
        later = MagicMock(return_value=True)
        stages = [
            Stage(name="firmware-download", action=lambda result: False, abort_on_failure=True),
            Stage(name="mcu-flash", action=later),
        ]
        report = _sequencer().run_all(stages)
        assert report.aborted_after == "firmware-download"
        assert report.tally() == "0/2"
        assert not report.ok
        later.assert_not_called()

    def test_operator_declines_to_continue(self):
        later = MagicMock(return_value=True)
        stages = [
            Stage(name="mcu-flash", action=lambda result: False, confirm_continue_on_failure=True),
            Stage(name="host-recovery", action=later),
        ]
        report = _sequencer(ConfirmationGate.headless(False)).run_all(stages)
        assert report.aborted_after == "mcu-flash"
        later.assert_not_called()

    def test_operator_continues_after_failure(self):
        stages = [
            Stage(name="mcu-flash", action=lambda result: False, confirm_continue_on_failure=True),
            Stage(name="host-recovery", action=lambda result: True),
            Stage(name="host-flash", action=lambda result: True, requires=["mcu-flash"]),
        ]
        report = _sequencer(ConfirmationGate.headless(True)).run_all(stages)
        assert report.aborted_after is None
        assert report.tally() == "1/3"
        assert [r.stage for r in report.failed] == ["mcu-flash", "host-flash"]

    def test_dependency_failure_asks_only_once(self):
        prompt = MagicMock(return_value=True)
        gate = ConfirmationGate(prompt_confirmation=prompt)
        flash = MagicMock(return_value=True)
        stages = [
            Stage(name="host-recovery", action=lambda result: False, confirm_continue_on_failure=True),
            Stage(name="host-flash", action=flash, requires=["host-recovery"],
                  confirm_continue_on_failure=True),
        ]
        report = _sequencer(gate).run_all(stages)
        prompt.assert_called_once_with("host-recovery failed. Continue with the remaining steps?", False)
        flash.assert_not_called()
        assert [r.stage for r in report.failed] == ["host-recovery", "host-flash"]
        assert report.aborted_after is None

    def test_on_result_callback(self):
        seen = []
        sequencer = StageSequencer(ConfirmationGate.headless(True), sleep=SleepRecorder(),
                                   on_result=seen.append)
        sequencer.run_all([Stage(name="a", action=lambda result: None),
                           Stage(name="b", action=lambda result: True)])
        assert [r.stage for r in seen] == ["a", "b"]
        assert all(r.status == StageStatus.SUCCESS for r in seen)
