"""Tests for the concrete provisioning stages, with every device faked."""

import json

import pytest

from conftest import FakeRunner, FakeSerial, SleepRecorder

from rm01_flasher.config import ResetFailurePolicy
from rm01_flasher.core.errors import ConfirmationDeclined, PreconditionUnmet
from rm01_flasher.core.results import StageResult, StageStatus
from rm01_flasher.core.safety import ConfirmationGate
from rm01_flasher.core.sequencer import StageSequencer
from rm01_flasher.hardware.probe import DeviceProbe, UsbDevice
from rm01_flasher.hardware.serial_channel import SerialChannel
from rm01_flasher.storage.block_device import BlockDevice
from rm01_flasher.storage.planner import GIB
from rm01_flasher.stages import ProvisioningPlan

APX = UsbDevice("001", "009", "0955", "7023", "NVIDIA Corp. APX")

TOKEN_GATE = ConfirmationGate(interactive=False, confirmation_token="ERASE")


def lsblk_for(capacity_bytes, mountpoints=None):
    """lsblk responder: JSON listing for -J, plain size otherwise."""
    children = [
        {"name": node.split("/")[-1], "path": node, "mountpoint": mnt}
        for node, mnt in (mountpoints or {}).items()
    ]

    def respond(args):
        if args[0] == "-J":
            return json.dumps({"blockdevices": [{
                "name": "sdd", "path": "/dev/sdd", "size": capacity_bytes,
                "model": "CFexpress", "mountpoint": None, "children": children,
            }]})
        return f"{capacity_bytes}\n"

    return respond


def labelling_runner(capacity_bytes, fstype="ext4"):
    """Runner whose blkid reports whatever mkfs last wrote."""
    labels = {}

    def mkfs_ext4(args):
        labels[args[-1]] = args[2]
        return ""

    def mkfs_fat(args):
        labels[args[-1]] = args[3]
        return ""

    def blkid(args):
        node = args[-1]
        if args[1] == "TYPE":
            return fstype + "\n" if node in labels else ""
        return labels.get(node, "") + "\n"

    return FakeRunner({
        "lsblk": lsblk_for(capacity_bytes),
        "mkfs.ext4": mkfs_ext4,
        "mkfs.fat": mkfs_fat,
        "blkid": blkid,
    })


def make_plan(config, gate, runner, fake_serial=None, usb=None, transcripts=None):
    sleeper = SleepRecorder()
    port = config.base_dir / "ttyACM0"
    port.write_text("")
    config.mcu_port = str(port)
    probe = DeviceProbe(
        runner,
        usb_enumerator=(lambda: list(usb)) if usb is not None else (lambda: [APX]),
        holder_lookup=lambda path: [],
        sleep=sleeper,
    )
    channel = SerialChannel(
        runner,
        serial_factory=lambda: fake_serial or FakeSerial(),
        read_poll=0.01,
        lead_in=0.0,
        sleep=sleeper,
    )
    return ProvisioningPlan(
        config,
        gate,
        runner=runner,
        probe=probe,
        channel=channel,
        disk_factory=lambda path: BlockDevice(path, runner, sleep=sleeper, exists=lambda p: True),
        on_transcript=(transcripts.append if transcripts is not None else None),
        sleep=sleeper,
    )


def run_stage(gate, stage):
    return StageSequencer(gate, sleep=SleepRecorder()).run(stage)


class TestStorageInit:

    def test_256g_card_partitioned_formatted_and_verified(self, config):
        runner = labelling_runner(238 * GIB)
        plan = make_plan(config, TOKEN_GATE, runner)

        result = run_stage(TOKEN_GATE, plan.storage_init())

        assert result.status == StageStatus.SUCCESS, result.reason
        assert result.metadata["scheme"] == "256G"
        tables = runner.calls_to("sfdisk")
        assert len(tables) == 2
        assert tables[0].input_text == "label: dos\n"
        assert "size=64GiB, type=83" in tables[1].input_text
        assert "size=128GiB, type=83" in tables[1].input_text
        assert [c.args[2] for c in runner.calls_to("mkfs.ext4")] == [
            "rm01rootfs", "rm01models", "rm01app",
        ]
        assert sum(1 for d in result.diagnostics if d.startswith("[OK]")) == 3

    def test_4t_card_gets_gpt_table(self, config):
        runner = labelling_runner(4096 * GIB)
        plan = make_plan(config, TOKEN_GATE, runner)

        result = run_stage(TOKEN_GATE, plan.storage_init())

        assert result.status == StageStatus.SUCCESS, result.reason
        assert result.metadata["table"] == "gpt"
        tables = runner.calls_to("sfdisk")
        assert tables[0].input_text == "label: gpt\n"
        assert tables[1].input_text.splitlines() == ["label: gpt", "", "type=L"]

    def test_undersized_card_untouched(self, config):
        runner = labelling_runner(64 * GIB)
        plan = make_plan(config, TOKEN_GATE, runner)

        result = run_stage(TOKEN_GATE, plan.storage_init())

        assert result.status == StageStatus.FAILED
        assert result.metadata["error_kind"] == "E_INSUFFICIENT_CAPACITY"
        assert "sfdisk" not in runner.programs()
        assert "mkfs.ext4" not in runner.programs()
        assert "umount" not in runner.programs()

    def test_declined_confirmation_untouched(self, config, no_gate):
        runner = labelling_runner(476 * GIB)
        plan = make_plan(config, no_gate, runner)

        result = run_stage(no_gate, plan.storage_init())

        assert result.metadata["error_kind"] == "E_CONFIRMATION_DECLINED"
        assert "sfdisk" not in runner.programs()

    def test_label_mismatch_reported(self, config):
        runner = labelling_runner(256 * GIB)
        runner.responses["blkid"] = lambda args: "\n"
        plan = make_plan(config, TOKEN_GATE, runner)

        result = run_stage(TOKEN_GATE, plan.storage_init())

        assert result.metadata["error_kind"] == "E_VERIFICATION_MISMATCH"
        assert len([d for d in result.diagnostics if d.startswith("[MISMATCH]")]) == 3


class TestMcu:

    def _build(self, config):
        build = config.firmware_build_dir
        for sub in ("bootloader", "partition_table"):
            (build / sub).mkdir(parents=True, exist_ok=True)
        for name in ("flash_args", "bootloader/bootloader.bin", "robOS.bin",
                     "partition_table/partition-table.bin"):
            (build / name).write_bytes(b"\x00")

    def test_esptool_write_args(self, config, fake_runner):
        plan = make_plan(config, TOKEN_GATE, fake_runner)
        args = plan.esptool_write_args()
        assert args[:6] == ["--chip", "esp32s3", "--port", config.mcu_port, "--baud", "460800"]
        assert args[args.index("--flash_mode") + 1] == "dio"
        assert args[-6:] == [
            "0x0", "bootloader/bootloader.bin",
            "0x10000", "robOS.bin",
            "0x8000", "partition_table/partition-table.bin",
        ]

    def test_flash_erases_then_writes_then_resets(self, config, fake_runner):
        self._build(config)
        config.reset_helper.write_text("")
        plan = make_plan(config, TOKEN_GATE, fake_runner)

        result = StageResult.success("mcu-flash")
        assert plan._flash_mcu(result)

        esptool = fake_runner.calls_to("esptool.py")
        assert esptool[0].args[-1] == "erase_flash"
        assert "write_flash" in esptool[1].args
        assert esptool[1].working_dir == str(config.firmware_build_dir)
        assert fake_runner.programs()[-1] == str(config.reset_helper)
        assert plan.reset_ok is True
        assert not result.warnings

    def test_missing_images_refuse_to_erase(self, config, fake_runner):
        plan = make_plan(config, TOKEN_GATE, fake_runner)
        with pytest.raises(PreconditionUnmet):
            plan._flash_mcu(StageResult.success("mcu-flash"))
        assert fake_runner.calls == []

    def test_flash_without_token_declined(self, config, fake_runner):
        self._build(config)
        plan = make_plan(config, ConfirmationGate(interactive=False, assume_yes=True), fake_runner)
        with pytest.raises(ConfirmationDeclined):
            plan._flash_mcu(StageResult.success("mcu-flash"))
        assert "esptool.py" not in fake_runner.programs()

    def test_missing_reset_helper_is_a_warning(self, config, fake_runner):
        self._build(config)
        plan = make_plan(config, TOKEN_GATE, fake_runner)
        result = StageResult.success("mcu-flash")
        assert plan._flash_mcu(result)
        assert plan.reset_ok is False
        assert result.warnings

    def test_reset_abort_policy_blocks_parameters(self, config, fake_runner, yes_gate):
        fake = FakeSerial()
        config.reset_failure_policy = ResetFailurePolicy.ABORT
        plan = make_plan(config, yes_gate, fake_runner, fake_serial=fake)
        plan.reset_ok = False

        result = run_stage(yes_gate, plan.mcu_params())

        assert result.status == StageStatus.FAILED
        assert "abort" in result.reason
        assert fake.written == []

    def test_reset_continue_policy_sends_parameters(self, config, fake_runner, yes_gate):
        fake = FakeSerial(replies={"fan status": b"fan 0: on\r\n"})
        config.parameter_commands = ["fan status", "net config save"]
        config.timings.command_window = 0.2
        plan = make_plan(config, yes_gate, fake_runner, fake_serial=fake)
        plan.reset_ok = False

        result = run_stage(yes_gate, plan.mcu_params())

        assert result.status == StageStatus.SUCCESS
        assert result.reason == "2/2 parameter commands acknowledged"
        assert fake.written == [b"fan status\r\n", b"net config save\r\n"]

    def test_failed_parameter_reported(self, config, fake_runner, yes_gate):
        fake = FakeSerial(replies={"fan set 0 75": b"ERROR: fan not enabled\r\n"})
        config.parameter_commands = ["fan set 0 75", "fan config save"]
        config.timings.command_window = 0.2
        plan = make_plan(config, yes_gate, fake_runner, fake_serial=fake)

        result = run_stage(yes_gate, plan.mcu_params())

        assert result.status == StageStatus.FAILED
        assert result.reason == "1/2 parameter commands acknowledged"
        assert result.metadata["failed_commands"] == ["fan set 0 75"]
        assert "failed: fan set 0 75" in result.diagnostics


class TestHostRecovery:

    def test_confirmed_recovery_and_usb_detected(self, config, fake_runner, yes_gate):
        fake = FakeSerial()
        transcripts = []
        plan = make_plan(config, yes_gate, fake_runner, fake_serial=fake, transcripts=transcripts)

        result = run_stage(yes_gate, plan.host_recovery())

        assert result.status == StageStatus.SUCCESS, result.reason
        assert fake.written == [b"usbmux agx\r\n", b"usbmux save\r\n", b"reboot\r\n", b"agx recovery\r\n"]
        assert [t.command for t in transcripts] == ["agx recovery"]
        assert result.metadata["usb_device"] == APX.line

    def test_unconfirmed_recovery_is_ambiguous(self, config, fake_runner):
        gate = ConfirmationGate(
            interactive=True,
            prompt_confirmation=lambda question, default: not question.startswith("Did"),
        )
        fake = FakeSerial()
        config.recovery_attempts = 3
        plan = make_plan(config, gate, fake_runner, fake_serial=fake, usb=[])

        result = run_stage(gate, plan.host_recovery())

        assert result.metadata["error_kind"] == "E_PROTOCOL_AMBIGUOUS"
        assert fake.written.count(b"agx recovery\r\n") == 3
        assert "usb_polls" not in result.metadata

    def test_usb_device_never_appears(self, config, fake_runner, yes_gate):
        plan = make_plan(config, yes_gate, fake_runner, usb=[])

        result = run_stage(yes_gate, plan.host_recovery())

        assert result.metadata["error_kind"] == "E_PRECONDITION_UNMET"
        assert result.metadata["usb_polls"] == config.timings.usb_poll_attempts

    def test_host_flash_runs_flash_script(self, config, fake_runner, yes_gate):
        plan = make_plan(config, yes_gate, fake_runner)
        assert plan._flash_host(StageResult.success("host-flash"))
        call = fake_runner.calls[0]
        assert call.program == "./flash.sh"
        assert call.args == ["rm01-orin", "nvme0n1p1"]
        assert call.working_dir == str(config.l4t_dir)
        assert call.privileged

    def test_host_flash_requires_recovery(self, config, fake_runner, yes_gate):
        plan = make_plan(config, yes_gate, fake_runner)
        result = run_stage(yes_gate, plan.host_flash())
        assert result.reason == "requires host-recovery"
        assert fake_runner.calls == []


class TestStorageFlash:

    def test_initrd_flash_args(self, config, fake_runner, yes_gate):
        plan = make_plan(config, yes_gate, fake_runner)
        args = plan.initrd_flash_args()
        assert args[args.index("--direct") + 1] == "sdd1"
        assert args[-2:] == ["rm01-orin", "nvme0n1p1"]

    def test_flash_then_label(self, config):
        runner = labelling_runner(256 * GIB)
        plan = make_plan(config, TOKEN_GATE, runner)
        result = StageResult.success("storage-flash")
        assert plan._flash_storage(result)
        flash = runner.calls_to("./tools/kernel_flash/l4t_initrd_flash.sh")[0]
        assert flash.privileged
        assert flash.working_dir == str(config.l4t_dir)
        assert runner.calls_to("e2label")[0].args == ["/dev/sdd1", "rm01rootfs"]


class TestTfCard:

    def test_tf_init_formats_copies_and_verifies(self, config):
        config.sdcard_dir.mkdir()
        (config.sdcard_dir / "matrix.json").write_text("{}")
        runner = labelling_runner(32 * GIB, fstype="vfat")
        plan = make_plan(config, TOKEN_GATE, runner)

        result = StageResult.success("tf-init")
        assert plan._init_tf(result)

        assert runner.calls_to("sfdisk")[0].input_text == "label: dos\n\ntype=b\n"
        assert runner.calls_to("mkfs.fat")[0].args == ["-F", "32", "-n", "rm01tf", "/dev/sda1"]
        copy = runner.calls_to("cp")[0]
        assert copy.args[1].endswith("matrix.json")
        assert result.diagnostics[0].startswith("[OK]")
        assert not result.warnings


def test_full_flow_order(config, fake_runner, yes_gate):
    plan = make_plan(config, yes_gate, fake_runner)
    stages = plan.full(with_tf=True, with_storage_init=True)
    assert [s.name for s in stages] == [
        "sdcard-content", "tf-init",
        "firmware-download", "firmware-extract",
        "mcu-flash", "mcu-params",
        "host-recovery", "host-flash",
        "storage-init", "storage-flash",
    ]
    assert "storage-init" in stages[-1].requires


def test_stages_by_name(config, fake_runner, yes_gate):
    names = set(make_plan(config, yes_gate, fake_runner).stages_by_name())
    assert {"mcu-flash", "storage-init", "tf-init", "sdcard-content"} <= names
