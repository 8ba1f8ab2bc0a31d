"""
Concrete provisioning stages for the RM-01.

ProvisioningPlan turns a FlasherConfig plus the hardware components into
Stage objects for the sequencer. Each flow the CLI offers (firmware, MCU,
host module, CFE card, TF card, full run) is a list of these stages.

Stage names:
    firmware-download   fetch the robOS release archive
    firmware-extract    unpack it and check build/flash_args
    mcu-flash           erase and write the ESP32-S3, then reset it
    mcu-params          push the robOS parameter set over serial
    host-recovery       put the Jetson module into recovery mode
    host-flash          flash.sh the boot image onto the module
    storage-init        partition, format and verify the CFE card
    storage-flash       write the runtime image onto the CFE card
    sdcard-content      fetch the TF card content from the robOS repo
    tf-init             partition, format, fill and verify the TF card
"""

import logging
import os
import signal
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from rm01_flasher.config import FlasherConfig, ResetFailurePolicy
from rm01_flasher.core.errors import (
    ConfirmationDeclined,
    PreconditionUnmet,
    ProtocolAmbiguous,
    SerialChannelError,
)
from rm01_flasher.core.results import StageResult
from rm01_flasher.core.safety import ConfirmationGate, require_destructive_confirmation
from rm01_flasher.core.sequencer import Precondition, Stage
from rm01_flasher.firmware import FLASH_IMAGES, FirmwareStore
from rm01_flasher.hardware.probe import DeviceProbe, PortState
from rm01_flasher.hardware.runner import ExternalToolRunner
from rm01_flasher.hardware.serial_channel import (
    ResponseStatus,
    SerialChannel,
    SerialTranscript,
    classify,
)
from rm01_flasher.storage.block_device import BlockDevice
from rm01_flasher.storage.planner import (
    PartitionOperation,
    emit_partition_operations,
    expected_labels,
    select_scheme,
)

logger = logging.getLogger(__name__)

FAT32_LBA_TYPE = "b"
NVME_FLASH_LAYOUT = "tools/kernel_flash/flash_l4t_t234_nvme.xml"


def _log_transcript(transcript: SerialTranscript) -> None:
    if transcript.empty:
        logger.info(f"(no output captured for '{transcript.command}')")
    for line in transcript.lines:
        logger.info(f"  | {line}")


class ProvisioningPlan:
    """
    Builds the stages of every provisioning flow.

    Args:
        config: Paths, device nodes, commands and timings
        gate: Operator confirmation capability
        runner: Runs every external tool
        probe: Serial and USB detection
        channel: MCU serial command channel
        disk_factory: Builds a BlockDevice for a path (tests inject fakes)
        on_transcript: Shows a serial transcript to the operator
        sleep: Used for every settle delay
    """

    def __init__(
        self,
        config: FlasherConfig,
        gate: ConfirmationGate,
        runner: Optional[ExternalToolRunner] = None,
        probe: Optional[DeviceProbe] = None,
        channel: Optional[SerialChannel] = None,
        disk_factory: Optional[Callable[[str], BlockDevice]] = None,
        on_transcript: Optional[Callable[[SerialTranscript], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.gate = gate
        self.timings = config.timings
        self.sleep = sleep
        self.runner = runner or ExternalToolRunner(escalation=config.escalation_prefix)
        self.probe = probe or DeviceProbe(self.runner, sleep=sleep)
        self.channel = channel or SerialChannel(
            self.runner,
            baudrate=config.mcu_param_baud,
            lead_in=self.timings.capture_lead_in,
            sleep=sleep,
        )
        self.disk_factory = disk_factory or (
            lambda path: BlockDevice(path, self.runner, sleep=sleep)
        )
        self.on_transcript = on_transcript or _log_transcript
        self.store = FirmwareStore(config, self.runner)
        # Outcome of the last hardware reset; None until mcu-flash has run
        self.reset_ok: Optional[bool] = None

    # ---- shared checks ------------------------------------------------

    def ensure_serial_ready(self) -> bool:
        """
        Bring the MCU port to READY where software can.

        Fixes permissions with chmod and, after asking, terminates processes
        holding the port. An absent port cannot be fixed here.
        """
        port = self.config.mcu_port
        status = self.probe.probe_serial_port(port, self.config.escalation_prefix)

        if status.state == PortState.NEEDS_PERMISSION:
            logger.warning(status.describe())
            logger.info(f"Fixing permissions: {' '.join(status.remediation)}")
            result = self.runner.run("chmod", ["666", port], privileged=True)
            if not result.ok:
                logger.error(f"Permission fix failed: {result.tail(2)}")
                return False
            status = self.probe.probe_serial_port(port, self.config.escalation_prefix)

        if status.state == PortState.HELD:
            logger.warning(status.describe())
            if not self.gate.confirm(f"Terminate the processes holding {port}?", True):
                return False
            for pid in status.holder_pids:
                try:
                    os.kill(pid, signal.SIGTERM)
                except ProcessLookupError:
                    pass
                except PermissionError as e:
                    logger.warning(f"Cannot terminate process {pid}: {e}")
            self.sleep(self.timings.holder_release_wait)
            status = self.probe.probe_serial_port(port, self.config.escalation_prefix)
            if status.state == PortState.HELD:
                logger.error(f"Could not release {port}")

        if status.ready:
            logger.info(f"Serial port {port} ready")
        else:
            logger.warning(status.describe())
        return status.ready

    def _serial_precondition(self) -> Precondition:
        port = self.config.mcu_port
        return Precondition(
            description=f"serial port {port} ready",
            check=self.ensure_serial_ready,
            operator_remedy=f"Connect the ESP32-S3 to {port}, then press Enter to continue",
        )

    def _disk_precondition(self, disk: BlockDevice, what: str) -> Precondition:
        return Precondition(
            description=f"{what} present at {disk.path}",
            check=disk.present,
            operator_remedy=f"Connect the card reader and insert the {what}, then press Enter",
        )

    def _send(self, command: str, window: float) -> SerialTranscript:
        """Open the MCU port for one command; the port may vanish across reboots."""
        with self.channel.session(self.config.mcu_port, self.config.mcu_param_baud) as handle:
            return self.channel.send_command(handle, command, window)

    # ---- firmware -----------------------------------------------------

    def firmware_download(self) -> Stage:
        return Stage(
            name="firmware-download",
            description=f"download robOS {self.config.firmware_version}",
            action=lambda result: self.store.download(),
            idempotent=True,
            completion_marker=self.store.archive_present,
            abort_on_failure=True,
        )

    def firmware_extract(self) -> Stage:
        return Stage(
            name="firmware-extract",
            description="unpack the robOS build",
            action=lambda result: self.store.extract(),
            success=lambda _: self.store.verify(),
            idempotent=True,
            completion_marker=self.store.extracted,
            requires=["firmware-download"],
            abort_on_failure=True,
        )

    # ---- companion microcontroller -----------------------------------

    def esptool_base_args(self) -> List[str]:
        return [
            "--chip", self.config.mcu_chip,
            "--port", self.config.mcu_port,
            "--baud", str(self.config.mcu_flash_baud),
        ]

    def esptool_write_args(self) -> List[str]:
        args = self.esptool_base_args() + [
            "--before", "default_reset",
            "--after", "hard_reset",
            "write_flash",
            "--flash_mode", self.config.flash_mode,
            "--flash_freq", self.config.flash_freq,
            "--flash_size", self.config.flash_size,
        ]
        for offset, image in FLASH_IMAGES:
            args.extend([offset, image])
        return args

    def _flash_mcu(self, result: StageResult) -> bool:
        port = self.config.mcu_port
        missing = self.store.missing_images()
        if missing:
            raise PreconditionUnmet(
                f"Firmware images missing: {', '.join(missing)}",
                details={"build_dir": str(self.store.build_dir)},
            )

        require_destructive_confirmation(
            self.gate,
            "Erase and rewrite the ESP32-S3 flash",
            port,
            consequences=[
                "Erases firmware, NVS data and stored configuration",
                f"Writes robOS {self.config.firmware_version} "
                f"({self.config.flash_mode} {self.config.flash_freq} {self.config.flash_size})",
            ],
        )

        logger.info("Erasing ESP32-S3 flash...")
        self.runner.run(
            "esptool.py", self.esptool_base_args() + ["erase_flash"], stream=True
        ).raise_for_status("Flash erase failed")
        self.sleep(self.timings.erase_settle)

        logger.info("Writing robOS firmware...")
        self.runner.run(
            "esptool.py",
            self.esptool_write_args(),
            working_dir=self.store.build_dir,
            stream=True,
        ).raise_for_status("Firmware write failed")

        # esptool's RTS reset does not always take on this board
        self.reset_ok = self.channel.hardware_reset(port, self.config.reset_helper)
        result.metadata["reset_ok"] = self.reset_ok
        if not self.reset_ok:
            result.add_warning("Hardware reset helper failed; the MCU may still be in download mode")

        logger.info(f"Waiting {self.timings.mcu_boot_wait:g}s for robOS to boot...")
        self.sleep(self.timings.mcu_boot_wait)
        return True

    def mcu_flash(self) -> Stage:
        return Stage(
            name="mcu-flash",
            description="erase and flash the ESP32-S3 with robOS",
            action=self._flash_mcu,
            preconditions=[self._serial_precondition()],
            requires=["firmware-extract"],
            confirm_continue_on_failure=True,
        )

    def _init_parameters(self, result: StageResult) -> bool:
        if self.reset_ok is False:
            if self.config.reset_failure_policy == ResetFailurePolicy.ABORT:
                raise PreconditionUnmet(
                    "Hardware reset failed and the reset failure policy is 'abort'",
                    details={"reset_helper": str(self.config.reset_helper)},
                )
            logger.warning("Hardware reset failed earlier; sending parameters anyway")

        commands = self.config.parameter_commands
        if not self.gate.confirm(
            f"Send {len(commands)} parameter commands (network, fan, LED, color) to the MCU?", True
        ):
            raise ConfirmationDeclined("Parameter initialization cancelled by operator")

        logger.info(f"Waiting {self.timings.param_init_settle:g}s for the MCU to settle...")
        self.sleep(self.timings.param_init_settle)
        self.channel.set_baud_rate(self.config.mcu_port, self.config.mcu_param_baud)

        with self.channel.session(self.config.mcu_port, self.config.mcu_param_baud) as handle:
            batch = self.channel.send_batch(
                handle,
                commands,
                self.timings,
                max_attempts=self.config.command_attempts,
            )

        sent_ok = len(commands) - len(batch.failed)
        result.metadata["failed_commands"] = batch.failed
        result.metadata["silent_commands"] = batch.flagged
        for command in batch.flagged:
            result.add_warning(f"No reply to '{command}'")
        for command in batch.failed:
            result.add_diagnostic(f"failed: {command}")

        result.reason = f"{sent_ok}/{len(commands)} parameter commands acknowledged"
        if not batch.ok:
            logger.warning("Check the serial connection or send the failed commands by hand")
        return batch.ok

    def mcu_params(self) -> Stage:
        return Stage(
            name="mcu-params",
            description="initialize robOS parameters",
            action=self._init_parameters,
            preconditions=[self._serial_precondition()],
            confirm_continue_on_failure=True,
        )

    # ---- host module --------------------------------------------------

    def _enter_recovery(self, result: StageResult) -> bool:
        attempts = self.config.recovery_attempts
        t = self.timings
        confirmed = False

        for attempt in range(1, attempts + 1):
            logger.info(f"Recovery attempt {attempt}/{attempts}")
            if not self.gate.confirm(
                "Switch the USB mux to the host module and send 'agx recovery'?", True
            ):
                raise ConfirmationDeclined("Recovery command cancelled by operator")

            transcript = None
            try:
                self._send("usbmux agx", t.mux_window)
                self.sleep(t.mux_settle)
                self._send("usbmux save", t.mux_window)
                self.sleep(t.mux_settle)
                self._send("reboot", t.mux_window)
                logger.info(f"Waiting {t.recovery_reboot_wait:g}s for the MCU to reboot...")
                self.sleep(t.recovery_reboot_wait)
                transcript = self._send("agx recovery", t.recovery_window)
            except SerialChannelError as e:
                logger.warning(f"Serial error during recovery sequence: {e.reason}")

            if transcript is not None:
                self.on_transcript(transcript)
                verdict = classify(transcript)
                if verdict.status == ResponseStatus.ERROR_DETECTED:
                    logger.warning(f"Recovery output contains an error: {verdict.evidence}")
                if self.gate.confirm("Did 'agx recovery' succeed (expected output shown above)?", True):
                    confirmed = True
                    result.attempts = attempt
                    break

            logger.warning("Recovery command does not appear to have worked")
            if attempt < attempts:
                self.sleep(t.recovery_retry_delay)

        if not confirmed:
            raise ProtocolAmbiguous(
                f"Recovery not confirmed after {attempts} attempts",
                details={"port": self.config.mcu_port},
            )

        self.gate.acknowledge(
            "Connect the USB-C cable to the flashing port on top of the device, then press Enter"
        )
        found = self.probe.probe_usb_signature(
            self.config.usb_vendor_pattern,
            self.config.usb_match_pattern,
            t.usb_poll_attempts,
            t.usb_poll_interval,
        )
        result.metadata["usb_polls"] = found.attempts
        if not found.found:
            raise PreconditionUnmet(
                "Recovery-mode device not detected on USB; check the USB-C cable "
                "on the top flashing port",
                details={
                    "pattern": f"{self.config.usb_vendor_pattern}/{self.config.usb_match_pattern}",
                    "usb_devices": [d.line for d in found.last_listing],
                },
            )
        result.metadata["usb_device"] = found.device.line
        result.reason = f"recovery mode confirmed ({found.device.line})"
        return True

    def host_recovery(self) -> Stage:
        return Stage(
            name="host-recovery",
            description="put the host module into recovery mode",
            action=self._enter_recovery,
            preconditions=[self._serial_precondition()],
            confirm_continue_on_failure=True,
        )

    def _flash_host(self, result: StageResult) -> bool:
        self.runner.run(
            f"./{self.config.flash_script.name}",
            [self.config.board_config, self.config.root_device],
            working_dir=self.config.l4t_dir,
            privileged=True,
            stream=True,
        ).raise_for_status("Host module boot image flash failed")
        return True

    def host_flash(self) -> Stage:
        return Stage(
            name="host-flash",
            description="flash the boot image onto the host module",
            action=self._flash_host,
            preconditions=[Precondition(
                description=f"flash.sh present in {self.config.l4t_dir}",
                check=self.config.flash_script.is_file,
            )],
            requires=["host-recovery"],
            confirm_continue_on_failure=True,
        )

    # ---- CFE card -----------------------------------------------------

    def _init_storage(self, result: StageResult) -> bool:
        disk = self.disk_factory(self.config.cfe_disk)
        info = disk.info()
        logger.info(
            f"CFE card {disk.path}: {info.size_bytes // (1024 ** 3)} GiB, "
            f"model {info.model or 'unknown'}"
        )

        # Undersized cards are refused before anything is touched
        capacity = disk.capacity_bytes()
        scheme = select_scheme(capacity, self.config.label_prefix)
        result.metadata["scheme"] = scheme.tag
        result.metadata["table"] = scheme.table

        require_destructive_confirmation(
            self.gate,
            "Repartition and format the CFE card",
            disk.path,
            consequences=[
                "Deletes every partition and all data",
                f"New layout {scheme.describe()}",
            ],
        )

        still_mounted = disk.unmount_all()
        for node in still_mounted:
            result.add_warning(f"{node} could not be unmounted")
        self.sleep(self.timings.unmount_settle)

        disk.write_partition_table([], table=scheme.table)
        disk.reread(self.timings.partition_settle)

        operations = emit_partition_operations(scheme)
        for op in operations:
            logger.info(f"Creating {op.describe()}")
        disk.write_partition_table(operations, table=scheme.table)
        disk.reread(self.timings.partition_settle)

        for op in operations:
            disk.format_ext4(op.number, op.label)
        disk.reread(self.timings.partition_settle)

        checks = disk.verify_labels(expected_labels(scheme))
        for check in checks:
            result.add_diagnostic(check.describe())
        result.reason = f"{scheme.tag} layout written and verified"
        return True

    def storage_init(self) -> Stage:
        disk = self.disk_factory(self.config.cfe_disk)
        return Stage(
            name="storage-init",
            description="partition, format and verify the CFE card",
            action=self._init_storage,
            preconditions=[self._disk_precondition(disk, "CFE card")],
            confirm_continue_on_failure=True,
        )

    def initrd_flash_args(self) -> List[str]:
        target = f"{os.path.basename(self.config.cfe_disk)}1"
        return [
            "--flash-only",
            "-c", NVME_FLASH_LAYOUT,
            "-k", "APP",
            "--external-device", self.config.root_device,
            "--direct", target,
            self.config.board_config,
            self.config.root_device,
        ]

    def _flash_storage(self, result: StageResult) -> bool:
        disk = self.disk_factory(self.config.cfe_disk)
        self.sleep(self.timings.card_insert_settle)
        require_destructive_confirmation(
            self.gate,
            "Write the runtime image to the CFE card",
            disk.path,
            consequences=["Overwrites the first partition of the card"],
        )

        disk.unmount_all()
        self.sleep(self.timings.unmount_settle)

        script = self.config.initrd_flash_script.relative_to(self.config.l4t_dir)
        self.runner.run(
            f"./{script.as_posix()}",
            self.initrd_flash_args(),
            working_dir=self.config.l4t_dir,
            privileged=True,
            stream=True,
        ).raise_for_status("CFE card image flash failed")

        disk.unmount_all()
        self.sleep(self.timings.unmount_settle)

        label = f"{self.config.label_prefix}rootfs"
        if not disk.set_ext4_label(1, label):
            result.add_warning(f"Image written but setting label {label} failed")
        return True

    def storage_flash(self) -> Stage:
        disk = self.disk_factory(self.config.cfe_disk)
        return Stage(
            name="storage-flash",
            description="write the runtime image onto the CFE card",
            action=self._flash_storage,
            preconditions=[
                self._disk_precondition(disk, "CFE card"),
                Precondition(
                    description=f"l4t_initrd_flash.sh present in {self.config.l4t_dir}",
                    check=self.config.initrd_flash_script.is_file,
                ),
            ],
        )

    # ---- TF card ------------------------------------------------------

    def sdcard_content(self, refresh: bool = False) -> Stage:
        return Stage(
            name="sdcard-content",
            description="fetch TF card content from the robOS repository",
            action=lambda result: self.store.fetch_sdcard_content(),
            success=lambda _: self.store.sdcard_present(),
            idempotent=not refresh,
            completion_marker=self.store.sdcard_present,
        )

    def _init_tf(self, result: StageResult) -> bool:
        disk = self.disk_factory(self.config.tf_disk)
        label = self.config.tf_label
        info = disk.info()
        logger.info(
            f"TF card {disk.path}: {info.size_bytes // (1024 ** 3)} GiB, "
            f"model {info.model or 'unknown'}"
        )

        require_destructive_confirmation(
            self.gate,
            "Repartition and format the TF card",
            disk.path,
            consequences=[
                "Deletes every partition and all data",
                f"Creates one FAT32 partition labelled {label}",
                f"Copies {self.store.sdcard_dir}",
            ],
        )

        disk.unmount_all()
        self.sleep(self.timings.unmount_settle)
        disk.write_partition_table([
            PartitionOperation(number=1, label=label, type_code=FAT32_LBA_TYPE)
        ])
        disk.reread(self.timings.partition_settle)
        disk.format_fat32(1, label)

        mountpoint = Path(tempfile.mkdtemp(prefix="rm01-tf-"))
        try:
            disk.mount(1, mountpoint)
        except Exception:
            mountpoint.rmdir()
            raise
        try:
            disk.copy_tree_into(self.store.sdcard_dir, mountpoint)
        finally:
            if disk.unmount(mountpoint):
                mountpoint.rmdir()
            else:
                result.add_warning(f"{mountpoint} is still mounted")

        disk.reread(self.timings.partition_settle)
        for check in disk.verify_labels([label], fstype="vfat"):
            result.add_diagnostic(check.describe())
        result.reason = f"FAT32 partition {label} written and verified"
        return True

    def tf_init(self) -> Stage:
        disk = self.disk_factory(self.config.tf_disk)
        return Stage(
            name="tf-init",
            description="partition, format and fill the TF card",
            action=self._init_tf,
            preconditions=[self._disk_precondition(disk, "TF card")],
            requires=["sdcard-content"],
            confirm_continue_on_failure=True,
        )

    # ---- flows --------------------------------------------------------

    def firmware(self) -> List[Stage]:
        return [self.firmware_download(), self.firmware_extract()]

    def mcu(self, with_params: bool = True) -> List[Stage]:
        stages = self.firmware() + [self.mcu_flash()]
        if with_params:
            stages.append(self.mcu_params())
        return stages

    def host(self) -> List[Stage]:
        return [self.host_recovery(), self.host_flash()]

    def tf(self, refresh: bool = False) -> List[Stage]:
        return [self.sdcard_content(refresh), self.tf_init()]

    def full(self, with_tf: bool = False, with_storage_init: bool = False) -> List[Stage]:
        """
        The complete bench sequence.

        The TF card goes first when included: robOS reads it during
        parameter initialization.
        """
        stages: List[Stage] = []
        if with_tf:
            stages.extend(self.tf())
        stages.extend(self.mcu(with_params=True))
        stages.extend(self.host())
        flash = self.storage_flash()
        if with_storage_init:
            stages.append(self.storage_init())
            flash.requires.append("storage-init")
        stages.append(flash)
        return stages

    def stages_by_name(self) -> Dict[str, Stage]:
        every = self.firmware() + [
            self.mcu_flash(), self.mcu_params(),
            self.host_recovery(), self.host_flash(),
            self.storage_init(), self.storage_flash(),
        ] + self.tf()
        return {stage.name: stage for stage in every}
