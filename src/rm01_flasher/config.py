"""
Configuration for RM-01 provisioning.

Every device path, directory and settle time lives here and is passed
explicitly into each component's constructor. Nothing reads process-wide
state after the config object is built.

Usage:
    from rm01_flasher.config import FlasherConfig

    config = FlasherConfig.from_env(Path.cwd())
    config.cfe_disk            # "/dev/sdd" unless CFE_DISK is set
    config.timings.usb_poll_attempts
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional


class ResetFailurePolicy(Enum):
    """What parameter initialization does after the reset helper failed."""
    CONTINUE = "continue"  # warn and send parameters anyway
    ABORT = "abort"        # refuse to send parameters


# Parameter set pushed to robOS after a fresh flash.
DEFAULT_PARAMETER_COMMANDS: List[str] = [
    "lpmu config auto-start on",
    "usbmux lpmu",
    "usbmux save",
    "net config set ip 10.10.99.97",
    "net config set gateway 10.10.99.100",
    "net config set dns 8.8.8.8",
    "net config set dhcp_lease_hours 24",
    "net config save",
    "fan gpio 0 41 1",
    "fan enable 0 on",
    "fan set 0 75",
    "fan status",
    "temp auto",
    "fan mode 0 curve",
    "fan config curve 0 40:20 50:40 60:55 70:70 80:100",
    "fan config hysteresis 0 3.0 2000",
    "fan config save",
    "temp status",
    "fan status",
    "led touch set white",
    "led touch config save",
    "led board anim fire 40",
    "led board config save",
    "led matrix mode static",
    "led matrix image import /sdcard/matrix.json",
    "led matrix config save",
    "color enable",
    "color gamma 0.6",
    "color saturation 1.5",
    "color brightness 1.2",
    "color save",
    "reboot",
]

ROBOS_VERSION = "v1.1.0"
ROBOS_URL = (
    "https://github.com/thomas-hiddenpeak/robOS/releases/download/"
    f"{ROBOS_VERSION}/robOS-esp32s3-{ROBOS_VERSION}.zip"
)
ROBOS_REPO_URL = "https://github.com/thomas-hiddenpeak/robOS.git"
DEFAULT_L4T_DIR = (
    "/home/rm01/nvidia/nvidia_sdk/"
    "JetPack_6.2.1_Linux_JETSON_AGX_ORIN_TARGETS/Linux_for_Tegra/"
)


@dataclass
class Timings:
    """
    Bounded waits, in seconds unless noted.

    None of these come from a hardware completion signal; they are settle
    times that may need tuning per bench.

    Attributes:
        capture_lead_in: Delay between starting the serial reader and writing
        command_window: Capture window for an ordinary serial command
        reboot_window: Capture window for ``reboot``
        reboot_settle: Extra wait after ``reboot`` before the next command
        inter_command_delay: Gap between consecutive parameter commands
        command_retry_backoff: Backoff between re-sends of a failed command
        erase_settle: Wait after ``erase_flash`` before writing
        mcu_boot_wait: Wait for robOS to boot after the hardware reset
        param_init_settle: Wait before the first parameter command
        mux_window: Capture window for the ``usbmux`` commands
        mux_settle: Wait after each ``usbmux`` command
        recovery_reboot_wait: Wait for the MCU to reboot before ``agx recovery``
        recovery_window: Capture window for ``agx recovery``
        recovery_retry_delay: Wait before the next recovery attempt
        usb_poll_attempts: Maximum USB enumeration polls (count)
        usb_poll_interval: Sleep between USB enumeration polls
        partition_settle: Wait after writing a partition table
        unmount_settle: Wait after unmounting partitions
        card_insert_settle: Wait after the operator confirms card insertion
        holder_release_wait: Wait after terminating a process holding the port
    """
    capture_lead_in: float = 0.5
    command_window: float = 1.0
    reboot_window: float = 4.0
    reboot_settle: float = 5.0
    inter_command_delay: float = 0.5
    command_retry_backoff: float = 1.0
    erase_settle: float = 3.0
    mcu_boot_wait: float = 4.0
    param_init_settle: float = 5.0
    mux_window: float = 2.0
    mux_settle: float = 1.0
    recovery_reboot_wait: float = 5.0
    recovery_window: float = 5.0
    recovery_retry_delay: float = 2.0
    usb_poll_attempts: int = 10
    usb_poll_interval: float = 1.0
    partition_settle: float = 2.0
    unmount_settle: float = 2.0
    card_insert_settle: float = 3.0
    holder_release_wait: float = 1.0

    @classmethod
    def instant(cls) -> "Timings":
        """All waits zeroed, USB polling kept bounded. Used by tests and dry runs."""
        zeroed = {name: 0.0 for name in cls.__dataclass_fields__}
        zeroed["usb_poll_attempts"] = 3
        return cls(**zeroed)


@dataclass
class FlasherConfig:
    """
    Complete provisioning configuration.

    Attributes:
        base_dir: Directory holding firmware/, sdcard/ and logs/
        mcu_port: Serial port of the companion microcontroller
        cfe_disk: Block device of the CFexpress card
        tf_disk: Block device of the TF card
        l4t_dir: Linux_for_Tegra directory with flash.sh
        reset_helper: Path of the DTR/RTS reset helper binary
        use_sudo: Prefix privileged tool invocations with ``escalation``
    """
    base_dir: Path = field(default_factory=Path.cwd)
    mcu_port: str = "/dev/ttyACM0"
    cfe_disk: str = "/dev/sdd"
    tf_disk: str = "/dev/sda"
    l4t_dir: Path = Path(DEFAULT_L4T_DIR)
    reset_helper: Optional[Path] = None

    # Firmware sources
    firmware_version: str = ROBOS_VERSION
    firmware_url: str = ROBOS_URL
    sdcard_repo_url: str = ROBOS_REPO_URL

    # Microcontroller flashing
    mcu_chip: str = "esp32s3"
    mcu_flash_baud: int = 460800
    mcu_param_baud: int = 115200
    flash_mode: str = "dio"
    flash_freq: str = "80m"
    flash_size: str = "16MB"
    parameter_commands: List[str] = field(
        default_factory=lambda: list(DEFAULT_PARAMETER_COMMANDS)
    )
    command_attempts: int = 2
    reset_failure_policy: ResetFailurePolicy = ResetFailurePolicy.CONTINUE

    # Host SoC
    board_config: str = "rm01-orin"
    root_device: str = "nvme0n1p1"
    usb_vendor_pattern: str = "nvidia"
    usb_match_pattern: str = "apx"
    recovery_attempts: int = 3

    # Storage
    label_prefix: str = "rm01"
    tf_label: str = "rm01tf"

    use_sudo: bool = True
    escalation: List[str] = field(default_factory=lambda: ["sudo"])
    timings: Timings = field(default_factory=Timings)

    def __post_init__(self):
        self.base_dir = Path(self.base_dir)
        self.l4t_dir = Path(self.l4t_dir)
        if self.reset_helper is None:
            self.reset_helper = self.base_dir / "esp32s3_reset"
        self.reset_helper = Path(self.reset_helper)

    @property
    def firmware_dir(self) -> Path:
        return self.base_dir / "firmware"

    @property
    def firmware_archive(self) -> Path:
        return self.firmware_dir / f"robOS-esp32s3-{self.firmware_version}.zip"

    @property
    def firmware_build_dir(self) -> Path:
        return self.firmware_dir / "build"

    @property
    def sdcard_dir(self) -> Path:
        return self.base_dir / "sdcard"

    @property
    def log_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def flash_script(self) -> Path:
        return self.l4t_dir / "flash.sh"

    @property
    def initrd_flash_script(self) -> Path:
        return self.l4t_dir / "tools" / "kernel_flash" / "l4t_initrd_flash.sh"

    @property
    def escalation_prefix(self) -> List[str]:
        return list(self.escalation) if self.use_sudo else []

    def with_overrides(self, **overrides) -> "FlasherConfig":
        """Return a copy with non-None overrides applied."""
        applied = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **applied)

    @classmethod
    def from_env(cls, base_dir: Optional[Path] = None, environ=None) -> "FlasherConfig":
        """
        Build a config from environment variables.

        ``CFE_DISK``, ``TF_DISK`` and ``L4T_DIR`` are honored for
        compatibility with existing bench setups; ``RM01_*`` variables cover
        the rest.
        """
        env = os.environ if environ is None else environ
        base = Path(env.get("RM01_BASE_DIR") or base_dir or Path.cwd())

        config = cls(base_dir=base)
        overrides = {
            "mcu_port": env.get("RM01_MCU_PORT"),
            "cfe_disk": env.get("CFE_DISK") or env.get("RM01_CFE_DISK"),
            "tf_disk": env.get("TF_DISK") or env.get("RM01_TF_DISK"),
            "l4t_dir": env.get("L4T_DIR") or env.get("RM01_L4T_DIR"),
            "reset_helper": env.get("RM01_RESET_HELPER"),
        }
        policy = env.get("RM01_RESET_POLICY")
        if policy:
            try:
                overrides["reset_failure_policy"] = ResetFailurePolicy(policy.strip().lower())
            except ValueError:
                raise ValueError(
                    f"Invalid RM01_RESET_POLICY '{policy}'. Use 'continue' or 'abort'."
                )
        if env.get("RM01_NO_SUDO"):
            overrides["use_sudo"] = False

        return config.with_overrides(**overrides)
