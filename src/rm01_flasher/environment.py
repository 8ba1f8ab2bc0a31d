"""
Host environment checks: required tools and device/artifact status.
"""

import logging
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from rm01_flasher.config import FlasherConfig
from rm01_flasher.firmware import FirmwareStore
from rm01_flasher.hardware.probe import DeviceProbe, SerialPortStatus, UsbDevice, matches_signature
from rm01_flasher.storage.block_device import BlockDevice

logger = logging.getLogger(__name__)

# tool -> Debian/Ubuntu package providing it
REQUIRED_TOOLS: Dict[str, str] = {
    "wget": "wget",
    "git": "git",
    "esptool.py": "python3-esptool",
    "lsusb": "usbutils",
    "lsof": "lsof",
    "lsblk": "util-linux",
    "sfdisk": "util-linux",
    "blkid": "util-linux",
    "partprobe": "parted",
    "mkfs.ext4": "e2fsprogs",
    "e2label": "e2fsprogs",
    "mkfs.fat": "dosfstools",
    "stty": "coreutils",
}


def check_dependencies(which: Callable[[str], Optional[str]]) -> Dict[str, Optional[str]]:
    """Resolve each required tool; None for missing ones."""
    return {tool: which(tool) for tool in REQUIRED_TOOLS}


def missing_tools(which: Callable[[str], Optional[str]]) -> List[str]:
    return [tool for tool, path in check_dependencies(which).items() if path is None]


def install_hint(tools: List[str]) -> str:
    packages = sorted({REQUIRED_TOOLS[t] for t in tools if t in REQUIRED_TOOLS})
    return f"sudo apt install -y {' '.join(packages)}" if packages else ""


def running_as_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


@dataclass
class EnvironmentStatus:
    """Snapshot of everything the stages depend on."""
    system: str
    tools: Dict[str, Optional[str]] = field(default_factory=dict)
    serial: Optional[SerialPortStatus] = None
    usb_devices: List[UsbDevice] = field(default_factory=list)
    recovery_device: Optional[UsbDevice] = None
    disks: Dict[str, bool] = field(default_factory=dict)
    l4t_dir: bool = False
    flash_script: bool = False
    reset_helper: bool = False
    firmware_downloaded: bool = False
    firmware_extracted: bool = False
    sdcard_content: bool = False

    @property
    def missing_tools(self) -> List[str]:
        return [tool for tool, path in self.tools.items() if path is None]

    def checks(self) -> List[tuple]:
        """(label, ok, detail) rows for display."""
        rows = [
            ("Serial port", bool(self.serial and self.serial.ready),
             self.serial.describe() if self.serial else "not probed"),
        ]
        for disk, present in self.disks.items():
            rows.append((f"Disk {disk}", present, "present" if present else "not found"))
        rows.extend([
            ("Recovery-mode host", self.recovery_device is not None,
             self.recovery_device.line if self.recovery_device else "not enumerated"),
            ("L4T directory", self.l4t_dir, ""),
            ("flash.sh", self.flash_script, ""),
            ("Reset helper", self.reset_helper, ""),
            ("robOS downloaded", self.firmware_downloaded, ""),
            ("robOS extracted", self.firmware_extracted, ""),
            ("TF card content", self.sdcard_content, ""),
            ("Tools", not self.missing_tools,
             ", ".join(self.missing_tools) if self.missing_tools else "all present"),
        ])
        return rows


def collect_status(
    config: FlasherConfig,
    probe: DeviceProbe,
    which: Callable[[str], Optional[str]],
    disk_exists: Optional[Callable[[str], bool]] = None,
) -> EnvironmentStatus:
    """Gather the environment status without changing anything."""
    store = FirmwareStore(config, probe.runner)
    usb = probe.list_usb_devices()
    recovery = next(
        (d for d in usb if matches_signature(d, config.usb_vendor_pattern, config.usb_match_pattern)),
        None,
    )
    disks = {}
    for disk in (config.cfe_disk, config.tf_disk):
        disks[disk] = BlockDevice(disk, probe.runner, exists=disk_exists).present()

    status = EnvironmentStatus(
        system=f"{platform.system()} {platform.release()} / Python {platform.python_version()}",
        tools=check_dependencies(which),
        serial=probe.probe_serial_port(config.mcu_port, config.escalation_prefix),
        usb_devices=usb,
        recovery_device=recovery,
        disks=disks,
        l4t_dir=Path(config.l4t_dir).is_dir(),
        flash_script=config.flash_script.is_file(),
        reset_helper=config.reset_helper.is_file(),
        firmware_downloaded=store.archive_present(),
        firmware_extracted=store.extracted(),
        sdcard_content=store.sdcard_present(),
    )
    logger.debug(f"Environment status: {status}")
    return status
