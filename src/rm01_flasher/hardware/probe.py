"""
Device readiness detection.

Pure detection, no mutation:
- Serial port existence, permission bits and exclusive holders
- USB device enumeration with bounded polling

USB re-enumeration after a mode switch has no completion event, so the
only available strategy is to poll a bounded number of times.
"""

import logging
import os
import re
import stat
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .runner import ExternalToolRunner

logger = logging.getLogger(__name__)

# Bus 001 Device 005: ID 0955:7023 NVIDIA Corp. APX
LSUSB_LINE = re.compile(
    r"^Bus\s+(?P<bus>\d+)\s+Device\s+(?P<device>\d+):\s+ID\s+"
    r"(?P<vid>[0-9a-fA-F]{4}):(?P<pid>[0-9a-fA-F]{4})\s*(?P<description>.*)$"
)


class PortState(Enum):
    """Readiness of a serial port."""
    ABSENT = "absent"
    NEEDS_PERMISSION = "needs_permission"
    HELD = "held"
    READY = "ready"


@dataclass
class SerialPortStatus:
    """
    Result of probing a serial port.

    Attributes:
        path: Device path that was probed
        state: Overall readiness
        present: Path exists
        readable: Current user may read
        writable: Current user may write
        is_char_device: Path is a character special file
        holder_pids: Processes holding the port open
        remediation: Suggested command to fix permissions, if any
    """
    path: str
    state: PortState
    present: bool = False
    readable: bool = False
    writable: bool = False
    is_char_device: bool = False
    holder_pids: List[int] = field(default_factory=list)
    remediation: Optional[List[str]] = None

    @property
    def ready(self) -> bool:
        return self.state == PortState.READY

    def describe(self) -> str:
        if self.state == PortState.ABSENT:
            return f"{self.path} does not exist"
        if self.state == PortState.NEEDS_PERMISSION:
            mode = "".join(
                flag for flag, ok in (("r", self.readable), ("w", self.writable)) if ok
            ) or "none"
            return f"{self.path} lacks read/write permission (have: {mode})"
        if self.state == PortState.HELD:
            pids = ", ".join(str(p) for p in self.holder_pids)
            return f"{self.path} is held by process(es) {pids}"
        return f"{self.path} is ready"


@dataclass
class UsbDevice:
    """One line of USB enumeration."""
    bus: str
    device: str
    vendor_id: str
    product_id: str
    description: str

    @property
    def line(self) -> str:
        return (
            f"Bus {self.bus} Device {self.device}: "
            f"ID {self.vendor_id}:{self.product_id} {self.description}"
        )


@dataclass
class UsbProbeResult:
    """Outcome of polling for a USB signature."""
    found: bool
    attempts: int
    device: Optional[UsbDevice] = None
    last_listing: List[UsbDevice] = field(default_factory=list)


def parse_lsusb(output: str) -> List[UsbDevice]:
    """Parse plain ``lsusb`` output into UsbDevice entries."""
    devices = []
    for line in output.splitlines():
        match = LSUSB_LINE.match(line.strip())
        if not match:
            continue
        devices.append(UsbDevice(
            bus=match.group("bus"),
            device=match.group("device"),
            vendor_id=match.group("vid").lower(),
            product_id=match.group("pid").lower(),
            description=match.group("description").strip(),
        ))
    return devices


def matches_signature(device: UsbDevice, vendor_pattern: str, match_pattern: str) -> bool:
    """Case-insensitive substring match on vendor and device-name fields."""
    haystack = f"{device.vendor_id}:{device.product_id} {device.description}".lower()
    return vendor_pattern.lower() in haystack and match_pattern.lower() in haystack


class DeviceProbe:
    """
    Detects serial and USB device state.

    Args:
        runner: Used for ``lsusb`` and ``lsof``
        usb_enumerator: Replaces ``lsusb`` (returns the current device list)
        holder_lookup: Replaces ``lsof -t`` (path -> pids)
        sleep: Replaces ``time.sleep`` between polls
    """

    def __init__(
        self,
        runner: Optional[ExternalToolRunner] = None,
        usb_enumerator: Optional[Callable[[], List[UsbDevice]]] = None,
        holder_lookup: Optional[Callable[[str], List[int]]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner or ExternalToolRunner()
        self.usb_enumerator = usb_enumerator or self._lsusb
        self.holder_lookup = holder_lookup or self._lsof_holders
        self.sleep = sleep

    def _lsusb(self) -> List[UsbDevice]:
        result = self.runner.run("lsusb")
        if not result.ok:
            logger.warning(f"lsusb failed: {result.tail(3)}")
            return []
        return parse_lsusb(result.stdout)

    def _lsof_holders(self, path: str) -> List[int]:
        result = self.runner.run("lsof", ["-t", path])
        # lsof exits 1 when nothing holds the file
        pids = []
        for token in result.stdout.split():
            if token.isdigit() and int(token) != os.getpid():
                pids.append(int(token))
        return pids

    def probe_serial_port(self, path: str, escalation: Optional[List[str]] = None) -> SerialPortStatus:
        """
        Probe a serial port.

        Args:
            path: Device path (e.g., "/dev/ttyACM0")
            escalation: Prefix for the remediation command (e.g. ["sudo"])

        Returns:
            SerialPortStatus; ABSENT, NEEDS_PERMISSION, HELD or READY
        """
        try:
            st = os.stat(path)
        except FileNotFoundError:
            logger.debug(f"Serial port {path} not present")
            return SerialPortStatus(path=path, state=PortState.ABSENT)

        status = SerialPortStatus(
            path=path,
            state=PortState.READY,
            present=True,
            readable=os.access(path, os.R_OK),
            writable=os.access(path, os.W_OK),
            is_char_device=stat.S_ISCHR(st.st_mode),
        )
        if not status.is_char_device:
            logger.warning(f"{path} is not a character device")

        if not (status.readable and status.writable):
            status.state = PortState.NEEDS_PERMISSION
            status.remediation = list(escalation or []) + ["chmod", "666", path]
            return status

        holders = self.holder_lookup(path)
        if holders:
            status.state = PortState.HELD
            status.holder_pids = holders
        return status

    def probe_usb_signature(
        self,
        vendor_pattern: str,
        match_pattern: str,
        max_attempts: int,
        poll_interval: float,
    ) -> UsbProbeResult:
        """
        Poll USB enumeration until a device matches both patterns.

        Sleeps ``poll_interval`` between attempts, never after the last one.
        Not finding the device after ``max_attempts`` is final for this call.
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        listing: List[UsbDevice] = []
        for attempt in range(1, max_attempts + 1):
            logger.info(
                f"Looking for USB device '{vendor_pattern}'/'{match_pattern}' "
                f"(attempt {attempt}/{max_attempts})"
            )
            listing = self.usb_enumerator()
            for device in listing:
                if matches_signature(device, vendor_pattern, match_pattern):
                    logger.info(f"Found USB device: {device.line}")
                    return UsbProbeResult(
                        found=True, attempts=attempt, device=device, last_listing=listing
                    )

            vendor_hits = [d for d in listing if vendor_pattern.lower() in d.description.lower()]
            if vendor_hits:
                for device in vendor_hits:
                    logger.info(f"  {vendor_pattern} device present: {device.line}")
            else:
                logger.info(f"  (no {vendor_pattern} devices)")

            if attempt < max_attempts:
                self.sleep(poll_interval)

        logger.warning(
            f"USB device '{vendor_pattern}'/'{match_pattern}' not found "
            f"after {max_attempts} attempts"
        )
        return UsbProbeResult(found=False, attempts=max_attempts, last_listing=listing)

    def list_usb_devices(self) -> List[UsbDevice]:
        return self.usb_enumerator()

    @staticmethod
    def list_serial_ports() -> list:
        """List serial ports known to pyserial."""
        import serial.tools.list_ports

        return list(serial.tools.list_ports.comports())
