"""Hardware layer - external tools, device probing and the MCU serial channel."""

from .runner import ExternalToolRunner, ToolResult, EXIT_NOT_FOUND, EXIT_TIMEOUT
from .probe import (
    DeviceProbe,
    PortState,
    SerialPortStatus,
    UsbDevice,
    UsbProbeResult,
    parse_lsusb,
)
from .serial_channel import (
    SerialChannel,
    DeviceHandle,
    SerialTranscript,
    CommandKind,
    ResponseStatus,
    ResponseClassification,
    BatchResult,
    classify,
    classify_command,
)

__all__ = [
    # Runner
    "ExternalToolRunner",
    "ToolResult",
    "EXIT_NOT_FOUND",
    "EXIT_TIMEOUT",
    # Probe
    "DeviceProbe",
    "PortState",
    "SerialPortStatus",
    "UsbDevice",
    "UsbProbeResult",
    "parse_lsusb",
    # Serial channel
    "SerialChannel",
    "DeviceHandle",
    "SerialTranscript",
    "CommandKind",
    "ResponseStatus",
    "ResponseClassification",
    "BatchResult",
    "classify",
    "classify_command",
]
