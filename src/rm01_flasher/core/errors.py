"""
Error taxonomy for provisioning.

Every error carries enough context (stage, device, command, captured
output) to diagnose a failed run from the log alone. Remediation hints are
keyed by error kind so the CLI can print a consistent next step.
"""

from enum import Enum
from typing import Dict, List, Optional


class ErrorKind(Enum):
    """Stable error kinds for known failure classes."""
    PRECONDITION_UNMET = "E_PRECONDITION_UNMET"
    EXTERNAL_TOOL_FAILURE = "E_EXTERNAL_TOOL_FAILURE"
    PROTOCOL_AMBIGUOUS = "E_PROTOCOL_AMBIGUOUS"
    VERIFICATION_MISMATCH = "E_VERIFICATION_MISMATCH"
    INSUFFICIENT_CAPACITY = "E_INSUFFICIENT_CAPACITY"
    CONFIRMATION_DECLINED = "E_CONFIRMATION_DECLINED"
    SERIAL_CHANNEL = "E_SERIAL_CHANNEL"


REMEDIATIONS: Dict[ErrorKind, str] = {
    ErrorKind.PRECONDITION_UNMET:
        "Check cables, card insertion and device power, then re-run the stage.",
    ErrorKind.EXTERNAL_TOOL_FAILURE:
        "Inspect the captured tool output above; re-run once the cause is fixed.",
    ErrorKind.PROTOCOL_AMBIGUOUS:
        "Watch the serial output manually (minicom) and confirm the device state.",
    ErrorKind.VERIFICATION_MISMATCH:
        "Re-run storage initialization; replace the card if labels keep failing.",
    ErrorKind.INSUFFICIENT_CAPACITY:
        "Use a card of at least 100 GiB.",
    ErrorKind.CONFIRMATION_DECLINED:
        "Re-run and confirm when ready, or pass --yes for unattended runs.",
    ErrorKind.SERIAL_CHANNEL:
        "Close other serial programs and check the USB cable, then re-run.",
}


class ProvisionError(Exception):
    """
    Base class for provisioning failures.

    Attributes:
        reason: Human-readable explanation
        stage: Stage name the error surfaced in (filled in by the sequencer)
        details: Additional context (device, command, output tail)
        retryable: Whether a RetryBudget may re-attempt the operation
    """
    kind = ErrorKind.PRECONDITION_UNMET
    retryable = True

    def __init__(self, reason: str, details: Optional[dict] = None, stage: str = ""):
        self.reason = reason
        self.details = details or {}
        self.stage = stage
        super().__init__(reason)

    @property
    def remediation(self) -> str:
        return REMEDIATIONS.get(self.kind, "")


class PreconditionUnmet(ProvisionError):
    """A required device, file or directory is missing."""
    kind = ErrorKind.PRECONDITION_UNMET


class ExternalToolFailure(ProvisionError):
    """A vendor or system tool exited non-zero."""
    kind = ErrorKind.EXTERNAL_TOOL_FAILURE

    def __init__(
        self,
        reason: str,
        exit_code: int = -1,
        output: str = "",
        details: Optional[dict] = None,
        stage: str = "",
    ):
        details = dict(details or {})
        details["exit_code"] = exit_code
        if output:
            details["output_tail"] = output[-2000:]
        super().__init__(reason, details=details, stage=stage)
        self.exit_code = exit_code
        self.output = output


class ProtocolAmbiguous(ProvisionError):
    """The serial transcript cannot be classified; needs operator judgment."""
    kind = ErrorKind.PROTOCOL_AMBIGUOUS


class VerificationMismatch(ProvisionError):
    """Post-format checks failed for one or more partitions."""
    kind = ErrorKind.VERIFICATION_MISMATCH

    def __init__(self, reason: str, mismatches: Optional[List[str]] = None, **kwargs):
        super().__init__(reason, **kwargs)
        self.mismatches = list(mismatches or [])


class InsufficientCapacity(ProvisionError):
    """Storage medium below the minimum supported size."""
    kind = ErrorKind.INSUFFICIENT_CAPACITY
    retryable = False

    def __init__(self, capacity_bytes: int, minimum_gib: int):
        self.capacity_bytes = capacity_bytes
        self.minimum_gib = minimum_gib
        size_gib = capacity_bytes // (1024 ** 3)
        super().__init__(
            f"Disk capacity too small ({size_gib} GiB), at least {minimum_gib} GiB required",
            details={"capacity_bytes": capacity_bytes},
        )


class ConfirmationDeclined(ProvisionError):
    """The operator declined (or could not be asked for) a confirmation."""
    kind = ErrorKind.CONFIRMATION_DECLINED
    retryable = False


class SerialChannelError(ProvisionError):
    """The serial endpoint could not be opened, written or read."""
    kind = ErrorKind.SERIAL_CHANNEL
