"""
Core module for RM-01 Flasher.

This module provides the single source of truth for:
- Confirmation gating for destructive steps (safety.py)
- Error taxonomy with remediation hints (errors.py)
- Command-line value parsing (parsing.py)
- Result objects (results.py)
- Bounded retry (retry.py)
- The stage state machine (sequencer.py)

The CLI builds stages and hands them to the sequencer rather than
implementing its own control flow.
"""

from .safety import ConfirmationGate, require_destructive_confirmation, CONFIRMATION_TOKEN
from .errors import (
    ErrorKind,
    ProvisionError,
    PreconditionUnmet,
    ExternalToolFailure,
    ProtocolAmbiguous,
    VerificationMismatch,
    InsufficientCapacity,
    ConfirmationDeclined,
    SerialChannelError,
)
from .parsing import parse_capacity, parse_port
from .results import StageStatus, StageResult, ProvisionReport
from .retry import RetryBudget, run_with_retry
from .sequencer import Stage, Precondition, StageSequencer

__all__ = [
    # Safety
    "ConfirmationGate",
    "require_destructive_confirmation",
    "CONFIRMATION_TOKEN",
    # Errors
    "ErrorKind",
    "ProvisionError",
    "PreconditionUnmet",
    "ExternalToolFailure",
    "ProtocolAmbiguous",
    "VerificationMismatch",
    "InsufficientCapacity",
    "ConfirmationDeclined",
    "SerialChannelError",
    # Parsing
    "parse_capacity",
    "parse_port",
    # Results
    "StageStatus",
    "StageResult",
    "ProvisionReport",
    # Retry
    "RetryBudget",
    "run_with_retry",
    # Sequencing
    "Stage",
    "Precondition",
    "StageSequencer",
]
