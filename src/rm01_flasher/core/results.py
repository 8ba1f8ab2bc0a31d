"""
Result objects for provisioning stages.

Provides a unified result structure that the sequencer returns and the CLI
renders. Every stage outcome, including skips, carries a reason.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional


class StageStatus(Enum):
    """Tri-state stage outcome."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StageResult:
    """
    Outcome of one stage.

    Attributes:
        stage: Stage name (e.g., "mcu-flash")
        status: SUCCESS, FAILED or SKIPPED
        reason: Why the stage ended this way; never empty
        diagnostics: Free-form lines (tool output tails, per-partition checks)
        warnings: Non-blocking issues encountered
        attempts: How many times the action ran (0 when skipped)
        duration: Wall-clock seconds spent in the stage
        metadata: Stage-specific data (scheme tag, failed commands, ...)
        logs: Captured log lines from the stage
    """
    stage: str
    status: StageStatus
    reason: str
    diagnostics: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    attempts: int = 0
    duration: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Whether later stages may depend on this one."""
        return self.status in (StageStatus.SUCCESS, StageStatus.SKIPPED)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_diagnostic(self, message: str) -> None:
        self.diagnostics.append(message)

    def to_summary(self) -> str:
        """
        Generate a human-readable summary string.

        Suitable for CLI output or simple logging.
        """
        lines = [f"[{self.status.value.upper()}] {self.stage}: {self.reason}"]
        if self.attempts > 1:
            lines.append(f"  Attempts: {self.attempts}")
        if self.warnings:
            lines.append("  Warnings:")
            for warn in self.warnings:
                lines.append(f"    - {warn}")
        if self.diagnostics:
            lines.append("  Diagnostics:")
            for line in self.diagnostics:
                lines.append(f"    {line}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "stage": self.stage,
            "status": self.status.value,
            "reason": self.reason,
            "diagnostics": self.diagnostics,
            "warnings": self.warnings,
            "attempts": self.attempts,
            "duration": round(self.duration, 3),
            "metadata": {k: v for k, v in self.metadata.items() if _jsonable(v)},
        }

    @classmethod
    def success(cls, stage: str, reason: str = "completed", **kwargs) -> "StageResult":
        return cls(stage=stage, status=StageStatus.SUCCESS, reason=reason, **kwargs)

    @classmethod
    def failure(cls, stage: str, reason: str, **kwargs) -> "StageResult":
        return cls(stage=stage, status=StageStatus.FAILED, reason=reason, **kwargs)

    @classmethod
    def skipped(cls, stage: str, reason: str = "already present", **kwargs) -> "StageResult":
        if not reason.startswith("skipped"):
            reason = f"skipped: {reason}"
        return cls(stage=stage, status=StageStatus.SKIPPED, reason=reason, **kwargs)


def _jsonable(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool, list, dict, type(None)))


@dataclass
class ProvisionReport:
    """Aggregate of a multi-stage run."""
    results: List[StageResult] = field(default_factory=list)
    planned: int = 0
    aborted_after: Optional[str] = None

    def add(self, result: StageResult) -> None:
        self.results.append(result)

    @property
    def completed(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def total(self) -> int:
        return max(self.planned, len(self.results))

    @property
    def ok(self) -> bool:
        return self.completed == self.total and self.aborted_after is None

    @property
    def failed(self) -> List[StageResult]:
        return [r for r in self.results if r.status == StageStatus.FAILED]

    def get(self, stage: str) -> Optional[StageResult]:
        for result in self.results:
            if result.stage == stage:
                return result
        return None

    def tally(self) -> str:
        return f"{self.completed}/{self.total}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "total": self.total,
            "aborted_after": self.aborted_after,
            "results": [r.to_dict() for r in self.results],
        }
