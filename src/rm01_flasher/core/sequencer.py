"""
Stage sequencer.

Drives an ordered list of stages, each with preconditions, an action and a
success check, and turns every outcome into a StageResult. Operator
interaction goes through the ConfirmationGate; nothing here touches
hardware directly.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .results import ProvisionReport, StageResult, StageStatus
from .retry import RetryBudget, run_with_retry
from .safety import ConfirmationGate

logger = logging.getLogger(__name__)

# Action signature: receives the in-progress result to attach warnings,
# diagnostics and metadata. Its return value is passed to ``success``.
StageAction = Callable[[StageResult], Any]


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records: List[str] = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "rm01_flasher") -> Iterator[List[str]]:
    """Capture package logs for one stage into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


@dataclass
class Precondition:
    """
    A condition checked before a stage's action runs.

    Attributes:
        description: What must hold ("CFE card present at /dev/sdd")
        check: Returns True when satisfied
        operator_remedy: Message asking the operator to fix the state; the
            check is re-run once after the operator acknowledges it
        optional_continue: The operator may proceed although it is unmet
    """
    description: str
    check: Callable[[], bool]
    operator_remedy: Optional[str] = None
    optional_continue: bool = False


@dataclass
class Stage:
    """
    One provisioning step.

    Attributes:
        name: Stable identifier, also used by ``requires``
        action: Performs the work; may raise ProvisionError
        preconditions: Checked in order before the action
        success: Judges the action's return value (default: truthy, or None)
        idempotent: Skip when ``completion_marker`` already holds
        completion_marker: Returns True when the stage's effect is present
        requires: Stage names that must have succeeded or been skipped
        max_attempts: Action attempts within the stage
        backoff: Seconds between attempts
        confirm_continue_on_failure: Ask the operator whether to go on after
            this stage fails
        abort_on_failure: End the run when this stage fails
        description: One line for the operator
    """
    name: str
    action: StageAction
    preconditions: List[Precondition] = field(default_factory=list)
    success: Optional[Callable[[Any], bool]] = None
    idempotent: bool = False
    completion_marker: Optional[Callable[[], bool]] = None
    requires: List[str] = field(default_factory=list)
    max_attempts: int = 1
    backoff: float = 0.0
    confirm_continue_on_failure: bool = False
    abort_on_failure: bool = False
    description: str = ""

    def is_satisfied(self, value: Any) -> bool:
        if self.success is not None:
            return bool(self.success(value))
        return value is None or bool(value)


class StageSequencer:
    """
    Runs stages and reports each outcome.

    Example:
        sequencer = StageSequencer(gate)
        report = sequencer.run_all(plan.full())
        print(report.tally())

    Args:
        gate: Operator confirmation capability
        sleep: Used for retry backoff
        on_result: Called with every StageResult as soon as it is recorded
    """

    def __init__(
        self,
        gate: ConfirmationGate,
        sleep: Callable[[float], None] = time.sleep,
        on_result: Optional[Callable[[StageResult], None]] = None,
    ):
        self.gate = gate
        self.sleep = sleep
        self.on_result = on_result
        self.completed: Dict[str, StageResult] = {}

    def run(self, stage: Stage) -> StageResult:
        """Run a single stage and record its result."""
        started = time.monotonic()
        with _capture_logs() as logs:
            result = self._run_stage(stage)
        result.duration = time.monotonic() - started
        result.logs = list(logs)
        self.completed[stage.name] = result

        if result.ok:
            logger.info(f"{stage.name}: {result.reason}")
        else:
            logger.error(f"{stage.name} failed: {result.reason}")
        if self.on_result:
            self.on_result(result)
        return result

    def _run_stage(self, stage: Stage) -> StageResult:
        # Marker first: a satisfied stage neither prompts nor probes
        if stage.idempotent and stage.completion_marker is not None:
            if stage.completion_marker():
                return StageResult.skipped(stage.name, "already present")

        for name in stage.requires:
            dependency = self.completed.get(name)
            if dependency is None or not dependency.ok:
                return StageResult.failure(stage.name, f"requires {name}",
                                            metadata={"blocked_by": name})

        for precondition in stage.preconditions:
            unmet = self._check_precondition(stage, precondition)
            if unmet is not None:
                return unmet

        result = StageResult.success(stage.name)
        budget = RetryBudget(max_attempts=stage.max_attempts, backoff=stage.backoff)

        def attempt(number: int) -> bool:
            if number > 1:
                logger.info(f"{stage.name}: attempt {number}/{budget.max_attempts}")
            return stage.is_satisfied(stage.action(result))

        satisfied, error = run_with_retry(
            attempt,
            budget,
            succeeded=bool,
            sleep=self.sleep,
            label=stage.name,
        )
        result.attempts = budget.attempts

        if satisfied:
            return result

        result.status = StageStatus.FAILED
        if error is not None:
            error.stage = stage.name
            result.reason = error.reason
            result.metadata["error_kind"] = error.kind.value
            for key, value in error.details.items():
                if key == "output_tail":
                    result.diagnostics.extend(str(value).splitlines()[-20:])
                else:
                    result.metadata[key] = value
            mismatches = getattr(error, "mismatches", None)
            if mismatches:
                result.diagnostics.extend(mismatches)
            if error.remediation:
                result.metadata["remediation"] = error.remediation
        elif result.reason == "completed":
            result.reason = "success check failed"
        return result

    def _check_precondition(self, stage: Stage, precondition: Precondition) -> Optional[StageResult]:
        if precondition.check():
            return None

        logger.warning(f"{stage.name}: precondition not met: {precondition.description}")
        if precondition.operator_remedy:
            self.gate.acknowledge(precondition.operator_remedy)
            if precondition.check():
                logger.info(f"{stage.name}: precondition now met: {precondition.description}")
                return None

        if precondition.optional_continue and self.gate.confirm(
            f"{precondition.description} is not satisfied. Continue anyway?", False
        ):
            logger.warning(f"{stage.name}: continuing without: {precondition.description}")
            return None

        return StageResult.failure(
            stage.name,
            f"precondition not met: {precondition.description}",
            metadata={"error_kind": "E_PRECONDITION_UNMET"},
        )

    def run_all(self, stages: Sequence[Stage]) -> ProvisionReport:
        """
        Run ``stages`` in order.

        A failed stage does not stop the run by itself; later stages that
        ``require`` it fail fast. After a failure on a stage marked
        ``confirm_continue_on_failure`` the operator may abort; a stage that
        failed only because a dependency failed is not asked about again.
        ``KeyboardInterrupt`` propagates to the caller.
        """
        report = ProvisionReport(planned=len(stages))
        for stage in stages:
            logger.info(f"=== {stage.name}" + (f": {stage.description}" if stage.description else ""))
            result = self.run(stage)
            report.add(result)

            if not result.ok and stage.abort_on_failure:
                report.aborted_after = stage.name
                logger.error(f"Run aborted: {stage.name} is required for the remaining steps")
                break

            # The operator already answered for the dependency
            blocked = "blocked_by" in result.metadata
            if not result.ok and stage.confirm_continue_on_failure and not blocked:
                if not self.gate.confirm(f"{stage.name} failed. Continue with the remaining steps?", False):
                    report.aborted_after = stage.name
                    logger.warning(f"Run aborted after {stage.name}")
                    break

        logger.info(f"Completed {report.tally()} steps")
        return report
