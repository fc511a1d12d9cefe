"""
Result schemas - what a run reports back to its caller.

InstructionOutcome tracks the result of executing one instruction.
PlanExecutionResult bundles the outcome of a whole run: at most one
interpretation error, zero or more validation errors, at most one
execution error, and the ordered output log.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from enclaveplan.errors import ExecutionError, InterpretationError, ValidationError


class InstructionStatus(str, Enum):
    """Status of a single instruction's execution."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a plan-level run."""
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class InstructionOutcome:
    """
    The outcome of executing one instruction.

    Attributes:
        index: 1-based plan index
        kind: Instruction kind name
        status: SUCCEEDED or FAILED once execution finished
        output: Human-readable result line (empty if failed)
        started_at: When execution of the instruction started
        completed_at: When execution of the instruction finished
        error: Error details if status is failed
    """
    index: int
    kind: str
    status: InstructionStatus
    output: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "index": self.index,
            "kind": self.kind,
            "status": self.status.value,
            "output": self.output,
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class PlanExecutionResult:
    """
    Everything a run produced.

    Exactly one of these holds:
    - interpretation_error is set (no plan, nothing validated or executed)
    - validation_errors is non-empty (plan not executed)
    - execution ran; execution_error is set if it aborted

    Attributes:
        package_id: Package or script identifier
        interpretation_error: The single interpretation failure, if any
        validation_errors: All validation failures, in plan order
        execution_error: The single execution failure, if any
        output: One entry per successfully completed instruction, in order
        outcomes: Per-instruction outcomes, including the failed one
        run_status: Plan-level run status
        dry_run: Whether backend side effects were skipped
        instruction_count: Number of instructions in the plan (0 if none)
    """
    package_id: str = ""
    interpretation_error: Optional[InterpretationError] = None
    validation_errors: tuple[ValidationError, ...] = field(default_factory=tuple)
    execution_error: Optional[ExecutionError] = None
    output: tuple[str, ...] = field(default_factory=tuple)
    outcomes: tuple[InstructionOutcome, ...] = field(default_factory=tuple)
    run_status: RunStatus = RunStatus.NOT_STARTED
    dry_run: bool = False
    instruction_count: int = 0

    @property
    def success(self) -> bool:
        return (
            self.interpretation_error is None
            and not self.validation_errors
            and self.execution_error is None
            and self.run_status == RunStatus.COMPLETED
        )

    @property
    def completed_count(self) -> int:
        return len(self.output)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "package_id": self.package_id,
            "success": self.success,
            "run_status": self.run_status.value,
            "dry_run": self.dry_run,
            "instruction_count": self.instruction_count,
            "output": list(self.output),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
        if self.interpretation_error is not None:
            result["interpretation_error"] = self.interpretation_error.to_dict()
        if self.validation_errors:
            result["validation_errors"] = [e.to_dict() for e in self.validation_errors]
        if self.execution_error is not None:
            result["execution_error"] = self.execution_error.to_dict()
        return result
