"""
Executor - applies a validated Plan to a live enclave.

The Executor implements:
- Strictly sequential execution, in plan order
- Handler dispatch by instruction kind via HandlerRegistry
- Dry runs: every model mutation, no backend call
- Fail fast: the first failing instruction aborts the run
- Cancellation between instructions (never mid-instruction)

Execution flow:
1. Run status goes NOT_STARTED -> RUNNING
2. For each instruction:
   a. Check the cancellation signal
   b. Dispatch to the instruction kind's handler
   c. Record an InstructionOutcome; append the output line on success
   d. On failure wrap the cause into an ExecutionError and stop
3. Run status ends COMPLETED, or ABORTED on failure or cancellation

Instructions completed before a failure are not rolled back; each
handler reverts only its own partial mutation.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from enclaveplan.backend import ContainerBackend, NoOpBackend
from enclaveplan.errors import ExecutionError
from enclaveplan.handlers import ExecutionContext, HandlerRegistry
from enclaveplan.network import ServiceNetwork
from enclaveplan.schemas import (
    InstructionOutcome,
    InstructionStatus,
    Plan,
    RunStatus,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ExecutionReport:
    """Result of executing a plan."""

    def __init__(
        self,
        outcomes: list[InstructionOutcome],
        output: list[str],
        run_status: RunStatus,
        error: Optional[ExecutionError] = None,
    ):
        self.outcomes = outcomes
        self.output = output
        self.run_status = run_status
        self.error = error

    @property
    def success(self) -> bool:
        return self.run_status == RunStatus.COMPLETED

    @property
    def completed_count(self) -> int:
        return len(self.output)

    @property
    def failed_outcomes(self) -> list[InstructionOutcome]:
        return [o for o in self.outcomes if o.status == InstructionStatus.FAILED]


class Executor:
    """
    Execution engine for Plans.

    Usage:
        executor = Executor(network, backend)
        report = executor.execute(plan)
        report = executor.execute(plan, dry_run=True)   # no backend calls

    At most one plan may execute against a network at a time.
    """

    def __init__(
        self,
        network: ServiceNetwork,
        backend: Optional[ContainerBackend] = None,
        handlers: Optional[HandlerRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the executor.

        Args:
            network: The enclave's service network (mutated by execution)
            backend: Container backend (NoOpBackend if None)
            handlers: HandlerRegistry for dispatch (default handlers if None)
            sleep: Sleep function used by wait instructions
        """
        self._network = network
        self._backend = backend or NoOpBackend()
        self._handlers = handlers or HandlerRegistry.create_default()
        self._sleep = sleep
        self._run_lock = threading.Lock()

    def execute(
        self,
        plan: Plan,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionReport:
        """
        Execute a Plan.

        Args:
            plan: The validated plan to execute
            dry_run: Apply model mutations only, skipping all backend calls
            cancel_event: Checked before each instruction

        Returns:
            ExecutionReport with outcomes, output log, run status and error
        """
        with self._run_lock:
            return self._execute(plan, dry_run, cancel_event)

    def _execute(
        self,
        plan: Plan,
        dry_run: bool,
        cancel_event: Optional[threading.Event],
    ) -> ExecutionReport:
        context = ExecutionContext(self._network, self._backend, dry_run=dry_run, sleep=self._sleep)
        outcomes: list[InstructionOutcome] = []
        output: list[str] = []
        total = plan.size()
        mode = "dry run" if dry_run else "run"
        logger.info(
            f"Executing {total} instruction(s) of '{plan.package_id}' ({mode})",
            extra={"package_id": plan.package_id, "event": "execution_started"},
        )

        for index, instruction in plan.indexed():
            if cancel_event is not None and cancel_event.is_set():
                error = ExecutionError(
                    f"Execution cancelled after {len(output)} of {total} instruction(s)",
                    instruction_index=index,
                    position=instruction.position,
                    cancelled=True,
                    completed_count=len(output),
                )
                logger.warning(str(error))
                return ExecutionReport(outcomes, output, RunStatus.ABORTED, error)

            logger.debug(f"Executing instruction {index}/{total}: {instruction.canonical()}")
            started_at = _utcnow()
            try:
                handler = self._handlers.handler_for(instruction)
                line = handler.execute(instruction, context)
            except Exception as e:
                error = ExecutionError(
                    f"Failed to execute {instruction.kind.builtin_name} instruction",
                    instruction_index=index,
                    position=instruction.position,
                    cause=e,
                    completed_count=len(output),
                )
                outcomes.append(InstructionOutcome(
                    index=index,
                    kind=instruction.kind.value,
                    status=InstructionStatus.FAILED,
                    started_at=started_at,
                    completed_at=_utcnow(),
                    error=error.to_dict(),
                ))
                logger.error(
                    str(error),
                    exc_info=True,
                    extra={"package_id": plan.package_id, "instruction_index": index, "event": "instruction_failed"},
                )
                return ExecutionReport(outcomes, output, RunStatus.ABORTED, error)

            outcomes.append(InstructionOutcome(
                index=index,
                kind=instruction.kind.value,
                status=InstructionStatus.SUCCEEDED,
                output=line,
                started_at=started_at,
                completed_at=_utcnow(),
            ))
            output.append(line)

        logger.info(
            f"Executed {total} instruction(s) of '{plan.package_id}'",
            extra={"package_id": plan.package_id, "event": "execution_completed"},
        )
        return ExecutionReport(outcomes, output, RunStatus.COMPLETED)
