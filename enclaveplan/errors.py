"""
Error classes for enclaveplan.

Three disjoint run-level error kinds are surfaced to callers:
- InterpretationError: the script, its run arguments, or an import is invalid.
  At most one per run; no plan is produced.
- ValidationError: a defect visible only across the whole plan or through a
  non-mutating backend query. Zero or more per run; all are collected.
- ExecutionError: an instruction failed while being applied. At most one per
  run; earlier instructions stay applied.

Service-network model errors (ServiceNetworkError and subclasses) are raised
by the in-memory enclave model and wrapped by the executor or validator.

Error handling contract:
- Lower layers raise, they never swallow
- Every run-level error carries the originating instruction index when known
- Callers inspect errors structurally (kind, index, cause), not by message
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """The three run-level error kinds."""
    INTERPRETATION = "interpretation"
    VALIDATION = "validation"
    EXECUTION = "execution"


@dataclass(frozen=True)
class ScriptPosition:
    """Location of a construct in a script or module."""
    locator: str
    line: int

    def __str__(self) -> str:
        return f"{self.locator}[{self.line}]"


class EnclavePlanError(Exception):
    """Base exception for enclaveplan."""
    pass


class ConfigError(EnclavePlanError):
    """Configuration validation error."""
    pass


class ModuleNotFoundInProviderError(EnclavePlanError):
    """Raised by a module content provider when a locator cannot be resolved."""
    pass


# =============================================================================
# SERVICE NETWORK MODEL ERRORS
# =============================================================================


class ServiceNetworkError(EnclavePlanError):
    """Base class for errors raised by the service-network model."""
    pass


class DuplicateServiceIDError(ServiceNetworkError):
    """A service with the given ID is already registered."""

    def __init__(self, service_id: str):
        self.service_id = service_id
        super().__init__(f"A service with ID '{service_id}' already exists")


class UnknownServiceError(ServiceNetworkError):
    """No service with the given ID is registered."""

    def __init__(self, service_id: str):
        self.service_id = service_id
        super().__init__(f"No service with ID '{service_id}' is registered")


class ServiceStateError(ServiceNetworkError):
    """A service is not in the lifecycle state an operation requires."""
    pass


class AddressSpaceExhaustedError(ServiceNetworkError):
    """Every address in the subnet is taken."""

    def __init__(self, subnet: str):
        self.subnet = subnet
        super().__init__(f"Failed to allocate an IP address on subnet {subnet} - all taken")


class PartitionOverlapError(ServiceNetworkError):
    """A service was assigned to more than one partition."""

    def __init__(self, service_id: str, partition_ids: tuple[str, ...]):
        self.service_id = service_id
        self.partition_ids = partition_ids
        super().__init__(
            f"Service '{service_id}' is assigned to more than one partition: "
            f"{', '.join(partition_ids)}"
        )


class UnknownServiceInPartitionError(ServiceNetworkError):
    """A partition references a service that is not registered."""

    def __init__(self, service_id: str, partition_id: str):
        self.service_id = service_id
        self.partition_id = partition_id
        super().__init__(
            f"Partition '{partition_id}' references service '{service_id}' "
            f"which is not registered"
        )


class UnknownPartitionError(ServiceNetworkError):
    """A partition ID does not exist in the current topology."""

    def __init__(self, partition_id: str):
        self.partition_id = partition_id
        super().__init__(f"No partition with ID '{partition_id}' exists in the current partition topology")


class PartitioningDisabledError(ServiceNetworkError):
    """Repartitioning was requested on an enclave without partitioning support."""

    def __init__(self):
        super().__init__("Cannot repartition; partitioning is not enabled for this enclave")


# =============================================================================
# INSTRUCTION FAILURES
# =============================================================================


class UnexpectedExitCodeError(EnclavePlanError):
    """A command exited with a code outside its acceptable set."""

    def __init__(self, exit_code: int, acceptable_codes: tuple[int, ...], output: str = ""):
        self.exit_code = exit_code
        self.acceptable_codes = acceptable_codes
        self.output = output
        super().__init__(
            f"Command returned with exit code '{exit_code}' which is not one of the "
            f"acceptable codes {list(acceptable_codes)}; output was:\n{output}"
        )


class EndpointUnavailableError(EnclavePlanError):
    """An HTTP endpoint did not become available within its retry budget."""

    def __init__(self, service_id: str, port: int, path: str, attempts: int):
        self.service_id = service_id
        self.port = port
        self.path = path
        self.attempts = attempts
        super().__init__(
            f"Endpoint '{path}' on port {port} of service '{service_id}' "
            f"was not available after {attempts} attempt(s)"
        )


class ResponseExtractionError(EnclavePlanError):
    """A field could not be extracted from an HTTP response body."""

    def __init__(self, key: str, path: str, reason: str):
        self.key = key
        self.path = path
        super().__init__(f"Cannot extract '{key}' at path '{path}' from the response: {reason}")


# =============================================================================
# RUN-LEVEL ERRORS
# =============================================================================


class PlanError(EnclavePlanError):
    """
    Common shape of the three run-level errors.

    Attributes:
        kind: Which pipeline phase raised the error
        instruction_index: 1-based index of the originating instruction, if any
        position: Script position of the originating construct, if any
        cause: The lower-level exception, if any
        cancelled: True if the phase stopped because the run was cancelled
    """

    kind: ErrorKind

    def __init__(
        self,
        message: str,
        instruction_index: Optional[int] = None,
        position: Optional[ScriptPosition] = None,
        cause: Optional[BaseException] = None,
        cancelled: bool = False,
    ):
        self.message = message
        self.instruction_index = instruction_index
        self.position = position
        self.cause = cause
        self.cancelled = cancelled
        if cause is not None:
            self.__cause__ = cause
        super().__init__(self._format())

    def _format(self) -> str:
        prefix = ""
        if self.instruction_index is not None:
            prefix = f"Instruction {self.instruction_index}"
            if self.position is not None:
                prefix += f" at {self.position}"
            prefix += ": "
        elif self.position is not None:
            prefix = f"{self.position}: "
        text = f"{prefix}{self.message}"
        if self.cause is not None:
            text += f" (caused by: {self.cause})"
        return text

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON output."""
        result: dict = {
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.instruction_index is not None:
            result["instruction_index"] = self.instruction_index
        if self.position is not None:
            result["position"] = {"locator": self.position.locator, "line": self.position.line}
        if self.cause is not None:
            result["cause"] = {"type": type(self.cause).__name__, "message": str(self.cause)}
        if self.cancelled:
            result["cancelled"] = True
        return result


class InterpretationError(PlanError):
    """Raised when a script or its run arguments cannot be turned into a plan."""
    kind = ErrorKind.INTERPRETATION


class ValidationError(PlanError):
    """A single problem found while validating a whole plan."""
    kind = ErrorKind.VALIDATION


class ExecutionError(PlanError):
    """
    Raised when applying an instruction fails.

    Attributes:
        completed_count: Number of instructions that succeeded before the failure
    """
    kind = ErrorKind.EXECUTION

    def __init__(
        self,
        message: str,
        instruction_index: Optional[int] = None,
        position: Optional[ScriptPosition] = None,
        cause: Optional[BaseException] = None,
        cancelled: bool = False,
        completed_count: int = 0,
    ):
        self.completed_count = completed_count
        super().__init__(message, instruction_index, position, cause, cancelled)

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["completed_count"] = self.completed_count
        return result
