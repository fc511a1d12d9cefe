"""
Base handler protocol and execution context.

Each instruction kind has exactly one Handler. A handler knows how to:
- validate: check the instruction's preconditions against the validator's
  simulated environment, then update that environment
- execute: apply the instruction to the live ServiceNetwork and, unless the
  run is a dry run, to the container backend

Handlers raise on failure; the Executor wraps whatever they raise into an
ExecutionError tagged with the instruction's plan index.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, TYPE_CHECKING

from enclaveplan.backend import ContainerBackend
from enclaveplan.errors import EnclavePlanError, ServiceStateError
from enclaveplan.network import ServiceNetwork, ServiceRecord, ServiceStatus
from enclaveplan.placeholders import (
    referenced_services,
    referenced_values,
    resolve_ip_placeholders,
    resolve_value_placeholders,
)
from enclaveplan.schemas import Instruction

if TYPE_CHECKING:
    from enclaveplan.validator import ValidatorEnvironment


class ExecutionContext:
    """
    What a handler may touch while executing an instruction.

    Attributes:
        network: The live service network (mutated by handlers)
        backend: The container backend (never called when dry_run is set)
        dry_run: Skip every backend side effect
        sleep: Sleep function, injectable for tests
        values: Stored request responses of this run, key -> field -> value
    """

    def __init__(
        self,
        network: ServiceNetwork,
        backend: ContainerBackend,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.network = network
        self.backend = backend
        self.dry_run = dry_run
        self.sleep = sleep
        self.values: dict[str, dict[str, str]] = {}

    def resolve(self, value: Any) -> Any:
        """Substitute IP placeholders using the live network, then stored response values."""
        value = resolve_ip_placeholders(value, lambda sid: self.network.get_service(sid).ip_address)
        return resolve_value_placeholders(value, self._lookup_value)

    def _lookup_value(self, key: str, field: str) -> str:
        if key not in self.values or field not in self.values[key]:
            raise EnclavePlanError(f"No value '{field}' has been stored for {key}")
        return self.values[key][field]

    def require_started(self, service_id: str) -> ServiceRecord:
        """
        Get a service that must be running.

        Raises:
            UnknownServiceError: If the service is not registered
            ServiceStateError: If the service is not started
        """
        record = self.network.get_service(service_id)
        if record.status != ServiceStatus.STARTED:
            raise ServiceStateError(
                f"Service '{service_id}' is {record.status.value}, not started"
            )
        return record


class Handler(ABC):
    """
    Abstract base class for instruction handlers.

    Handlers are stateless; one instance serves every instruction of its kind.
    """

    @abstractmethod
    def validate(self, instruction: Instruction, index: int, env: "ValidatorEnvironment") -> list[str]:
        """
        Check an instruction's preconditions and update the environment.

        The environment is updated even when problems are found, as if the
        instruction had succeeded, so one mistake does not cascade into
        errors on every later instruction.

        Args:
            instruction: The instruction to check
            index: Its 1-based plan index
            env: Simulated enclave state at this point of the plan

        Returns:
            Problem descriptions (empty if none)
        """
        pass

    @abstractmethod
    def execute(self, instruction: Instruction, context: ExecutionContext) -> str:
        """
        Apply an instruction.

        Either the model mutation and the backend effect both happen, or
        neither does: a handler that fails after mutating the network
        reverts its own mutation before raising.

        Args:
            instruction: The instruction to apply
            context: Network, backend and dry-run flag

        Returns:
            The human-readable output line

        Raises:
            Exception: If the instruction cannot be applied
        """
        pass

    def check_placeholders(self, value: Any, env: "ValidatorEnvironment") -> list[str]:
        """Report placeholders naming services or response values unknown at this point of the plan."""
        problems = [
            f"References the IP address of service '{sid}' which is not registered"
            for sid in referenced_services(value)
            if sid not in env.registered
        ]
        problems.extend(
            f"References '{field}' of {key} which no earlier request produces"
            for key, field in referenced_values(value)
            if field not in env.values.get(key, ())
        )
        return problems
