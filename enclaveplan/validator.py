"""
PlanValidator - whole-plan checks before anything is executed.

Validation walks the plan in order against a simulated environment
(known services, started services, declared ports, partition membership,
files artifacts, stored request responses), asking each instruction's
handler for its precondition problems. Every problem is collected;
validation never stops at the first.

Container images are gathered across the whole plan, deduplicated, and
checked exactly once each with bounded parallelism. The merged error list
is ordered by plan position, not by check completion order.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from enclaveplan.config import EnclaveConfig
from enclaveplan.errors import ValidationError
from enclaveplan.handlers import HandlerRegistry
from enclaveplan.network import (
    DEFAULT_PARTITION_ID,
    PortSpec,
    ServiceIDSet,
    ServiceNetwork,
    ServiceStatus,
)
from enclaveplan.schemas import Plan

logger = logging.getLogger(__name__)

# Checks that an image exists or can be pulled; raises if not
ImageChecker = Callable[[str], None]


class ValidatorEnvironment:
    """
    Simulated enclave state at one point of a plan.

    Mirrors the service network's invariants at the type level: every
    registered service sits in exactly one partition, started services are
    registered, and artifact names are unique.
    """

    def __init__(self, partitioning_enabled: bool = True):
        self.partitioning_enabled = partitioning_enabled
        self.registered = ServiceIDSet()
        self.started = ServiceIDSet()
        self.ports: dict[str, dict[str, PortSpec]] = {}
        self.partitions: dict[str, ServiceIDSet] = {DEFAULT_PARTITION_ID: ServiceIDSet()}
        self.artifacts: set[str] = set()
        self.values: dict[str, set[str]] = {}  # request result key -> fields
        self.required_images: dict[str, int] = {}  # image -> first plan index

    @classmethod
    def from_network(cls, network: ServiceNetwork) -> "ValidatorEnvironment":
        """Seed an environment from a live enclave's current state."""
        env = cls(partitioning_enabled=network.partitioning_enabled)
        env.partitions = network.get_partition_services()
        for record in network.get_services():
            env.registered.add(record.service_id)
            if record.status == ServiceStatus.STARTED:
                env.started.add(record.service_id)
                env.ports[record.service_id] = dict(record.ports)
        env.artifacts = set(network.files_artifact_names())
        return env

    def has_partition(self, partition_id: str) -> bool:
        return partition_id in self.partitions

    def register(self, service_id: str, partition_id: str = DEFAULT_PARTITION_ID) -> None:
        """Register a service; unknown partitions fall back to the default one."""
        self.remove(service_id)
        self.registered.add(service_id)
        if partition_id not in self.partitions:
            partition_id = DEFAULT_PARTITION_ID
        self.partitions[partition_id].add(service_id)

    def start(self, service_id: str, ports: dict[str, PortSpec]) -> None:
        if service_id not in self.registered:
            self.register(service_id)
        self.started.add(service_id)
        self.ports[service_id] = dict(ports)

    def remove(self, service_id: str) -> None:
        self.registered.remove(service_id)
        self.started.remove(service_id)
        self.ports.pop(service_id, None)
        for members in self.partitions.values():
            members.remove(service_id)

    def repartition(self, partition_services: dict[str, ServiceIDSet]) -> None:
        """Apply a repartition, keeping only registered services, each in one partition."""
        new_partitions: dict[str, ServiceIDSet] = {}
        placed = ServiceIDSet()
        for partition_id in sorted(partition_services):
            members = partition_services[partition_id].intersection(self.registered).difference(placed)
            new_partitions[partition_id] = members
            placed.add_all(members)
        default_members = new_partitions.setdefault(DEFAULT_PARTITION_ID, ServiceIDSet())
        default_members.add_all(self.registered.difference(placed))
        self.partitions = new_partitions

    def add_artifact(self, name: str) -> None:
        self.artifacts.add(name)

    def add_values(self, key: str, fields: list[str]) -> None:
        self.values[key] = set(fields)

    def require_image(self, image: str, index: int) -> None:
        self.required_images.setdefault(image, index)


class PlanValidator:
    """
    Validates a Plan as a whole.

    Usage:
        validator = PlanValidator(backend.pull_image, config)
        errors = validator.validate(plan)
        if errors:
            ...  # do not execute
    """

    def __init__(
        self,
        image_checker: Optional[ImageChecker] = None,
        config: Optional[EnclaveConfig] = None,
        handlers: Optional[HandlerRegistry] = None,
    ):
        """
        Initialize the validator.

        Args:
            image_checker: Image existence check; None skips image checks
            config: Engine configuration (worker pool size, partitioning)
            handlers: Handler registry (default handlers if None)
        """
        self._image_checker = image_checker
        self._config = config or EnclaveConfig()
        self._handlers = handlers or HandlerRegistry.create_default()

    def validate(
        self,
        plan: Plan,
        cancel_event: Optional[threading.Event] = None,
        environment: Optional[ValidatorEnvironment] = None,
    ) -> list[ValidationError]:
        """
        Validate a plan.

        Args:
            plan: The plan to validate
            cancel_event: Checked between instructions and before image checks
            environment: Starting state (an empty enclave if None)

        Returns:
            All validation errors, ordered by instruction index
        """
        env = environment or ValidatorEnvironment(self._config.partitioning_enabled)
        # (index, phase, error); phase 0 = preconditions, 1 = images
        found: list[tuple[int, int, ValidationError]] = []

        for index, instruction in plan.indexed():
            if cancel_event is not None and cancel_event.is_set():
                found.append((index, 0, ValidationError(
                    "Validation cancelled", instruction_index=index,
                    position=instruction.position, cancelled=True,
                )))
                return self._ordered(found)
            handler = self._handlers.handler_for(instruction)
            for problem in handler.validate(instruction, index, env):
                found.append((index, 0, ValidationError(
                    problem, instruction_index=index, position=instruction.position,
                )))

        found.extend(
            (index, 1, error)
            for index, error in self._check_images(plan, env.required_images, cancel_event)
        )

        errors = self._ordered(found)
        logger.info(f"Validation of {plan.size()} instruction(s) found {len(errors)} error(s)")
        return errors

    def _check_images(
        self,
        plan: Plan,
        required_images: dict[str, int],
        cancel_event: Optional[threading.Event],
    ) -> list[tuple[int, ValidationError]]:
        """Check each distinct image once, in parallel."""
        if self._image_checker is None or not required_images:
            return []

        results: list[tuple[int, ValidationError]] = []
        with ThreadPoolExecutor(
            max_workers=self._config.validator_max_workers,
            thread_name_prefix="image-check",
        ) as pool:
            futures: list[tuple[str, int, Future]] = [
                (image, index, pool.submit(self._image_checker, image))
                for image, index in required_images.items()
            ]
            for image, index, future in futures:
                if cancel_event is not None and cancel_event.is_set():
                    for _, _, pending in futures:
                        pending.cancel()
                    results.append((index, ValidationError(
                        "Validation cancelled while checking images",
                        instruction_index=index, position=plan.get(index).position, cancelled=True,
                    )))
                    break
                error = future.exception()
                if error is not None:
                    logger.debug(f"Image check for '{image}' failed: {error}")
                    results.append((index, ValidationError(
                        f"Failed fetching the required image '{image}', make sure that the image exists and is public",
                        instruction_index=index,
                        position=plan.get(index).position,
                        cause=error,
                    )))
        return results

    @staticmethod
    def _ordered(found: list[tuple[int, int, ValidationError]]) -> list[ValidationError]:
        return [error for _, _, error in sorted(found, key=lambda item: (item[0], item[1]))]
