"""
Service lifecycle handlers: register, start, add (register + start), remove.
"""

import logging
from typing import Any, Optional

from enclaveplan.backend import ContainerSpec
from enclaveplan.errors import ServiceStateError
from enclaveplan.network import DEFAULT_PARTITION_ID, ServiceRecord, ServiceStatus
from enclaveplan.schemas import (
    AddService,
    RegisterService,
    RemoveService,
    ServiceConfig,
    StartService,
)

from .base import ExecutionContext, Handler

logger = logging.getLogger(__name__)


def _config_problems(config: ServiceConfig, index: int, env) -> list[str]:
    problems = []
    for mount_path, artifact_name in sorted(config.files.items()):
        if artifact_name not in env.artifacts:
            problems.append(
                f"Files artifact '{artifact_name}' mounted at '{mount_path}' does not exist"
            )
    env.require_image(config.image, index)
    return problems


def _start_container(service_id: str, config: ServiceConfig, context: ExecutionContext) -> ServiceRecord:
    """
    Start a registered service's container and mark it started.

    The service is marked started before the backend is called and
    returned to REGISTERED if any backend call fails.
    """
    network = context.network
    record = network.get_service(service_id)
    if record.status != ServiceStatus.REGISTERED:
        raise ServiceStateError(
            f"Cannot start service '{service_id}'; it is {record.status.value}, not registered"
        )
    spec = ContainerSpec(
        name=service_id,
        image=config.image,
        ip_address=record.ip_address,
        ports=dict(config.ports),
        env_vars=context.resolve(config.env_vars),
        entrypoint=context.resolve(config.entrypoint),
        cmd=context.resolve(config.cmd),
        files={path: network.get_files_artifact(name) for path, name in config.files.items()},
    )

    record = network.mark_started(service_id, handle=None, ports=config.ports)
    if context.dry_run:
        return record

    handle: Optional[Any] = None
    try:
        context.backend.pull_image(config.image)
        handle = context.backend.create_and_start_container(spec)
        for port_id, port in sorted(config.ports.items()):
            host_port = context.backend.bind_host_port(handle, port_id, port)
            logger.debug(f"Bound port '{port_id}' of service '{service_id}' to host port {host_port}")
    except Exception:
        logger.warning(f"Starting service '{service_id}' failed; reverting it to registered")
        if handle is not None:
            try:
                context.backend.stop_container(handle)
            except Exception as stop_error:
                logger.warning(f"Could not stop container of service '{service_id}': {stop_error}")
        network.unmark_started(service_id)
        raise
    return network.attach_handle(service_id, handle)


class RegisterServiceHandler(Handler):
    """Allocate an IP and place the service in a partition. No backend call."""

    def validate(self, instruction: RegisterService, index: int, env) -> list[str]:
        problems = []
        partition_id = instruction.partition_id or DEFAULT_PARTITION_ID
        if instruction.service_id in env.registered:
            problems.append(f"Service '{instruction.service_id}' is already registered")
        if not env.has_partition(partition_id):
            problems.append(f"Partition '{partition_id}' does not exist")
        env.register(instruction.service_id, partition_id)
        return problems

    def execute(self, instruction: RegisterService, context: ExecutionContext) -> str:
        record = context.network.register_service(instruction.service_id, instruction.partition_id)
        return f"Service '{record.service_id}' registered with IP '{record.ip_address}'"


class StartServiceHandler(Handler):
    """Start the container of a previously registered service."""

    def validate(self, instruction: StartService, index: int, env) -> list[str]:
        service_id = instruction.service_id
        problems = []
        if service_id not in env.registered:
            problems.append(f"Service '{service_id}' is not registered")
        elif service_id in env.started:
            problems.append(f"Service '{service_id}' is already started")
        problems.extend(_config_problems(instruction.config, index, env))
        problems.extend(self.check_placeholders(
            (instruction.config.env_vars, instruction.config.entrypoint, instruction.config.cmd), env
        ))
        env.start(service_id, instruction.config.ports)
        return problems

    def execute(self, instruction: StartService, context: ExecutionContext) -> str:
        record = _start_container(instruction.service_id, instruction.config, context)
        return f"Service '{record.service_id}' added with IP '{record.ip_address}'"


class AddServiceHandler(Handler):
    """Register and start a service; a failed start also undoes the registration."""

    def validate(self, instruction: AddService, index: int, env) -> list[str]:
        service_id = instruction.service_id
        partition_id = instruction.config.partition_id or DEFAULT_PARTITION_ID
        problems = []
        if service_id in env.registered:
            problems.append(f"Service '{service_id}' is already registered")
        if not env.has_partition(partition_id):
            problems.append(f"Partition '{partition_id}' does not exist")
        env.register(service_id, partition_id)
        problems.extend(_config_problems(instruction.config, index, env))
        problems.extend(self.check_placeholders(
            (instruction.config.env_vars, instruction.config.entrypoint, instruction.config.cmd), env
        ))
        env.start(service_id, instruction.config.ports)
        return problems

    def execute(self, instruction: AddService, context: ExecutionContext) -> str:
        network = context.network
        network.register_service(instruction.service_id, instruction.config.partition_id)
        try:
            record = _start_container(instruction.service_id, instruction.config, context)
        except Exception:
            logger.warning(f"Removing service '{instruction.service_id}' registered by the failed instruction")
            network.remove_service(instruction.service_id)
            raise
        return f"Service '{record.service_id}' added with IP '{record.ip_address}'"


class RemoveServiceHandler(Handler):
    """Stop a service's container, then release its IP and partition slot."""

    def validate(self, instruction: RemoveService, index: int, env) -> list[str]:
        problems = []
        if instruction.service_id not in env.registered:
            problems.append(f"Service '{instruction.service_id}' is not registered")
        env.remove(instruction.service_id)
        return problems

    def execute(self, instruction: RemoveService, context: ExecutionContext) -> str:
        record = context.network.get_service(instruction.service_id)
        if not context.dry_run and record.status == ServiceStatus.STARTED and record.handle is not None:
            context.backend.stop_container(record.handle)
        context.network.remove_service(instruction.service_id)
        return f"Service '{instruction.service_id}' removed"
