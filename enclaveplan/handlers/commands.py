"""
Handlers that run things against services or throwaway containers:
exec, wait-for-endpoint, request, run task, and print.
"""

import json
import logging
from typing import Optional

from enclaveplan.backend import ContainerSpec
from enclaveplan.errors import (
    EndpointUnavailableError,
    ResponseExtractionError,
    ServiceStateError,
    UnexpectedExitCodeError,
)
from enclaveplan.network import ServiceRecord
from enclaveplan.placeholders import BODY_FIELD, EXTRACT_PREFIX, STATUS_CODE_FIELD, value_placeholder
from enclaveplan.schemas import ExecCommand, Print, Request, RunTask, WaitForHttpEndpoint

from .artifacts import store_artifacts
from .base import ExecutionContext, Handler

logger = logging.getLogger(__name__)

# Keeps a task container alive until its command has been exec'd into it
TASK_CONTAINER_ENTRYPOINT = ("tail",)
TASK_CONTAINER_CMD = ("-f", "/dev/null")


def _started_problems(service_id: str, env) -> list[str]:
    if service_id not in env.registered:
        return [f"Service '{service_id}' is not registered"]
    if service_id not in env.started:
        return [f"Service '{service_id}' is not started"]
    return []


class ExecCommandHandler(Handler):
    """Run a command in a started service's container."""

    def validate(self, instruction: ExecCommand, index: int, env) -> list[str]:
        problems = _started_problems(instruction.service_id, env)
        problems.extend(self.check_placeholders(instruction.command, env))
        return problems

    def execute(self, instruction: ExecCommand, context: ExecutionContext) -> str:
        record = context.require_started(instruction.service_id)
        command = context.resolve(instruction.command)
        if context.dry_run:
            exit_code, output = instruction.acceptable_codes[0], ""
        else:
            exit_code, output = context.backend.exec_in_container(record.handle, command)
        if exit_code not in instruction.acceptable_codes:
            raise UnexpectedExitCodeError(exit_code, instruction.acceptable_codes, output)
        return f"Command returned with exit code '{exit_code}' and the following output:\n{output}"


class WaitForHttpEndpointHandler(Handler):
    """
    Poll an HTTP GET endpoint until it answers 200 (and the expected body, if any).

    Makes `retries + 1` attempts after the initial delay, sleeping
    `retries_delay_milliseconds` between attempts.
    """

    def validate(self, instruction: WaitForHttpEndpoint, index: int, env) -> list[str]:
        problems = _started_problems(instruction.service_id, env)
        if not problems and isinstance(instruction.port, str):
            if instruction.port not in env.ports.get(instruction.service_id, {}):
                problems.append(
                    f"Service '{instruction.service_id}' declares no port with ID '{instruction.port}'"
                )
        return problems

    def execute(self, instruction: WaitForHttpEndpoint, context: ExecutionContext) -> str:
        record = context.require_started(instruction.service_id)
        port = self._port_number(instruction, record)
        output = (
            f"Endpoint '{instruction.path}' on port {instruction.port} "
            f"of service '{instruction.service_id}' is available"
        )
        if context.dry_run:
            return output

        if instruction.initial_delay_milliseconds:
            context.sleep(instruction.initial_delay_milliseconds / 1000)

        attempts = instruction.retries + 1
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                status, body = context.backend.http_get(record.ip_address, port, instruction.path)
            except Exception as e:
                last_error = e
                logger.debug(f"Attempt {attempt}/{attempts} against {record.ip_address}:{port} failed: {e}")
            else:
                if status == 200 and (not instruction.body_text or body.strip() == instruction.body_text):
                    return output
                logger.debug(f"Attempt {attempt}/{attempts} against {record.ip_address}:{port} got status {status}")
            if attempt < attempts:
                context.sleep(instruction.retries_delay_milliseconds / 1000)

        raise EndpointUnavailableError(
            instruction.service_id, port, instruction.path, attempts
        ) from last_error

    @staticmethod
    def _port_number(instruction: WaitForHttpEndpoint, record: ServiceRecord) -> int:
        if isinstance(instruction.port, int):
            return instruction.port
        if instruction.port not in record.ports:
            raise ServiceStateError(
                f"Service '{record.service_id}' declares no port with ID '{instruction.port}'"
            )
        return record.ports[instruction.port].number


class RequestHandler(Handler):
    """
    Send one HTTP request and store the response for later instructions.

    The status code and body are stored as strings; each extract path walks
    the JSON body (dict keys, list indexes) and stores strings as they are
    and anything else as JSON. A dry run stores the placeholders themselves.
    """

    def validate(self, instruction: Request, index: int, env) -> list[str]:
        problems = _started_problems(instruction.service_id, env)
        if not problems and instruction.port_id not in env.ports.get(instruction.service_id, {}):
            problems.append(
                f"Service '{instruction.service_id}' declares no port with ID '{instruction.port_id}'"
            )
        problems.extend(self.check_placeholders((instruction.endpoint, instruction.body), env))
        env.add_values(instruction.result_key, self._fields(instruction))
        return problems

    def execute(self, instruction: Request, context: ExecutionContext) -> str:
        record = context.require_started(instruction.service_id)
        if instruction.port_id not in record.ports:
            raise ServiceStateError(
                f"Service '{record.service_id}' declares no port with ID '{instruction.port_id}'"
            )
        port = record.ports[instruction.port_id].number
        endpoint = context.resolve(instruction.endpoint)

        if context.dry_run:
            values = {
                name: value_placeholder(instruction.result_key, name)
                for name in self._fields(instruction)
            }
        else:
            if instruction.method == "POST":
                status, body = context.backend.http_post(
                    record.ip_address, port, endpoint,
                    context.resolve(instruction.body), instruction.content_type,
                )
            else:
                status, body = context.backend.http_get(record.ip_address, port, endpoint)
            logger.debug(f"{instruction.method} {endpoint} on {record.ip_address}:{port} returned {status}")
            values = {STATUS_CODE_FIELD: str(status), BODY_FIELD: body}
            values.update(self._extract(instruction, body))

        context.values[instruction.result_key] = values
        return (
            f"Request '{instruction.method} {instruction.endpoint}' to port '{instruction.port_id}' "
            f"of service '{instruction.service_id}' completed"
        )

    @staticmethod
    def _fields(instruction: Request) -> list[str]:
        return [STATUS_CODE_FIELD, BODY_FIELD] + [EXTRACT_PREFIX + name for name in instruction.extract]

    @staticmethod
    def _extract(instruction: Request, body: str) -> dict[str, str]:
        if not instruction.extract:
            return {}
        try:
            document = json.loads(body)
        except json.JSONDecodeError as e:
            name, path = next(iter(instruction.extract.items()))
            raise ResponseExtractionError(name, path, f"body is not JSON ({e})") from e

        extracted = {}
        for name, path in instruction.extract.items():
            value = document
            for step in path[1:].split(".") if path != "." else []:
                if isinstance(value, dict) and step in value:
                    value = value[step]
                elif isinstance(value, list) and step.isdigit() and int(step) < len(value):
                    value = value[int(step)]
                else:
                    raise ResponseExtractionError(name, path, f"no field '{step}'")
            extracted[EXTRACT_PREFIX + name] = value if isinstance(value, str) else json.dumps(value)
        return extracted


class RunTaskHandler(Handler):
    """
    Run a shell command in a throwaway container.

    Mounted files come from stored artifacts; paths listed in `store` are
    copied out as new files artifacts once the command succeeds.
    """

    def validate(self, instruction: RunTask, index: int, env) -> list[str]:
        problems = []
        for mount_path, artifact_name in sorted(instruction.files.items()):
            if artifact_name not in env.artifacts:
                problems.append(
                    f"Files artifact '{artifact_name}' mounted at '{mount_path}' does not exist"
                )
        for artifact_name in instruction.store:
            if artifact_name in env.artifacts:
                problems.append(f"A files artifact named '{artifact_name}' already exists")
            env.add_artifact(artifact_name)
        problems.extend(self.check_placeholders((instruction.command, instruction.env_vars), env))
        env.require_image(instruction.image, index)
        return problems

    def execute(self, instruction: RunTask, context: ExecutionContext) -> str:
        network = context.network
        command = context.resolve(instruction.command)
        spec = ContainerSpec(
            name=f"task-{instruction.name}",
            image=instruction.image,
            env_vars=context.resolve(instruction.env_vars),
            entrypoint=TASK_CONTAINER_ENTRYPOINT,
            cmd=TASK_CONTAINER_CMD,
            files={path: network.get_files_artifact(name) for path, name in instruction.files.items()},
        )

        if context.dry_run:
            exit_code = instruction.acceptable_codes[0]
            contents = {name: b"" for name in instruction.store}
        else:
            context.backend.pull_image(instruction.image)
            handle = context.backend.create_and_start_container(spec)
            try:
                exit_code, output = context.backend.exec_in_container(handle, ("sh", "-c", command))
                if exit_code not in instruction.acceptable_codes:
                    raise UnexpectedExitCodeError(exit_code, instruction.acceptable_codes, output)
                contents = {
                    name: context.backend.copy_files_from_container(handle, path)
                    for name, path in instruction.store.items()
                }
            finally:
                context.backend.stop_container(handle)

        store_artifacts(network, contents)
        return f"Task '{instruction.name}' completed with exit code '{exit_code}'"


class PrintHandler(Handler):
    """Emit a message; placeholders are resolved against the live network."""

    def validate(self, instruction: Print, index: int, env) -> list[str]:
        return self.check_placeholders(instruction.message, env)

    def execute(self, instruction: Print, context: ExecutionContext) -> str:
        return context.resolve(instruction.message)
