"""
BulkCommandCompiler - the legacy bulk-instruction JSON format.

A bulk document lists typed commands:

    {
        "schemaVersion": 0,
        "body": {
            "commands": [
                {"type": "REGISTER_SERVICE", "args": {"service_id": "web"}},
                {"type": "START_SERVICE", "args": {"service_id": "web", "docker_image": "nginx"}},
                ...
            ]
        }
    }

Every command becomes the same instruction, with the same argument
checks, as the equivalent script builtin call, so a bulk document and an
equivalent script produce equal plans. Positions use the command's
1-based number in place of a line.
"""

import json
import logging
import re
from dataclasses import replace
from typing import Any, Callable, Optional, Union

from enclaveplan.config import EnclaveConfig
from enclaveplan.errors import InterpretationError, ScriptPosition
from enclaveplan.network import PortSpec, ServiceIDSet
from enclaveplan.schemas import (
    ExecCommand,
    Instruction,
    InstructionType,
    Plan,
    RegisterService,
    RemoveService,
    Repartition,
    StartService,
    WaitForHttpEndpoint,
)

from . import arguments
from .arguments import ArgumentError

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS = (0,)

# Legacy port keys look like "80/tcp"
LEGACY_PORT_PATTERN = re.compile(r"^(\d+)/(tcp|udp|sctp)$", re.IGNORECASE)

# Accepted for compatibility; the enclave data directory is not modelled
IGNORED_START_ARGS = frozenset({"enclave_data_dir_mnt_dirpath"})


def _check_keys(args: dict[str, Any], required: set[str], optional: set[str]) -> None:
    missing = required - set(args)
    if missing:
        raise ArgumentError(f"Missing argument(s): {', '.join(sorted(missing))}")
    unknown = set(args) - required - optional
    if unknown:
        raise ArgumentError(f"Unknown argument(s): {', '.join(sorted(unknown))}")


def _legacy_ports(value: Any) -> dict[str, PortSpec]:
    """{"80/tcp": true} -> {"80/tcp": PortSpec(80, TCP)}; dict values are PortSpec fields."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ArgumentError(f"'used_ports' must be a dict, got {type(value).__name__}")
    ports: dict[str, PortSpec] = {}
    for port_id, spec in value.items():
        arguments.require_str(port_id, "port ID")
        if isinstance(spec, dict):
            ports[port_id] = arguments.port_spec(**spec)
            continue
        match = LEGACY_PORT_PATTERN.match(port_id)
        if spec is not True or match is None:
            raise ArgumentError(
                f"Port '{port_id}' must be '<number>/<protocol>' mapped to true, or a port spec object"
            )
        ports[port_id] = arguments.port_spec(int(match.group(1)), match.group(2).upper())
    return ports


def _legacy_files(value: Any) -> dict[str, str]:
    """{artifact_id: mount_path} -> {mount_path: artifact_id}."""
    files = arguments.str_dict(value, "files_artifact_mount_dirpaths")
    return {mount: artifact for artifact, mount in files.items()}


def _legacy_partition_services(value: Any) -> dict[str, list[str]]:
    """{pid: {"service_id_set": {sid: true}}} -> {pid: [sid, ...]}."""
    if not isinstance(value, dict):
        raise ArgumentError("'partition_services' must be a dict of partition ID to service ID sets")
    result: dict[str, list[str]] = {}
    for partition_id, members in value.items():
        if not isinstance(members, dict) or set(members) != {"service_id_set"}:
            raise ArgumentError(f"Partition '{partition_id}' must be an object with a 'service_id_set'")
        id_set = members["service_id_set"]
        if not isinstance(id_set, dict):
            raise ArgumentError(f"Partition '{partition_id}' service_id_set must be an object")
        result[partition_id] = [sid for sid, included in id_set.items() if included]
    return result


def _legacy_partition_connections(value: Any) -> Optional[dict[tuple[str, str], Any]]:
    """{pA: {pB: {"is_blocked": ...}}} -> {(pA, pB): {...}}."""
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ArgumentError("'partition_connections' must be a nested dict of partition IDs")
    result: dict[tuple[str, str], Any] = {}
    for first, targets in value.items():
        if not isinstance(targets, dict):
            raise ArgumentError(f"Connections of partition '{first}' must be an object")
        for second, conn in targets.items():
            result[(first, second)] = conn
    return result


class BulkCommandCompiler:
    """
    Compiles bulk-instruction JSON into a Plan.

    Usage:
        plan = BulkCommandCompiler().compile(document_text)
    """

    def __init__(self, config: Optional[EnclaveConfig] = None):
        self._config = config or EnclaveConfig()
        self._compilers: dict[InstructionType, Callable[[dict[str, Any]], Instruction]] = {
            InstructionType.REGISTER_SERVICE: self._register_service,
            InstructionType.START_SERVICE: self._start_service,
            InstructionType.REMOVE_SERVICE: self._remove_service,
            InstructionType.REPARTITION: self._repartition,
            InstructionType.EXEC_COMMAND: self._exec_command,
            InstructionType.WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY: self._wait,
        }

    def compile(self, document: Union[str, dict[str, Any]], package_id: Optional[str] = None) -> Plan:
        """
        Compile a bulk document.

        Args:
            document: JSON text, or the already decoded object
            package_id: Package ID of the resulting plan

        Returns:
            The Plan, one instruction per command

        Raises:
            InterpretationError: On the first malformed command
        """
        package_id = package_id or self._config.package_id
        commands = self._commands(self._decode(document))

        declared = ServiceIDSet()
        instructions: list[Instruction] = []
        for number, command in enumerate(commands, start=1):
            position = ScriptPosition(package_id, number)
            try:
                instruction = self._compile_command(command, declared)
            except (ArgumentError, ValueError, TypeError) as e:
                raise InterpretationError(f"Invalid bulk command #{number}: {e}", position=position, cause=e)
            instructions.append(replace(instruction, position=position))

        plan = Plan(package_id=package_id, instructions=tuple(instructions))
        logger.info(f"Compiled {plan.size()} bulk command(s) for '{package_id}'")
        return plan

    @staticmethod
    def _decode(document: Union[str, dict[str, Any]]) -> dict[str, Any]:
        if isinstance(document, dict):
            return document
        try:
            data = json.loads(document)
        except json.JSONDecodeError as e:
            raise InterpretationError(f"Bulk document is not valid JSON: {e}", cause=e)
        if not isinstance(data, dict):
            raise InterpretationError("Bulk document must be a JSON object")
        return data

    @staticmethod
    def _commands(data: dict[str, Any]) -> list[Any]:
        version = data.get("schemaVersion")
        if version not in SUPPORTED_SCHEMA_VERSIONS or isinstance(version, bool):
            raise InterpretationError(
                f"Unsupported bulk schema version {version!r}; supported: {list(SUPPORTED_SCHEMA_VERSIONS)}"
            )
        body = data.get("body")
        if not isinstance(body, dict) or not isinstance(body.get("commands"), list):
            raise InterpretationError("Bulk document must have a 'body' object with a 'commands' list")
        return body["commands"]

    def _compile_command(self, command: Any, declared: ServiceIDSet) -> Instruction:
        if not isinstance(command, dict) or set(command) - {"type", "args"}:
            raise ArgumentError("Each command must be an object with 'type' and 'args'")
        kind = InstructionType.from_string(arguments.require_str(command.get("type"), "type"))
        if kind not in self._compilers:
            raise ArgumentError(f"Command type {kind.value} is not supported in bulk documents")
        args = command.get("args", {})
        if not isinstance(args, dict):
            raise ArgumentError("'args' must be an object")
        instruction = self._compilers[kind](args)
        if isinstance(instruction, RegisterService):
            if declared.contains(instruction.service_id):
                raise ArgumentError(f"Service '{instruction.service_id}' is declared more than once")
            declared.add(instruction.service_id)
        elif isinstance(instruction, RemoveService):
            declared.remove(instruction.service_id)
        return instruction

    # =========================================================================
    # Per-type compilers
    # =========================================================================

    @staticmethod
    def _register_service(args: dict[str, Any]) -> Instruction:
        _check_keys(args, {"service_id"}, {"partition_id"})
        return RegisterService(
            service_id=arguments.service_id(args["service_id"]),
            partition_id=arguments.optional_str(args.get("partition_id"), "partition_id"),
        )

    @staticmethod
    def _start_service(args: dict[str, Any]) -> Instruction:
        _check_keys(
            args,
            {"service_id", "docker_image"},
            {"used_ports", "entrypoint_args", "cmd_args", "docker_env_vars",
             "files_artifact_mount_dirpaths"} | IGNORED_START_ARGS,
        )
        config = arguments.service_config(
            image=args["docker_image"],
            ports=_legacy_ports(args.get("used_ports")),
            env_vars=args.get("docker_env_vars"),
            entrypoint=args.get("entrypoint_args"),
            cmd=args.get("cmd_args"),
            files=_legacy_files(args.get("files_artifact_mount_dirpaths")),
        )
        return StartService(service_id=arguments.service_id(args["service_id"]), config=config)

    @staticmethod
    def _remove_service(args: dict[str, Any]) -> Instruction:
        _check_keys(args, {"service_id"}, set())
        return RemoveService(service_id=arguments.service_id(args["service_id"]))

    @staticmethod
    def _repartition(args: dict[str, Any]) -> Instruction:
        _check_keys(args, {"partition_services", "default_connection"}, {"partition_connections"})
        return Repartition(
            partition_services=arguments.partition_services(
                _legacy_partition_services(args["partition_services"])
            ),
            partition_connections=arguments.partition_connections(
                _legacy_partition_connections(args.get("partition_connections"))
            ),
            default_connection=arguments.connection(args["default_connection"], "default_connection"),
        )

    @staticmethod
    def _exec_command(args: dict[str, Any]) -> Instruction:
        _check_keys(args, {"service_id", "command_args"}, {"acceptable_codes"})
        command = arguments.str_list(args["command_args"], "command_args")
        if not command:
            raise ArgumentError("'command_args' cannot be empty")
        return ExecCommand(
            service_id=arguments.service_id(args["service_id"]),
            command=command,
            acceptable_codes=arguments.acceptable_codes(args.get("acceptable_codes")),
        )

    @staticmethod
    def _wait(args: dict[str, Any]) -> Instruction:
        _check_keys(
            args,
            {"service_id", "port"},
            {"path", "initial_delay_milliseconds", "retries", "retries_delay_milliseconds", "body_text"},
        )
        return WaitForHttpEndpoint(
            service_id=arguments.service_id(args["service_id"]),
            port=arguments.wait_port(args["port"]),
            path=arguments.require_str(args.get("path", ""), "path", allow_empty=True),
            initial_delay_milliseconds=arguments.require_int(
                args.get("initial_delay_milliseconds", 0), "initial_delay_milliseconds", minimum=0
            ),
            retries=arguments.require_int(args.get("retries", 0), "retries", minimum=0),
            retries_delay_milliseconds=arguments.require_int(
                args.get("retries_delay_milliseconds", 0), "retries_delay_milliseconds", minimum=0
            ),
            body_text=arguments.require_str(args.get("body_text", ""), "body_text", allow_empty=True),
        )
