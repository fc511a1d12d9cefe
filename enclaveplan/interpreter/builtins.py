"""
Script builtins: the plan-building functions and the general helpers.

PlanBuilder owns the instruction list of one interpretation. Each plan
builtin checks its arguments locally, appends exactly one instruction
tagged with the calling script position, and returns a value the script
can use later (a Service, an artifact name, a task struct).
"""

import logging
from typing import Any, Optional

from enclaveplan.errors import ModuleNotFoundInProviderError
from enclaveplan.module_provider import ModuleContentProvider
from enclaveplan.network import Connection, ServiceIDSet
from enclaveplan.placeholders import (
    BODY_FIELD,
    EXTRACT_PREFIX,
    STATUS_CODE_FIELD,
    ip_placeholder,
    value_placeholder,
)
from enclaveplan.schemas import (
    AddService,
    ExecCommand,
    Instruction,
    InstructionType,
    Print,
    RegisterService,
    RemoveService,
    Repartition,
    Request,
    RunTask,
    ServiceConfig,
    StartService,
    StoreServiceFiles,
    UploadFiles,
    WaitForHttpEndpoint,
)

from . import arguments
from .evaluator import (
    Builtin,
    EvaluationState,
    ScriptRuntimeError,
    ScriptValue,
    StructValue,
    script_str,
)

logger = logging.getLogger(__name__)

DEFAULT_TASK_IMAGE = "badouralix/curl-jq"

# Upper bound on range() results; scripts have no other unbounded loop
MAX_RANGE_SIZE = 1_000_000


def service_value(service_id: str, ports: Optional[dict] = None) -> StructValue:
    """The Service a script gets back from register/start/add_service."""
    return StructValue("Service", {
        "name": service_id,
        "service_id": service_id,
        "hostname": service_id,
        "ip_address": ip_placeholder(service_id),
        "ports": dict(ports or {}),
    })


class PlanBuilder:
    """
    Collects the instructions emitted by plan builtins.

    Also keeps the simulated view of declared service IDs so that a script
    declaring the same service twice fails at interpretation time.
    """

    def __init__(self, state: EvaluationState, provider: ModuleContentProvider):
        self._state = state
        self._provider = provider
        self._instructions: list[Instruction] = []
        self._declared = ServiceIDSet()
        self._task_count = 0
        self._request_count = 0

    @property
    def instructions(self) -> tuple[Instruction, ...]:
        return tuple(self._instructions)

    def _emit(self, instruction_cls: type, **fields: Any) -> Instruction:
        instruction = instruction_cls(**fields, position=self._state.position)
        self._instructions.append(instruction)
        logger.debug(f"Emitted instruction {len(self._instructions)}: {instruction.canonical()}")
        return instruction

    def _declare(self, service_id: str) -> None:
        if self._declared.contains(service_id):
            raise ScriptRuntimeError(f"Service '{service_id}' is declared more than once in this script")
        self._declared.add(service_id)

    # =========================================================================
    # Plan builtins
    # =========================================================================

    def register_service(self, service_id: Any, partition_id: Any = None) -> StructValue:
        sid = arguments.service_id(service_id)
        partition = arguments.optional_str(partition_id, "partition_id")
        self._declare(sid)
        self._emit(RegisterService, service_id=sid, partition_id=partition)
        return service_value(sid)

    def start_service(self, service_id: Any, config: Any) -> StructValue:
        sid = arguments.service_id(service_id)
        service_config = self._require_config(config)
        self._emit(StartService, service_id=sid, config=service_config)
        return service_value(sid, service_config.ports)

    def add_service(self, service_id: Any, config: Any) -> StructValue:
        sid = arguments.service_id(service_id)
        service_config = self._require_config(config)
        self._declare(sid)
        self._emit(AddService, service_id=sid, config=service_config)
        return service_value(sid, service_config.ports)

    def remove_service(self, service_id: Any) -> None:
        sid = arguments.service_id(service_id)
        self._emit(RemoveService, service_id=sid)
        self._declared.remove(sid)

    def repartition(self, partitions: Any, connections: Any = None, default_connection: Any = None) -> None:
        self._emit(
            Repartition,
            partition_services=arguments.partition_services(partitions),
            partition_connections=arguments.partition_connections(connections),
            default_connection=(
                arguments.connection(default_connection, "default_connection")
                if default_connection is not None
                else Connection.unblocked()
            ),
        )

    def exec_command(self, service_id: Any, command: Any, acceptable_codes: Any = None) -> None:
        command = arguments.str_list(command, "command")
        if not command:
            raise arguments.ArgumentError("'command' cannot be empty")
        self._emit(
            ExecCommand,
            service_id=arguments.service_id(service_id),
            command=command,
            acceptable_codes=arguments.acceptable_codes(acceptable_codes),
        )

    def wait(
        self,
        service_id: Any,
        port: Any,
        path: Any = "",
        initial_delay_milliseconds: Any = 0,
        retries: Any = 0,
        retries_delay_milliseconds: Any = 0,
        body_text: Any = "",
    ) -> None:
        self._emit(
            WaitForHttpEndpoint,
            service_id=arguments.service_id(service_id),
            port=arguments.wait_port(port),
            path=arguments.require_str(path, "path", allow_empty=True),
            initial_delay_milliseconds=arguments.require_int(
                initial_delay_milliseconds, "initial_delay_milliseconds", minimum=0
            ),
            retries=arguments.require_int(retries, "retries", minimum=0),
            retries_delay_milliseconds=arguments.require_int(
                retries_delay_milliseconds, "retries_delay_milliseconds", minimum=0
            ),
            body_text=arguments.require_str(body_text, "body_text", allow_empty=True),
        )

    def store_service_files(self, service_id: Any, src: Any, name: Any) -> str:
        artifact_name = arguments.require_str(name, "name")
        self._emit(
            StoreServiceFiles,
            service_id=arguments.service_id(service_id),
            src=arguments.require_str(src, "src"),
            artifact_name=artifact_name,
        )
        return artifact_name

    def request(
        self,
        service_id: Any,
        port_id: Any,
        endpoint: Any = "/",
        method: Any = "GET",
        body: Any = "",
        content_type: Any = "application/json",
        extract: Any = None,
    ) -> dict[str, str]:
        """
        Emit an HTTP request; returns placeholders for the response.

        The returned dict has "code", "body" and one "extract.<name>" entry
        per extracted field.
        """
        http_method = arguments.request_method(method)
        request_body = arguments.require_str(body, "body", allow_empty=True)
        if request_body and http_method != "POST":
            raise arguments.ArgumentError(f"A {http_method} request cannot have a body")
        paths = arguments.extract_paths(extract)
        self._request_count += 1
        key = f"request-{self._request_count}"
        self._emit(
            Request,
            service_id=arguments.service_id(service_id),
            port_id=arguments.require_str(port_id, "port_id"),
            endpoint=arguments.require_str(endpoint, "endpoint"),
            method=http_method,
            body=request_body,
            content_type=(
                arguments.require_str(content_type, "content_type") if http_method == "POST" else ""
            ),
            extract=paths,
            result_key=key,
        )
        response = {
            STATUS_CODE_FIELD: value_placeholder(key, STATUS_CODE_FIELD),
            BODY_FIELD: value_placeholder(key, BODY_FIELD),
        }
        for name in paths:
            response[EXTRACT_PREFIX + name] = value_placeholder(key, EXTRACT_PREFIX + name)
        return response

    def upload_files(self, src: Any, name: Any = None) -> str:
        locator = arguments.require_str(src, "src")
        artifact_name = arguments.require_str(name, "name") if name is not None else locator
        try:
            content = self._provider.resolve_bytes(locator)
        except ModuleNotFoundInProviderError as e:
            raise ScriptRuntimeError(f"Cannot upload '{locator}': {e}")
        self._emit(UploadFiles, src=locator, artifact_name=artifact_name, content=content)
        return artifact_name

    def run_sh(
        self,
        run: Any,
        name: Any = None,
        image: Any = DEFAULT_TASK_IMAGE,
        env_vars: Any = None,
        files: Any = None,
        store: Any = None,
        acceptable_codes: Any = None,
    ) -> StructValue:
        self._task_count += 1
        task_name = (
            arguments.require_str(name, "name") if name is not None else f"task-{self._task_count}"
        )
        stored = self._store_paths(task_name, store)
        self._emit(
            RunTask,
            name=task_name,
            image=arguments.require_str(image, "image"),
            command=arguments.require_str(run, "run"),
            env_vars=arguments.str_dict(env_vars, "env_vars"),
            files=arguments.str_dict(files, "files"),
            store=stored,
            acceptable_codes=arguments.acceptable_codes(acceptable_codes),
        )
        return StructValue("Task", {"name": task_name, "files_artifacts": list(stored)})

    def print_message(self, *args: Any, sep: Any = " ") -> None:
        separator = arguments.require_str(sep, "sep", allow_empty=True)
        self._emit(Print, message=separator.join(script_str(a) for a in args))

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _require_config(config: Any) -> ServiceConfig:
        if not isinstance(config, ServiceConfig):
            raise arguments.ArgumentError(
                f"'config' must be a ServiceConfig, got {type(config).__name__}"
            )
        return config

    @staticmethod
    def _store_paths(task_name: str, store: Any) -> dict[str, str]:
        """Artifact name -> path; a plain list gets names <task>-<n>."""
        if store is None:
            return {}
        if isinstance(store, dict):
            return arguments.str_dict(store, "store")
        paths = arguments.str_list(store, "store")
        return {f"{task_name}-{n}": path for n, path in enumerate(paths, start=1)}

    def builtins(self) -> dict[str, Builtin]:
        """Plan builtins keyed by their script names."""
        functions = {
            InstructionType.REGISTER_SERVICE: self.register_service,
            InstructionType.START_SERVICE: self.start_service,
            InstructionType.ADD_SERVICE: self.add_service,
            InstructionType.REMOVE_SERVICE: self.remove_service,
            InstructionType.REPARTITION: self.repartition,
            InstructionType.EXEC_COMMAND: self.exec_command,
            InstructionType.WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY: self.wait,
            InstructionType.STORE_SERVICE_FILES: self.store_service_files,
            InstructionType.REQUEST: self.request,
            InstructionType.UPLOAD_FILES: self.upload_files,
            InstructionType.RUN_TASK: self.run_sh,
            InstructionType.PRINT: self.print_message,
        }
        return {kind.builtin_name: Builtin(kind.builtin_name, func) for kind, func in functions.items()}


class PlanObject(ScriptValue):
    """The `plan` value passed to run(); exposes the plan builtins as methods."""

    type_name = "plan"

    def __init__(self, builtins: dict[str, Builtin]):
        self._builtins = builtins

    def get_attr(self, name: str) -> Any:
        if name not in self._builtins:
            return super().get_attr(name)
        return self._builtins[name]

    def __repr__(self) -> str:
        return "<plan>"


# =============================================================================
# GENERAL HELPERS
# =============================================================================


def _to_int(value: Any, base: int = 10) -> int:
    if isinstance(value, str):
        try:
            return int(value, base)
        except ValueError:
            raise ScriptRuntimeError(f"Cannot convert '{value}' to int")
    if isinstance(value, (bool, int, float)):
        return int(value)
    raise ScriptRuntimeError(f"Cannot convert '{type(value).__name__}' value to int")


def _range(*args: int) -> list[int]:
    for arg in args:
        arguments.require_int(arg, "range argument")
    values = range(*args)
    if len(values) > MAX_RANGE_SIZE:
        raise ScriptRuntimeError(f"range() of {len(values)} elements exceeds the limit of {MAX_RANGE_SIZE}")
    return list(values)


def _sorted(iterable: Any, reverse: bool = False) -> list[Any]:
    return sorted(iterable, reverse=arguments.require_bool(reverse, "reverse"))


def _enumerate(iterable: Any, start: int = 0) -> list[tuple[int, Any]]:
    return list(enumerate(iterable, arguments.require_int(start, "start")))


def _zip(*iterables: Any) -> list[tuple[Any, ...]]:
    return list(zip(*iterables))


def _reversed(iterable: Any) -> list[Any]:
    return list(reversed(list(iterable)))


def _fail(message: Any) -> None:
    raise ScriptRuntimeError(script_str(message))


def _struct(**fields: Any) -> StructValue:
    return StructValue("struct", fields)


def _connection(is_blocked: Any = False, packet_loss_percentage: Any = 0.0):
    return arguments.connection(
        {"is_blocked": is_blocked, "packet_loss_percentage": packet_loss_percentage},
        "Connection",
    )


def helper_builtins() -> dict[str, Builtin]:
    """Builtins available to every module that do not touch the plan."""
    functions = {
        "len": len,
        "str": script_str,
        "int": _to_int,
        "bool": bool,
        "list": lambda iterable=(): list(iterable),
        "dict": lambda *args, **kwargs: dict(*args, **kwargs),
        "range": _range,
        "sorted": _sorted,
        "enumerate": _enumerate,
        "zip": _zip,
        "reversed": _reversed,
        "min": min,
        "max": max,
        "any": any,
        "all": all,
        "fail": _fail,
        "struct": _struct,
        "ServiceConfig": arguments.service_config,
        "PortSpec": arguments.port_spec,
        "Connection": _connection,
    }
    return {name: Builtin(name, func) for name, func in functions.items()}
