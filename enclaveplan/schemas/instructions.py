"""
Instruction schemas - the tagged variants a Plan is made of.

Each instruction kind is a frozen dataclass carrying only the fields
relevant to it. Instructions are built by the interpreter (from a script)
or the bulk compiler (from legacy JSON) after local argument validation,
and are never mutated afterwards.

The `position` field records where in the script the instruction was
emitted; it is excluded from equality so that a script and an equivalent
bulk document produce equal plans.
"""

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Optional, Union

from enclaveplan.errors import ScriptPosition
from enclaveplan.network import (
    Connection,
    PartitionConnectionID,
    PortSpec,
    ServiceIDSet,
)

from .instruction_type import InstructionType


def _canonical_value(value: Any) -> str:
    """Render a field value the way a script would spell it."""
    if isinstance(value, str):
        return '"' + value.replace('"', '\\"') + '"'
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    if isinstance(value, ServiceIDSet):
        return "[" + ", ".join(_canonical_value(v) for v in value) + "]"
    if isinstance(value, PartitionConnectionID):
        return f'("{value.lesser}", "{value.greater}")'
    if isinstance(value, dict):
        items = ", ".join(
            f"{_canonical_value(k)}: {_canonical_value(v)}" for k, v in value.items()
        )
        return "{" + items + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_canonical_value(v) for v in value) + "]"
    if hasattr(value, "__dataclass_fields__"):
        args = ", ".join(
            f"{f.name}={_canonical_value(getattr(value, f.name))}"
            for f in fields(value)
            if getattr(value, f.name) not in (None, {}, (), "")
        )
        return f"{type(value).__name__}({args})"
    if hasattr(value, "value"):
        return _canonical_value(value.value)
    return repr(value)


def _plain(value: Any) -> Any:
    """Convert a field value into JSON-compatible data."""
    if isinstance(value, ServiceIDSet):
        return value.elems()
    if isinstance(value, bytes):
        return {"size_bytes": len(value)}
    if isinstance(value, PartitionConnectionID):
        return [value.lesser, value.greater]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        if value and isinstance(next(iter(value)), PartitionConnectionID):
            return [
                {"partitions": [k.lesser, k.greater], "connection": _plain(v)}
                for k, v in value.items()
            ]
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class ServiceConfig:
    """
    How to run a service's container.

    Attributes:
        image: Container image name
        ports: Declared ports by port ID (an omitted field and {} are equivalent)
        env_vars: Environment variables
        entrypoint: Entrypoint override
        cmd: Command arguments
        files: Mount path -> files artifact name
        partition_id: Partition (subnetwork) to place the service in
    """
    image: str
    ports: dict[str, PortSpec] = field(default_factory=dict)
    env_vars: dict[str, str] = field(default_factory=dict)
    entrypoint: tuple[str, ...] = ()
    cmd: tuple[str, ...] = ()
    files: dict[str, str] = field(default_factory=dict)
    partition_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "image": self.image,
            "ports": {pid: spec.to_dict() for pid, spec in self.ports.items()},
        }
        if self.env_vars:
            result["env_vars"] = dict(self.env_vars)
        if self.entrypoint:
            result["entrypoint"] = list(self.entrypoint)
        if self.cmd:
            result["cmd"] = list(self.cmd)
        if self.files:
            result["files"] = dict(self.files)
        if self.partition_id:
            result["partition_id"] = self.partition_id
        return result


@dataclass(frozen=True)
class Instruction:
    """
    Base class of every instruction variant.

    Subclasses set the class-level `kind`; the executor and validator
    dispatch on it through the handler registry.
    """
    kind: ClassVar[InstructionType]

    position: Optional[ScriptPosition] = field(default=None, compare=False, kw_only=True)

    def _arg_fields(self) -> list[str]:
        return [f.name for f in fields(self) if f.name != "position"]

    def canonical(self) -> str:
        """Script-like rendering, e.g. add_service(service_id="db", ...)."""
        args = ", ".join(
            f"{name}={_canonical_value(getattr(self, name))}" for name in self._arg_fields()
        )
        return f"{self.kind.builtin_name}({args})"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "type": self.kind.value,
            "args": {name: _plain(getattr(self, name)) for name in self._arg_fields()},
        }
        if self.position is not None:
            result["position"] = {"locator": self.position.locator, "line": self.position.line}
        return result

    def __str__(self) -> str:
        return self.canonical()


@dataclass(frozen=True)
class RegisterService(Instruction):
    kind: ClassVar[InstructionType] = InstructionType.REGISTER_SERVICE

    service_id: str
    partition_id: Optional[str] = None


@dataclass(frozen=True)
class StartService(Instruction):
    kind: ClassVar[InstructionType] = InstructionType.START_SERVICE

    service_id: str
    config: ServiceConfig


@dataclass(frozen=True)
class AddService(Instruction):
    """Register and start a service as one atomic instruction."""
    kind: ClassVar[InstructionType] = InstructionType.ADD_SERVICE

    service_id: str
    config: ServiceConfig


@dataclass(frozen=True)
class RemoveService(Instruction):
    kind: ClassVar[InstructionType] = InstructionType.REMOVE_SERVICE

    service_id: str


@dataclass(frozen=True)
class Repartition(Instruction):
    """
    Replace the partition topology.

    Attributes:
        partition_services: Partition ID -> member services
        partition_connections: Pairwise connection overrides
        default_connection: Connection for every pair not overridden
    """
    kind: ClassVar[InstructionType] = InstructionType.REPARTITION

    partition_services: dict[str, ServiceIDSet]
    partition_connections: dict[PartitionConnectionID, Connection] = field(default_factory=dict)
    default_connection: Connection = field(default_factory=Connection.unblocked)


@dataclass(frozen=True)
class ExecCommand(Instruction):
    kind: ClassVar[InstructionType] = InstructionType.EXEC_COMMAND

    service_id: str
    command: tuple[str, ...]
    acceptable_codes: tuple[int, ...] = (0,)


@dataclass(frozen=True)
class WaitForHttpEndpoint(Instruction):
    """
    Poll an HTTP GET endpoint of a service until it answers 200.

    `port` is either a declared port ID (str) or a port number (int).
    """
    kind: ClassVar[InstructionType] = InstructionType.WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY

    service_id: str
    port: Union[int, str]
    path: str = ""
    initial_delay_milliseconds: int = 0
    retries: int = 0
    retries_delay_milliseconds: int = 0
    body_text: str = ""


@dataclass(frozen=True)
class StoreServiceFiles(Instruction):
    """Copy a path out of a service's container into a named files artifact."""
    kind: ClassVar[InstructionType] = InstructionType.STORE_SERVICE_FILES

    service_id: str
    src: str
    artifact_name: str


@dataclass(frozen=True)
class Request(Instruction):
    """
    Send an HTTP request to a started service and keep the response.

    The response is stored under `result_key` for the rest of the run;
    later instructions refer to its status code, body and extracted
    fields through value placeholders.

    Attributes:
        service_id: Target service
        port_id: ID of a port the service declares
        endpoint: Request path, e.g. "/health"
        method: GET or POST
        body: Request body (POST only)
        content_type: Content-Type of the body (POST only)
        extract: Name -> field path into a JSON body, e.g. {"id": ".data.id"}
        result_key: Key of the stored response
    """
    kind: ClassVar[InstructionType] = InstructionType.REQUEST

    service_id: str
    port_id: str
    endpoint: str
    method: str = "GET"
    body: str = ""
    content_type: str = ""
    extract: dict[str, str] = field(default_factory=dict)
    result_key: str = ""


@dataclass(frozen=True)
class UploadFiles(Instruction):
    """Store module content, resolved at interpretation time, as a files artifact."""
    kind: ClassVar[InstructionType] = InstructionType.UPLOAD_FILES

    src: str
    artifact_name: str
    content: bytes = field(default=b"", repr=False)


@dataclass(frozen=True)
class RunTask(Instruction):
    """
    Run a one-off shell command in a throwaway container.

    Attributes:
        name: Task name, used in output and artifact naming
        image: Container image
        command: Shell command run via `sh -c`
        env_vars: Environment variables
        files: Mount path -> files artifact name
        store: Files artifact name -> path to copy out after the command
        acceptable_codes: Exit codes treated as success
    """
    kind: ClassVar[InstructionType] = InstructionType.RUN_TASK

    name: str
    image: str
    command: str
    env_vars: dict[str, str] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    store: dict[str, str] = field(default_factory=dict)
    acceptable_codes: tuple[int, ...] = (0,)


@dataclass(frozen=True)
class Print(Instruction):
    kind: ClassVar[InstructionType] = InstructionType.PRINT

    message: str
