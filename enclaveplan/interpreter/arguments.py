"""
Local argument validation shared by script builtins and the bulk compiler.

These checks cover type and shape only (is the port a number in range,
is the command a list of strings); nothing here looks at the backend or
at other instructions. Both entry points build instructions through the
same functions so a script and an equivalent bulk document produce equal
plans.
"""

from typing import Any, Optional, Union

from enclaveplan.network import (
    Connection,
    PartitionConnectionID,
    PortSpec,
    ServiceIDSet,
    TransportProtocol,
)
from enclaveplan.schemas import ServiceConfig


class ArgumentError(ValueError):
    """An instruction argument has the wrong type or shape."""
    pass


def require_str(value: Any, name: str, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        raise ArgumentError(f"'{name}' must be a string, got {type(value).__name__}")
    if not allow_empty and not value.strip():
        raise ArgumentError(f"'{name}' cannot be empty")
    return value


def optional_str(value: Any, name: str) -> Optional[str]:
    if value is None:
        return None
    return require_str(value, name)


def require_int(value: Any, name: str, minimum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ArgumentError(f"'{name}' must be an integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        raise ArgumentError(f"'{name}' must be >= {minimum}, got {value}")
    return value


def require_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ArgumentError(f"'{name}' must be a boolean, got {type(value).__name__}")
    return value


def str_list(value: Any, name: str) -> tuple[str, ...]:
    """Accept a list or tuple of strings; None means empty."""
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise ArgumentError(f"'{name}' must be a list of strings, got {type(value).__name__}")
    for item in value:
        if not isinstance(item, str):
            raise ArgumentError(f"'{name}' must contain only strings, got {type(item).__name__}")
    return tuple(value)


def str_dict(value: Any, name: str) -> dict[str, str]:
    """Accept a string-to-string dict; None means empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ArgumentError(f"'{name}' must be a dict, got {type(value).__name__}")
    for key, item in value.items():
        if not isinstance(key, str) or not isinstance(item, str):
            raise ArgumentError(f"'{name}' must map strings to strings")
    return dict(value)


def service_id(value: Any) -> str:
    return require_str(value, "service_id")


def port_spec(
    number: Any,
    transport_protocol: Any = "TCP",
    application_protocol: Any = None,
) -> PortSpec:
    number = require_int(number, "number")
    if not 1 <= number <= 65535:
        raise ArgumentError(f"Port number must be between 1 and 65535, got {number}")
    try:
        protocol = TransportProtocol.from_string(require_str(transport_protocol, "transport_protocol"))
    except ValueError as e:
        raise ArgumentError(str(e))
    return PortSpec(
        number=number,
        transport_protocol=protocol,
        application_protocol=optional_str(application_protocol, "application_protocol"),
    )


def port_map(value: Any) -> dict[str, PortSpec]:
    """Declared ports by port ID; an omitted value and {} are the same."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ArgumentError(f"'ports' must be a dict of port ID to PortSpec, got {type(value).__name__}")
    result: dict[str, PortSpec] = {}
    for port_id, spec in value.items():
        require_str(port_id, "port ID")
        if not isinstance(spec, PortSpec):
            raise ArgumentError(f"Port '{port_id}' must be a PortSpec, got {type(spec).__name__}")
        result[port_id] = spec
    return result


def service_config(
    image: Any,
    ports: Any = None,
    env_vars: Any = None,
    entrypoint: Any = None,
    cmd: Any = None,
    files: Any = None,
    partition_id: Any = None,
) -> ServiceConfig:
    """Build a ServiceConfig after checking every field."""
    return ServiceConfig(
        image=require_str(image, "image"),
        ports=port_map(ports),
        env_vars=str_dict(env_vars, "env_vars"),
        entrypoint=str_list(entrypoint, "entrypoint"),
        cmd=str_list(cmd, "cmd"),
        files=str_dict(files, "files"),
        partition_id=optional_str(partition_id, "partition_id"),
    )


def connection(value: Any, name: str) -> Connection:
    """Accept a Connection, or a dict with is_blocked / packet_loss_percentage."""
    if isinstance(value, Connection):
        return value
    if not isinstance(value, dict):
        raise ArgumentError(f"'{name}' must be a Connection, got {type(value).__name__}")
    unknown = set(value) - {"is_blocked", "packet_loss_percentage"}
    if unknown:
        raise ArgumentError(f"'{name}' has unknown fields: {', '.join(sorted(unknown))}")
    is_blocked = require_bool(value.get("is_blocked", False), f"{name}.is_blocked")
    loss = value.get("packet_loss_percentage", 0.0)
    if isinstance(loss, bool) or not isinstance(loss, (int, float)):
        raise ArgumentError(f"'{name}.packet_loss_percentage' must be a number")
    if is_blocked:
        return Connection.blocked()
    try:
        return Connection.with_packet_loss(loss)
    except ValueError as e:
        raise ArgumentError(str(e))


def partition_services(value: Any) -> dict[str, ServiceIDSet]:
    """Partition ID -> member service IDs (list, tuple or ServiceIDSet)."""
    if not isinstance(value, dict) or not value:
        raise ArgumentError("'partitions' must be a non-empty dict of partition ID to service IDs")
    result: dict[str, ServiceIDSet] = {}
    for partition_id, members in value.items():
        require_str(partition_id, "partition ID")
        if isinstance(members, ServiceIDSet):
            result[partition_id] = members.copy()
            continue
        ids = str_list(members, f"partitions['{partition_id}']")
        for sid in ids:
            service_id(sid)
        result[partition_id] = ServiceIDSet(ids)
    return result


def partition_connections(value: Any) -> dict[PartitionConnectionID, Connection]:
    """(partition A, partition B) -> Connection; each unordered pair at most once."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ArgumentError("'connections' must be a dict of partition pair to Connection")
    result: dict[PartitionConnectionID, Connection] = {}
    for key, conn in value.items():
        if not isinstance(key, (list, tuple)) or len(key) != 2:
            raise ArgumentError(f"Connection key must be a pair of partition IDs, got {key!r}")
        first = require_str(key[0], "partition ID")
        second = require_str(key[1], "partition ID")
        if first == second:
            raise ArgumentError(f"Cannot define a connection from partition '{first}' to itself")
        conn_id = PartitionConnectionID.of(first, second)
        if conn_id in result:
            raise ArgumentError(
                f"Connection between partitions '{conn_id.lesser}' and '{conn_id.greater}' is defined twice"
            )
        result[conn_id] = connection(conn, f"connections[{first}, {second}]")
    return result


def acceptable_codes(value: Any) -> tuple[int, ...]:
    if value is None:
        return (0,)
    if not isinstance(value, (list, tuple)) or not value:
        raise ArgumentError("'acceptable_codes' must be a non-empty list of integers")
    return tuple(require_int(code, "acceptable_codes") for code in value)


def wait_port(value: Any) -> Union[int, str]:
    """A port number, or the ID of a declared port."""
    if isinstance(value, str):
        return require_str(value, "port")
    number = require_int(value, "port")
    if not 1 <= number <= 65535:
        raise ArgumentError(f"Port number must be between 1 and 65535, got {number}")
    return number


REQUEST_METHODS = ("GET", "POST")


def request_method(value: Any) -> str:
    method = require_str(value, "method").upper()
    if method not in REQUEST_METHODS:
        raise ArgumentError(f"'method' must be one of {', '.join(REQUEST_METHODS)}, got '{value}'")
    return method


def extract_paths(value: Any) -> dict[str, str]:
    """Name -> field path such as ".data.items.0.id"; None means nothing to extract."""
    paths = str_dict(value, "extract")
    for name, path in paths.items():
        if not name or "." in name or "{" in name or "}" in name:
            raise ArgumentError(f"Extract name '{name}' must be non-empty without dots or braces")
        if path != "." and (not path.startswith(".") or "" in path[1:].split(".")):
            raise ArgumentError(
                f"Extract path '{path}' for '{name}' must look like '.field' or '.field.0.sub'"
            )
    return paths
