"""
InstructionType enum - the closed set of instruction kinds.

Values are the names used by the bulk-instruction JSON format; each kind
also has the name of the script builtin that emits it.
"""

from enum import Enum


class InstructionType(str, Enum):
    """
    Enumeration of all instruction kinds an enclave plan can contain.

    Service lifecycle:
    - REGISTER_SERVICE, START_SERVICE, ADD_SERVICE (register + start), REMOVE_SERVICE
    Network:
    - REPARTITION
    Service interaction:
    - EXEC_COMMAND, WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY, STORE_SERVICE_FILES,
      REQUEST (HTTP request whose response later instructions can use)
    Files and tasks:
    - UPLOAD_FILES, RUN_TASK
    Output:
    - PRINT
    """
    REGISTER_SERVICE = "REGISTER_SERVICE"
    START_SERVICE = "START_SERVICE"
    ADD_SERVICE = "ADD_SERVICE"
    REMOVE_SERVICE = "REMOVE_SERVICE"
    REPARTITION = "REPARTITION"
    EXEC_COMMAND = "EXEC_COMMAND"
    WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY = "WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY"
    STORE_SERVICE_FILES = "STORE_SERVICE_FILES"
    REQUEST = "REQUEST"
    UPLOAD_FILES = "UPLOAD_FILES"
    RUN_TASK = "RUN_TASK"
    PRINT = "PRINT"

    @property
    def builtin_name(self) -> str:
        """Name of the script builtin that emits this instruction."""
        return _BUILTIN_NAMES[self]

    @classmethod
    def from_string(cls, value: str) -> "InstructionType":
        """Parse an InstructionType from its bulk-format name."""
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Unknown instruction type: {value}")


_BUILTIN_NAMES = {
    InstructionType.REGISTER_SERVICE: "register_service",
    InstructionType.START_SERVICE: "start_service",
    InstructionType.ADD_SERVICE: "add_service",
    InstructionType.REMOVE_SERVICE: "remove_service",
    InstructionType.REPARTITION: "repartition",
    InstructionType.EXEC_COMMAND: "exec",
    InstructionType.WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY: "wait",
    InstructionType.STORE_SERVICE_FILES: "store_service_files",
    InstructionType.REQUEST: "request",
    InstructionType.UPLOAD_FILES: "upload_files",
    InstructionType.RUN_TASK: "run_sh",
    InstructionType.PRINT: "print",
}
