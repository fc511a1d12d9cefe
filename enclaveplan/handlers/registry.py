"""
Handler Registry for dispatching instructions to their handlers.

The registry maps each InstructionType to the Handler implementing it,
providing the one dispatch table the Validator and Executor both use.
Dispatch is by the instruction's `kind`, never by its concrete class.
"""

from enclaveplan.handlers.base import Handler
from enclaveplan.schemas import Instruction, InstructionType


class HandlerRegistry:
    """
    Registry for handler dispatch by instruction kind.

    Usage:
        registry = HandlerRegistry.create_default()

        # Look up the handler of an instruction
        handler = registry.handler_for(instruction)

        # Or override one kind, e.g. in tests
        registry.register(InstructionType.EXEC_COMMAND, MyExecHandler())
    """

    def __init__(self) -> None:
        """Initialize an empty handler registry."""
        self._handlers: dict[InstructionType, Handler] = {}

    def register(self, kind: InstructionType, handler: Handler) -> None:
        """
        Register a handler for an instruction kind.

        Args:
            kind: Instruction kind
            handler: Handler instance for this kind
        """
        self._handlers[kind] = handler

    def get(self, kind: InstructionType) -> Handler:
        """
        Get handler for an instruction kind.

        Raises:
            KeyError: If no handler registered for this kind
        """
        if kind not in self._handlers:
            registered = [k.value for k in self._handlers]
            raise KeyError(
                f"No handler registered for instruction kind: {kind.value}. "
                f"Registered: {registered}"
            )
        return self._handlers[kind]

    def has(self, kind: InstructionType) -> bool:
        return kind in self._handlers

    def list_kinds(self) -> list[InstructionType]:
        return list(self._handlers.keys())

    def handler_for(self, instruction: Instruction) -> Handler:
        """Get the handler of an instruction, by its kind."""
        return self.get(instruction.kind)

    @classmethod
    def create_default(cls) -> "HandlerRegistry":
        """
        Create a registry with a handler for every instruction kind.

        Returns:
            Configured HandlerRegistry
        """
        from enclaveplan.handlers.artifacts import StoreServiceFilesHandler, UploadFilesHandler
        from enclaveplan.handlers.commands import (
            ExecCommandHandler,
            PrintHandler,
            RequestHandler,
            RunTaskHandler,
            WaitForHttpEndpointHandler,
        )
        from enclaveplan.handlers.partitions import RepartitionHandler
        from enclaveplan.handlers.services import (
            AddServiceHandler,
            RegisterServiceHandler,
            RemoveServiceHandler,
            StartServiceHandler,
        )

        registry = cls()
        registry.register(InstructionType.REGISTER_SERVICE, RegisterServiceHandler())
        registry.register(InstructionType.START_SERVICE, StartServiceHandler())
        registry.register(InstructionType.ADD_SERVICE, AddServiceHandler())
        registry.register(InstructionType.REMOVE_SERVICE, RemoveServiceHandler())
        registry.register(InstructionType.REPARTITION, RepartitionHandler())
        registry.register(InstructionType.EXEC_COMMAND, ExecCommandHandler())
        registry.register(
            InstructionType.WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY,
            WaitForHttpEndpointHandler(),
        )
        registry.register(InstructionType.STORE_SERVICE_FILES, StoreServiceFilesHandler())
        registry.register(InstructionType.UPLOAD_FILES, UploadFilesHandler())
        registry.register(InstructionType.REQUEST, RequestHandler())
        registry.register(InstructionType.RUN_TASK, RunTaskHandler())
        registry.register(InstructionType.PRINT, PrintHandler())
        return registry
