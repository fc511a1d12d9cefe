"""
Handlers module for enclaveplan instruction kinds.

Every instruction kind has one handler implementing both of its phases:
- validate: preconditions against the validator's simulated environment
- execute: mutation of the live ServiceNetwork plus the backend side effect

Usage:
    from enclaveplan.handlers import HandlerRegistry

    registry = HandlerRegistry.create_default()
    handler = registry.handler_for(instruction)
"""

from enclaveplan.handlers.base import ExecutionContext, Handler
from enclaveplan.handlers.registry import HandlerRegistry
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

__all__ = [
    "ExecutionContext",
    "Handler",
    "HandlerRegistry",
    "RegisterServiceHandler",
    "StartServiceHandler",
    "AddServiceHandler",
    "RemoveServiceHandler",
    "RepartitionHandler",
    "ExecCommandHandler",
    "WaitForHttpEndpointHandler",
    "RequestHandler",
    "StoreServiceFilesHandler",
    "UploadFilesHandler",
    "RunTaskHandler",
    "PrintHandler",
]
