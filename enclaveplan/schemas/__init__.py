"""
enclaveplan.schemas - Schema definitions for the plan engine.

This module defines the core data structures for enclaveplan:

script -> Plan (Instructions) -> InstructionOutcome -> PlanExecutionResult

Lifecycle:
1. Instruction: one immutable, argument-validated operation against an enclave
2. Plan: the ordered instruction sequence interpretation produces
3. InstructionOutcome: the result of executing one instruction
4. PlanExecutionResult: interpretation/validation/execution errors plus output log
"""

from .instruction_type import InstructionType
from .instructions import (
    AddService,
    ExecCommand,
    Instruction,
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
from .plan import Plan
from .result import (
    InstructionOutcome,
    InstructionStatus,
    PlanExecutionResult,
    RunStatus,
)

__all__ = [
    # Instruction kinds
    "InstructionType",
    # Instructions
    "Instruction",
    "ServiceConfig",
    "RegisterService",
    "StartService",
    "AddService",
    "RemoveService",
    "Repartition",
    "ExecCommand",
    "WaitForHttpEndpoint",
    "StoreServiceFiles",
    "Request",
    "UploadFiles",
    "RunTask",
    "Print",
    # Plan
    "Plan",
    # Results
    "InstructionOutcome",
    "InstructionStatus",
    "PlanExecutionResult",
    "RunStatus",
]
