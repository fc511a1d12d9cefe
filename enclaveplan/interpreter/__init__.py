"""
Interpreter module for enclaveplan.

Turns a script (or a legacy bulk JSON document) into a Plan:
- ScriptInterpreter: script + JSON run arguments -> Plan
- BulkCommandCompiler: bulk-instruction JSON -> Plan

Usage:
    from enclaveplan.interpreter import ScriptInterpreter

    plan = ScriptInterpreter(provider).interpret(script, '{"replicas": 2}')
"""

from enclaveplan.interpreter.arguments import ArgumentError
from enclaveplan.interpreter.builtins import DEFAULT_TASK_IMAGE, PlanBuilder
from enclaveplan.interpreter.bulk import BulkCommandCompiler
from enclaveplan.interpreter.evaluator import parse_script
from enclaveplan.interpreter.script_interpreter import ScriptInterpreter

__all__ = [
    "ArgumentError",
    "BulkCommandCompiler",
    "DEFAULT_TASK_IMAGE",
    "PlanBuilder",
    "ScriptInterpreter",
    "parse_script",
]
