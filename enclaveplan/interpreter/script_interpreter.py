"""
ScriptInterpreter - turns a script plus JSON run arguments into a Plan.

Interpretation flow:
1. Parse the run arguments (must be a JSON object)
2. Evaluate the main script's top-level statements, checking for
   cancellation between them
3. If the script defines run(plan, ...), bind the arguments and call it
4. Return the Plan of emitted instructions, or raise one InterpretationError

Modules pulled in with load() / import_module() are resolved through the
module content provider, evaluated at most once per interpretation, and
checked for import cycles.
"""

import json
import logging
import threading
from typing import Any, Optional

from enclaveplan.config import EnclaveConfig
from enclaveplan.errors import (
    InterpretationError,
    ModuleNotFoundInProviderError,
    ScriptPosition,
)
from enclaveplan.module_provider import CachedModuleProvider, InMemoryModuleProvider, ModuleContentProvider
from enclaveplan.schemas import Plan

from .builtins import PlanBuilder, PlanObject, helper_builtins
from .evaluator import (
    Builtin,
    EvaluationState,
    ModuleValue,
    Scope,
    ScriptEvaluator,
    ScriptFunction,
    ScriptRuntimeError,
)

logger = logging.getLogger(__name__)

RUN_FUNCTION = "run"
ARGS_GLOBAL = "ARGS"


class _InterpretationSession:
    """State of one interpretation: builder, module cache and import stack."""

    def __init__(self, provider: ModuleContentProvider, cancel_event: Optional[threading.Event]):
        self.provider = CachedModuleProvider(provider)
        self.state = EvaluationState(cancel_event)
        self.builder = PlanBuilder(self.state, self.provider)
        self.plan_builtins = self.builder.builtins()
        self._base = Scope(variables={**helper_builtins(), **self.plan_builtins})
        self._modules: dict[str, Scope] = {}
        self._loading: list[str] = []

    def new_module_scope(self) -> Scope:
        scope = Scope(parent=self._base)

        def load(module: Any, *symbols: Any, **aliases: Any) -> None:
            self._load(scope, module, *symbols, **aliases)

        scope.set("load", Builtin("load", load))
        scope.set("import_module", Builtin("import_module", self._import_module))
        return scope

    def run_main(self, script: str, locator: str, args: dict[str, Any]) -> None:
        scope = self.new_module_scope()
        scope.set(ARGS_GLOBAL, args)
        evaluator = ScriptEvaluator(locator, scope, self.state)
        self._loading.append(locator)
        try:
            evaluator.run_module(script)
        finally:
            self._loading.pop()

        run = scope.get_own(RUN_FUNCTION)
        if run is None:
            return
        position = ScriptPosition(locator, getattr(run, "lineno", 0))
        if not isinstance(run, ScriptFunction):
            raise InterpretationError(f"'{RUN_FUNCTION}' must be a function", position=position)
        call_args, call_kwargs = self._bind_run_arguments(run, args, position)
        self.state.position = position
        try:
            evaluator.call(run, call_args, call_kwargs)
        except ScriptRuntimeError as e:
            raise InterpretationError(str(e), position=position, cause=e)

    def _bind_run_arguments(
        self,
        run: ScriptFunction,
        args: dict[str, Any],
        position: ScriptPosition,
    ) -> tuple[list[Any], dict[str, Any]]:
        params = run.param_names
        if not params:
            raise InterpretationError(
                f"'{RUN_FUNCTION}' must accept the plan as its first parameter", position=position
            )
        plan = PlanObject(self.plan_builtins)
        rest = params[1:]

        if not rest and not run.has_kwargs:
            if args:
                raise InterpretationError(
                    f"'{RUN_FUNCTION}' takes no arguments but received: {', '.join(sorted(args))}",
                    position=position,
                )
            return [plan], {}
        if rest == ["args"] and not run.has_kwargs:
            return [plan, args], {}

        kwargs: dict[str, Any] = {}
        for key, value in args.items():
            if key not in rest and not run.has_kwargs:
                raise InterpretationError(
                    f"Unknown run argument '{key}'; '{RUN_FUNCTION}' accepts: {', '.join(rest)}",
                    position=position,
                )
            kwargs[key] = value
        missing = [name for name in rest if name not in args and name not in run.defaults]
        if missing:
            raise InterpretationError(
                f"Missing run argument(s): {', '.join(missing)}", position=position
            )
        return [plan], kwargs

    def _evaluate_module(self, locator: str) -> Scope:
        if locator in self._modules:
            return self._modules[locator]
        if locator in self._loading:
            cycle = " -> ".join(self._loading[self._loading.index(locator):] + [locator])
            raise ScriptRuntimeError(f"Cyclic import detected: {cycle}")
        try:
            source = self.provider.resolve(locator)
        except ModuleNotFoundInProviderError as e:
            raise ScriptRuntimeError(f"Cannot load module '{locator}': {e}")

        logger.debug(f"Evaluating module '{locator}'")
        scope = self.new_module_scope()
        self._loading.append(locator)
        try:
            ScriptEvaluator(locator, scope, self.state).run_module(source)
        finally:
            self._loading.pop()
        self._modules[locator] = scope
        return scope

    def _load(self, target: Scope, locator: Any, *symbols: Any, **aliases: Any) -> None:
        if not isinstance(locator, str):
            raise ScriptRuntimeError("load() module locator must be a string")
        module = self._evaluate_module(locator)
        exported = module.exported()
        bindings = {symbol: symbol for symbol in symbols}
        bindings.update(aliases)
        for local_name, symbol in bindings.items():
            if not isinstance(symbol, str):
                raise ScriptRuntimeError("load() symbols must be strings")
            if symbol not in exported:
                raise ScriptRuntimeError(f"Module '{locator}' does not export '{symbol}'")
            target.set(local_name, exported[symbol])

    def _import_module(self, locator: Any) -> ModuleValue:
        if not isinstance(locator, str):
            raise ScriptRuntimeError("import_module() locator must be a string")
        return ModuleValue(locator, self._evaluate_module(locator).exported())


class ScriptInterpreter:
    """
    Interprets scripts into Plans.

    Usage:
        interpreter = ScriptInterpreter(DirectoryModuleProvider("modules"))
        plan = interpreter.interpret(script, '{"count": 2}')

    Interpretation never touches a live enclave or backend.
    """

    def __init__(
        self,
        provider: Optional[ModuleContentProvider] = None,
        config: Optional[EnclaveConfig] = None,
    ):
        """
        Initialize the interpreter.

        Args:
            provider: Resolves load(), import_module() and upload_files() locators
            config: Engine configuration (default package ID)
        """
        self._provider = provider or InMemoryModuleProvider()
        self._config = config or EnclaveConfig()

    def interpret(
        self,
        script: str,
        args_json: str = "{}",
        package_id: Optional[str] = None,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> Plan:
        """
        Interpret a script.

        Args:
            script: Script source
            args_json: JSON object of run arguments
            package_id: Package ID, also the main script's locator
            dry_run: Accepted for interface compatibility; has no effect
            cancel_event: Checked between top-level statements

        Returns:
            The Plan of emitted instructions

        Raises:
            InterpretationError: On the first problem found
        """
        package_id = package_id or self._config.package_id
        args = self.parse_args(args_json)
        session = _InterpretationSession(self._provider, cancel_event)
        session.run_main(script, package_id, args)
        plan = Plan(package_id=package_id, instructions=session.builder.instructions)
        logger.info(f"Interpreted '{package_id}' into {plan.size()} instruction(s)")
        return plan

    @staticmethod
    def parse_args(args_json: Optional[str]) -> dict[str, Any]:
        """Parse run arguments; empty input means no arguments."""
        if args_json is None or not args_json.strip():
            return {}
        try:
            args = json.loads(args_json)
        except json.JSONDecodeError as e:
            raise InterpretationError(f"Run arguments are not valid JSON: {e}", cause=e)
        if not isinstance(args, dict):
            raise InterpretationError(
                f"Run arguments must be a JSON object, got {type(args).__name__}"
            )
        return args
