"""
EnclavePlanEngine - the interpret -> validate -> execute pipeline.

Run flow:
1. Interpret the script (or compile the bulk document) into a Plan;
   an InterpretationError stops the run
2. Validate the whole plan against the enclave's current state; any
   ValidationError stops the run before anything executes
3. Execute the plan; the first ExecutionError aborts it

Every run returns a PlanExecutionResult; run-level errors are reported in
it, never raised.
"""

import logging
import threading
import time
from typing import Any, Callable, Optional, Union

from enclaveplan.backend import ContainerBackend, NoOpBackend
from enclaveplan.config import EnclaveConfig
from enclaveplan.errors import InterpretationError
from enclaveplan.executor import Executor
from enclaveplan.handlers import HandlerRegistry
from enclaveplan.interpreter import BulkCommandCompiler, ScriptInterpreter
from enclaveplan.module_provider import (
    DirectoryModuleProvider,
    InMemoryModuleProvider,
    ModuleContentProvider,
)
from enclaveplan.network import ServiceNetwork
from enclaveplan.plan_description import PlanDescription, describe_plan
from enclaveplan.schemas import Plan, PlanExecutionResult
from enclaveplan.validator import PlanValidator, ValidatorEnvironment

logger = logging.getLogger(__name__)


class EnclavePlanEngine:
    """
    Runs scripts and bulk documents against one enclave.

    Usage:
        engine = EnclavePlanEngine(backend=my_backend, config=load_config())
        result = engine.run(script, '{"replicas": 2}')
        if not result.success:
            ...

        preview = engine.run(script, dry_run=True)   # no backend calls
    """

    def __init__(
        self,
        network: Optional[ServiceNetwork] = None,
        backend: Optional[ContainerBackend] = None,
        provider: Optional[ModuleContentProvider] = None,
        config: Optional[EnclaveConfig] = None,
        handlers: Optional[HandlerRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the engine.

        Args:
            network: The enclave's service network (built from config if None)
            backend: Container backend (NoOpBackend if None)
            provider: Module content provider (config.modules_dir, or empty)
            config: Engine configuration (defaults if None)
            handlers: Handler registry (default handlers if None)
            sleep: Sleep function used by wait instructions
        """
        self._config = config or EnclaveConfig()
        self._network = network or ServiceNetwork(
            subnet=self._config.subnet,
            partitioning_enabled=self._config.partitioning_enabled,
        )
        self._backend = backend or NoOpBackend()
        self._provider = provider or self._default_provider(self._config)
        handlers = handlers or HandlerRegistry.create_default()

        self._interpreter = ScriptInterpreter(self._provider, self._config)
        self._bulk_compiler = BulkCommandCompiler(self._config)
        self._validator = PlanValidator(self._backend.pull_image, self._config, handlers)
        # Dry runs never reach the backend, image checks included
        self._dry_run_validator = PlanValidator(None, self._config, handlers)
        self._executor = Executor(self._network, self._backend, handlers, sleep=sleep)

    @staticmethod
    def _default_provider(config: EnclaveConfig) -> ModuleContentProvider:
        modules_dir = config.get_modules_dir()
        if modules_dir is not None:
            return DirectoryModuleProvider(modules_dir)
        return InMemoryModuleProvider()

    @property
    def network(self) -> ServiceNetwork:
        return self._network

    @property
    def config(self) -> EnclaveConfig:
        return self._config

    def interpret(
        self,
        script: str,
        args_json: str = "{}",
        package_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Plan:
        """
        Interpret a script without validating or executing it.

        Raises:
            InterpretationError: If the script cannot be interpreted
        """
        return self._interpreter.interpret(
            script, args_json, package_id=package_id, cancel_event=cancel_event
        )

    def describe(
        self,
        script: str,
        args_json: str = "{}",
        package_id: Optional[str] = None,
    ) -> PlanDescription:
        """
        Describe what a script would create.

        Raises:
            InterpretationError: If the script cannot be interpreted
        """
        return describe_plan(self.interpret(script, args_json, package_id=package_id))

    def run(
        self,
        script: str,
        args_json: str = "{}",
        dry_run: bool = False,
        package_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PlanExecutionResult:
        """
        Interpret, validate and execute a script.

        Args:
            script: Script source
            args_json: JSON object of run arguments
            dry_run: Apply model mutations only, with no backend calls
            package_id: Package ID (config.package_id if None)
            cancel_event: Cancellation signal, checked between steps

        Returns:
            PlanExecutionResult
        """
        package_id = package_id or self._config.package_id
        try:
            plan = self._interpreter.interpret(
                script, args_json, package_id=package_id, dry_run=dry_run, cancel_event=cancel_event
            )
        except InterpretationError as e:
            logger.warning(f"Interpretation of '{package_id}' failed: {e}")
            return PlanExecutionResult(package_id=package_id, interpretation_error=e, dry_run=dry_run)
        return self.run_plan(plan, dry_run=dry_run, cancel_event=cancel_event)

    def run_bulk(
        self,
        document: Union[str, dict[str, Any]],
        dry_run: bool = False,
        package_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PlanExecutionResult:
        """Compile, validate and execute a bulk-instruction document."""
        package_id = package_id or self._config.package_id
        try:
            plan = self._bulk_compiler.compile(document, package_id=package_id)
        except InterpretationError as e:
            logger.warning(f"Bulk document for '{package_id}' is invalid: {e}")
            return PlanExecutionResult(package_id=package_id, interpretation_error=e, dry_run=dry_run)
        return self.run_plan(plan, dry_run=dry_run, cancel_event=cancel_event)

    def run_plan(
        self,
        plan: Plan,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> PlanExecutionResult:
        """Validate and execute an already interpreted plan."""
        validator = self._dry_run_validator if dry_run else self._validator
        errors = validator.validate(
            plan,
            cancel_event=cancel_event,
            environment=ValidatorEnvironment.from_network(self._network),
        )
        if errors:
            logger.warning(f"Plan '{plan.package_id}' failed validation with {len(errors)} error(s)")
            return PlanExecutionResult(
                package_id=plan.package_id,
                validation_errors=tuple(errors),
                dry_run=dry_run,
                instruction_count=plan.size(),
            )

        report = self._executor.execute(plan, dry_run=dry_run, cancel_event=cancel_event)
        return PlanExecutionResult(
            package_id=plan.package_id,
            execution_error=report.error,
            output=tuple(report.output),
            outcomes=tuple(report.outcomes),
            run_status=report.run_status,
            dry_run=dry_run,
            instruction_count=plan.size(),
        )
