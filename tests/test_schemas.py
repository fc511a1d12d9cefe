"""Tests for enclaveplan.schemas module.

Tests the Instruction -> Plan -> InstructionOutcome -> PlanExecutionResult
shapes, their canonical renderings and their serialization.
"""

from datetime import datetime, timedelta, timezone

import pytest

from enclaveplan.errors import (
    ExecutionError,
    InterpretationError,
    ScriptPosition,
    ValidationError,
)
from enclaveplan.network import (
    Connection,
    PartitionConnectionID,
    PortSpec,
    ServiceIDSet,
)
from enclaveplan.placeholders import (
    ip_placeholder,
    referenced_services,
    referenced_values,
    resolve_ip_placeholders,
    resolve_value_placeholders,
    value_placeholder,
)
from enclaveplan.schemas import (
    AddService,
    ExecCommand,
    InstructionOutcome,
    InstructionStatus,
    InstructionType,
    Plan,
    PlanExecutionResult,
    Print,
    RegisterService,
    Repartition,
    RunStatus,
    ServiceConfig,
    UploadFiles,
)


# =============================================================================
# INSTRUCTION TYPE TESTS
# =============================================================================


class TestInstructionType:
    """Tests for InstructionType enum."""

    def test_from_string(self):
        kind = InstructionType.from_string("WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY")
        assert kind == InstructionType.WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY
        assert kind.builtin_name == "wait"

    def test_from_string_unknown(self):
        with pytest.raises(ValueError, match="Unknown instruction type: NOPE"):
            InstructionType.from_string("NOPE")

    def test_every_kind_has_builtin_name(self):
        names = [kind.builtin_name for kind in InstructionType]
        assert len(set(names)) == len(InstructionType)
        assert InstructionType.RUN_TASK.builtin_name == "run_sh"
        assert InstructionType.EXEC_COMMAND.builtin_name == "exec"


# =============================================================================
# INSTRUCTION TESTS
# =============================================================================


class TestInstructions:
    """Tests for instruction variants."""

    def test_canonical_rendering(self):
        instruction = ExecCommand(service_id="db", command=("psql", "-c", "select 1"))

        assert instruction.canonical() == (
            'exec(service_id="db", command=["psql", "-c", "select 1"], acceptable_codes=[0])'
        )
        assert str(instruction) == instruction.canonical()

    def test_canonical_nested_config(self):
        instruction = AddService(
            service_id="web",
            config=ServiceConfig(image="nginx", ports={"http": PortSpec(80)}),
        )

        rendered = instruction.canonical()
        assert rendered.startswith('add_service(service_id="web", config=ServiceConfig(image="nginx"')
        assert "PortSpec(number=80" in rendered

    def test_position_ignored_by_equality(self):
        a = RegisterService(service_id="db", position=ScriptPosition("main.star", 3))
        b = RegisterService(service_id="db", position=ScriptPosition("bulk.json", 1))
        assert a == b

    def test_kind_is_class_level(self):
        assert Print(message="x").kind == InstructionType.PRINT

    def test_to_dict_includes_position(self):
        instruction = RegisterService(
            service_id="db", partition_id="back", position=ScriptPosition("main.star", 2)
        )

        assert instruction.to_dict() == {
            "type": "REGISTER_SERVICE",
            "args": {"service_id": "db", "partition_id": "back"},
            "position": {"locator": "main.star", "line": 2},
        }

    def test_repartition_to_dict(self):
        instruction = Repartition(
            partition_services={"p1": ServiceIDSet(["b", "a"])},
            partition_connections={PartitionConnectionID.of("p1", "default"): Connection.with_packet_loss(25)},
            default_connection=Connection.blocked(),
        )

        args = instruction.to_dict()["args"]
        assert args["partition_services"] == {"p1": ["a", "b"]}
        assert args["partition_connections"] == [
            {"partitions": ["default", "p1"], "connection": {"is_blocked": False, "packet_loss_percentage": 25}},
        ]
        assert args["default_connection"] == {"is_blocked": True}

    def test_upload_content_not_serialized(self):
        instruction = UploadFiles(src="static/app.conf", artifact_name="conf", content=b"12345")
        assert instruction.to_dict()["args"]["content"] == {"size_bytes": 5}
        assert "<5 bytes>" in instruction.canonical()


# =============================================================================
# PLAN TESTS
# =============================================================================


class TestPlan:
    """Tests for Plan."""

    @pytest.fixture
    def plan(self) -> Plan:
        return Plan(
            package_id="main",
            instructions=(RegisterService(service_id="db"), Print(message="done")),
        )

    def test_get_is_one_based(self, plan):
        assert plan.get(1) == RegisterService(service_id="db")
        assert plan.get(2) == Print(message="done")

    @pytest.mark.parametrize("index", [0, 3, -1])
    def test_get_out_of_range(self, plan, index):
        with pytest.raises(IndexError):
            plan.get(index)

    def test_size_and_iteration(self, plan):
        assert plan.size() == len(plan) == 2
        assert [i.kind for i in plan] == [InstructionType.REGISTER_SERVICE, InstructionType.PRINT]

    def test_to_dict_numbers_instructions(self, plan):
        data = plan.to_dict()
        assert data["package_id"] == "main"
        assert [i["index"] for i in data["instructions"]] == [1, 2]


# =============================================================================
# RESULT TESTS
# =============================================================================


class TestInstructionOutcome:
    def test_duration(self):
        started = datetime(2025, 1, 1, tzinfo=timezone.utc)
        outcome = InstructionOutcome(
            index=1,
            kind="PRINT",
            status=InstructionStatus.SUCCEEDED,
            started_at=started,
            completed_at=started + timedelta(milliseconds=250),
        )
        assert outcome.duration_ms == 250
        assert outcome.to_dict()["status"] == "succeeded"

    def test_duration_unknown(self):
        outcome = InstructionOutcome(index=1, kind="PRINT", status=InstructionStatus.FAILED)
        assert outcome.duration_ms is None


class TestPlanExecutionResult:
    """Tests for PlanExecutionResult success and serialization."""

    def test_success_requires_completion(self):
        assert PlanExecutionResult(package_id="p", run_status=RunStatus.COMPLETED).success
        assert not PlanExecutionResult(package_id="p").success

    def test_interpretation_failure(self):
        error = InterpretationError("bad syntax", position=ScriptPosition("main.star", 4))
        result = PlanExecutionResult(package_id="p", interpretation_error=error)

        data = result.to_dict()
        assert data["success"] is False
        assert data["interpretation_error"] == {
            "kind": "interpretation",
            "message": "bad syntax",
            "position": {"locator": "main.star", "line": 4},
        }

    def test_validation_failures_listed(self):
        errors = (
            ValidationError("first", instruction_index=1),
            ValidationError("second", instruction_index=3),
        )
        result = PlanExecutionResult(package_id="p", validation_errors=errors, instruction_count=3)

        assert not result.success
        assert [e["instruction_index"] for e in result.to_dict()["validation_errors"]] == [1, 3]

    def test_execution_failure(self):
        error = ExecutionError(
            "Failed to execute exec instruction",
            instruction_index=2,
            cause=RuntimeError("boom"),
            completed_count=1,
        )
        result = PlanExecutionResult(
            package_id="p",
            execution_error=error,
            output=("Service 'db' registered with IP '10.0.0.1'",),
            run_status=RunStatus.ABORTED,
            instruction_count=3,
        )

        data = result.to_dict()
        assert result.completed_count == 1
        assert data["run_status"] == "aborted"
        assert data["execution_error"]["cause"] == {"type": "RuntimeError", "message": "boom"}
        assert data["execution_error"]["completed_count"] == 1


class TestPlanErrors:
    """Tests for the string form of run-level errors."""

    def test_format_with_index_and_position(self):
        error = ValidationError(
            "Service 'a' is not registered",
            instruction_index=2,
            position=ScriptPosition("main.star", 7),
        )
        assert str(error) == "Instruction 2 at main.star[7]: Service 'a' is not registered"

    def test_format_with_cause(self):
        error = ExecutionError("Failed", instruction_index=1, cause=ValueError("nope"))
        assert str(error) == "Instruction 1: Failed (caused by: nope)"
        assert error.__cause__ is error.cause

    def test_format_position_only(self):
        error = InterpretationError("unexpected indent", position=ScriptPosition("lib.star", 1))
        assert str(error) == "lib.star[1]: unexpected indent"


# =============================================================================
# PLACEHOLDER TESTS
# =============================================================================


class TestPlaceholders:
    """Tests for runtime placeholders embedded in instruction arguments."""

    def test_referenced_services_in_nested_values(self):
        value = {
            "DB": ip_placeholder("db"),
            "URLS": ["http://{{ip:web}}:80", "http://{{ip:db}}:5432"],
        }
        assert referenced_services(value) == ["db", "web"]

    def test_resolve_keeps_container_types(self):
        ips = {"db": "10.0.0.1", "web": "10.0.0.2"}

        resolved = resolve_ip_placeholders(
            ("ping", "{{ip:db}}", ["{{ip:web}}"], {"k": "{{ip:db}}"}, 5),
            ips.__getitem__,
        )

        assert resolved == ("ping", "10.0.0.1", ["10.0.0.2"], {"k": "10.0.0.1"}, 5)

    def test_unknown_service_propagates_lookup_error(self):
        with pytest.raises(KeyError):
            resolve_ip_placeholders("{{ip:ghost}}", {}.__getitem__)

    def test_value_placeholders_split_key_and_field(self):
        value = [value_placeholder("request-1", "extract.user.id"), "{{value:request-2.code}}/{{ip:db}}"]

        assert referenced_values(value) == [("request-1", "extract.user.id"), ("request-2", "code")]
        assert referenced_services(value) == ["db"]

    def test_resolve_values_leaves_ip_placeholders(self):
        stored = {("request-1", "code"): "201"}

        resolved = resolve_value_placeholders(
            {"status": "{{value:request-1.code}}", "host": "{{ip:db}}"},
            lambda key, field: stored[(key, field)],
        )

        assert resolved == {"status": "201", "host": "{{ip:db}}"}
