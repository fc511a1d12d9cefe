"""Tests for the interpret -> validate -> execute pipeline."""

import threading

from enclaveplan.errors import ErrorKind, UnexpectedExitCodeError
from enclaveplan.network import Connection, DEFAULT_PARTITION_ID, ServiceIDSet
from enclaveplan.schemas import RunStatus

WEB_SCRIPT = """
def run(plan, replicas=1):
    db = plan.add_service("db", ServiceConfig(image="postgres", ports={"pg": PortSpec(5432)}))
    for i in range(replicas):
        plan.add_service("web-%d" % i, ServiceConfig(image="nginx", env_vars={"DB_HOST": db.ip_address}))
    plan.print("db listening on", db.ip_address)
"""


class TestRun:
    """Tests for EnclavePlanEngine.run."""

    def test_successful_run(self, engine, network, backend):
        result = engine.run(WEB_SCRIPT, '{"replicas": 2}')

        assert result.success
        assert result.run_status == RunStatus.COMPLETED
        assert result.instruction_count == 4
        assert result.output[-1] == "db listening on 10.0.0.1"
        assert network.service_ids() == ServiceIDSet(["db", "web-0", "web-1"])
        pulled = [call[1] for call in backend.calls if call[0] == "pull_image"]
        # checked once during validation, pulled once per container
        assert pulled.count("nginx") == 3

    def test_placeholders_resolved_for_backend(self, engine, backend, network):
        engine.run(WEB_SCRIPT)

        assert network.get_service("web-0").ip_address == "10.0.0.2"
        assert ("create_and_start_container", "web-0") in backend.calls

    def test_interpretation_error_reported_not_raised(self, engine, backend):
        result = engine.run('fail("no database configured")\n')

        assert not result.success
        assert result.interpretation_error is not None
        assert result.interpretation_error.kind == ErrorKind.INTERPRETATION
        assert "no database configured" in result.interpretation_error.message
        assert result.run_status == RunStatus.NOT_STARTED
        assert backend.calls == []

    def test_validation_errors_stop_before_execution(self, engine, network, backend):
        backend.missing_images.add("postgres")

        result = engine.run(WEB_SCRIPT)

        assert not result.success
        assert [e.instruction_index for e in result.validation_errors] == [1]
        assert result.output == ()
        assert network.service_ids().size() == 0
        assert "create_and_start_container" not in backend.call_names()

    def test_validation_sees_earlier_runs(self, engine):
        """The validator starts from the network as left by previous runs."""
        assert engine.run('register_service("db")\n').success

        result = engine.run('register_service("db")\n')

        assert [e.message for e in result.validation_errors] == ["Service 'db' is already registered"]

    def test_later_run_uses_earlier_service(self, engine, backend):
        engine.run('add_service("db", ServiceConfig(image="postgres"))\n')
        backend.exec_results["container-db"] = (0, "ok")

        result = engine.run('exec("db", ["pg_isready"])\n')

        assert result.success
        assert result.output == ("Command returned with exit code '0' and the following output:\nok",)

    def test_execution_error_reported(self, engine, backend):
        backend.exec_results["container-db"] = (3, "")

        result = engine.run(
            'add_service("db", ServiceConfig(image="postgres"))\n'
            'exec("db", ["false"])\n'
            'print("unreachable")\n'
        )

        assert not result.success
        assert result.run_status == RunStatus.ABORTED
        assert result.execution_error.instruction_index == 2
        assert isinstance(result.execution_error.cause, UnexpectedExitCodeError)
        assert result.completed_count == 1
        assert result.to_dict()["success"] is False

    def test_cancelled_run(self, engine, backend):
        cancel = threading.Event()
        cancel.set()

        result = engine.run(WEB_SCRIPT, cancel_event=cancel)

        assert result.interpretation_error.cancelled is True
        assert backend.calls == []

    def test_package_id_defaults_to_config(self, engine):
        result = engine.run('print("hi")\n')
        assert result.package_id == "main"


class TestDryRun:
    """Dry runs through the engine."""

    def test_no_backend_calls_even_for_missing_images(self, engine, backend, network):
        backend.missing_images.update({"postgres", "nginx"})

        result = engine.run(WEB_SCRIPT, dry_run=True)

        assert result.success
        assert result.dry_run is True
        assert backend.calls == []
        assert network.get_service("db").ip_address == "10.0.0.1"

    def test_output_matches_real_run(self, engine, network, backend, config):
        from conftest import RecordingBackend
        from enclaveplan.engine import EnclavePlanEngine
        from enclaveplan.network import ServiceNetwork

        real = EnclavePlanEngine(
            network=ServiceNetwork(config.subnet),
            backend=RecordingBackend(),
            config=config,
            sleep=lambda seconds: None,
        ).run(WEB_SCRIPT)
        dry = engine.run(WEB_SCRIPT, dry_run=True)

        assert dry.output == real.output


class TestBulkRun:
    """Bulk documents run through the same validate and execute steps."""

    def test_three_services_merged_into_one_partition(self, engine, network, backend, bulk_document):
        result = engine.run_bulk(bulk_document)

        assert result.success, result.to_dict()
        assert len(result.output) == 11
        assert result.output[6] == "Repartitioned network into 3 partition(s)"
        assert result.output[-1] == "Repartitioned network into 2 partition(s)"

        partitions = network.get_partition_services()
        assert partitions["partition1"] == ServiceIDSet(["service1", "service2", "service3"])
        assert "partition2" not in partitions
        assert partitions[DEFAULT_PARTITION_ID].size() == 0
        assert network.get_default_connection() == Connection.unblocked()
        assert network.connection_between("service1", "service3") == Connection.unblocked()

        pulls = [call for call in backend.calls if call[0] == "pull_image"]
        # one validation check plus one pull per start
        assert len(pulls) == 4

    def test_services_blocked_mid_plan(self, engine, network, backend, bulk_document):
        """After command 8 service3 sits with service2, cut off from service1."""
        commands = bulk_document["body"]["commands"][:8]
        bulk_document["body"]["commands"] = commands

        result = engine.run_bulk(bulk_document)

        assert result.success
        assert network.get_partition_of("service3") == "partition2"
        assert network.connection_between("service1", "service3").is_blocked
        assert not network.connection_between("service2", "service3").is_blocked

    def test_invalid_document_reported(self, engine):
        result = engine.run_bulk({"schemaVersion": 3, "body": {"commands": []}})

        assert result.interpretation_error is not None
        assert "Unsupported bulk schema version" in result.interpretation_error.message


class TestDescribe:
    def test_describe_does_not_execute(self, engine, network, backend):
        description = engine.describe(WEB_SCRIPT, '{"replicas": 1}')

        assert [s["name"] for s in description.to_dict()["services"]] == ["db", "web-0"]
        assert network.service_ids().size() == 0
        assert backend.calls == []
