from typing import Optional

import pytest

from enclaveplan.backend import ContainerBackend, ContainerSpec
from enclaveplan.config import EnclaveConfig
from enclaveplan.engine import EnclavePlanEngine
from enclaveplan.module_provider import InMemoryModuleProvider
from enclaveplan.network import ServiceNetwork


class RecordingBackend(ContainerBackend):
    """
    Fake backend that records every call.

    Failures are configured per image / container name; exec and HTTP
    results can be scripted.
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.missing_images: set[str] = set()
        self.failing_containers: set[str] = set()
        self.exec_results: dict[str, tuple[int, str]] = {}
        self.http_responses: list[tuple[int, str]] = []
        self.copied_files: dict[str, bytes] = {}
        self.fail_partitions = False

    def pull_image(self, image: str) -> None:
        self.calls.append(("pull_image", image))
        if image in self.missing_images:
            raise RuntimeError(f"manifest for {image} not found")

    def create_and_start_container(self, spec: ContainerSpec):
        self.calls.append(("create_and_start_container", spec.name))
        if spec.name in self.failing_containers:
            raise RuntimeError(f"container {spec.name} failed to start")
        return f"container-{spec.name}"

    def stop_container(self, handle) -> None:
        self.calls.append(("stop_container", handle))

    def exec_in_container(self, handle, command):
        self.calls.append(("exec_in_container", handle, tuple(command)))
        return self.exec_results.get(handle, (0, ""))

    def bind_host_port(self, handle, port_id, port) -> int:
        self.calls.append(("bind_host_port", handle, port_id))
        return 30000 + port.number

    def http_get(self, ip_address, port, path):
        self.calls.append(("http_get", ip_address, port, path))
        if self.http_responses:
            return self.http_responses.pop(0)
        return 200, ""

    def http_post(self, ip_address, port, path, body, content_type):
        self.calls.append(("http_post", ip_address, port, path, body, content_type))
        if self.http_responses:
            return self.http_responses.pop(0)
        return 200, ""

    def copy_files_from_container(self, handle, path) -> bytes:
        self.calls.append(("copy_files_from_container", handle, path))
        return self.copied_files.get(path, b"archive")

    def configure_partitions(self, packet_loss) -> None:
        self.calls.append(("configure_partitions", packet_loss))
        if self.fail_partitions:
            raise RuntimeError("traffic control refused")

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Keep every test away from the real ~/.config/enclaveplan."""
    home = tmp_path / "enclaveplan_home"
    monkeypatch.setenv("ENCLAVEPLAN_HOME", str(home))
    return home


@pytest.fixture
def config() -> EnclaveConfig:
    return EnclaveConfig(subnet="10.0.0.0/24", validator_max_workers=2)


@pytest.fixture
def network(config) -> ServiceNetwork:
    return ServiceNetwork(subnet=config.subnet, partitioning_enabled=True)


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def provider() -> InMemoryModuleProvider:
    return InMemoryModuleProvider()


@pytest.fixture
def engine(network, backend, provider, config) -> EnclavePlanEngine:
    return EnclavePlanEngine(
        network=network,
        backend=backend,
        provider=provider,
        config=config,
        sleep=lambda seconds: None,
    )


GETTING_STARTED_IMAGE = "docker/getting-started"


def _register(service_id: str, partition_id: Optional[str] = None) -> dict:
    args = {"service_id": service_id}
    if partition_id is not None:
        args["partition_id"] = partition_id
    return {"type": "REGISTER_SERVICE", "args": args}


def _start(service_id: str) -> dict:
    return {
        "type": "START_SERVICE",
        "args": {
            "service_id": service_id,
            "docker_image": GETTING_STARTED_IMAGE,
            "used_ports": {"80/tcp": True},
            "enclave_data_dir_mnt_dirpath": "/enclave-data",
        },
    }


def _wait(service_id: str) -> dict:
    return {
        "type": "WAIT_FOR_HTTP_GET_ENDPOINT_AVAILABILITY",
        "args": {
            "service_id": service_id,
            "port": 80,
            "path": "",
            "initial_delay_milliseconds": 0,
            "retries": 5,
            "retries_delay_milliseconds": 2000,
            "body_text": "",
        },
    }


def _repartition(partitions: dict[str, list[str]], is_blocked: bool) -> dict:
    return {
        "type": "REPARTITION",
        "args": {
            "partition_services": {
                partition_id: {"service_id_set": {sid: True for sid in members}}
                for partition_id, members in partitions.items()
            },
            "default_connection": {"is_blocked": is_blocked},
        },
    }


@pytest.fixture
def bulk_document() -> dict:
    """Three services split across two blocked partitions, then merged into one."""
    return {
        "schemaVersion": 0,
        "body": {
            "commands": [
                _register("service1"),
                _start("service1"),
                _wait("service1"),
                _register("service2"),
                _start("service2"),
                _wait("service2"),
                _repartition({"partition1": ["service1"], "partition2": ["service2"]}, is_blocked=True),
                _register("service3", partition_id="partition2"),
                _start("service3"),
                _wait("service3"),
                _repartition({"partition1": ["service1", "service2", "service3"]}, is_blocked=False),
            ]
        },
    }
