"""
ServiceNetwork - the in-memory state of one enclave.

This is the authoritative, mutable model the executor applies plans to:
- registered services and their lifecycle state
- allocated IP addresses
- partition topology
- stored files artifacts

Every mutating operation runs under a single enclave-wide lock so that
operations are atomic relative to each other. Only the executor mutates
a ServiceNetwork; the interpreter and validator never touch it.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from enclaveplan.errors import (
    DuplicateServiceIDError,
    PartitioningDisabledError,
    ServiceNetworkError,
    ServiceStateError,
    UnknownPartitionError,
    UnknownServiceError,
)

from .ip_tracker import FreeIpAddrTracker
from .partition_topology import (
    Connection,
    PartitionConnectionID,
    PartitionID,
    PartitionTopology,
    TopologySnapshot,
)
from .service_id_set import ServiceID, ServiceIDSet

logger = logging.getLogger(__name__)


class TransportProtocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"
    SCTP = "SCTP"

    @classmethod
    def from_string(cls, value: str) -> "TransportProtocol":
        """Parse a transport protocol, case-insensitively."""
        for protocol in cls:
            if protocol.value == value.upper():
                return protocol
        raise ValueError(f"Unknown transport protocol: {value}")


@dataclass(frozen=True)
class PortSpec:
    """A port a service declares."""
    number: int
    transport_protocol: TransportProtocol = TransportProtocol.TCP
    application_protocol: Optional[str] = None

    def __post_init__(self):
        if not 1 <= self.number <= 65535:
            raise ValueError(f"Port number must be between 1 and 65535, got {self.number}")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "number": self.number,
            "transport_protocol": self.transport_protocol.value,
        }
        if self.application_protocol:
            result["application_protocol"] = self.application_protocol
        return result


class ServiceStatus(str, Enum):
    """Lifecycle state of a service."""
    REGISTERED = "registered"
    STARTED = "started"
    STOPPED = "stopped"
    REMOVED = "removed"


@dataclass(frozen=True)
class ServiceRecord:
    """
    What the enclave knows about one service.

    Attributes:
        service_id: User-chosen identifier, unique among registered services
        ip_address: Address allocated at registration
        status: Current lifecycle state
        ports: Declared ports by port ID (empty until started)
        handle: Backend container handle, opaque to this package
    """
    service_id: ServiceID
    ip_address: str
    status: ServiceStatus = ServiceStatus.REGISTERED
    ports: dict[str, PortSpec] = field(default_factory=dict)
    handle: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "ip_address": self.ip_address,
            "status": self.status.value,
            "ports": {port_id: spec.to_dict() for port_id, spec in sorted(self.ports.items())},
        }


class ServiceNetwork:
    """
    Owned state of one enclave's services and partitions.

    Usage:
        network = ServiceNetwork(subnet="10.0.0.0/24")
        record = network.register_service("db")
        network.mark_started("db", handle, ports={})
        network.repartition({"a": ServiceIDSet(["db"])}, {}, Connection.blocked())
    """

    def __init__(
        self,
        subnet: str = "10.0.0.0/16",
        partitioning_enabled: bool = True,
        already_taken_ips: tuple[str, ...] = (),
    ):
        self._lock = threading.RLock()
        self._partitioning_enabled = partitioning_enabled
        self._ip_tracker = FreeIpAddrTracker(subnet, already_taken_ips)
        self._topology = PartitionTopology()
        self._services: dict[ServiceID, ServiceRecord] = {}
        self._files_artifacts: dict[str, bytes] = {}

    @property
    def partitioning_enabled(self) -> bool:
        return self._partitioning_enabled

    @property
    def subnet(self) -> str:
        return self._ip_tracker.subnet

    # -------------------------------------------------------------------------
    # IP allocation
    # -------------------------------------------------------------------------

    def allocate_ip(self) -> str:
        with self._lock:
            return self._ip_tracker.allocate_ip()

    def release_ip(self, addr: str) -> None:
        with self._lock:
            self._ip_tracker.release_ip(addr)

    # -------------------------------------------------------------------------
    # Services
    # -------------------------------------------------------------------------

    def register_service(
        self,
        service_id: ServiceID,
        partition_id: Optional[PartitionID] = None,
    ) -> ServiceRecord:
        """
        Register a service, allocating its IP and placing it in a partition.

        Args:
            service_id: The new service's ID
            partition_id: Target partition (default partition if None)

        Returns:
            The new ServiceRecord

        Raises:
            ServiceNetworkError: If the ID is empty
            DuplicateServiceIDError: If the ID is already registered
            UnknownPartitionError: If the partition does not exist
            AddressSpaceExhaustedError: If no address is free
        """
        with self._lock:
            if not service_id or not service_id.strip():
                raise ServiceNetworkError("Service ID cannot be empty or whitespace")
            if service_id in self._services:
                raise DuplicateServiceIDError(service_id)
            partition_id = partition_id or self._topology.default_partition_id
            if not self._topology.has_partition(partition_id):
                raise UnknownPartitionError(partition_id)

            ip_address = self._ip_tracker.allocate_ip()
            try:
                self._topology.add_service(service_id, partition_id)
            except ServiceNetworkError:
                self._ip_tracker.release_ip(ip_address)
                raise
            record = ServiceRecord(service_id=service_id, ip_address=ip_address)
            self._services[service_id] = record
            logger.debug(f"Registered service '{service_id}' with IP {ip_address} in partition '{partition_id}'")
            return record

    def mark_started(
        self,
        service_id: ServiceID,
        handle: Any,
        ports: Optional[dict[str, PortSpec]] = None,
    ) -> ServiceRecord:
        """
        Record that a registered service's container is running.

        Raises:
            UnknownServiceError: If the service is not registered
            ServiceStateError: If the service is not in REGISTERED state
        """
        with self._lock:
            record = self._require(service_id)
            if record.status != ServiceStatus.REGISTERED:
                raise ServiceStateError(
                    f"Cannot start service '{service_id}'; it is {record.status.value}, not registered"
                )
            record = replace(record, status=ServiceStatus.STARTED, handle=handle, ports=dict(ports or {}))
            self._services[service_id] = record
            return record

    def attach_handle(self, service_id: ServiceID, handle: Any) -> ServiceRecord:
        """Record the backend handle of a started service."""
        with self._lock:
            record = replace(self._require(service_id), handle=handle)
            self._services[service_id] = record
            return record

    def unmark_started(self, service_id: ServiceID) -> None:
        """Undo mark_started, returning the service to REGISTERED."""
        with self._lock:
            record = self._require(service_id)
            self._services[service_id] = replace(
                record, status=ServiceStatus.REGISTERED, handle=None, ports={}
            )

    def mark_stopped(self, service_id: ServiceID) -> ServiceRecord:
        with self._lock:
            record = self._require(service_id)
            if record.status != ServiceStatus.STARTED:
                raise ServiceStateError(f"Cannot stop service '{service_id}'; it is not started")
            record = replace(record, status=ServiceStatus.STOPPED)
            self._services[service_id] = record
            return record

    def remove_service(self, service_id: ServiceID) -> ServiceRecord:
        """
        Remove a service: release its IP and drop it from its partition.

        The ID may be registered again afterwards.

        Returns:
            The removed record, with status REMOVED

        Raises:
            UnknownServiceError: If the service is not registered
        """
        with self._lock:
            record = self._require(service_id)
            self._topology.remove_service(service_id)
            self._ip_tracker.release_ip(record.ip_address)
            del self._services[service_id]
            logger.debug(f"Removed service '{service_id}', released IP {record.ip_address}")
            return replace(record, status=ServiceStatus.REMOVED)

    def get_service(self, service_id: ServiceID) -> ServiceRecord:
        with self._lock:
            return self._require(service_id)

    def has_service(self, service_id: ServiceID) -> bool:
        with self._lock:
            return service_id in self._services

    def service_ids(self) -> ServiceIDSet:
        with self._lock:
            return ServiceIDSet(self._services)

    def get_services(self) -> list[ServiceRecord]:
        with self._lock:
            return [self._services[sid] for sid in sorted(self._services)]

    def _require(self, service_id: ServiceID) -> ServiceRecord:
        record = self._services.get(service_id)
        if record is None:
            raise UnknownServiceError(service_id)
        return record

    # -------------------------------------------------------------------------
    # Partitions
    # -------------------------------------------------------------------------

    def repartition(
        self,
        partition_services: dict[PartitionID, ServiceIDSet],
        partition_connections: dict[PartitionConnectionID, Connection],
        default_connection: Connection,
    ) -> None:
        """
        Atomically replace the partition topology.

        Raises:
            PartitioningDisabledError: If partitioning is disabled
            PartitionOverlapError: If a service appears in two partitions
            UnknownServiceInPartitionError: If a partition names an unregistered service
            UnknownPartitionError: If a connection names an undefined partition
        """
        with self._lock:
            if not self._partitioning_enabled:
                raise PartitioningDisabledError()
            self._topology.repartition(partition_services, partition_connections, default_connection)
            logger.debug(f"Repartitioned network into {len(partition_services)} partition(s)")

    def connection_between(self, a: ServiceID, b: ServiceID) -> Connection:
        with self._lock:
            return self._topology.connection_between(a, b)

    def get_partition_of(self, service_id: ServiceID) -> PartitionID:
        with self._lock:
            return self._topology.get_partition_of(service_id)

    def get_partition_services(self) -> dict[PartitionID, ServiceIDSet]:
        with self._lock:
            return self._topology.get_partition_services()

    def get_default_connection(self) -> Connection:
        with self._lock:
            return self._topology.default_connection

    def get_service_packet_loss_configurations(self) -> dict[ServiceID, dict[ServiceID, float]]:
        with self._lock:
            return self._topology.get_service_packet_loss_configurations()

    def snapshot_topology(self) -> TopologySnapshot:
        with self._lock:
            return self._topology.snapshot()

    def restore_topology(self, snapshot: TopologySnapshot) -> None:
        with self._lock:
            self._topology.restore(snapshot)

    # -------------------------------------------------------------------------
    # Files artifacts
    # -------------------------------------------------------------------------

    def store_files_artifact(self, name: str, content: bytes) -> None:
        with self._lock:
            if name in self._files_artifacts:
                raise ServiceNetworkError(f"A files artifact named '{name}' already exists")
            self._files_artifacts[name] = content

    def get_files_artifact(self, name: str) -> bytes:
        with self._lock:
            if name not in self._files_artifacts:
                raise ServiceNetworkError(f"No files artifact named '{name}' exists")
            return self._files_artifacts[name]

    def remove_files_artifact(self, name: str) -> None:
        with self._lock:
            self._files_artifacts.pop(name, None)

    def files_artifact_names(self) -> list[str]:
        with self._lock:
            return sorted(self._files_artifacts)
