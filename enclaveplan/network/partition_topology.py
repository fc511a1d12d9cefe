"""
Partition topology - which services can talk to which.

Every registered service belongs to exactly one partition. Services in the
same partition are always unblocked; traffic between two partitions follows
the configured pairwise Connection, falling back to the default Connection.
"""

from dataclasses import dataclass
from typing import Optional

from enclaveplan.errors import (
    PartitionOverlapError,
    ServiceNetworkError,
    UnknownPartitionError,
    UnknownServiceError,
    UnknownServiceInPartitionError,
)

from .service_id_set import ServiceID, ServiceIDSet

PartitionID = str

DEFAULT_PARTITION_ID: PartitionID = "default"

BLOCKED_PACKET_LOSS = 100.0


@dataclass(frozen=True)
class Connection:
    """
    A connectivity rule between two partitions.

    Construct through the named constructors rather than directly.
    """
    is_blocked: bool = False
    packet_loss_percentage: float = 0.0

    def __post_init__(self):
        if not 0.0 <= self.packet_loss_percentage <= 100.0:
            raise ValueError(
                f"packet_loss_percentage must be between 0 and 100, got {self.packet_loss_percentage}"
            )

    @classmethod
    def unblocked(cls) -> "Connection":
        return cls(is_blocked=False, packet_loss_percentage=0.0)

    @classmethod
    def blocked(cls) -> "Connection":
        return cls(is_blocked=True, packet_loss_percentage=0.0)

    @classmethod
    def with_packet_loss(cls, percentage: float) -> "Connection":
        return cls(is_blocked=False, packet_loss_percentage=float(percentage))

    @property
    def effective_packet_loss(self) -> float:
        return BLOCKED_PACKET_LOSS if self.is_blocked else self.packet_loss_percentage

    def to_dict(self) -> dict:
        result: dict = {"is_blocked": self.is_blocked}
        if self.packet_loss_percentage:
            result["packet_loss_percentage"] = self.packet_loss_percentage
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "Connection":
        if data.get("is_blocked", False):
            return cls.blocked()
        return cls.with_packet_loss(data.get("packet_loss_percentage", 0.0))


@dataclass(frozen=True)
class PartitionConnectionID:
    """Order-independent key for a pair of partitions."""
    lesser: PartitionID
    greater: PartitionID

    @classmethod
    def of(cls, a: PartitionID, b: PartitionID) -> "PartitionConnectionID":
        first, second = sorted((a, b))
        return cls(first, second)


@dataclass(frozen=True)
class TopologySnapshot:
    """Opaque copy of a topology, used to undo a mutation."""
    partitions: tuple[tuple[PartitionID, tuple[ServiceID, ...]], ...]
    connections: tuple[tuple[PartitionConnectionID, Connection], ...]
    default_connection: Connection


def check_partition_assignment(
    partition_services: dict[PartitionID, ServiceIDSet],
    registered: ServiceIDSet,
) -> None:
    """
    Check a proposed repartition against the registered services.

    Raises:
        PartitionOverlapError: If a service appears in more than one partition
        UnknownServiceInPartitionError: If a partition names an unregistered service
    """
    owners: dict[ServiceID, list[PartitionID]] = {}
    for partition_id in sorted(partition_services):
        for service_id in partition_services[partition_id]:
            owners.setdefault(service_id, []).append(partition_id)
    for service_id in sorted(owners):
        if len(owners[service_id]) > 1:
            raise PartitionOverlapError(service_id, tuple(owners[service_id]))
    for service_id in sorted(owners):
        if service_id not in registered:
            raise UnknownServiceInPartitionError(service_id, owners[service_id][0])


class PartitionTopology:
    """
    In-memory partition topology of one enclave.

    Not thread-safe on its own; ServiceNetwork calls it under the
    enclave-wide lock.
    """

    def __init__(
        self,
        default_partition_id: PartitionID = DEFAULT_PARTITION_ID,
        default_connection: Optional[Connection] = None,
    ):
        self._default_partition_id = default_partition_id
        self._default_connection = default_connection or Connection.unblocked()
        self._partitions: dict[PartitionID, ServiceIDSet] = {default_partition_id: ServiceIDSet()}
        self._service_partitions: dict[ServiceID, PartitionID] = {}
        self._connections: dict[PartitionConnectionID, Connection] = {}

    @property
    def default_partition_id(self) -> PartitionID:
        return self._default_partition_id

    @property
    def default_connection(self) -> Connection:
        return self._default_connection

    def get_partition_services(self) -> dict[PartitionID, ServiceIDSet]:
        """Return a copy of the partition membership."""
        return {pid: members.copy() for pid, members in self._partitions.items()}

    def get_partition_connections(self) -> dict[PartitionConnectionID, Connection]:
        return dict(self._connections)

    def has_partition(self, partition_id: PartitionID) -> bool:
        return partition_id in self._partitions

    def get_partition_of(self, service_id: ServiceID) -> PartitionID:
        if service_id not in self._service_partitions:
            raise UnknownServiceError(service_id)
        return self._service_partitions[service_id]

    def registered_services(self) -> ServiceIDSet:
        return ServiceIDSet(self._service_partitions)

    def add_service(self, service_id: ServiceID, partition_id: PartitionID) -> None:
        """
        Add a service to an existing partition.

        Raises:
            UnknownPartitionError: If the partition does not exist
            ServiceNetworkError: If the service is already in the topology
        """
        if partition_id not in self._partitions:
            raise UnknownPartitionError(partition_id)
        if service_id in self._service_partitions:
            raise ServiceNetworkError(f"Service '{service_id}' is already present in the partition topology")
        self._partitions[partition_id].add(service_id)
        self._service_partitions[service_id] = partition_id

    def remove_service(self, service_id: ServiceID) -> None:
        """Remove a service from its partition, if present."""
        partition_id = self._service_partitions.pop(service_id, None)
        if partition_id is not None:
            self._partitions[partition_id].remove(service_id)

    def repartition(
        self,
        partition_services: dict[PartitionID, ServiceIDSet],
        partition_connections: dict[PartitionConnectionID, Connection],
        default_connection: Connection,
    ) -> None:
        """
        Replace the whole topology.

        Services not mentioned in any partition fall into the default
        partition. Nothing is mutated if validation fails.

        Raises:
            PartitionOverlapError: If a service appears in two partitions
            UnknownServiceInPartitionError: If a partition names an unregistered service
            UnknownPartitionError: If a connection names an undefined partition
        """
        registered = self.registered_services()
        check_partition_assignment(partition_services, registered)

        new_partitions = {pid: members.copy() for pid, members in partition_services.items()}
        mentioned = ServiceIDSet()
        for members in new_partitions.values():
            mentioned.add_all(members)
        # The default partition always exists so later registrations have a home
        default_members = new_partitions.setdefault(self._default_partition_id, ServiceIDSet())
        default_members.add_all(registered.difference(mentioned))

        for conn_id in partition_connections:
            for pid in (conn_id.lesser, conn_id.greater):
                if pid not in new_partitions:
                    raise UnknownPartitionError(pid)

        self._partitions = new_partitions
        self._service_partitions = {
            service_id: pid
            for pid, members in new_partitions.items()
            for service_id in members
        }
        self._connections = dict(partition_connections)
        self._default_connection = default_connection

    def connection_between(self, a: ServiceID, b: ServiceID) -> Connection:
        """Resolve the connection rule that applies to traffic from a to b."""
        partition_a = self.get_partition_of(a)
        partition_b = self.get_partition_of(b)
        if partition_a == partition_b:
            return Connection.unblocked()
        return self._connections.get(
            PartitionConnectionID.of(partition_a, partition_b),
            self._default_connection,
        )

    def get_service_packet_loss_configurations(self) -> dict[ServiceID, dict[ServiceID, float]]:
        """
        Map each service to the packet loss it must apply towards every other service.

        Pairs with zero loss are omitted.
        """
        result: dict[ServiceID, dict[ServiceID, float]] = {}
        services = sorted(self._service_partitions)
        for source in services:
            losses: dict[ServiceID, float] = {}
            for target in services:
                if source == target:
                    continue
                loss = self.connection_between(source, target).effective_packet_loss
                if loss:
                    losses[target] = loss
            result[source] = losses
        return result

    def snapshot(self) -> TopologySnapshot:
        return TopologySnapshot(
            partitions=tuple(
                (pid, tuple(members.elems())) for pid, members in sorted(self._partitions.items())
            ),
            connections=tuple(sorted(self._connections.items(), key=lambda kv: (kv[0].lesser, kv[0].greater))),
            default_connection=self._default_connection,
        )

    def restore(self, snapshot: TopologySnapshot) -> None:
        self._partitions = {pid: ServiceIDSet(members) for pid, members in snapshot.partitions}
        self._service_partitions = {
            service_id: pid
            for pid, members in snapshot.partitions
            for service_id in members
        }
        self._connections = dict(snapshot.connections)
        self._default_connection = snapshot.default_connection
