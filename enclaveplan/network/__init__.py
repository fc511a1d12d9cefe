"""
enclaveplan.network - the service-network model of one enclave.

Components:
  - ServiceIDSet: set of service IDs with set algebra
  - FreeIpAddrTracker: deterministic IP allocation on a subnet
  - PartitionTopology / Connection: partition membership and connectivity rules
  - ServiceNetwork: lock-guarded owner of all of the above
"""

from .service_id_set import ServiceID, ServiceIDSet
from .ip_tracker import FreeIpAddrTracker
from .partition_topology import (
    DEFAULT_PARTITION_ID,
    Connection,
    PartitionConnectionID,
    PartitionID,
    PartitionTopology,
    check_partition_assignment,
)
from .service_network import (
    PortSpec,
    ServiceNetwork,
    ServiceRecord,
    ServiceStatus,
    TransportProtocol,
)

__all__ = [
    "ServiceID",
    "ServiceIDSet",
    "FreeIpAddrTracker",
    "DEFAULT_PARTITION_ID",
    "Connection",
    "PartitionConnectionID",
    "PartitionID",
    "PartitionTopology",
    "check_partition_assignment",
    "PortSpec",
    "ServiceNetwork",
    "ServiceRecord",
    "ServiceStatus",
    "TransportProtocol",
]
