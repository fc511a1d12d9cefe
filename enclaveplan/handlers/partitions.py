"""
Repartition handler.
"""

import logging

from enclaveplan.errors import ServiceNetworkError
from enclaveplan.network import (
    DEFAULT_PARTITION_ID,
    ServiceNetwork,
    check_partition_assignment,
)
from enclaveplan.schemas import Repartition

from .base import ExecutionContext, Handler

logger = logging.getLogger(__name__)


def packet_loss_by_ip(network: ServiceNetwork) -> dict[str, dict[str, float]]:
    """Translate the per-service packet loss configuration to IP addresses."""
    ips = {record.service_id: record.ip_address for record in network.get_services()}
    return {
        ips[source]: {ips[target]: loss for target, loss in targets.items()}
        for source, targets in network.get_service_packet_loss_configurations().items()
    }


class RepartitionHandler(Handler):
    """
    Replace the partition topology.

    The new topology is applied to the model first and pushed to the
    backend as a traffic-control configuration; if the backend refuses it
    the previous topology is restored.
    """

    def validate(self, instruction: Repartition, index: int, env) -> list[str]:
        if not env.partitioning_enabled:
            return ["Cannot repartition; partitioning is not enabled for this enclave"]

        problems = []
        try:
            check_partition_assignment(instruction.partition_services, env.registered)
        except ServiceNetworkError as e:
            problems.append(str(e))

        defined = set(instruction.partition_services) | {DEFAULT_PARTITION_ID}
        for conn_id in instruction.partition_connections:
            for partition_id in (conn_id.lesser, conn_id.greater):
                if partition_id not in defined:
                    problems.append(
                        f"Partition connection references undefined partition '{partition_id}'"
                    )
        env.repartition(instruction.partition_services)
        return problems

    def execute(self, instruction: Repartition, context: ExecutionContext) -> str:
        network = context.network
        snapshot = network.snapshot_topology()
        network.repartition(
            instruction.partition_services,
            instruction.partition_connections,
            instruction.default_connection,
        )
        if not context.dry_run:
            try:
                context.backend.configure_partitions(packet_loss_by_ip(network))
            except Exception:
                logger.warning("Applying the new partition topology failed; restoring the previous one")
                network.restore_topology(snapshot)
                raise
        count = len(network.get_partition_services())
        return f"Repartitioned network into {count} partition(s)"
