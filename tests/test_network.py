"""Tests for the service-network model.

Covers ServiceIDSet algebra, deterministic IP allocation, partition
topology and the lock-guarded ServiceNetwork.
"""

import ipaddress
from concurrent.futures import ThreadPoolExecutor

import pytest

from enclaveplan.errors import (
    AddressSpaceExhaustedError,
    ConfigError,
    DuplicateServiceIDError,
    PartitionOverlapError,
    PartitioningDisabledError,
    ServiceNetworkError,
    ServiceStateError,
    UnknownPartitionError,
    UnknownServiceError,
    UnknownServiceInPartitionError,
)
from enclaveplan.network import (
    DEFAULT_PARTITION_ID,
    Connection,
    FreeIpAddrTracker,
    PartitionConnectionID,
    PortSpec,
    ServiceIDSet,
    ServiceNetwork,
    ServiceStatus,
)


# =============================================================================
# SERVICE ID SET
# =============================================================================


class TestServiceIDSet:
    """Tests for ServiceIDSet."""

    def test_set_algebra(self):
        """Union, difference and intersection return new sets."""
        a = ServiceIDSet(["s1", "s2"])
        b = ServiceIDSet(["s2", "s3"])

        assert a.union(b).elems() == ["s1", "s2", "s3"]
        assert a.difference(b).elems() == ["s1"]
        assert a.intersection(b).elems() == ["s2"]
        assert a.elems() == ["s1", "s2"]

    def test_remove_missing_is_noop(self):
        """Removing an absent ID does not raise."""
        ids = ServiceIDSet(["s1"])
        ids.remove("ghost")
        assert ids.size() == 1

    def test_copy_is_independent(self):
        """Mutating a copy leaves the original unchanged."""
        ids = ServiceIDSet(["s1"])
        copy = ids.copy()
        copy.add("s2")
        assert "s2" not in ids
        assert copy.contains("s2")

    def test_equality_ignores_order(self):
        assert ServiceIDSet(["b", "a"]) == ServiceIDSet(["a", "b"])

    def test_add_all_leaves_argument_untouched(self):
        ids = ServiceIDSet.from_iterable(["s1"])
        other = ServiceIDSet(["s2", "s3"])

        ids.add_all(other)

        assert ids.elems() == ["s1", "s2", "s3"]
        assert other.elems() == ["s2", "s3"]


# =============================================================================
# IP ALLOCATION
# =============================================================================


class TestFreeIpAddrTracker:
    """Tests for deterministic IP allocation."""

    def test_never_returns_network_address(self):
        """The first allocation is the address after the network address."""
        tracker = FreeIpAddrTracker("10.0.0.0/24")
        assert tracker.allocate_ip() == "10.0.0.1"

    def test_no_duplicates_until_exhausted(self):
        """Every held address is unique; the subnet runs out cleanly."""
        tracker = FreeIpAddrTracker("192.168.5.0/29")
        subnet = ipaddress.IPv4Network("192.168.5.0/29")

        allocated = [tracker.allocate_ip() for _ in range(6)]

        assert len(set(allocated)) == 6
        assert str(subnet.network_address) not in allocated
        assert str(subnet.broadcast_address) not in allocated
        with pytest.raises(AddressSpaceExhaustedError):
            tracker.allocate_ip()

    def test_release_then_allocate_reuses_address(self):
        tracker = FreeIpAddrTracker("10.0.0.0/24")
        first = tracker.allocate_ip()
        tracker.allocate_ip()

        tracker.release_ip(first)

        assert tracker.allocate_ip() == first

    def test_release_unallocated_is_noop(self):
        """Releasing an address never handed out is not an error."""
        tracker = FreeIpAddrTracker("10.0.0.0/24")
        tracker.release_ip("10.0.0.77")
        tracker.release_ip("not-an-ip")
        assert tracker.taken_count() == 0

    def test_already_taken_addresses_are_skipped(self):
        tracker = FreeIpAddrTracker("10.0.0.0/24", already_taken=["10.0.0.1"])
        assert tracker.allocate_ip() == "10.0.0.2"

    def test_invalid_subnet_raises_config_error(self):
        with pytest.raises(ConfigError):
            FreeIpAddrTracker("not-a-subnet")


# =============================================================================
# SERVICE NETWORK
# =============================================================================


class TestServiceNetwork:
    """Tests for service registration and lifecycle."""

    def test_register_allocates_ip_in_default_partition(self, network):
        record = network.register_service("db")

        assert record.ip_address == "10.0.0.1"
        assert record.status == ServiceStatus.REGISTERED
        assert network.get_partition_of("db") == DEFAULT_PARTITION_ID

    def test_duplicate_registration_rejected(self, network):
        network.register_service("db")
        with pytest.raises(DuplicateServiceIDError):
            network.register_service("db")

    def test_register_into_unknown_partition_rejected(self, network):
        """A failed registration does not consume an IP."""
        with pytest.raises(UnknownPartitionError):
            network.register_service("db", partition_id="nowhere")
        assert network.register_service("db").ip_address == "10.0.0.1"

    def test_remove_releases_ip_and_id(self, network):
        network.register_service("a")
        network.register_service("b")

        removed = network.remove_service("a")

        assert removed.status == ServiceStatus.REMOVED
        assert not network.has_service("a")
        assert network.register_service("c").ip_address == "10.0.0.1"

    def test_start_requires_registered_state(self, network):
        network.register_service("web")
        network.mark_started("web", handle="h1", ports={"http": PortSpec(80)})

        assert network.get_service("web").ports["http"].number == 80
        with pytest.raises(ServiceStateError):
            network.mark_started("web", handle="h2")

    def test_unmark_started_returns_to_registered(self, network):
        network.register_service("web")
        network.mark_started("web", handle="h1")
        network.unmark_started("web")

        record = network.get_service("web")
        assert record.status == ServiceStatus.REGISTERED
        assert record.handle is None

    def test_unknown_service_raises(self, network):
        with pytest.raises(UnknownServiceError):
            network.get_service("ghost")

    def test_concurrent_allocations_are_distinct(self, network):
        with ThreadPoolExecutor(max_workers=8) as pool:
            addresses = list(pool.map(lambda _: network.allocate_ip(), range(200)))

        assert len(set(addresses)) == 200
        assert all(ipaddress.ip_address(a) in ipaddress.ip_network("10.0.0.0/24") for a in addresses)

    def test_concurrent_registrations_get_distinct_ips(self, network):
        with ThreadPoolExecutor(max_workers=8) as pool:
            records = list(pool.map(network.register_service, [f"s{n}" for n in range(50)]))

        assert len({r.ip_address for r in records}) == 50
        assert len(network.get_partition_services()[DEFAULT_PARTITION_ID]) == 50

    def test_mark_stopped_requires_started(self, network):
        network.register_service("web")
        with pytest.raises(ServiceStateError):
            network.mark_stopped("web")

        network.mark_started("web", handle="h1")
        assert network.mark_stopped("web").status == ServiceStatus.STOPPED

    def test_files_artifacts(self, network):
        network.store_files_artifact("conf", b"listen=80")

        assert network.get_files_artifact("conf") == b"listen=80"
        with pytest.raises(ServiceNetworkError, match="already exists"):
            network.store_files_artifact("conf", b"other")

        network.remove_files_artifact("conf")
        network.remove_files_artifact("conf")
        assert network.files_artifact_names() == []
        with pytest.raises(ServiceNetworkError, match="No files artifact"):
            network.get_files_artifact("conf")


class TestPartitions:
    """Tests for repartitioning and connection resolution."""

    def _three_services(self, network):
        for sid in ("s1", "s2", "s3"):
            network.register_service(sid)

    def test_same_partition_is_unblocked_regardless_of_default(self, network):
        self._three_services(network)
        network.repartition(
            {"p1": ServiceIDSet(["s1", "s2"]), "p2": ServiceIDSet(["s3"])},
            {},
            Connection.blocked(),
        )

        assert network.connection_between("s1", "s2") == Connection.unblocked()
        assert network.connection_between("s1", "s3").is_blocked
        assert network.connection_between("s2", "s2") == Connection.unblocked()

    def test_partition_connection_overrides_default(self, network):
        self._three_services(network)
        network.repartition(
            {"p1": ServiceIDSet(["s1"]), "p2": ServiceIDSet(["s2"])},
            {PartitionConnectionID.of("p2", "p1"): Connection.with_packet_loss(30)},
            Connection.blocked(),
        )

        assert network.connection_between("s1", "s2").packet_loss_percentage == 30.0
        assert network.connection_between("s2", "s1").packet_loss_percentage == 30.0

    def test_unmentioned_services_fall_into_default_partition(self, network):
        self._three_services(network)
        network.repartition({"p1": ServiceIDSet(["s1"])}, {}, Connection.unblocked())

        partitions = network.get_partition_services()
        assert partitions["p1"].elems() == ["s1"]
        assert partitions[DEFAULT_PARTITION_ID].elems() == ["s2", "s3"]

    def test_overlap_leaves_topology_unchanged(self, network):
        """A failed repartition is atomic."""
        self._three_services(network)
        network.repartition({"p1": ServiceIDSet(["s1"])}, {}, Connection.blocked())
        before = network.snapshot_topology()

        with pytest.raises(PartitionOverlapError):
            network.repartition(
                {"a": ServiceIDSet(["s1"]), "b": ServiceIDSet(["s1", "s2"])},
                {},
                Connection.unblocked(),
            )

        assert network.snapshot_topology() == before
        assert network.get_partition_of("s1") == "p1"

    def test_unknown_service_leaves_topology_unchanged(self, network):
        self._three_services(network)
        before = network.snapshot_topology()

        with pytest.raises(UnknownServiceInPartitionError):
            network.repartition({"p1": ServiceIDSet(["ghost"])}, {}, Connection.blocked())

        assert network.snapshot_topology() == before

    def test_connection_to_undefined_partition_rejected(self, network):
        self._three_services(network)
        with pytest.raises(UnknownPartitionError):
            network.repartition(
                {"p1": ServiceIDSet(["s1"])},
                {PartitionConnectionID.of("p1", "nowhere"): Connection.blocked()},
                Connection.unblocked(),
            )

    def test_partitioning_disabled(self):
        network = ServiceNetwork(subnet="10.0.0.0/24", partitioning_enabled=False)
        network.register_service("s1")
        with pytest.raises(PartitioningDisabledError):
            network.repartition({"p1": ServiceIDSet(["s1"])}, {}, Connection.blocked())

    def test_packet_loss_configuration(self, network):
        """Blocked pairs become 100% loss; same-partition pairs are omitted."""
        self._three_services(network)
        network.repartition(
            {"p1": ServiceIDSet(["s1", "s2"]), "p2": ServiceIDSet(["s3"])},
            {},
            Connection.blocked(),
        )

        config = network.get_service_packet_loss_configurations()
        assert config["s1"] == {"s3": 100.0}
        assert config["s3"] == {"s1": 100.0, "s2": 100.0}


class TestConnection:
    def test_packet_loss_out_of_range(self):
        with pytest.raises(ValueError):
            Connection.with_packet_loss(150)

    def test_effective_packet_loss(self):
        assert Connection.blocked().effective_packet_loss == 100.0
        assert Connection.with_packet_loss(25).effective_packet_loss == 25
        assert Connection.unblocked().effective_packet_loss == 0

    def test_connection_id_is_unordered(self):
        assert PartitionConnectionID.of("b", "a") == PartitionConnectionID.of("a", "b")
