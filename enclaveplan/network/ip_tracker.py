"""
FreeIpAddrTracker - hands out free IP addresses from a subnet.

Allocation is deterministic: a fresh tracker given the same sequence of
allocate/release calls always yields the same addresses. The network
address is never handed out, and neither is the broadcast address of
subnets that have one.
"""

import ipaddress
import logging
from typing import Iterable

from enclaveplan.errors import AddressSpaceExhaustedError, ConfigError

logger = logging.getLogger(__name__)


class FreeIpAddrTracker:
    """
    Tracks taken addresses on a single IPv4 subnet.

    Not thread-safe on its own; ServiceNetwork calls it under the
    enclave-wide lock.
    """

    def __init__(self, subnet: str, already_taken: Iterable[str] = ()):
        """
        Args:
            subnet: CIDR notation, e.g. "10.0.0.0/16"
            already_taken: Addresses that must never be handed out

        Raises:
            ConfigError: If subnet is not a valid IPv4 CIDR
        """
        try:
            self._subnet = ipaddress.IPv4Network(subnet, strict=False)
        except ValueError as e:
            raise ConfigError(f"Failed to parse subnet {subnet} as CIDR: {e}") from e
        self._taken: set[ipaddress.IPv4Address] = {
            ipaddress.IPv4Address(addr) for addr in already_taken
        }

    @property
    def subnet(self) -> str:
        return str(self._subnet)

    def _candidate_range(self) -> tuple[int, int]:
        first = int(self._subnet.network_address) + 1
        last = int(self._subnet.broadcast_address)
        if self._subnet.prefixlen < 31:
            last -= 1
        return first, last

    def allocate_ip(self) -> str:
        """
        Take the lowest free address after the network address.

        Returns:
            The allocated address as a dotted string

        Raises:
            AddressSpaceExhaustedError: If every candidate address is taken
        """
        first, last = self._candidate_range()
        for value in range(first, last + 1):
            candidate = ipaddress.IPv4Address(value)
            if candidate not in self._taken:
                self._taken.add(candidate)
                logger.debug(f"Allocated IP {candidate} on subnet {self._subnet}")
                return str(candidate)
        raise AddressSpaceExhaustedError(str(self._subnet))

    def release_ip(self, addr: str) -> None:
        """Return addr to the free pool. Releasing an address not held is a no-op."""
        try:
            parsed = ipaddress.IPv4Address(addr)
        except ValueError:
            return
        if parsed in self._taken:
            self._taken.discard(parsed)
            logger.debug(f"Released IP {parsed} on subnet {self._subnet}")

    def is_taken(self, addr: str) -> bool:
        return ipaddress.IPv4Address(addr) in self._taken

    def taken_count(self) -> int:
        return len(self._taken)
