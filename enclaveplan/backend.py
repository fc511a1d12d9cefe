"""
Container backend interface.

The plan engine never talks to a container engine directly; every side
effect goes through a ContainerBackend. Concrete backends (local container
engine, cluster engine) live outside this package and are loaded by the
CLI from an allow-listed module.

Backend calls are assumed safe to retry at the caller's discretion; the
engine itself never retries them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from enclaveplan.network import PortSpec


@dataclass(frozen=True)
class ContainerSpec:
    """
    Everything a backend needs to create and start one container.

    Attributes:
        name: Container name (service ID or task name)
        image: Container image
        ip_address: Address allocated by the service network, if any
        ports: Declared ports by port ID
        env_vars: Environment variables, placeholders already resolved
        entrypoint: Entrypoint override
        cmd: Command arguments, placeholders already resolved
        files: Mount path -> files artifact content
    """
    name: str
    image: str
    ip_address: Optional[str] = None
    ports: dict[str, PortSpec] = field(default_factory=dict)
    env_vars: dict[str, str] = field(default_factory=dict)
    entrypoint: tuple[str, ...] = ()
    cmd: tuple[str, ...] = ()
    files: dict[str, bytes] = field(default_factory=dict)


class ContainerBackend(ABC):
    """
    Abstract base class for container backends.

    Handles are opaque to the engine; it stores whatever
    create_and_start_container returns and hands it back unchanged.
    """

    @abstractmethod
    def pull_image(self, image: str) -> None:
        """
        Pull an image, or confirm it is present.

        Raises:
            Exception: If the image does not exist or cannot be pulled
        """
        pass

    @abstractmethod
    def create_and_start_container(self, spec: ContainerSpec) -> Any:
        """
        Create and start a container.

        Returns:
            An opaque container handle
        """
        pass

    @abstractmethod
    def stop_container(self, handle: Any) -> None:
        pass

    @abstractmethod
    def exec_in_container(self, handle: Any, command: tuple[str, ...]) -> tuple[int, str]:
        """
        Run a command inside a running container.

        Returns:
            Tuple of (exit_code, combined output)
        """
        pass

    @abstractmethod
    def bind_host_port(self, handle: Any, port_id: str, port: PortSpec) -> int:
        """
        Publish a container port on the host.

        Returns:
            The host port number
        """
        pass

    @abstractmethod
    def http_get(self, ip_address: str, port: int, path: str) -> tuple[int, str]:
        """
        Issue an HTTP GET from inside the enclave network.

        Returns:
            Tuple of (status_code, body)
        """
        pass

    @abstractmethod
    def http_post(
        self, ip_address: str, port: int, path: str, body: str, content_type: str
    ) -> tuple[int, str]:
        """
        Issue an HTTP POST from inside the enclave network.

        Returns:
            Tuple of (status_code, body)
        """
        pass

    @abstractmethod
    def copy_files_from_container(self, handle: Any, path: str) -> bytes:
        """Copy a path out of a container as an archive."""
        pass

    @abstractmethod
    def configure_partitions(self, packet_loss: dict[str, dict[str, float]]) -> None:
        """
        Apply a traffic-control configuration.

        Args:
            packet_loss: Source IP -> target IP -> packet loss percentage.
                Every service appears as a source; pairs without loss are omitted.
        """
        pass


class NoOpBackend(ContainerBackend):
    """
    No-op backend for testing and dry-run mode.

    Accepts every call without doing anything: images always exist,
    commands always exit 0, endpoints always answer 200.
    """

    def pull_image(self, image: str) -> None:
        pass

    def create_and_start_container(self, spec: ContainerSpec) -> Any:
        return f"noop-{spec.name}"

    def stop_container(self, handle: Any) -> None:
        pass

    def exec_in_container(self, handle: Any, command: tuple[str, ...]) -> tuple[int, str]:
        return 0, ""

    def bind_host_port(self, handle: Any, port_id: str, port: PortSpec) -> int:
        return port.number

    def http_get(self, ip_address: str, port: int, path: str) -> tuple[int, str]:
        return 200, ""

    def http_post(
        self, ip_address: str, port: int, path: str, body: str, content_type: str
    ) -> tuple[int, str]:
        return 200, ""

    def copy_files_from_container(self, handle: Any, path: str) -> bytes:
        return b""

    def configure_partitions(self, packet_loss: dict[str, dict[str, float]]) -> None:
        pass
