"""Core type definitions for py-test-containers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class SocketProtocol(str, Enum):
    """Transport protocol of a container port."""

    TCP = "tcp"
    UDP = "udp"


@dataclass(frozen=True)
class ExposedPort:
    """A container port to expose and publish on the host."""

    port: int
    protocol: SocketProtocol = SocketProtocol.TCP

    @property
    def key(self) -> str:
        """Engine port key, e.g. "8080/tcp"."""
        return f"{self.port}/{self.protocol.value}"


@dataclass
class CreateContainerSettings:
    """Settings for creating a container.

    Attributes:
        exposed_ports: Ports the container exposes. Each one is published on
            an engine-assigned host port.
        volume_binds: Bind mounts in `docker run --volume` format
            ("/host/path:/container/path[:ro]").
        environment: Environment variables as "KEY=value" strings.
        aliases: Network name -> aliases the container is reachable by on that
            network. The network must already exist.
        privileged: Run the container in privileged mode.
        networks: Networks to attach the container to without aliases.
        cmd: Optional command override.
    """

    exposed_ports: list[ExposedPort] = field(default_factory=list)
    volume_binds: list[str] = field(default_factory=list)
    environment: list[str] = field(default_factory=list)
    aliases: dict[str, list[str]] = field(default_factory=dict)
    privileged: bool = False
    networks: list[str] = field(default_factory=list)
    cmd: list[str] | None = None


@dataclass(frozen=True)
class ContainerPortBinding:
    """Host-side address a published container port is reachable at."""

    port: int
    host: str
    protocol: SocketProtocol = SocketProtocol.TCP


class StreamType(IntEnum):
    """Origin stream of a log frame, as tagged by the engine."""

    STDIN = 0
    STDOUT = 1
    STDERR = 2


@dataclass(frozen=True)
class LogEvent:
    """One decoded log frame."""

    stream_type: StreamType
    data: bytes

    @property
    def message(self) -> str:
        return self.data.decode("utf-8", errors="replace")
