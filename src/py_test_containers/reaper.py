"""Reaper sidecar that deletes a session's resources if the test process dies.

The reaper is a helper container with the engine socket mounted. It accepts
newline-terminated kill queries on TCP port 8080, e.g.

    label=org.testcontainers.session-id=<session id>

While at least one control connection is open it waits. Once it has been
unsupervised for its grace period it deletes everything matching the queries
it received and exits.
"""

from __future__ import annotations

import asyncio
import logging

from py_test_containers.config import REAPER_PORT
from py_test_containers.container import Container
from py_test_containers.errors import ReaperError
from py_test_containers.types import ContainerPortBinding, CreateContainerSettings, ExposedPort

logger = logging.getLogger(__name__)

READY_LOG_LINE = "Started!"
REAPER_SOCKET_MOUNT = "/var/run/docker.sock"


def kill_query(label: str, session_id: str) -> str:
    """Query selecting every resource labelled with this session's id."""
    return f"label={label}={session_id}"


def reaper_container_settings(docker_socket: str, privileged: bool = True) -> CreateContainerSettings:
    """Container settings for the reaper sidecar."""
    return CreateContainerSettings(
        exposed_ports=[ExposedPort(REAPER_PORT)],
        volume_binds=[f"{docker_socket}:{REAPER_SOCKET_MOUNT}"],
        privileged=privileged,
    )


class Reaper:
    """Control connection to a running reaper container."""

    def __init__(
        self,
        container: Container,
        port_binding: ContainerPortBinding,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.container = container
        self.port_binding = port_binding
        self._writer: asyncio.StreamWriter | None = writer
        self.acknowledged = 0
        self._replies = asyncio.create_task(self._read_replies(reader))

    @classmethod
    async def connect(cls, container: Container, startup_timeout: float = 30.0) -> Reaper:
        """Wait for the reaper to start and open its control connection."""
        logger.debug("Waiting for reaper to become available")
        await container.wait_for_log_line(READY_LOG_LINE, timeout=startup_timeout)
        logger.debug("Reaper has started")

        port = await container.get_mapped_port(REAPER_PORT)
        reader, writer = await asyncio.open_connection(port.host, port.port)
        logger.debug("Connected to reaper at %s:%d", port.host, port.port)
        return cls(container, port, reader, writer)

    async def _read_replies(self, reader: asyncio.StreamReader) -> None:
        """Log what the reaper sends back. Newer images answer each query with ACK."""
        try:
            while line := await reader.readline():
                reply = line.decode("utf-8", errors="replace").strip()
                if reply == "ACK":
                    self.acknowledged += 1
                logger.debug("Reaper replied: %s", reply)
        except (OSError, ValueError) as e:
            logger.debug("Reaper connection lost: %s", e)

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def add_kill_query(self, query: str) -> None:
        """Send one kill query.

        Raises:
            ReaperError: The control connection is not open.
        """
        writer = self._writer
        if writer is None or writer.is_closing():
            raise ReaperError("Connection to reaper not established")
        writer.write(query.encode("utf-8") + b"\n")
        await writer.drain()
        logger.debug("Kill query added to reaper: %s", query)

    async def close(self) -> None:
        """Close the control connection; the reaper starts its grace period."""
        if self._writer is None:
            return
        writer, self._writer = self._writer, None
        self._replies.cancel()
        await asyncio.gather(self._replies, return_exceptions=True)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug("Error closing reaper connection: %s", e)
