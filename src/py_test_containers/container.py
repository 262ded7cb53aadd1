"""Handle for a single container created in a test session."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing

from py_test_containers.backoff import with_exponential_backoff
from py_test_containers.engine.client import EngineClient
from py_test_containers.engine.models import ContainerInspectResponse
from py_test_containers.errors import EngineError
from py_test_containers.timeout import run_with_timeout
from py_test_containers.types import ContainerPortBinding, LogEvent, SocketProtocol

logger = logging.getLogger(__name__)

WILDCARD_HOSTS = frozenset({"0.0.0.0", "::"})

# Port publication can lag container start, so port lookups retry on their own schedule
PORT_BACKOFF_STARTING_SECONDS = 1.0
PORT_MAX_BACKOFF_SECONDS = 10.0


class Container:
    """Operations on one container, always addressed by its engine id."""

    def __init__(self, client: EngineClient, container_id: str) -> None:
        self._client = client
        self._container_id = container_id
        self._background_tasks: list[asyncio.Task] = []

    def __repr__(self) -> str:
        return f"Container(id={self._container_id[:12]!r})"

    @property
    def id(self) -> str:
        return self._container_id

    @property
    def background_tasks(self) -> tuple[asyncio.Task, ...]:
        """Log-forwarding tasks started by ``log_output()`` and not yet cancelled."""
        return tuple(self._background_tasks)

    async def inspect(self) -> ContainerInspectResponse:
        return await self._client.container_inspect(self._container_id)

    async def start(self) -> None:
        await self._client.container_start(self._container_id)

    async def kill(self) -> None:
        """Cancel background log tasks, then kill the container.

        Safe to call repeatedly and on containers that are already gone.
        """
        tasks, self._background_tasks = self._background_tasks, []
        for task in tasks:
            task.cancel()
        await self._client.container_kill(self._container_id)

    async def delete(self, force: bool = True) -> None:
        await self._client.container_delete(self._container_id, force=force)

    async def get_mapped_port(
        self, port: int, protocol: SocketProtocol = SocketProtocol.TCP
    ) -> ContainerPortBinding:
        """Find where a container port is published on the host.

        A wildcard host address is reported as ``localhost``.

        Raises:
            BackoffError: The port never showed up with exactly one usable
                binding. Each attempt's EngineError is kept on the error.
        """
        port_id = f"{port}/{protocol.value}"

        async def attempt() -> ContainerPortBinding:
            port_mappings = (await self.inspect()).ports
            if port_mappings is None:
                raise EngineError(f"No port mappings for container {self._container_id}")
            logger.debug("Received container port mappings %s", port_mappings)

            bindings = port_mappings.get(port_id)
            if bindings is None:
                raise EngineError(
                    f"No port mappings found for port id {port_id} in container {self._container_id}"
                )
            if len(bindings) > 1 and any(b.host_ip not in WILDCARD_HOSTS for b in bindings):
                raise EngineError(
                    f"Multiple port mappings for container {self._container_id} "
                    f"port {port_id}: {bindings}"
                )
            if not bindings:
                raise EngineError(
                    f"No port mapping for container {self._container_id} port {port_id}"
                )

            binding = bindings[0]
            try:
                host_port = int(binding.host_port)
            except ValueError:
                raise EngineError(
                    f"Port string {binding.host_port!r} is not an unsigned integer"
                ) from None
            host = "localhost" if binding.host_ip in WILDCARD_HOSTS else binding.host_ip
            return ContainerPortBinding(port=host_port, host=host, protocol=protocol)

        return await with_exponential_backoff(
            attempt,
            backoff_starting_seconds=PORT_BACKOFF_STARTING_SECONDS,
            max_backoff_seconds=PORT_MAX_BACKOFF_SECONDS,
        )

    def logs(
        self, follow: bool = False, stdout: bool = True, stderr: bool = True
    ) -> AsyncIterator[LogEvent]:
        """Stream decoded log events.

        With ``follow`` the stream stays open until the container stops or the
        consumer stops iterating; without it, it ends after the current output.
        """
        return self._client.structured_container_logs(
            self._container_id, follow=follow, stdout=stdout, stderr=stderr
        )

    def log_output(self, sink: Callable[[str], None] = print) -> asyncio.Task:
        """Forward every log line to sink from a background task.

        The task is cancelled by ``kill()``.
        """
        logger.debug("Logging output for container %s", self._container_id)

        async def forward() -> None:
            async with aclosing(self.logs(follow=True)) as events:
                async for event in events:
                    sink(event.message)

        task = asyncio.create_task(forward(), name=f"logs-{self._container_id[:12]}")
        task.add_done_callback(self._log_task_done)
        self._background_tasks.append(task)
        return task

    def _log_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            logger.warning(
                "Log forwarding for container %s failed: %s: %s",
                self._container_id,
                type(error).__name__,
                error,
            )

    async def wait_for_log_line(self, pattern: str, timeout: float = 30.0) -> str:
        """Wait until a log line matches a regular expression.

        Returns:
            The first matching line.

        Raises:
            OperationTimeoutError: No match within timeout.
            EngineError: The log stream ended before a match.
        """
        line_regex = re.compile(pattern)

        async def scan() -> str:
            logger.debug("Looking for line matching regex %r", pattern)
            async with aclosing(self.logs(follow=True)) as events:
                async for event in events:
                    if line_regex.search(event.message):
                        logger.debug("Found entry for regex: %s", event.message)
                        return event.message
            raise EngineError(f"Container logs ended before entry was found for {pattern!r}")

        return await run_with_timeout(scan(), timeout, operation=f"wait for log line {pattern!r}")
