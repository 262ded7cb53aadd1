"""Session-scoped manager for test containers, networks and images.

TestContainerManager ties every resource it creates to one session id. Two
mechanisms clean them up:

- ``close()`` deletes tracked resources directly.
- A reaper sidecar, started on first use, deletes everything carrying the
  session label if the test process dies before ``close()`` runs.

Usage:
    async with TestContainerManager() as manager:
        container = await manager.create_container(
            "alpine/socat",
            CreateContainerSettings(exposed_ports=[ExposedPort(8080)], cmd=[...]),
        )
        binding = await container.get_mapped_port(8080)
"""

from __future__ import annotations

import asyncio
import json
import logging
import tarfile
import uuid
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from py_test_containers.config import ManagerConfig
from py_test_containers.container import Container
from py_test_containers.discovery import DockerLocator, resolve_engine_endpoint
from py_test_containers.engine.client import EngineClient
from py_test_containers.engine.models import (
    CreateContainerBody,
    EndpointConfig,
    HostConfig,
    ManifestEntry,
    NetworkingConfig,
    PortBinding,
)
from py_test_containers.errors import CleanupError, EngineError, TestContainersError
from py_test_containers.network import Network
from py_test_containers.reaper import Reaper, kill_query, reaper_container_settings
from py_test_containers.types import CreateContainerSettings

logger = logging.getLogger(__name__)


def read_repo_tags(tarball_path: str | Path) -> list[str]:
    """Repo tags listed in an image tarball's ``manifest.json``.

    Returns an empty list when the tarball has no readable manifest.
    """
    try:
        with tarfile.open(tarball_path) as tar:
            try:
                manifest_file = tar.extractfile("manifest.json")
            except KeyError:
                logger.debug("No manifest.json in %s", tarball_path)
                return []
            if manifest_file is None:
                return []
            data = json.load(manifest_file)
        entries = [ManifestEntry.from_dict(entry) for entry in data]
    except (OSError, tarfile.TarError, ValueError, TypeError, KeyError) as e:
        logger.warning("Could not read image manifest from %s: %s", tarball_path, e)
        return []
    return [tag for entry in entries for tag in entry.repo_tags]


class TestContainerManager:
    """Creates and tracks the resources of one test session.

    Every container and network gets the session label. The first resource
    created starts the reaper. ``close()`` removes what was tracked.
    """

    __test__ = False  # keep pytest from collecting this as a test class

    def __init__(
        self,
        config: ManagerConfig | None = None,
        *,
        client: EngineClient | None = None,
        locators: Iterable[DockerLocator] | None = None,
    ) -> None:
        """Initialize manager.

        Args:
            config: Manager configuration. Defaults to ManagerConfig.from_env().
            client: Pre-built engine client. When omitted, ``start()`` locates
                the engine and builds one.
            locators: Engine locators to try, in priority order. Defaults to
                the properties file, then DOCKER_HOST / the local socket.
        """
        self.config = config if config is not None else ManagerConfig.from_env()
        self.session_id = str(uuid.uuid4())
        self._client = client
        self._locators = list(locators) if locators is not None else None
        self._reaper: Reaper | None = None
        self._reaper_lock = asyncio.Lock()
        self._containers: list[Container] = []
        self._networks: list[Network] = []
        self._image_tags: list[str] = []

    @classmethod
    async def create(cls, config: ManagerConfig | None = None, **kwargs: Any) -> TestContainerManager:
        """Create a manager and resolve the engine endpoint."""
        manager = cls(config, **kwargs)
        await manager.start()
        return manager

    async def __aenter__(self) -> TestContainerManager:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def start(self) -> None:
        """Resolve the engine endpoint and build the client.

        Raises:
            EngineNotFoundError: No engine is reachable.
        """
        if self._client is not None:
            return
        endpoint = await resolve_engine_endpoint(self._locators, self.config.probe_timeout)
        self._client = EngineClient(
            endpoint,
            session_id=self.session_id,
            timeout=self.config.request_timeout,
            upload_timeout=self.config.upload_timeout,
        )

    @property
    def client(self) -> EngineClient:
        if self._client is None:
            raise RuntimeError("Manager not started. Use 'async with' or call start()")
        return self._client

    @property
    def labels(self) -> dict[str, str]:
        """Labels attached to every resource of this session."""
        return {self.config.session_label: self.session_id}

    @property
    def containers(self) -> tuple[Container, ...]:
        return tuple(self._containers)

    @property
    def networks(self) -> tuple[Network, ...]:
        return tuple(self._networks)

    @property
    def image_tags(self) -> tuple[str, ...]:
        return tuple(self._image_tags)

    @property
    def reaper(self) -> Reaper | None:
        return self._reaper

    async def create_container(
        self, image: str, settings: CreateContainerSettings | None = None
    ) -> Container:
        """Pull (if needed), create and start a container, and track it."""
        await self._ensure_reaper_started()
        container = await self._create_and_start(image, settings or CreateContainerSettings())
        self._containers.append(container)
        return container

    async def create_network(self, name: str) -> Network:
        """Create a session-labelled network and track it."""
        await self._ensure_reaper_started()
        response = await self.client.network_create(name, labels=self.labels)
        if response.warning:
            logger.warning("Engine warning creating network %s: %s", name, response.warning)
        network = Network(name, self.client, network_id=response.id)
        self._networks.append(network)
        return network

    async def load_image_tarball(
        self, tarball_path: str | Path, *, remove_on_close: bool = False
    ) -> list[str]:
        """Upload an image tarball to the engine.

        Images are not labelled, so the reaper never removes them. Pass
        ``remove_on_close`` to delete the loaded tags in ``close()``.

        Returns:
            Repo tags listed in the tarball's manifest.
        """
        tags = await asyncio.to_thread(read_repo_tags, tarball_path)
        await self.client.image_load(tarball_path)
        logger.debug("Container image uploaded from %s: %s", tarball_path, tags)
        if remove_on_close:
            for tag in tags:
                self.track_image(tag)
        return tags

    def track_image(self, tag: str) -> None:
        """Delete this image tag in ``close()``."""
        if tag not in self._image_tags:
            self._image_tags.append(tag)

    async def log_reaper(self, sink: Callable[[str], None] = print) -> asyncio.Task:
        """Forward the reaper's logs to sink."""
        reaper = await self._ensure_reaper_started()
        return reaper.container.log_output(sink)

    async def close(self) -> None:
        """Remove every tracked resource, then release connections.

        Each resource is attempted even if an earlier one failed.

        Raises:
            CleanupError: One or more resources could not be removed.
        """
        if self._client is None:
            return

        errors: list[Exception] = []

        containers, self._containers = self._containers, []
        logger.debug("There are %d containers to clean up", len(containers))
        for container in containers:
            try:
                await container.kill()
                await container.delete()
            except Exception as e:
                logger.error("Failed to clean up container %s: %s", container.id, e)
                errors.append(e)

        image_tags, self._image_tags = self._image_tags, []
        for tag in image_tags:
            try:
                await self._remove_image(tag)
            except Exception as e:
                logger.error("Failed to clean up image %s: %s", tag, e)
                errors.append(e)

        networks, self._networks = self._networks, []
        for network in networks:
            try:
                await network.delete()
            except Exception as e:
                logger.error("Failed to clean up network %s: %s", network.name, e)
                errors.append(e)

        if self._reaper is not None:
            reaper, self._reaper = self._reaper, None
            await reaper.close()

        await self._client.close()

        if errors:
            raise CleanupError(errors)

    async def _remove_image(self, tag: str) -> None:
        try:
            await self.client.image_delete(tag)
            logger.debug("Cleaned up image %s", tag)
        except EngineError as e:
            if e.is_not_found:
                logger.debug("Image %s not found for cleanup", tag)
            elif e.is_conflict:
                logger.warning(
                    "Conflict while deleting image %s: %s. This may be due to the image "
                    "being in use by a container that was created outside this test.",
                    tag,
                    e.message,
                )
            else:
                raise

    async def _ensure_reaper_started(self) -> Reaper:
        if self._reaper is not None:
            return self._reaper
        async with self._reaper_lock:
            if self._reaper is not None:
                return self._reaper
            logger.debug(
                "Reaper has not yet been started, starting a new reaper container "
                "to reap zombie containers"
            )
            # Not tracked: the reaper has to outlive the sweep it performs
            container = await self._create_and_start(
                self.config.reaper_image,
                reaper_container_settings(
                    self.config.docker_socket, privileged=self.config.reaper_privileged
                ),
            )
            logger.debug("Reaper container %s was created and started", container.id)

            reaper: Reaper | None = None
            try:
                reaper = await Reaper.connect(
                    container, startup_timeout=self.config.reaper_startup_timeout
                )
                await reaper.add_kill_query(kill_query(self.config.session_label, self.session_id))
            except BaseException:
                # No kill query reached it, so nothing else removes this container
                logger.warning("Reaper %s did not come up, removing it", container.id)
                if reaper is not None:
                    await reaper.close()
                try:
                    await container.delete()
                except TestContainersError as e:
                    logger.warning("Failed to remove reaper container %s: %s", container.id, e)
                raise
            self._reaper = reaper
            return reaper

    async def _image_is_cached(self, image: str) -> bool:
        logger.debug("Checking for image %s", image)
        try:
            await self.client.image_inspect(image)
            return True
        except EngineError as e:
            if e.is_not_found:
                return False
            raise

    async def _pull_image_if_needed(self, image: str) -> None:
        if not await self._image_is_cached(image):
            logger.info("Pulling image %s", image)
            await self.client.image_pull(image)
            logger.debug("Pulled image %s", image)

    def _create_body(self, image: str, settings: CreateContainerSettings) -> CreateContainerBody:
        exposed_ports = [port.key for port in settings.exposed_ports]
        # Empty host address and port let the engine pick a free host port
        port_bindings = {port.key: [PortBinding(host_ip="", host_port="")] for port in settings.exposed_ports}

        endpoints = {network: EndpointConfig(aliases=[]) for network in settings.networks}
        for network, aliases in settings.aliases.items():
            endpoints[network] = EndpointConfig(aliases=list(aliases))

        return CreateContainerBody(
            image=image,
            exposed_ports=exposed_ports,
            env=list(settings.environment),
            labels=self.labels,
            host_config=HostConfig(
                binds=list(settings.volume_binds),
                port_bindings=port_bindings,
                privileged=settings.privileged,
            ),
            networking_config=NetworkingConfig(endpoints_config=endpoints),
            cmd=list(settings.cmd) if settings.cmd is not None else None,
        )

    async def _create_and_start(self, image: str, settings: CreateContainerSettings) -> Container:
        await self._pull_image_if_needed(image)
        body = self._create_body(image, settings)
        logger.debug("Creating container from image %s: %s", image, body)
        response = await self.client.container_create(body)
        container = Container(self.client, response.id)
        try:
            await container.start()
        except Exception:
            logger.warning("Container %s failed to start, removing it", container.id)
            try:
                await container.delete()
            except TestContainersError as e:
                logger.warning("Failed to remove container %s: %s", container.id, e)
            raise
        return container
