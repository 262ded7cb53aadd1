"""Locate a reachable container engine.

Locators each propose a candidate engine URL. Candidates are then probed in
priority order and the first reachable one wins:

1. ``docker.host`` from ``~/.testcontainers.properties``
2. ``DOCKER_HOST``, falling back to the default local socket

Usage:
    endpoint = await resolve_engine_endpoint()
    print(endpoint.base_url)
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote, unquote, urlsplit

from py_test_containers.errors import EngineNotFoundError

logger = logging.getLogger(__name__)

PROPERTIES_FILE_NAME = ".testcontainers.properties"
DOCKER_HOST_KEY = "docker.host"

DEFAULT_SOCKET_PATH = "/var/run/docker.sock"
DEFAULT_DOCKER_URL = f"http+unix://{quote(DEFAULT_SOCKET_PATH, safe='')}"

DEFAULT_PROBE_TIMEOUT = 5.0

FILE_SCHEMES = frozenset({"file", "unix", "http+unix"})
NETWORK_SCHEMES = frozenset({"tcp", "http"})

# Simulator test runners set HOME to something like
# /Users/<user>/Library/Developer/CoreSimulator/Devices/<uuid>/data
_SIMULATOR_HOME_PATTERN = re.compile(r"(/Users/[^/]+)/.*/data")


def _socket_path(url: str) -> str:
    """Filesystem path of a socket URL (percent-encoded host, or plain path)."""
    parts = urlsplit(url)
    if parts.netloc:
        return unquote(parts.netloc)
    return unquote(parts.path)


@dataclass(frozen=True)
class EngineEndpoint:
    """Resolved address of the container engine."""

    url: str

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme

    @property
    def is_unix_socket(self) -> bool:
        return self.scheme in FILE_SCHEMES

    @property
    def socket_path(self) -> str | None:
        if not self.is_unix_socket:
            return None
        return _socket_path(self.url)

    @property
    def base_url(self) -> str:
        """HTTP base URL requests are issued against."""
        if self.is_unix_socket:
            return "http://localhost"
        parts = urlsplit(self.url)
        if parts.scheme == "tcp":
            return f"http://{parts.netloc}"
        return f"{parts.scheme}://{parts.netloc}"


@runtime_checkable
class DockerLocator(Protocol):
    """Proposes a candidate engine URL."""

    def locate(self) -> str | None:
        """Return a candidate URL, or None if this locator has nothing to offer."""
        ...


def _home_from_home_env() -> str | None:
    if simulator_home := os.environ.get("SIMULATOR_HOST_HOME"):
        return simulator_home
    logger.debug("SIMULATOR_HOST_HOME environment variable not set")

    home = os.environ.get("HOME")
    if home is None:
        logger.debug("HOME environment variable not set")
        return None
    match = _SIMULATOR_HOME_PATTERN.fullmatch(home)
    if match is None:
        return home
    logger.debug("HOME is in a simulator data path, using %s as HOME", match.group(1))
    return match.group(1)


def _home_from_user_env() -> str | None:
    user = os.environ.get("USER")
    if user is None:
        logger.debug("USER environment variable not set")
        return None
    for candidate in (f"/Users/{user}", f"/home/{user}"):
        if os.path.exists(candidate):
            return candidate
    logger.warning(
        "USER environment variable set to %s, but /Users/%s and /home/%s do not exist",
        user,
        user,
        user,
    )
    return None


def resolve_home_directory() -> Path | None:
    """Find the real user home directory to search for the properties file."""
    home = _home_from_home_env() or _home_from_user_env()
    if home is None:
        logger.warning(
            "Could not find a home directory to search for %s", PROPERTIES_FILE_NAME
        )
        return None
    return Path(home)


class PropertiesFileLocator:
    """Reads ``docker.host`` from ``.testcontainers.properties``."""

    def __init__(self, base_directory: Path | None = None) -> None:
        """Initialize locator.

        Args:
            base_directory: Directory holding the properties file. Defaults to
                the resolved user home directory.
        """
        self.base_directory = base_directory if base_directory is not None else resolve_home_directory()

    def locate(self) -> str | None:
        if self.base_directory is None:
            return None

        properties_path = self.base_directory / PROPERTIES_FILE_NAME
        if not properties_path.is_file():
            return None

        try:
            contents = properties_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Error reading %s: %s", properties_path, e)
            return None

        for line in contents.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith(("#", "!")):
                continue
            parts = stripped.split("=")
            if len(parts) == 2 and parts[0].strip() == DOCKER_HOST_KEY:
                docker_host = parts[1].strip()
                return docker_host.replace("tcp://", "http://")

        return None


class EnvironmentLocator:
    """Reads ``DOCKER_HOST``, falling back to the default local socket."""

    def __init__(self, default_url: str = DEFAULT_DOCKER_URL) -> None:
        self.default_url = default_url

    def locate(self) -> str | None:
        if docker_host := os.environ.get("DOCKER_HOST"):
            return docker_host
        return self.default_url


def default_locators() -> list[DockerLocator]:
    """Locators in priority order."""
    return [PropertiesFileLocator(), EnvironmentLocator()]


async def _tcp_reachable(host: str, port: int, connect_timeout: float) -> bool:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=connect_timeout
        )
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug("Engine candidate %s:%s unreachable: %s", host, port, e)
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug("Error closing probe connection to %s:%s: %s", host, port, e)
    return True


async def is_reachable(url: str, connect_timeout: float = DEFAULT_PROBE_TIMEOUT) -> bool:
    """Check whether a candidate URL answers.

    Socket URLs are reachable if the socket path exists; TCP URLs if a
    connection can be opened within connect_timeout. Other schemes never are.
    """
    parts = urlsplit(url)
    if parts.scheme in FILE_SCHEMES:
        return os.path.exists(_socket_path(url))
    if parts.scheme in NETWORK_SCHEMES:
        try:
            port = parts.port
        except ValueError:
            return False
        if not parts.hostname or port is None:
            return False
        return await _tcp_reachable(parts.hostname, port, connect_timeout)
    logger.debug("Skipping engine candidate with unsupported scheme: %s", url)
    return False


async def find_first_reachable(
    urls: Iterable[str], connect_timeout: float = DEFAULT_PROBE_TIMEOUT
) -> str | None:
    """Return the first URL in list order that is reachable."""
    for url in urls:
        if await is_reachable(url, connect_timeout):
            return url
    return None


async def resolve_engine_endpoint(
    locators: Iterable[DockerLocator] | None = None,
    connect_timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> EngineEndpoint:
    """Run the locator chain and probe its candidates.

    Raises:
        EngineNotFoundError: No candidate was proposed and reachable.
    """
    if locators is None:
        locators = default_locators()

    candidates = [url for url in (locator.locate() for locator in locators) if url is not None]
    logger.debug("Engine candidates: %s", candidates)

    url = await find_first_reachable(candidates, connect_timeout)
    if url is None:
        raise EngineNotFoundError(candidates)

    logger.info("Using container engine at %s", url)
    return EngineEndpoint(url)
