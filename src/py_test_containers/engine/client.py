"""HTTP client for the container engine API.

Only the calls needed to run test dependencies are modeled. Every request
carries the session id header and goes through exponential backoff, except
the log stream, which cannot be replayed once partly consumed.

Usage:
    async with EngineClient(endpoint, session_id="...") as client:
        response = await client.container_create(body)
        await client.container_start(response.id)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from pathlib import Path
from typing import Any, TypeVar

import httpx

from py_test_containers.backoff import with_exponential_backoff
from py_test_containers.discovery import EngineEndpoint
from py_test_containers.engine.logs import LogFrameDemuxer
from py_test_containers.engine.models import (
    ContainerCreateResponse,
    ContainerInspectResponse,
    CreateContainerBody,
    ImageDeleteResponseItem,
    ImageInspectResponse,
    NetworkCreateBody,
    NetworkCreateResponse,
    parse_error_message,
)
from py_test_containers.errors import BackoffError, EngineError
from py_test_containers.types import LogEvent

logger = logging.getLogger(__name__)

M = TypeVar("M")

SESSION_HEADER = "x-tc-sid"
USER_AGENT = "py-test-containers/0.1"

DEFAULT_TIMEOUT = 30.0
DEFAULT_UPLOAD_TIMEOUT = 300.0
UPLOAD_CHUNK_SIZE = 32 * 1024 * 1024


def split_image_reference(image: str) -> tuple[str, str]:
    """Split an image reference into (name, tag or digest).

    The engine pulls every tag of a repository when no tag is given, so a
    reference without one gets ``latest``.
    """
    if "@" in image:
        name, digest = image.split("@", 1)
        return name, digest
    last_segment = image.rsplit("/", 1)[-1]
    if ":" in last_segment:
        name, tag = image.rsplit(":", 1)
        return name, tag
    return image, "latest"


def _upload_size(path: Path) -> int:
    """Size of the file to upload, following a symbolic link to its target."""
    if path.is_symlink():
        target = path.resolve()
        if not target.is_file():
            raise EngineError(f"Symbolic link {path} does not point to a regular file")
        return target.stat().st_size
    if path.is_file():
        return path.stat().st_size
    if not path.exists():
        raise EngineError(f"Image tarball {path} does not exist")
    raise EngineError(f"Unsupported file type for {path}")


async def _read_chunks(
    path: Path, total_size: int, chunk_size: int = UPLOAD_CHUNK_SIZE
) -> AsyncGenerator[bytes, None]:
    with open(path, "rb") as f:
        read_bytes = 0
        while read_bytes < total_size:
            data = await asyncio.to_thread(f.read, min(chunk_size, total_size - read_bytes))
            if not data:
                break
            read_bytes += len(data)
            logger.debug("Read %d bytes of %d for image import", read_bytes, total_size)
            yield data


class EngineClient:
    """Typed access to the engine API over a Unix socket or TCP.

    One connection pool is shared by all calls and closed by ``close()``.
    """

    def __init__(
        self,
        endpoint: EngineEndpoint,
        session_id: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize engine client.

        Args:
            endpoint: Resolved engine endpoint.
            session_id: Sent with every request for correlation, when given.
            timeout: Default timeout for ordinary requests.
            upload_timeout: Timeout for image uploads.
            transport: Optional httpx transport override. Socket endpoints
                get a Unix-domain-socket transport by default.
        """
        self.endpoint = endpoint
        self.session_id = session_id
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> EngineClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            transport = self._transport
            if transport is None and self.endpoint.is_unix_socket:
                transport = httpx.AsyncHTTPTransport(uds=self.endpoint.socket_path)
            self._client = httpx.AsyncClient(
                base_url=self.endpoint.base_url,
                transport=transport,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Shut down the connection pool."""
        if self._client is not None:
            client = self._client
            self._client = None
            await client.aclose()

    def _headers(self) -> dict[str, str]:
        """Get headers with session ID and client identifier."""
        headers = {"User-Agent": USER_AGENT}
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        content_factory: Callable[[], AsyncGenerator[bytes, None]] | None = None,
        extra_headers: dict[str, str] | None = None,
        timeout: float | httpx.Timeout | None = None,
        retry: bool = True,
        stream: bool = False,
    ) -> httpx.Response:
        client = await self._get_client()
        headers = self._headers()
        if extra_headers:
            headers.update(extra_headers)

        json_bytes: bytes | None = None
        if body is not None:
            json_bytes = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        request_timeout = self.timeout if timeout is None else timeout

        async def attempt() -> httpx.Response:
            # Streamed bodies are single-use, so each attempt builds a fresh one
            upload = content_factory() if content_factory is not None else None
            request = client.build_request(
                method,
                path,
                params=params,
                content=upload if upload is not None else json_bytes,
                headers=headers,
                timeout=request_timeout,
            )
            logger.debug(">>> %s %s", method, request.url)
            try:
                response = await client.send(request, stream=stream)
            finally:
                # A failed send can leave the body half read with its file open
                if upload is not None:
                    await upload.aclose()
            logger.debug("<<< %s %s -> %d", method, path, response.status_code)
            return response

        if not retry:
            return await attempt()
        return await with_exponential_backoff(attempt)

    async def _error_from(self, response: httpx.Response, endpoint: str) -> EngineError:
        """Build an EngineError from an error response, closing it."""
        try:
            await response.aread()
        finally:
            await response.aclose()
        try:
            data = response.json()
        except ValueError:
            data = None
        message = parse_error_message(data) or "Unknown error"
        return EngineError(message, endpoint=endpoint, status_code=response.status_code)

    async def _check(self, response: httpx.Response, endpoint: str) -> None:
        if response.status_code >= 400:
            raise await self._error_from(response, endpoint)

    async def _decode(
        self,
        response: httpx.Response,
        endpoint: str,
        from_dict: Callable[[Any], M],
    ) -> M:
        await self._check(response, endpoint)
        try:
            return from_dict(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise EngineError(
                f"Malformed response body: {type(e).__name__}: {e}",
                endpoint=endpoint,
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _raise_for_stream_errors(response: httpx.Response, endpoint: str) -> None:
        """Raise for error entries in a newline-delimited JSON progress body."""
        for line in response.text.splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if isinstance(entry, dict) and entry.get("error"):
                raise EngineError(
                    str(entry["error"]), endpoint=endpoint, status_code=response.status_code
                )

    # Containers

    async def container_create(self, body: CreateContainerBody) -> ContainerCreateResponse:
        endpoint = "/containers/create"
        response = await self._send("POST", endpoint, body=body.to_dict())
        created = await self._decode(response, endpoint, ContainerCreateResponse.from_dict)
        for warning in created.warnings:
            logger.warning("Engine warning creating container %s: %s", created.id, warning)
        return created

    async def container_start(self, container_id: str) -> None:
        endpoint = f"/containers/{container_id}/start"
        response = await self._send("POST", endpoint)
        await self._check(response, endpoint)
        if response.status_code != 204:
            logger.warning(
                "Start container returned a non-204 status (%d), which is unexpected",
                response.status_code,
            )

    async def container_kill(self, container_id: str) -> None:
        """Kill a container. Missing or already stopped containers are tolerated."""
        endpoint = f"/containers/{container_id}/kill"
        response = await self._send("POST", endpoint)
        if response.status_code == 404:
            logger.warning("Container %s not found, cannot kill", container_id)
            return
        if response.status_code == 409:
            error = await self._error_from(response, endpoint)
            logger.debug("Container %s is not running, nothing to kill: %s", container_id, error)
            return
        await self._check(response, endpoint)

    async def container_delete(self, container_id: str, force: bool = False) -> None:
        """Delete a container. A missing container is tolerated."""
        endpoint = f"/containers/{container_id}"
        params = {"force": "true"} if force else None
        response = await self._send("DELETE", endpoint, params=params)
        if response.status_code == 404:
            logger.warning("Container %s not found, cannot delete", container_id)
            return
        await self._check(response, endpoint)

    async def container_inspect(self, container_id: str) -> ContainerInspectResponse:
        endpoint = f"/containers/{container_id}/json"
        logger.debug("Inspecting container %s", container_id)
        response = await self._send("GET", endpoint)
        return await self._decode(response, endpoint, ContainerInspectResponse.from_dict)

    async def container_logs(
        self,
        container_id: str,
        follow: bool,
        stdout: bool = True,
        stderr: bool = True,
    ) -> httpx.Response:
        """Open the raw multiplexed log stream.

        The caller owns the returned streaming response and must close it.
        """
        endpoint = f"/containers/{container_id}/logs"
        params = {
            "follow": "true" if follow else "false",
            "stdout": "true" if stdout else "false",
            "stderr": "true" if stderr else "false",
        }
        timeout: float | httpx.Timeout = self.timeout
        if follow:
            timeout = httpx.Timeout(self.timeout, read=None)
        response = await self._send(
            "GET", endpoint, params=params, timeout=timeout, retry=False, stream=True
        )
        if response.status_code == 200:
            return response

        error = await self._error_from(response, endpoint)
        if response.status_code == 404:
            raise EngineError(
                f"Container {container_id} not found, cannot follow logs",
                endpoint=endpoint,
                status_code=404,
            )
        raise EngineError(
            f"Failed to get logs for container {container_id}: {error.message}",
            endpoint=endpoint,
            status_code=response.status_code,
        )

    async def structured_container_logs(
        self,
        container_id: str,
        follow: bool,
        stdout: bool = True,
        stderr: bool = True,
    ) -> AsyncIterator[LogEvent]:
        """Yield decoded log events in the order the engine produced them."""
        response = await self.container_logs(container_id, follow, stdout, stderr)
        demuxer = LogFrameDemuxer()
        try:
            async for chunk in response.aiter_bytes():
                demuxer.feed(chunk)
                while (event := demuxer.next_event()) is not None:
                    yield event
        finally:
            await response.aclose()
        if demuxer.buffered_bytes:
            logger.warning(
                "Log stream for %s ended mid-frame, dropping %d undecoded byte(s)",
                container_id,
                demuxer.buffered_bytes,
            )

    # Networks

    async def network_create(self, name: str, labels: dict[str, str]) -> NetworkCreateResponse:
        endpoint = "/networks/create"
        body = NetworkCreateBody(name=name, labels=labels)
        response = await self._send("POST", endpoint, body=body.to_dict())
        return await self._decode(response, endpoint, NetworkCreateResponse.from_dict)

    async def network_delete(self, network_id: str) -> None:
        """Delete a network. A missing network is tolerated."""
        endpoint = f"/networks/{network_id}"
        response = await self._send("DELETE", endpoint)
        if response.status_code == 404:
            logger.warning("Network %s not found for deletion", network_id)
            return
        await self._check(response, endpoint)

    # Images

    async def image_inspect(self, name: str) -> ImageInspectResponse:
        endpoint = f"/images/{name}/json"
        response = await self._send("GET", endpoint)
        return await self._decode(response, endpoint, ImageInspectResponse.from_dict)

    async def image_pull(self, from_image: str) -> None:
        endpoint = "/images/create"
        name, tag = split_image_reference(from_image)
        logger.debug("Pulling image %s (tag %s)", name, tag)
        response = await self._send("POST", endpoint, params={"fromImage": name, "tag": tag})
        await self._check(response, endpoint)
        self._raise_for_stream_errors(response, endpoint)
        if response.status_code != 200:
            raise EngineError(
                f"Failed to pull image {from_image}",
                endpoint=endpoint,
                status_code=response.status_code,
            )

    async def image_load(self, image_path: str | Path) -> None:
        """Upload an image tarball.

        The file is streamed in fixed-size chunks with a known Content-Length.

        Raises:
            EngineError: The file is unusable, the upload kept failing, or the
                engine rejected the image.
        """
        endpoint = "/images/load"
        path = Path(image_path)
        file_size = _upload_size(path)
        logger.debug("Starting image import of %d bytes from %s", file_size, path)

        try:
            response = await self._send(
                "POST",
                endpoint,
                content_factory=lambda: _read_chunks(path, file_size),
                extra_headers={
                    "Content-Type": "application/x-tar",
                    "Content-Length": str(file_size),
                },
                timeout=self.upload_timeout,
            )
        except BackoffError as e:
            raise EngineError(f"Failed to load image: {e}", endpoint=endpoint) from e

        await self._check(response, endpoint)
        self._raise_for_stream_errors(response, endpoint)
        if response.status_code != 200:
            raise EngineError(
                f"Failed to load image at path {path}",
                endpoint=endpoint,
                status_code=response.status_code,
            )

    async def image_delete(self, name: str) -> list[ImageDeleteResponseItem]:
        endpoint = f"/images/{name}"
        response = await self._send("DELETE", endpoint)
        return await self._decode(
            response,
            endpoint,
            lambda data: [ImageDeleteResponseItem.from_dict(item) for item in data],
        )
