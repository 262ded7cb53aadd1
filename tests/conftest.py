"""Test fixtures for py-test-containers."""

from __future__ import annotations

import asyncio
import functools
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio

from py_test_containers.discovery import EngineEndpoint
from py_test_containers.engine.client import EngineClient
from py_test_containers.engine.logs import encode_frame
from py_test_containers.reaper import READY_LOG_LINE
from py_test_containers.types import StreamType

Responder = Callable[[httpx.Request], httpx.Response]

TEST_SESSION_ID = "test-session"


class FakeEngine:
    """In-memory stand-in for the engine API.

    Routes are keyed by (method, path). Each route holds a queue of
    responders; the last one keeps answering once the queue runs out.
    Unknown routes answer 404 like the engine does.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Responder]] = {}

    def on(
        self,
        method: str,
        path: str,
        status_code: int = 200,
        json_body: Any = None,
        content: bytes | None = None,
    ) -> FakeEngine:
        """Queue a canned response for a route."""

        def respond(request: httpx.Request) -> httpx.Response:
            if json_body is not None:
                return httpx.Response(status_code, json=json_body)
            return httpx.Response(status_code, content=content or b"")

        return self.on_call(method, path, respond)

    def on_call(self, method: str, path: str, responder: Responder) -> FakeEngine:
        """Queue a responder function for a route."""
        self._routes.setdefault((method, path), []).append(responder)
        return self

    def on_logs(self, container_id: str, *chunks: bytes) -> FakeEngine:
        """Serve a log stream delivered in the given chunks."""

        async def body():
            for chunk in chunks:
                yield chunk

        return self.on_call(
            "GET",
            f"/containers/{container_id}/logs",
            lambda request: httpx.Response(200, content=body()),
        )

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responders = self._routes.get((request.method, request.url.path))
        if not responders:
            return httpx.Response(404, json={"message": f"no such route: {request.url.path}"})
        responder = responders.pop(0) if len(responders) > 1 else responders[0]
        return responder(request)


def log_lines(*lines: str, stream_type: StreamType = StreamType.STDOUT) -> bytes:
    """Encode lines as engine log frames, one frame per line."""
    return b"".join(encode_frame(stream_type, f"{line}\n".encode()) for line in lines)


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def engine_client(engine: FakeEngine) -> EngineClient:
    """EngineClient wired to the fake engine."""
    return EngineClient(
        EngineEndpoint("http://localhost:2375"),
        session_id=TEST_SESSION_ID,
        transport=httpx.MockTransport(engine),
    )


@pytest.fixture
def backoff_sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Skip backoff delays, recording each one requested."""
    sleeps: list[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay: float, result: Any = None) -> Any:
        sleeps.append(delay)
        await real_sleep(0)
        return result

    monkeypatch.setattr("py_test_containers.backoff.asyncio.sleep", fake_sleep)
    return sleeps


class FakeReaperServer:
    """Local TCP server recording the lines a reaper would receive."""

    def __init__(self, ack: bool = False) -> None:
        self.ack = ack
        self.lines: list[str] = []
        self.received = asyncio.Event()
        self.disconnected = asyncio.Event()
        self.port = 0
        self._server: asyncio.Server | None = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while line := await reader.readline():
            self.lines.append(line.decode())
            if self.ack:
                writer.write(b"ACK\n")
                await writer.drain()
            self.received.set()
        self.disconnected.set()
        writer.close()


@pytest_asyncio.fixture
async def reaper_server():
    server = FakeReaperServer()
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


def serve_reaper_container(
    engine: FakeEngine, port: int, *log: str, container_id: str = "ryuk"
) -> None:
    """Serve a reaper container's logs and its control port mapping."""
    engine.on_logs(container_id, log_lines(*(log or (READY_LOG_LINE,))))
    engine.on(
        "GET",
        f"/containers/{container_id}/json",
        json_body={
            "NetworkSettings": {
                "Ports": {"8080/tcp": [{"HostIp": "127.0.0.1", "HostPort": str(port)}]}
            }
        },
    )


# =============================================================================
# Container Engine Availability
# =============================================================================


@functools.cache
def _docker_available() -> bool:
    """Check whether a container engine answers on the default connection."""
    try:
        import docker  # noqa: PLC0415

        docker.from_env().ping()
        return True
    except Exception:
        return False


def pytest_collection_modifyitems(config, items):  # noqa: ARG001
    """Skip tests in xdist_group('docker') when no engine is available."""
    skip_docker = pytest.mark.skip(reason="Container engine not available")
    for item in items:
        for marker in item.iter_markers("xdist_group"):
            if marker.args and marker.args[0] == "docker" and not _docker_available():
                item.add_marker(skip_docker)
