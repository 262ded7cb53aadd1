"""Tests for EngineClient against a fake engine."""

from pathlib import Path

import httpx
import pytest

from tests.conftest import TEST_SESSION_ID, FakeEngine, log_lines, request_json
from py_test_containers.discovery import EngineEndpoint
from py_test_containers.engine.client import (
    SESSION_HEADER,
    EngineClient,
    split_image_reference,
)
from py_test_containers.engine.logs import encode_frame
from py_test_containers.engine.models import CreateContainerBody
from py_test_containers.errors import BackoffError, EngineError, LogProtocolError
from py_test_containers.types import LogEvent, StreamType


class TestSplitImageReference:
    @pytest.mark.parametrize(
        ("image", "expected"),
        [
            ("alpine", ("alpine", "latest")),
            ("alpine/socat", ("alpine/socat", "latest")),
            ("alpine/socat:1.8", ("alpine/socat", "1.8")),
            ("localhost:5000/app", ("localhost:5000/app", "latest")),
            ("localhost:5000/app:dev", ("localhost:5000/app", "dev")),
            ("app@sha256:abc", ("app", "sha256:abc")),
        ],
    )
    def test_split(self, image: str, expected: tuple[str, str]) -> None:
        assert split_image_reference(image) == expected


class TestClientSetup:
    """Connection and header handling."""

    def test_socket_endpoint_uses_localhost_base(self) -> None:
        client = EngineClient(EngineEndpoint("unix:///var/run/docker.sock"))
        assert client.endpoint.base_url == "http://localhost"

    @pytest.mark.asyncio
    async def test_session_and_agent_headers(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        """Every request carries the session id header."""
        engine.on("POST", "/containers/abc/start", status_code=204)

        await engine_client.container_start("abc")

        request = engine.requests[0]
        assert request.headers[SESSION_HEADER] == TEST_SESSION_ID
        assert request.headers["User-Agent"].startswith("py-test-containers/")

    @pytest.mark.asyncio
    async def test_no_session_header_without_session(self, engine: FakeEngine) -> None:
        engine.on("POST", "/containers/abc/start", status_code=204)
        client = EngineClient(
            EngineEndpoint("http://localhost:2375"), transport=httpx.MockTransport(engine)
        )

        await client.container_start("abc")

        assert SESSION_HEADER not in engine.requests[0].headers

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, engine_client: EngineClient) -> None:
        await engine_client._get_client()
        await engine_client.close()
        await engine_client.close()
        assert engine_client._client is None

    @pytest.mark.asyncio
    async def test_async_context_manager_closes(self, engine: FakeEngine) -> None:
        engine.on("POST", "/containers/abc/start", status_code=204)
        async with EngineClient(
            EngineEndpoint("http://localhost:2375"), transport=httpx.MockTransport(engine)
        ) as client:
            await client.container_start("abc")
            assert client._client is not None
        assert client._client is None


class TestContainers:
    """Container endpoints."""

    @pytest.mark.asyncio
    async def test_create_sends_body(self, engine: FakeEngine, engine_client: EngineClient) -> None:
        engine.on("POST", "/containers/create", status_code=201, json_body={"Id": "abc", "Warnings": []})

        response = await engine_client.container_create(
            CreateContainerBody(image="alpine", labels={"k": "v"})
        )

        assert response.id == "abc"
        request = engine.requests[0]
        assert request.headers["Content-Type"] == "application/json"
        assert request_json(request) == {"Image": "alpine", "Labels": {"k": "v"}}

    @pytest.mark.asyncio
    async def test_create_logs_warnings(
        self, engine: FakeEngine, engine_client: EngineClient, caplog: pytest.LogCaptureFixture
    ) -> None:
        engine.on(
            "POST",
            "/containers/create",
            status_code=201,
            json_body={"Id": "abc", "Warnings": ["memory limit ignored"]},
        )

        with caplog.at_level("WARNING"):
            await engine_client.container_create(CreateContainerBody(image="alpine"))

        assert "memory limit ignored" in caplog.text

    @pytest.mark.asyncio
    async def test_create_error_uses_engine_message(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        engine.on(
            "POST",
            "/containers/create",
            status_code=404,
            json_body={"message": "No such image: nope:latest"},
        )

        with pytest.raises(EngineError) as exc_info:
            await engine_client.container_create(CreateContainerBody(image="nope"))

        assert exc_info.value.message == "No such image: nope:latest"
        assert exc_info.value.status_code == 404
        assert exc_info.value.endpoint == "/containers/create"

    @pytest.mark.asyncio
    async def test_error_without_body_is_unknown(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        engine.on("POST", "/containers/abc/start", status_code=500, content=b"")

        with pytest.raises(EngineError) as exc_info:
            await engine_client.container_start("abc")

        assert exc_info.value.message == "Unknown error"
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_malformed_body(self, engine: FakeEngine, engine_client: EngineClient) -> None:
        engine.on("POST", "/containers/create", status_code=201, json_body={"Warnings": []})

        with pytest.raises(EngineError, match="Malformed response body"):
            await engine_client.container_create(CreateContainerBody(image="alpine"))

    @pytest.mark.asyncio
    async def test_start_non_204_logs_warning(
        self, engine: FakeEngine, engine_client: EngineClient, caplog: pytest.LogCaptureFixture
    ) -> None:
        engine.on("POST", "/containers/abc/start", status_code=200)

        with caplog.at_level("WARNING"):
            await engine_client.container_start("abc")

        assert "non-204" in caplog.text

    @pytest.mark.asyncio
    async def test_kill_missing_container_tolerated(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        engine.on("POST", "/containers/gone/kill", status_code=404, json_body={"message": "No such container"})
        await engine_client.container_kill("gone")

    @pytest.mark.asyncio
    async def test_kill_stopped_container_tolerated(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        engine.on(
            "POST",
            "/containers/done/kill",
            status_code=409,
            json_body={"message": "Container done is not running"},
        )
        await engine_client.container_kill("done")

    @pytest.mark.asyncio
    async def test_kill_server_error_raises(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        engine.on("POST", "/containers/abc/kill", status_code=500, json_body={"message": "daemon busy"})
        with pytest.raises(EngineError, match="daemon busy"):
            await engine_client.container_kill("abc")

    @pytest.mark.asyncio
    async def test_delete_force(self, engine: FakeEngine, engine_client: EngineClient) -> None:
        engine.on("DELETE", "/containers/abc", status_code=204)

        await engine_client.container_delete("abc", force=True)

        assert engine.requests[0].url.params["force"] == "true"

    @pytest.mark.asyncio
    async def test_delete_without_force_sends_no_param(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        engine.on("DELETE", "/containers/abc", status_code=204)

        await engine_client.container_delete("abc")

        assert "force" not in engine.requests[0].url.params

    @pytest.mark.asyncio
    async def test_delete_missing_tolerated(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        await engine_client.container_delete("gone", force=True)

    @pytest.mark.asyncio
    async def test_inspect(self, engine: FakeEngine, engine_client: EngineClient) -> None:
        engine.on(
            "GET",
            "/containers/abc/json",
            json_body={"NetworkSettings": {"Ports": {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32768"}]}}},
        )

        response = await engine_client.container_inspect("abc")

        assert response.ports["80/tcp"][0].host_port == "32768"


class TestRetries:
    """Transport failures go through exponential backoff."""

    @pytest.mark.asyncio
    async def test_transport_error_retried(
        self, engine: FakeEngine, engine_client: EngineClient, backoff_sleeps: list[float]
    ) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        engine.on_call("POST", "/containers/abc/start", refuse)
        engine.on("POST", "/containers/abc/start", status_code=204)

        await engine_client.container_start("abc")

        assert len(engine.calls("POST", "/containers/abc/start")) == 2
        assert backoff_sleeps == [1]

    @pytest.mark.asyncio
    async def test_persistent_transport_error(
        self, engine: FakeEngine, engine_client: EngineClient, backoff_sleeps: list[float]
    ) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        engine.on_call("POST", "/containers/abc/start", refuse)

        with pytest.raises(BackoffError) as exc_info:
            await engine_client.container_start("abc")

        assert exc_info.value.attempts == 4
        assert all(isinstance(e, httpx.ConnectError) for e in exc_info.value.errors)

    @pytest.mark.asyncio
    async def test_http_error_status_not_retried(
        self, engine: FakeEngine, engine_client: EngineClient, backoff_sleeps: list[float]
    ) -> None:
        engine.on("POST", "/containers/abc/start", status_code=500, json_body={"message": "boom"})

        with pytest.raises(EngineError):
            await engine_client.container_start("abc")

        assert len(engine.requests) == 1
        assert backoff_sleeps == []


class TestLogs:
    """Log streaming."""

    @pytest.mark.asyncio
    async def test_logs_query_params(self, engine: FakeEngine, engine_client: EngineClient) -> None:
        engine.on_logs("abc", log_lines("hello"))

        events = [e async for e in engine_client.structured_container_logs("abc", follow=True, stderr=False)]

        assert events == [LogEvent(StreamType.STDOUT, b"hello")]
        params = engine.requests[0].url.params
        assert params["follow"] == "true"
        assert params["stdout"] == "true"
        assert params["stderr"] == "false"

    @pytest.mark.asyncio
    async def test_frames_split_across_chunks(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        """Frames arriving split across HTTP chunks are reassembled in order."""
        data = log_lines("one") + encode_frame(StreamType.STDERR, b"two\n") + log_lines("three")
        engine.on_logs("abc", data[:3], data[3:13], data[13:])

        events = [e async for e in engine_client.structured_container_logs("abc", follow=False)]

        assert [(e.stream_type, e.message) for e in events] == [
            (StreamType.STDOUT, "one"),
            (StreamType.STDERR, "two"),
            (StreamType.STDOUT, "three"),
        ]

    @pytest.mark.asyncio
    async def test_logs_not_found(self, engine: FakeEngine, engine_client: EngineClient) -> None:
        with pytest.raises(EngineError, match="Container gone not found, cannot follow logs"):
            await engine_client.container_logs("gone", follow=True)

    @pytest.mark.asyncio
    async def test_logs_not_retried(
        self, engine: FakeEngine, engine_client: EngineClient, backoff_sleeps: list[float]
    ) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        engine.on_call("GET", "/containers/abc/logs", refuse)

        with pytest.raises(httpx.ConnectError):
            await engine_client.container_logs("abc", follow=True)

        assert len(engine.requests) == 1
        assert backoff_sleeps == []

    @pytest.mark.asyncio
    async def test_unknown_stream_type_raises(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        engine.on_logs("abc", encode_frame(9, b"?"))

        with pytest.raises(LogProtocolError):
            async for _ in engine_client.structured_container_logs("abc", follow=False):
                pass

    @pytest.mark.asyncio
    async def test_stream_ending_mid_frame_warns(
        self, engine: FakeEngine, engine_client: EngineClient, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Complete frames are kept; the cut-off tail is reported."""
        engine.on_logs("abc", log_lines("whole") + log_lines("cut off")[:10])

        with caplog.at_level("WARNING"):
            events = [e async for e in engine_client.structured_container_logs("abc", follow=False)]

        assert [e.message for e in events] == ["whole"]
        assert "ended mid-frame, dropping 10 undecoded byte(s)" in caplog.text


class TestNetworks:
    """Network endpoints."""

    @pytest.mark.asyncio
    async def test_create(self, engine: FakeEngine, engine_client: EngineClient) -> None:
        engine.on("POST", "/networks/create", status_code=201, json_body={"Id": "net1", "Warning": ""})

        response = await engine_client.network_create("test-net", labels={"k": "v"})

        assert response.id == "net1"
        assert request_json(engine.requests[0]) == {"Name": "test-net", "Labels": {"k": "v"}}

    @pytest.mark.asyncio
    async def test_delete_missing_tolerated(self, engine_client: EngineClient) -> None:
        await engine_client.network_delete("gone")

    @pytest.mark.asyncio
    async def test_delete_conflict_raises(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        engine.on("DELETE", "/networks/net1", status_code=403, json_body={"message": "has active endpoints"})
        with pytest.raises(EngineError, match="has active endpoints"):
            await engine_client.network_delete("net1")


class TestImages:
    """Image endpoints."""

    @pytest.mark.asyncio
    async def test_inspect_missing(self, engine_client: EngineClient) -> None:
        with pytest.raises(EngineError) as exc_info:
            await engine_client.image_inspect("missing")
        assert exc_info.value.is_not_found

    @pytest.mark.asyncio
    async def test_pull_sends_name_and_tag(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        engine.on("POST", "/images/create", content=b'{"status":"Pulling from alpine/socat"}\n')

        await engine_client.image_pull("alpine/socat")

        params = engine.requests[0].url.params
        assert params["fromImage"] == "alpine/socat"
        assert params["tag"] == "latest"

    @pytest.mark.asyncio
    async def test_pull_error_in_progress_stream(
        self, engine: FakeEngine, engine_client: EngineClient
    ) -> None:
        """The engine reports pull failures inside a 200 progress stream."""
        engine.on(
            "POST",
            "/images/create",
            content=b'{"status":"Pulling"}\n{"error":"manifest unknown"}\n',
        )

        with pytest.raises(EngineError, match="manifest unknown"):
            await engine_client.image_pull("nope:1.0")

    @pytest.mark.asyncio
    async def test_load_streams_tarball(
        self, engine: FakeEngine, engine_client: EngineClient, tmp_path: Path
    ) -> None:
        tarball = tmp_path / "image.tar"
        tarball.write_bytes(b"x" * 1000)
        engine.on("POST", "/images/load", content=b'{"stream":"Loaded image: app:1.0\\n"}\n')

        await engine_client.image_load(tarball)

        request = engine.requests[0]
        assert request.headers["Content-Type"] == "application/x-tar"
        assert request.headers["Content-Length"] == "1000"
        assert request.content == b"x" * 1000

    @pytest.mark.asyncio
    async def test_load_follows_symlink(
        self, engine: FakeEngine, engine_client: EngineClient, tmp_path: Path
    ) -> None:
        tarball = tmp_path / "image.tar"
        tarball.write_bytes(b"abc")
        link = tmp_path / "latest.tar"
        link.symlink_to(tarball)
        engine.on("POST", "/images/load", content=b"")

        await engine_client.image_load(link)

        assert engine.requests[0].headers["Content-Length"] == "3"
        assert engine.requests[0].content == b"abc"

    @pytest.mark.asyncio
    async def test_load_missing_file(self, engine: FakeEngine, engine_client: EngineClient, tmp_path: Path) -> None:
        with pytest.raises(EngineError, match="does not exist"):
            await engine_client.image_load(tmp_path / "missing.tar")
        assert engine.requests == []

    @pytest.mark.asyncio
    async def test_load_directory_rejected(
        self, engine_client: EngineClient, tmp_path: Path
    ) -> None:
        with pytest.raises(EngineError, match="Unsupported file type"):
            await engine_client.image_load(tmp_path)

    @pytest.mark.asyncio
    async def test_load_retry_rereads_file(
        self,
        engine: FakeEngine,
        engine_client: EngineClient,
        tmp_path: Path,
        backoff_sleeps: list[float],
    ) -> None:
        """A retried upload sends the whole file again."""
        tarball = tmp_path / "image.tar"
        tarball.write_bytes(b"payload")

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection reset", request=request)

        engine.on_call("POST", "/images/load", refuse)
        engine.on("POST", "/images/load", content=b"")

        await engine_client.image_load(tarball)

        uploads = engine.calls("POST", "/images/load")
        assert [r.content for r in uploads] == [b"payload", b"payload"]

    @pytest.mark.asyncio
    async def test_load_gives_up(
        self,
        engine: FakeEngine,
        engine_client: EngineClient,
        tmp_path: Path,
        backoff_sleeps: list[float],
    ) -> None:
        tarball = tmp_path / "image.tar"
        tarball.write_bytes(b"payload")

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection reset", request=request)

        engine.on_call("POST", "/images/load", refuse)

        with pytest.raises(EngineError, match="Failed to load image"):
            await engine_client.image_load(tarball)

    @pytest.mark.asyncio
    async def test_interrupted_upload_closes_file(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        backoff_sleeps: list[float],
    ) -> None:
        """Each attempt's body is closed before the next one starts."""
        tarball = tmp_path / "image.tar"
        tarball.write_bytes(b"payload")
        closed: list[Path] = []

        async def tracked_chunks(path: Path, total_size: int):
            try:
                yield b"pay"
                yield b"load"
            finally:
                closed.append(path)

        monkeypatch.setattr("py_test_containers.engine.client._read_chunks", tracked_chunks)

        closed_before_attempt: list[int] = []

        class DroppingTransport(httpx.AsyncBaseTransport):
            """Reads the first chunk of each upload, then drops the connection."""

            async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
                closed_before_attempt.append(len(closed))
                async for _ in request.stream:
                    break
                raise httpx.WriteError("connection reset", request=request)

        client = EngineClient(
            EngineEndpoint("http://localhost:2375"), transport=DroppingTransport()
        )

        with pytest.raises(EngineError, match="Failed to load image"):
            await client.image_load(tarball)
        await client.close()

        assert closed_before_attempt == [0, 1, 2, 3]
        assert closed == [tarball] * 4

    @pytest.mark.asyncio
    async def test_delete(self, engine: FakeEngine, engine_client: EngineClient) -> None:
        engine.on(
            "DELETE",
            "/images/app:1.0",
            json_body=[{"Untagged": "app:1.0"}, {"Deleted": "sha256:abc"}],
        )

        items = await engine_client.image_delete("app:1.0")

        assert [i.untagged for i in items] == ["app:1.0", None]
        assert items[1].deleted == "sha256:abc"

    @pytest.mark.asyncio
    async def test_delete_conflict(self, engine: FakeEngine, engine_client: EngineClient) -> None:
        engine.on(
            "DELETE",
            "/images/app:1.0",
            status_code=409,
            json_body={"message": "image is being used by running container"},
        )

        with pytest.raises(EngineError) as exc_info:
            await engine_client.image_delete("app:1.0")

        assert exc_info.value.is_conflict
