from __future__ import annotations

import asyncio
import socket
import time
import tracemalloc

import httpx
import pytest
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from api.server import http_server
from api.server.http_server import HttpServer, ServerState
from api.server.options import PORT, SHUTDOWN_TIMEOUT, ServerOptions
from api.shared.exceptions import ListenError, RouteConflictError


def _local(**kwargs) -> ServerOptions:
    return ServerOptions(host="127.0.0.1", port=0, **kwargs)


def _client(server: HttpServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=f"http://127.0.0.1:{server.port}", trust_env=False)


async def _start(server: HttpServer, stop: asyncio.Event) -> asyncio.Task:
    task = asyncio.create_task(server.start(stop))
    await asyncio.wait_for(server.wait_until_listening(), 2)
    return task


async def first(request: Request) -> Response:
    return PlainTextResponse("first")


async def second(request: Request) -> Response:
    return PlainTextResponse("second")


def test_options_defaults() -> None:
    options = ServerOptions()

    assert options.port == PORT == 8080
    assert options.shutdown_timeout == SHUTDOWN_TIMEOUT
    assert options.health_func is options.ready_func is options.metrics_func


@pytest.mark.asyncio
async def test_duplicate_route_is_rejected_and_first_handler_kept() -> None:
    server = HttpServer(_local())
    server.register_route("/echo", first)

    with pytest.raises(RouteConflictError) as excinfo:
        server.register_route("/echo", second)
    assert excinfo.value.pattern == "/echo"

    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/echo")
    assert response.text == "first"


@pytest.mark.parametrize("pattern", ["/health", "/ready", "/metrics", "/debug/pprof/"])
def test_builtin_patterns_are_reserved(pattern: str) -> None:
    server = HttpServer(_local())

    with pytest.raises(RouteConflictError):
        server.register_route(pattern, first)
    assert not server.is_registered(pattern)


@pytest.mark.asyncio
async def test_start_is_idempotent() -> None:
    server = HttpServer(_local())
    stop = asyncio.Event()
    running = await _start(server, stop)
    port = server.port

    # The second call returns at once instead of binding again.
    await asyncio.wait_for(server.start(stop), 1)
    assert server.state is ServerState.RUNNING
    assert server.port == port

    async with _client(server) as client:
        assert (await client.get("/health")).status_code == 200

    stop.set()
    await asyncio.wait_for(running, 5)
    assert server.state is ServerState.STOPPED

    # Stopped is final.
    await asyncio.wait_for(server.start(stop), 1)
    assert server.state is ServerState.STOPPED


@pytest.mark.asyncio
async def test_concurrent_starts_bind_one_listener() -> None:
    server = HttpServer(_local())
    stop = asyncio.Event()

    starts = asyncio.gather(server.start(stop), server.start(stop))
    await asyncio.wait_for(server.wait_until_listening(), 2)
    async with _client(server) as client:
        assert (await client.get("/ready")).status_code == 200

    stop.set()
    assert await asyncio.wait_for(starts, 5) == [None, None]


@pytest.mark.asyncio
async def test_builtin_endpoints() -> None:
    async def metrics(request: Request) -> Response:
        return PlainTextResponse("up 1\n")

    server = HttpServer(_local(metrics_func=metrics))
    stop = asyncio.Event()
    running = await _start(server, stop)

    async with _client(server) as client:
        health = await client.get("/health")
        ready = await client.get("/ready")
        scraped = await client.get("/metrics")
        index = await client.get("/debug/pprof/")
        cmdline = await client.get("/debug/pprof/cmdline")
        tasks = await client.get("/debug/pprof/tasks")

    stop.set()
    await asyncio.wait_for(running, 5)

    assert health.status_code == 200 and health.content == b""
    assert health.headers["x-content-type-options"] == "nosniff"
    assert ready.status_code == 200 and ready.content == b""
    assert scraped.text == "up 1\n"
    assert "profile" in index.text
    assert cmdline.status_code == 200
    assert "tasks" in tasks.text


@pytest.mark.asyncio
async def test_graceful_shutdown_lets_in_flight_requests_finish() -> None:
    async def slow(request: Request) -> Response:
        await asyncio.sleep(0.3)
        return PlainTextResponse("done")

    server = HttpServer(_local(shutdown_timeout=5))
    server.register_route("/slow", slow)
    stop = asyncio.Event()
    running = await _start(server, stop)

    async with _client(server) as client:
        pending = asyncio.create_task(client.get("/slow"))
        await asyncio.sleep(0.1)
        stop.set()
        response = await asyncio.wait_for(pending, 5)

    await asyncio.wait_for(running, 5)
    assert response.status_code == 200
    assert response.text == "done"


@pytest.mark.asyncio
async def test_shutdown_forces_close_after_deadline() -> None:
    async def stuck(request: Request) -> Response:
        await asyncio.sleep(30)
        return PlainTextResponse("never")

    deadline = 0.3
    server = HttpServer(_local(shutdown_timeout=deadline))
    server.register_route("/stuck", stuck)
    stop = asyncio.Event()
    running = await _start(server, stop)
    port = server.port

    async with _client(server) as client:
        pending = asyncio.create_task(client.get("/stuck"))
        await asyncio.sleep(0.1)

        started = time.monotonic()
        stop.set()
        await asyncio.wait_for(running, deadline + 3)
        elapsed = time.monotonic() - started

        results = await asyncio.gather(pending, return_exceptions=True)

    assert elapsed < deadline + 1.5
    assert isinstance(results[0], httpx.HTTPError)
    assert server.state is ServerState.STOPPED

    async with httpx.AsyncClient(trust_env=False) as client:
        with pytest.raises(httpx.ConnectError):
            await client.get(f"http://127.0.0.1:{port}/health")


@pytest.mark.asyncio
async def test_listen_failure_raises_and_reverts_state() -> None:
    taken = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    taken.bind(("127.0.0.1", 0))
    taken.listen(1)
    try:
        port = taken.getsockname()[1]
        server = HttpServer(ServerOptions(host="127.0.0.1", port=port))

        with pytest.raises(ListenError):
            await server.start(asyncio.Event())
        assert server.state is ServerState.UNSTARTED
    finally:
        taken.close()


@pytest.mark.asyncio
async def test_failed_graceful_shutdown_is_not_forced(monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing_shutdown(self, sockets=None):
        for listener in self.servers:
            listener.close()
        raise RuntimeError("lifespan shutdown failed")

    forced = []

    async def record_force_close(self):
        forced.append(True)

    monkeypatch.setattr(http_server._UvicornServer, "shutdown", failing_shutdown)
    monkeypatch.setattr(HttpServer, "_force_close", record_force_close)

    server = HttpServer(_local(shutdown_timeout=5))
    stop = asyncio.Event()
    running = await _start(server, stop)

    stop.set()
    await asyncio.wait_for(running, 5)

    assert forced == []
    assert server.state is ServerState.STOPPED


@pytest.mark.asyncio
async def test_serve_exiting_before_stop_is_a_listen_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def broken_serve(self, sockets=None):
        raise RuntimeError("event loop refused the listener")

    monkeypatch.setattr(http_server._UvicornServer, "serve", broken_serve)
    server = HttpServer(_local())

    with pytest.raises(ListenError) as excinfo:
        await asyncio.wait_for(server.start(asyncio.Event()), 2)

    assert "event loop refused the listener" in excinfo.value.message
    assert excinfo.value.details["address"].startswith("127.0.0.1:")
    assert server.state is ServerState.UNSTARTED


@pytest.mark.asyncio
async def test_profiling_endpoints() -> None:
    server = HttpServer(_local())
    transport = httpx.ASGITransport(app=server.app)
    was_tracing = tracemalloc.is_tracing()

    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            profile = await client.get("/debug/pprof/profile", params={"seconds": 0.05})
            rejected = await client.get("/debug/pprof/profile", params={"seconds": 0})
            threads = await client.get("/debug/pprof/threads")
            await client.get("/debug/pprof/heap")
            heap = await client.get("/debug/pprof/heap")
    finally:
        if not was_tracing:
            tracemalloc.stop()

    assert profile.status_code == 200
    assert "function calls" in profile.text
    assert rejected.status_code == 422
    assert threads.status_code == 200
    assert "MainThread" in threads.text
    assert heap.status_code == 200
    assert heap.text.startswith("current=")
