"""HTTP listener life cycle: route table, idempotent start, two-phase shutdown."""
import asyncio
import contextlib
import socket
import threading
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Set

import structlog
import uvicorn
from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from api.server import pprof
from api.server.options import ServerOptions
from api.shared.exceptions import ListenError, RouteConflictError, ShutdownTimeoutError

# How long a forced close may take before the serve task is cancelled outright.
FORCE_CLOSE_GRACE = 1.0
BACKLOG = 2048

logger = structlog.get_logger("server")


class ServerState(str, Enum):
    """Life cycle of a listener; transitions only move forward."""
    UNSTARTED = "unstarted"
    RUNNING = "running"
    STOPPED = "stopped"


class _UvicornServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the process owner."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


async def _unhandled_exception(request: Request, exc: Exception) -> PlainTextResponse:
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    return PlainTextResponse("Internal Server Error", status_code=500)


class HttpServer:
    """One FastAPI application served by one uvicorn listener.

    ``start`` serves until the stop event is set. Once it is, the server
    stops accepting connections and waits for in-flight requests up to
    ``shutdown_timeout``; past that deadline every open connection is
    closed immediately.
    """

    def __init__(self, options: Optional[ServerOptions] = None, title: str = "prompt-relay"):
        self._options = options or ServerOptions()
        self.app = FastAPI(title=title, docs_url=None, redoc_url=None, openapi_url=None)
        self.app.add_exception_handler(Exception, _unhandled_exception)

        self._lock = threading.Lock()
        self._state = ServerState.UNSTARTED
        self._handlers: Dict[str, Callable] = {}
        self._builtin = {
            "/health": self._options.health_func,
            "/ready": self._options.ready_func,
            "/metrics": self._options.metrics_func,
        }
        self._reserved: Set[str] = set(self._builtin) | set(pprof.ROUTES)
        self._builtin_installed = False

        self._socket: Optional[socket.socket] = None
        self._bound_port: Optional[int] = None
        self._server: Optional[_UvicornServer] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._listening = asyncio.Event()

        for pattern, endpoint in pprof.ROUTES.items():
            self.app.add_api_route(pattern, endpoint, methods=["GET"])

    @property
    def options(self) -> ServerOptions:
        return self._options

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def port(self) -> int:
        """Port actually bound while running, the configured one otherwise."""
        if self._bound_port is not None:
            return self._bound_port
        return self._options.port

    def register_route(
        self, pattern: str, handler: Callable, methods: Sequence[str] = ("GET",)
    ) -> None:
        """Register the handler for the given pattern.

        Raises ``RouteConflictError`` if the pattern is already registered or
        belongs to a built-in endpoint; nothing is changed in that case.
        """
        with self._lock:
            if pattern in self._handlers or pattern in self._reserved:
                logger.warning("route already registered", pattern=pattern)
                raise RouteConflictError(pattern)
            self.app.add_api_route(pattern, handler, methods=list(methods))
            self._handlers[pattern] = handler

    def is_registered(self, pattern: str) -> bool:
        return pattern in self._handlers

    async def wait_until_listening(self) -> None:
        await self._listening.wait()

    async def start(self, stop_event: asyncio.Event) -> None:
        """Serve until ``stop_event`` is set, then shut down.

        A call while the server is running (or after it stopped) returns
        immediately. Raises ``ListenError`` if the listener cannot bind or
        stops serving before the stop signal; the server is then back in
        the unstarted state.
        """
        with self._lock:
            if self._state is not ServerState.UNSTARTED:
                return
            self._state = ServerState.RUNNING

        try:
            self._install_builtin_routes()
            self._socket = self._bind()
            self._bound_port = self._socket.getsockname()[1]
        except ListenError:
            self._revert()
            raise

        config = uvicorn.Config(
            self.app,
            host=self._options.host,
            port=self.port,
            log_config=None,
            lifespan="on",
            backlog=BACKLOG,
        )
        self._server = _UvicornServer(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        self._listening.set()
        logger.info(f"Listening on {self._options.host}:{self.port}")

        stop_waiter = asyncio.ensure_future(stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {self._serve_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            stop_waiter.cancel()
            await self._shutdown()
            raise
        stop_waiter.cancel()

        if self._serve_task in done:
            reason = "server exited before the stop signal"
            if not self._serve_task.cancelled() and self._serve_task.exception() is not None:
                reason = str(self._serve_task.exception())
            logger.error("Could not start the http server", error=reason)
            address = f"{self._options.host}:{self.port}"
            self._revert()
            raise ListenError(address, reason)

        await self._shutdown()

    def _install_builtin_routes(self) -> None:
        if self._builtin_installed:
            return
        for pattern, responder in self._builtin.items():
            self.app.add_api_route(pattern, responder, methods=["GET"])
        self._builtin_installed = True

    def _bind(self) -> socket.socket:
        host, port = self._options.host, self._options.port
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            # Accept connections into the backlog right away
            sock.listen(BACKLOG)
        except OSError as e:
            sock.close()
            logger.error("Could not start the http server", error=str(e))
            raise ListenError(f"{host}:{port}", str(e)) from e
        return sock

    def _revert(self) -> None:
        self._close_socket()
        self._server = None
        self._serve_task = None
        self._listening.clear()
        with self._lock:
            self._state = ServerState.UNSTARTED

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        self._bound_port = None

    async def _shutdown(self) -> None:
        try:
            await self._shutdown_gracefully()
            logger.info("Http server shut down")
        except ShutdownTimeoutError as e:
            logger.warning("Shutdown timeout exceeded. closing http server", error=e.message)
            await self._force_close()
        except Exception as e:
            logger.error("could not shutdown http server", error=str(e))
        finally:
            self._close_socket()
            self._listening.clear()
            with self._lock:
                self._state = ServerState.STOPPED

    async def _shutdown_gracefully(self) -> None:
        """Stop accepting connections and wait for in-flight requests."""
        assert self._server is not None and self._serve_task is not None
        self._server.should_exit = True
        timeout = self._options.shutdown_timeout
        done, _ = await asyncio.wait({self._serve_task}, timeout=timeout)
        if not done:
            raise ShutdownTimeoutError(timeout)
        if self._serve_task.cancelled():
            raise RuntimeError("serve task was cancelled")
        exc = self._serve_task.exception()
        if exc is not None:
            raise exc

    async def _force_close(self) -> None:
        """Close every listener and connection immediately."""
        assert self._server is not None and self._serve_task is not None
        server = self._server
        server.force_exit = True
        for listener in getattr(server, "servers", []):
            listener.close()
        for connection in list(server.server_state.connections):
            transport = getattr(connection, "transport", None)
            if transport is not None:
                transport.abort()
        for task in list(getattr(server.server_state, "tasks", ())):
            task.cancel()

        done, _ = await asyncio.wait({self._serve_task}, timeout=FORCE_CLOSE_GRACE)
        if not done:
            self._serve_task.cancel()
            await asyncio.wait({self._serve_task}, timeout=FORCE_CLOSE_GRACE)
        elif not self._serve_task.cancelled() and self._serve_task.exception() is not None:
            logger.error(
                "could not close http connection.", error=str(self._serve_task.exception())
            )
