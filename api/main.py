import asyncio
import signal
import sys

import structlog
from dependency_injector import providers

from api.di.container import ApplicationContainer as DependencyContainer
from api.features.prompt.router import register_routes
from api.server.http_server import HttpServer
from api.server.options import ServerOptions
from api.shared.exceptions import ConfigurationError, ListenError
from core.logging_utils import configure_logging
from core.settings import Settings, get_settings
from infra.metrics import metrics_endpoint

logger = structlog.get_logger("prompt")


def create_http_server(settings: Settings) -> HttpServer:
    server = HttpServer(
        ServerOptions(
            host=settings.SERVER.HOST,
            port=settings.SERVER.PORT,
            http_api_timeout=settings.SERVER.HTTP_API_TIMEOUT,
            shutdown_timeout=settings.SERVER.SHUTDOWN_TIMEOUT,
            metrics_func=metrics_endpoint,
        ),
        title="Prompt Relay API",
    )
    register_routes(server)
    return server


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def serve(settings: Settings) -> None:
    container = DependencyContainer()
    container.infrastructure.settings.override(providers.Object(settings))

    # Reads the instruction; a configuration problem stops us before listening
    container.services.conversation_session()

    server = create_http_server(settings)
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    try:
        await server.start(stop_event)
    finally:
        await container.infrastructure.completion_source().shutdown()
        container.unwire()


def main() -> None:
    try:
        settings = get_settings()
        configure_logging(settings.APP)
        asyncio.run(serve(settings))
    except (ConfigurationError, ListenError) as e:
        logger.critical(e.message, error_code=e.error_code, **e.details)
        sys.exit(1)
