"""Router for the Prompt feature."""
from dependency_injector.wiring import Provide, inject
from fastapi import Depends
from starlette.requests import Request
from starlette.responses import Response

from api.di.container import ApplicationContainer as DependencyContainer
from api.features.prompt.controller import PromptController
from api.server.http_server import HttpServer


async def _read_question(request: Request) -> str:
    body = await request.body()
    return body.decode("utf-8", errors="replace")


@inject
async def prompt(
    request: Request,
    controller: PromptController = Depends(
        Provide[DependencyContainer.controllers.prompt_controller]
    ),
) -> Response:
    """Answer a raw-text prompt with the full completion text."""
    return await controller.prompt(await _read_question(request))


@inject
async def prompt_stream(
    request: Request,
    controller: PromptController = Depends(
        Provide[DependencyContainer.controllers.prompt_controller]
    ),
) -> Response:
    """Answer a raw-text prompt, streaming fragments as they arrive."""
    return await controller.prompt_stream(await _read_question(request))


def register_routes(server: HttpServer) -> None:
    server.register_route("/prompt", prompt, methods=["POST"])
    server.register_route("/prompt/stream", prompt_stream, methods=["POST"])
