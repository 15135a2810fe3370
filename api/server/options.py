"""HTTP server options with their named defaults."""
from typing import Awaitable, Callable

from pydantic import BaseModel, Field
from starlette.requests import Request
from starlette.responses import Response

PORT = 8080
HTTP_API_TIMEOUT = 30.0
SHUTDOWN_TIMEOUT = 30.0

Responder = Callable[[Request], Awaitable[Response]]


async def ok_responder(request: Request) -> Response:
    """Empty 200 response."""
    return Response(status_code=200, headers={"X-Content-Type-Options": "nosniff"})


class ServerOptions(BaseModel):
    """Listener configuration; unset options take their defaults at construction."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=PORT, ge=0, le=65535)
    # Reserved for a per-request timeout; not applied to the request path
    # because it would cut streamed responses short.
    http_api_timeout: float = Field(default=HTTP_API_TIMEOUT, gt=0)
    shutdown_timeout: float = Field(default=SHUTDOWN_TIMEOUT, gt=0)
    health_func: Responder = Field(default=ok_responder)
    ready_func: Responder = Field(default=ok_responder)
    metrics_func: Responder = Field(default=ok_responder)
