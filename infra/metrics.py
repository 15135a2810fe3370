"""Prometheus metrics for the prompt relay.

This module is part of the infra layer and must not import from application features.
"""
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, generate_latest
from starlette.requests import Request
from starlette.responses import Response

PROMPT_REQUESTS = Counter(
    "prompt_requests_total",
    "Prompt requests handled, by outcome",
    ["outcome"],
)
RELAY_FRAGMENTS_DROPPED = Counter(
    "relay_fragments_dropped_total",
    "Fragments dropped because the consumer missed the liveness window",
)
UPSTREAM_ERRORS = Counter(
    "upstream_errors_total",
    "Upstream completion failures, by kind",
    ["kind"],
)


async def metrics_endpoint(request: Request) -> Response:
    return Response(content=generate_latest(REGISTRY), headers={"Content-Type": CONTENT_TYPE_LATEST})
