"""Infrastructure resources: the upstream completion client.

This module is part of the infra layer and must not import from application features.
"""
from typing import Any, AsyncIterator, Mapping, Optional

import structlog
from openai import AsyncOpenAI

logger = structlog.get_logger("infra.resources")


class OpenAIResource:
    """OpenAI-compatible chat completion client for dependency injection."""

    def __init__(self, api_key: str, base_url: str, timeout: float):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.client: Optional[AsyncOpenAI] = None

    async def init(self):
        """Initialize the OpenAI client."""
        # Retries are left to the caller; a failed call surfaces immediately.
        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
        )
        return self

    async def create_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:
        """Open a streaming chat completion and return its content deltas."""
        if self.client is None:
            await self.init()
        assert self.client is not None, "OpenAI client not initialized"

        stream = await self.client.chat.completions.create(
            model=payload["model"],
            messages=list(payload["messages"]),
            stream=True,
        )
        return self._iter_content(stream)

    @staticmethod
    async def _iter_content(stream) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                # Usage-only chunks carry no choices
                if not chunk.choices:
                    continue
                yield chunk.choices[0].delta.content or ""
        finally:
            await stream.close()

    async def shutdown(self):
        """Close the underlying HTTP client."""
        if self.client:
            await self.client.close()
            self.client = None
        return self
