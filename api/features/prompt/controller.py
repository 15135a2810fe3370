"""Controller for the Prompt feature."""
import logging
from typing import AsyncIterator

from starlette.responses import Response, StreamingResponse

from api.features.prompt.exceptions import UpstreamEstablishError
from api.features.prompt.relay import FragmentChannel
from api.features.prompt.service import ConversationSession
from infra.metrics import PROMPT_REQUESTS

logger = logging.getLogger("prompt.controller")

TEXT_PLAIN = "text/plain"


class PromptController:
    """Controller forwarding prompts to the conversation session."""

    def __init__(self, session: ConversationSession):
        self.session = session

    async def prompt(self, question: str) -> Response:
        """Relay the question and answer with the whole completion at once.

        A stream that fails mid-way still returns 200 with the partial text
        followed by the error description.
        """
        try:
            channel = await self.session.prompt(question)
        except UpstreamEstablishError as e:
            PROMPT_REQUESTS.labels(outcome="establish_error").inc()
            logger.error(f"Completion stream could not be opened: {e.message}")
            return Response(content=e.message, status_code=500, media_type=TEXT_PLAIN)

        parts = []
        outcome = "ok"
        async for fragment in channel:
            if fragment.is_end_of_stream:
                break
            if fragment.error is not None:
                logger.error(f"data chunk is erroneous: {fragment.error}")
                parts.append(str(fragment.error))
                outcome = "stream_error"
                break
            parts.append(fragment.content)

        PROMPT_REQUESTS.labels(outcome=outcome).inc()
        return Response(content="".join(parts), status_code=200, media_type=TEXT_PLAIN)

    async def prompt_stream(self, question: str) -> Response:
        """Relay the question and write every fragment as soon as it arrives."""
        try:
            channel = await self.session.prompt(question)
        except UpstreamEstablishError as e:
            PROMPT_REQUESTS.labels(outcome="establish_error").inc()
            logger.error(f"Completion stream could not be opened: {e.message}")
            return Response(content=e.message, status_code=500, media_type=TEXT_PLAIN)

        return StreamingResponse(self._write_fragments(channel), media_type=TEXT_PLAIN)

    @staticmethod
    async def _write_fragments(channel: FragmentChannel) -> AsyncIterator[str]:
        outcome = "ok"
        async for fragment in channel:
            if fragment.is_end_of_stream:
                break
            if fragment.error is not None:
                logger.error(f"data chunk is erroneous: {fragment.error}")
                outcome = "stream_error"
                break
            if fragment.content:
                yield fragment.content
        PROMPT_REQUESTS.labels(outcome=outcome).inc()
