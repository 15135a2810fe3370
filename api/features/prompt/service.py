"""Conversation session: ordered dialogue history threaded into every request.

One session is shared by the whole process. A prompt cycle (User turn,
upstream call, Assistant turn) holds the session lock from the moment the
User turn is appended until the relay commits the Assistant turn, so
concurrent callers are served one after another and the history keeps its
System, User, Assistant, User, Assistant... shape.

The lock also covers delivery. A caller that stops reading its channel keeps
the session busy until the relay ends, which takes at most the upstream call
timeout plus one liveness window; every other caller waits that long.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List

import structlog
from pydantic import BaseModel, Field

from api.features.prompt.dtos import CompletionRequest, DialogueTurn, RelayOutcome, Role
from api.features.prompt.relay import (
    API_TIMEOUT,
    LIVENESS_TIMEOUT,
    CompletionSource,
    FragmentChannel,
    StreamRelay,
)
from api.shared.exceptions import ConfigurationError
from core.settings import ChatGPTSettings

logger = structlog.get_logger("prompt.session")


class InstructionSource(BaseModel):
    """Where the system instruction comes from; the literal text wins over the file."""

    file_path: str = Field(default="")
    text: str = Field(default="")

    def load(self) -> str:
        if not self.file_path and not self.text:
            raise ConfigurationError(
                "Either GPT_INSTRUCTION_FILE_PATH or GPT_INSTRUCTION_TEXT must be provided"
            )

        instruction = ""
        if self.file_path:
            try:
                instruction = Path(self.file_path).read_text(encoding="utf-8")
            except OSError as e:
                raise ConfigurationError(
                    f"Could not read instruction file {self.file_path}: {e}",
                    details={"file_path": self.file_path},
                ) from e

        if self.text:
            instruction = self.text
        return instruction


class ConversationSession:
    """Owns the dialogue history and sends it upstream on every prompt."""

    def __init__(self, relay: StreamRelay, model: str, instruction: str):
        self.relay = relay
        self.model = model
        # Typically, a conversation is formatted with a system message first,
        # followed by alternating user and assistant messages.
        self._history: List[DialogueTurn] = [
            DialogueTurn(role=Role.SYSTEM, content=instruction)
        ]
        self._lock = asyncio.Lock()

    @classmethod
    def create(
        cls,
        source: CompletionSource,
        instruction: InstructionSource,
        model: str,
        api_timeout: float = API_TIMEOUT,
        liveness_timeout: float = LIVENESS_TIMEOUT,
    ) -> "ConversationSession":
        """Build a session, reading the instruction before anything touches the network."""
        text = instruction.load()
        relay = StreamRelay(source, api_timeout=api_timeout, liveness_timeout=liveness_timeout)
        return cls(relay=relay, model=model, instruction=text)

    @classmethod
    def from_settings(cls, settings: ChatGPTSettings, source: CompletionSource) -> "ConversationSession":
        return cls.create(
            source=source,
            instruction=InstructionSource(
                file_path=settings.GPT_INSTRUCTION_FILE_PATH,
                text=settings.GPT_INSTRUCTION_TEXT,
            ),
            model=settings.GPT_MODEL,
            api_timeout=settings.GPT_API_TIMEOUT_SECOND,
        )

    @property
    def history(self) -> List[DialogueTurn]:
        return [turn.model_copy() for turn in self._history]

    async def prompt(self, question: str) -> FragmentChannel:
        """Append the question and relay the completion for the whole history.

        Raises ``UpstreamEstablishError`` if the upstream call cannot be opened.
        """
        await self._lock.acquire()
        self._history.append(DialogueTurn(role=Role.USER, content=question))
        try:
            channel = await self.relay.relay(self._new_request(), self._commit)
        except BaseException:
            # Nothing will answer this question; keep the history alternating.
            self._history.pop()
            self._lock.release()
            raise
        return channel

    def _new_request(self) -> CompletionRequest:
        # The model has no memory of past requests, so every request carries
        # the full conversation.
        return CompletionRequest(model=self.model, messages=list(self._history), stream=True)

    def _commit(self, outcome: RelayOutcome) -> None:
        try:
            self._history.append(
                DialogueTurn(
                    role=Role.ASSISTANT,
                    content=outcome.content,
                    partial=outcome.partial,
                )
            )
            if outcome.partial:
                logger.info(
                    "assistant turn committed as partial",
                    dropped=outcome.dropped,
                    error=str(outcome.error) if outcome.error else None,
                )
        finally:
            self._lock.release()
