from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import pytest

from api.features.prompt.service import ConversationSession, InstructionSource


@dataclass
class Reply:
    """Scripted answer of the stub upstream for one call."""

    fragments: List[str] = field(default_factory=list)
    fail_with: Optional[Exception] = None
    establish_error: Optional[Exception] = None
    establish_delay: float = 0.0
    delay: float = 0.0


class StubSource:
    """In-memory completion source replaying scripted replies in call order."""

    def __init__(self, *replies: Reply) -> None:
        self.replies = list(replies)
        self.payloads: List[Dict[str, Any]] = []
        self.closed = 0

    async def create_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:
        self.payloads.append(copy.deepcopy(dict(payload)))
        reply = self.replies.pop(0)
        if reply.establish_delay:
            await asyncio.sleep(reply.establish_delay)
        if reply.establish_error is not None:
            raise reply.establish_error
        return self._stream(reply)

    async def _stream(self, reply: Reply) -> AsyncIterator[str]:
        try:
            for fragment in reply.fragments:
                if reply.delay:
                    await asyncio.sleep(reply.delay)
                yield fragment
            if reply.fail_with is not None:
                raise reply.fail_with
        finally:
            self.closed += 1


async def drain(channel) -> list:
    return [fragment async for fragment in channel]


@pytest.fixture
def make_session():
    def _make(*replies: Reply, instruction: str = "S", **kwargs) -> ConversationSession:
        source = StubSource(*replies)
        return ConversationSession.create(
            source=source,
            instruction=InstructionSource(text=instruction),
            model="test-model",
            **kwargs,
        )

    return _make
