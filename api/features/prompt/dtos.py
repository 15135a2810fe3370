"""DTOs for the Prompt feature."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from api.features.prompt.exceptions import EndOfStream


class Role(str, Enum):
    """Author of a dialogue turn."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class DialogueTurn(BaseModel):
    """One role-tagged message of the conversation history."""

    role: Role = Field(description="Author of the turn")
    content: str = Field(description="Message text")
    partial: bool = Field(
        default=False,
        description="Assistant text is incomplete (stream error or dropped delivery)",
    )

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class CompletionRequest(BaseModel):
    """Request sent to the upstream completion source."""

    model: str = Field(description="Model identifier")
    messages: List[DialogueTurn] = Field(description="Full ordered history")
    stream: bool = Field(default=True)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [turn.to_message() for turn in self.messages],
            "stream": self.stream,
        }


@dataclass(frozen=True)
class Fragment:
    """One incremental piece of a streamed completion.

    A fragment with ``error`` set is terminal: the channel is closed right
    after it. ``EndOfStream`` marks a clean finish.
    """

    content: str = ""
    error: Optional[BaseException] = None

    @property
    def is_terminal(self) -> bool:
        return self.error is not None

    @property
    def is_end_of_stream(self) -> bool:
        return isinstance(self.error, EndOfStream)


@dataclass(frozen=True)
class RelayOutcome:
    """Result of one relay, handed to the completion callback."""

    content: str
    error: Optional[BaseException]
    dropped: int = 0

    @property
    def partial(self) -> bool:
        return self.dropped > 0 or not isinstance(self.error, EndOfStream)
