"""Exceptions for the Prompt feature."""
from typing import Any, Dict, Optional

from api.shared.exceptions import ExternalServiceError


class EndOfStream(Exception):
    """Marks the clean end of an upstream completion stream.

    Carried by the terminal fragment of a successful relay. It is a signal,
    not a failure, so it does not derive from the service exception base.
    """

    def __init__(self) -> None:
        super().__init__("end of stream")


class UpstreamError(ExternalServiceError):
    """Base exception for failures of the upstream completion service."""

    pass


class UpstreamEstablishError(UpstreamError):
    """Raised when the streaming completion call cannot be opened."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("completion", message, "UPSTREAM_ESTABLISH_ERROR", details)


class UpstreamStreamError(UpstreamError):
    """Raised when the completion stream fails after it was opened."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("completion", message, "UPSTREAM_STREAM_ERROR", details)
