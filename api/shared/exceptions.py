"""Shared exceptions for the prompt relay service."""
from typing import Any, Dict, Optional


class PromptRelayException(Exception):
    """Base exception for the prompt relay service."""

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(PromptRelayException):
    """Raised when required settings are missing or unusable at startup."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class ConflictError(PromptRelayException):
    """Raised when there's a conflict with existing data."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFLICT", details)


class RouteConflictError(ConflictError):
    """Raised when a URL pattern is registered twice."""

    def __init__(self, pattern: str):
        super().__init__(f"{pattern} is already registered", {"pattern": pattern})
        self.pattern = pattern


class ListenError(PromptRelayException):
    """Raised when the HTTP listener cannot bind or stops serving unexpectedly."""

    def __init__(self, address: str, reason: str):
        message = f"Could not start the http server on {address}: {reason}"
        super().__init__(message, "LISTEN_ERROR", {"address": address})


class ShutdownTimeoutError(PromptRelayException):
    """Raised when graceful shutdown does not finish before its deadline."""

    def __init__(self, timeout: float):
        message = f"Graceful shutdown did not finish within {timeout:g}s"
        super().__init__(message, "SHUTDOWN_TIMEOUT", {"timeout": timeout})


class ExternalServiceError(PromptRelayException):
    """Raised when external service calls fail."""

    def __init__(
        self,
        service: str,
        message: str,
        error_code: str = "EXTERNAL_SERVICE_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        full_message = f"{service} service error: {message}"
        super().__init__(full_message, error_code, details)
