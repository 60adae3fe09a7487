"""Domain errors raised by services and mapped to HTTP statuses by the API layer."""

from __future__ import annotations


class ChatOrchestratorError(Exception):
    """Base class for errors this package raises on purpose."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ChatOrchestratorError):
    """Missing or malformed request fields."""

    status_code = 400


class AuthenticationError(ChatOrchestratorError):
    status_code = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class NotFoundError(ChatOrchestratorError):
    status_code = 404


class StorageError(ChatOrchestratorError):
    """Database read/write failed; the driver error is kept on `__cause__`."""

    status_code = 500


class UpstreamError(ChatOrchestratorError):
    """An outbound HTTP dependency (LLM API) failed."""

    status_code = 502
