"""
Error taxonomy for the conversation engine.

Every condition the engine can hit is an instance of ClauChatError, so the
presentation layer can render any of them from a single except clause.
"""

from enum import Enum
from typing import Optional


class ClauChatError(Exception):
    """Base exception for all clauchat errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class EstimationError(ClauChatError):
    """Token or cost estimation failed. Never fatal to the chat."""


class UnknownModel(EstimationError):
    """Raised when a model identifier has no pricing entry."""

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Unsupported model: {model}", details={"model": model})


class PreconditionFailure(Enum):
    """Reasons a submission is refused before any request is opened."""
    MISSING_CREDENTIALS = "missing_credentials"
    CONTEXT_WINDOW_EXCEEDED = "context_window_exceeded"


class PreconditionError(ClauChatError):
    """A submission was refused. No state changes besides the error detail."""

    def __init__(self, message: str, reason: PreconditionFailure, details: Optional[dict] = None):
        self.reason = reason
        super().__init__(message, details=details)


class MissingCredentials(PreconditionError):
    def __init__(self):
        super().__init__(
            "API key not configured. Please add it in settings.",
            reason=PreconditionFailure.MISSING_CREDENTIALS,
        )


class ContextWindowExceeded(PreconditionError):
    def __init__(self, prompt_tokens: int, limit: int):
        self.prompt_tokens = prompt_tokens
        self.limit = limit
        super().__init__(
            f"Conversation is too long: {prompt_tokens:,} prompt tokens exceeds the {limit:,} token limit",
            reason=PreconditionFailure.CONTEXT_WINDOW_EXCEEDED,
            details={"prompt_tokens": prompt_tokens, "limit": limit},
        )


class TransportError(ClauChatError):
    """The active stream failed. Partial reply text is discarded."""


class NetworkError(TransportError):
    """Connection failure, reset, or timeout."""


class AuthError(TransportError):
    """The endpoint rejected the credentials."""


class RateLimited(TransportError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, details={"retry_after": retry_after})


class ServerError(TransportError):
    def __init__(self, message: str, status: int):
        self.status = status
        super().__init__(f"API error ({status}): {message}", details={"status": status})


class ProtocolError(TransportError):
    """A stream fragment could not be interpreted. Handled like any transport failure."""
