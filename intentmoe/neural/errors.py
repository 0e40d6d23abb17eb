"""
Exceptions raised by model clients.

Provides specific error types for the failure modes of a single model
call. The voting service absorbs all of these per participant.
"""

from __future__ import annotations


class ModelClientError(Exception):
    """Base exception for all model call errors."""

    def __init__(self, message: str, provider: str = "unknown"):
        super().__init__(message)
        self.provider = provider


class ModelTransportError(ModelClientError):
    """Error communicating with the provider API."""

    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message, provider)
        self.status_code = status_code


class ModelRateLimitError(ModelTransportError):
    """Rate limit exceeded for the provider."""

    def __init__(self, message: str, provider: str, retry_after: float | None = None):
        super().__init__(message, provider, status_code=429)
        self.retry_after = retry_after


class ModelTimeoutError(ModelClientError):
    """Model call exceeded its timeout."""

    pass


class ModelParsingError(ModelClientError):
    """Model reply could not be parsed into a ModelReply."""

    def __init__(self, message: str, raw_response: str, provider: str = "unknown"):
        super().__init__(message, provider)
        self.raw_response = raw_response
