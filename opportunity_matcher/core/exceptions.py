"""
Custom exceptions for the opportunity matcher.

This module defines the error taxonomy shared by the embedding providers,
the vector store, the collaborators and the services built on top of them.
"""

from typing import Any, Dict, Optional


class OpportunityMatcherError(Exception):
    """Base exception for opportunity matcher errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.context = context or {}
        super().__init__(message)


class ProviderError(OpportunityMatcherError):
    """Base exception for embedding provider failures."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.provider = provider
        super().__init__(message, context)


class ProviderTransientError(ProviderError):
    """Retryable provider failure (timeout, rate limit, 5xx). Triggers backoff and failover."""
    pass


class ProviderFatalError(ProviderError):
    """Non-retryable provider failure (bad request, auth, bad dimensions). Surfaced immediately."""
    pass


class EmbeddingValidationError(ProviderFatalError):
    """Raised when the caller passes input that can never be embedded."""
    pass


class EmbeddingUnavailable(OpportunityMatcherError):
    """Raised when every embedding provider has been exhausted."""
    pass


class StoreError(OpportunityMatcherError):
    """Raised when a store rejects an operation (bad data, bad query)."""
    pass


class StoreUnavailable(StoreError):
    """Raised when the vector store or a document store cannot be reached."""
    pass


class NotFound(OpportunityMatcherError):
    """Raised for an unknown item or user id. An empty result is not an error."""
    pass


class RateLimitExceeded(OpportunityMatcherError):
    """Raised when a caller exceeds its advisory request budget."""

    def __init__(self, key: str, retry_after: float) -> None:
        self.key = key
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {key}", {"key": key, "retry_after": retry_after}
        )
