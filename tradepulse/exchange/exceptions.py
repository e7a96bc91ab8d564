"""Typed exception hierarchy for market-data operations.

Lets callers distinguish failures that should move on to the next
provider from payloads that should simply be dropped.
"""


class FeedError(Exception):
    """Base class for all market-data errors."""


class TransientFeedError(FeedError):
    """Network failure, timeout or non-2xx response. Try the next source."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(TransientFeedError):
    """Upstream rate limit hit (418/429)."""

    def __init__(self, message: str = "Rate limit exceeded", status_code: int = 429, retry_after: float = 0.0):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class MalformedPayloadError(FeedError):
    """Response or stream message that does not match the provider schema."""


class DataUnavailableError(FeedError):
    """No source returned enough history for an instrument."""


class ProvidersExhaustedError(FeedError):
    """Every configured provider failed and no fallback exists for the symbol."""
