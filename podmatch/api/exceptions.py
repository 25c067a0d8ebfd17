"""Custom exceptions raised by the matching engine and its clients."""
from typing import Optional


class MatchingEngineError(Exception):
    """Base class for all matching engine errors."""
    def __init__(self, message="An error occurred in the matching engine", code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(MatchingEngineError):
    """Raised when a subject entity (author, podcast, user, status row) does not exist."""
    def __init__(self, message="Entity not found", code="NOT_FOUND"):
        super().__init__(message, code)


class AnalysisError(MatchingEngineError):
    """Raised when LLM output cannot be parsed into the expected analysis shape."""
    def __init__(self, message="Failed to analyze entity", code="PROCESSING_ERROR", raw_response: Optional[str] = None):
        self.raw_response = raw_response
        super().__init__(message, code)


class LLMRequestError(MatchingEngineError):
    """Raised for transient LLM failures (network errors, server errors, empty replies)."""
    def __init__(self, message="LLM request failed", code="LLM_REQUEST_ERROR"):
        super().__init__(message, code)


class RateLimitError(LLMRequestError):
    """Raised when the LLM provider rejects a request for exceeding its quota."""
    def __init__(self, message="LLM rate limit exceeded", retry_after: Optional[float] = None):
        self.retry_after = retry_after  # Seconds to wait before retrying, when the provider says
        super().__init__(message, code="RATE_LIMIT_EXCEEDED")


class DatastoreError(MatchingEngineError):
    """Raised when the relational datastore cannot be read or written."""
    def __init__(self, message="Datastore operation failed", code="DATASTORE_ERROR"):
        super().__init__(message, code)


class CacheError(MatchingEngineError):
    """Raised when a cache backend fails. Codes: STORAGE_ERROR, RETRIEVAL_ERROR, INVALIDATION_ERROR."""
    def __init__(self, message="Cache operation failed", code="STORAGE_ERROR"):
        super().__init__(message, code)
