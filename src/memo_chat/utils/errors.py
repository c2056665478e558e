"""Exception taxonomy for the memo chat service.

Every exception carries an HTTP status and a stable machine-readable code so
the API layer can render it as ``{"error": ..., "code": ..., "retryAfter": ...}``
when it happens before the event stream starts.
"""

from typing import Any, Dict, Optional


class MemoChatException(Exception):
    """Base exception for all memo chat errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the JSON error body."""
        return {"error": self.message, "code": self.code}


class ValidationError(MemoChatException):
    """Malformed request. Never retried."""

    def __init__(
        self,
        message: str = "Invalid request",
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            status_code=400,
            code="VALIDATION_ERROR",
            details=error_details,
        )


class UnauthorizedError(MemoChatException):
    """Missing or invalid caller identity."""

    def __init__(
        self,
        message: str = "Missing or invalid user identity",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=401,
            code="UNAUTHORIZED",
            details=details,
        )


class RateLimitedError(MemoChatException):
    """Caller exceeded its request budget for the current window."""

    def __init__(
        self,
        retry_after: int,
        message: str = "Rate limit exceeded",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            message=message,
            status_code=429,
            code="RATE_LIMITED",
            details=details,
        )

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retryAfter"] = self.retry_after
        return body


class UpstreamTimeoutError(MemoChatException):
    """A downstream collaborator exceeded its deadline."""

    def __init__(
        self,
        label: str,
        timeout: float,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.label = label
        self.timeout = timeout
        error_details = details or {}
        error_details.update({"label": label, "timeout": timeout})
        super().__init__(
            message=f"{label} timeout after {timeout:g}s",
            status_code=504,
            code="UPSTREAM_TIMEOUT",
            details=error_details,
        )


class UpstreamUnavailableError(MemoChatException):
    """A downstream store or provider failed."""

    def __init__(
        self,
        service: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.service = service
        error_details = details or {}
        error_details["service"] = service
        super().__init__(
            message=message or f"Upstream service '{service}' unavailable",
            status_code=503,
            code="UPSTREAM_UNAVAILABLE",
            details=error_details,
        )


class EmbeddingError(UpstreamUnavailableError):
    """Embedding provider failed or returned an unusable vector."""

    def __init__(
        self,
        message: str = "Embedding request failed",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if model:
            error_details["model"] = model
        super().__init__(service="embedding", message=message, details=error_details)


class VectorStoreError(UpstreamUnavailableError):
    """Document store operation failed."""

    def __init__(
        self,
        message: str = "Document store operation failed",
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if operation:
            error_details["operation"] = operation
        super().__init__(service="document_store", message=message, details=error_details)


class LLMError(UpstreamUnavailableError):
    """Completion provider failed."""

    def __init__(
        self,
        message: str = "LLM operation failed",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if model:
            error_details["model"] = model
        super().__init__(service="completion", message=message, details=error_details)


class RetrievalError(MemoChatException):
    """One retrieval strategy failed; the engine falls through to the next."""

    def __init__(
        self,
        strategy: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.strategy = strategy
        error_details = details or {}
        error_details["strategy"] = strategy
        super().__init__(
            message=message or f"Retrieval strategy '{strategy}' failed",
            status_code=502,
            code="RETRIEVAL_ERROR",
            details=error_details,
        )


class InternalError(MemoChatException):
    """Unexpected failure."""

    def __init__(
        self,
        message: str = "Internal server error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="INTERNAL_ERROR",
            details=details,
        )
