"""
Custom exceptions for POS Sync.

Defines the error taxonomy used across the engine. Every class carries a
stable ``code`` that ends up in SyncLog item results and in HTTP error
bodies, so callers can tell which case applied without parsing messages.
"""

from typing import Optional, Dict, Any


class PosSyncError(Exception):
    """Base exception for all POS Sync errors."""

    code = "pos_sync_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception with message and optional details.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ConfigurationError(PosSyncError):
    """Raised when configuration is invalid or missing."""
    code = "configuration_error"


class ValidationError(PosSyncError):
    """Raised when input data fails validation."""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


class IntegrationNotFound(PosSyncError):
    """Raised when no (active) Integration matches the request."""
    code = "integration_not_found"


class AuthorizationExpired(PosSyncError):
    """
    Authorization flow was abandoned, its state expired or was already used.

    The user has to restart the connect flow.
    """
    code = "authorization_expired"


class InvalidGrant(AuthorizationExpired):
    """Authorization code rejected by the provider (expired or reused)."""
    code = "invalid_grant"


class RefreshFailed(PosSyncError):
    """
    Refresh token rejected by the provider.

    Not retryable: the Integration is deactivated and must be reconnected.
    """
    code = "refresh_failed"


class ProviderError(PosSyncError):
    """Base class for errors returned by an external POS provider."""

    code = "provider_error"
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None,
                 provider: Optional[str] = None, endpoint: Optional[str] = None,
                 response_data: Optional[Any] = None):
        """
        Initialize provider error.

        Args:
            message: Error message
            status_code: HTTP status code, if the error came from a response
            provider: Provider identifier (square, clover, ...)
            endpoint: Endpoint that failed
            response_data: Decoded response body
        """
        details = {}
        if status_code:
            details["status_code"] = status_code
        if provider:
            details["provider"] = provider
        if endpoint:
            details["endpoint"] = endpoint
        if response_data:
            details["response_data"] = response_data

        super().__init__(message, details)
        self.status_code = status_code
        self.provider = provider
        self.endpoint = endpoint
        self.response_data = response_data


class RateLimited(ProviderError):
    """Provider answered 429 (or its own throttling code). Retryable."""

    code = "rate_limited"
    retryable = True

    def __init__(self, message: str = "Provider rate limit exceeded",
                 retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class TransientProviderError(ProviderError):
    """5xx, timeout or connection failure. Retryable."""
    code = "transient_provider_error"
    retryable = True


class PermanentProviderError(ProviderError):
    """4xx other than 429. Recorded against the item, never retried."""
    code = "permanent_provider_error"


class ConflictPendingReview(PosSyncError):
    """
    A field conflict was deferred to manual review.

    Not a failure: the item completes with the field left untouched on both
    sides and a persisted conflict record.
    """

    code = "conflict_pending_review"

    def __init__(self, message: str, field: str, external_value: Any = None,
                 platform_value: Any = None):
        super().__init__(message, {
            "field": field,
            "external_value": str(external_value),
            "platform_value": str(platform_value),
        })
        self.field = field
        self.external_value = external_value
        self.platform_value = platform_value


class RepositoryError(PosSyncError):
    """Persistence failure. Aborts the run."""

    code = "repository_error"

    def __init__(self, message: str, operation: Optional[str] = None,
                 table: Optional[str] = None):
        """
        Initialize repository error.

        Args:
            message: Error message
            operation: Repository operation that failed
            table: Table involved
        """
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details)
        self.operation = operation
        self.table = table


class InvalidStatusTransition(RepositoryError):
    """SyncLog status may only move forward."""
    code = "invalid_status_transition"


class WouldExceedDeadline(PosSyncError):
    """Waiting for a rate-limit grant would pass the caller's deadline."""

    code = "would_exceed_deadline"

    def __init__(self, message: str = "Rate limiter wait would exceed deadline",
                 wait_seconds: Optional[float] = None):
        details = {}
        if wait_seconds is not None:
            details["wait_seconds"] = round(wait_seconds, 3)
        super().__init__(message, details)
        self.wait_seconds = wait_seconds


class OperationCancelled(PosSyncError):
    """The run's cancellation token fired while waiting."""
    code = "cancelled"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def raise_for_provider_response(response, provider: str, endpoint: Optional[str] = None) -> None:
    """
    Raise the taxonomy error matching an unsuccessful provider response.

    Args:
        response: httpx.Response
        provider: Provider identifier
        endpoint: Endpoint that was called

    Raises:
        RateLimited, TransientProviderError or PermanentProviderError.
    """
    status_code = response.status_code
    if status_code < 400:
        return

    try:
        response_data = response.json()
    except ValueError:
        response_data = response.text[:500] if response.text else None

    common = dict(status_code=status_code, provider=provider, endpoint=endpoint,
                  response_data=response_data)

    if status_code == 429:
        raise RateLimited(
            f"{provider} rate limit exceeded",
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            **common
        )
    elif status_code >= 500 or status_code == 408:
        raise TransientProviderError(f"{provider} server error: {status_code}", **common)
    else:
        raise PermanentProviderError(f"{provider} request failed: {status_code}", **common)


def error_code_for(exc: BaseException) -> str:
    """Stable taxonomy code for any exception, including foreign ones."""
    if isinstance(exc, PosSyncError):
        return exc.code
    return "unexpected_error"
