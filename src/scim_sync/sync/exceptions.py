"""
Sync Engine Exceptions

Typed error taxonomy shared by connectors, the reconciler, the polling service
and the persistence layer.
"""

from typing import List
from typing import Optional


class SyncEngineError(Exception):
    """Base class for every error raised by the sync engine."""

    error_code: str = "SYNC_ENGINE_ERROR"
    is_transient: bool = False

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


# ════════════════════════════════════════════════════════════════════════════
# Connector Errors
# ════════════════════════════════════════════════════════════════════════════


class ConnectorError(SyncEngineError):
    """A provider call failed."""

    error_code = "CONNECTOR_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message, error_code)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.is_transient

    @classmethod
    def from_http_status(
        cls,
        status_code: int,
        message: str,
        retry_after: Optional[float] = None,
    ) -> "ConnectorError":
        """
        Build the typed error matching an HTTP status.

        Args:
            status_code: HTTP status returned by the provider
            message: Error text for logs and error-log entries
            retry_after: Provider-declared wait hint in seconds, if any

        Returns:
            RateLimitedError for 429, TransientProviderError for 408 and 5xx,
            PermanentProviderError for the remaining 4xx statuses
        """
        if status_code == 429:
            return RateLimitedError(message, retry_after=retry_after)
        if status_code == 408 or status_code >= 500:
            return TransientProviderError(message, status_code=status_code, retry_after=retry_after)
        if 400 <= status_code < 500:
            return PermanentProviderError(message, status_code=status_code)
        return ConnectorError(message, status_code=status_code)


class TransientProviderError(ConnectorError):
    """Network, timeout or 5xx failure. Retried with backoff."""

    error_code = "TRANSIENT_PROVIDER_ERROR"
    is_transient = True


class RateLimitedError(TransientProviderError):
    """Provider throttled the request. Retried honouring retry_after."""

    error_code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429, retry_after=retry_after)


class PermanentProviderError(ConnectorError):
    """4xx failure other than rate limiting. Never retried."""

    error_code = "PERMANENT_PROVIDER_ERROR"

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class ConnectorUnhealthyError(SyncEngineError):
    """Connector health check failed; the poll cycle stops before any data call."""

    error_code = "CONNECTOR_UNHEALTHY"
    is_transient = True


class ConnectorNotRegisteredError(SyncEngineError):
    """No connector is registered for the requested pair."""

    error_code = "CONNECTOR_NOT_REGISTERED"


# ════════════════════════════════════════════════════════════════════════════
# Engine Errors
# ════════════════════════════════════════════════════════════════════════════


class TransformationError(SyncEngineError):
    """A required mapping did not match, or a reverse mapping is ambiguous."""

    error_code = "TRANSFORMATION_ERROR"

    def __init__(self, message: str, group_name: Optional[str] = None, candidates: Optional[List[str]] = None):
        super().__init__(message)
        self.group_name = group_name
        self.candidates = candidates or []


class RuleValidationError(SyncEngineError):
    """A transformation rule was rejected at registration time."""

    error_code = "RULE_VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class ConcurrencyConflictError(SyncEngineError):
    """Optimistic write on a SyncState document lost to a concurrent writer."""

    error_code = "CONCURRENCY_CONFLICT"
    is_transient = True


class ReportNotFoundError(SyncEngineError):
    """No pending drift or conflict report with the given id."""

    error_code = "REPORT_NOT_FOUND"


class RuleNotFoundError(SyncEngineError):
    """No transformation rule with the given id."""

    error_code = "RULE_NOT_FOUND"


class InvalidResolutionError(SyncEngineError):
    """A conflict resolution cannot be applied to the conflict it was given for."""

    error_code = "INVALID_RESOLUTION"


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error is transient and should be retried.

    Typed engine errors answer through ``is_transient``. Anything else is
    classified from its type name and message.

    Retryable errors (transient failures):
    - Timeout errors (ReadTimeout, ConnectTimeout, TimeoutError)
    - Network errors (ConnectionError, ConnectionResetError)
    - HTTP 503 Service Unavailable, 504 Gateway Timeout, 429 Too Many Requests

    Non-retryable errors (permanent failures):
    - ValueError, KeyError, TypeError, PermissionError
    - HTTP 4xx errors other than 408 and 429

    Args:
        error: The exception to check

    Returns:
        True if error should be retried, False otherwise
    """
    if isinstance(error, SyncEngineError):
        return error.is_transient

    error_str = str(error).lower()
    error_type = type(error).__name__

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    if "timeout" in error_type.lower() or "timeout" in error_str:
        return True

    if "connection" in error_type.lower() or "connection" in error_str:
        return True

    if (
        "503" in error_str
        or "504" in error_str
        or "service unavailable" in error_str
        or "gateway timeout" in error_str
    ):
        return True

    if "429" in error_str or "rate limit" in error_str or "too many requests" in error_str:
        return True

    # Default: don't retry unknown errors
    return False
