"""
Error classes for ledgersheet execution.

These error types enable retry classification at execution boundaries:
- TransientError: Safe to retry (rate limits, server errors, network issues)
- PermanentError: Do not retry (bad query, sizing, expired authorization)

Every concrete error carries an ErrorKind so the API client can decide
whether to retry by matching on the kind instead of on status codes or
message text scattered through call sites.

Propagation contract:
- QboClient resolves retryable kinds locally and only raises the remainder
- JobRunner never retries; it turns any raised error into a failed Job
- Scheduler logs per-run errors instead of propagating them to the trigger host
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of a failure."""
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    SERVER_TRANSIENT = "server_transient"
    VALIDATION = "validation"
    SIZING = "sizing"
    NOT_FOUND = "not_found"
    LOCK_CONTENTION = "lock_contention"
    TRANSPORT_EXHAUSTED = "transport_exhausted"
    CONFIG = "config"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.SERVER_TRANSIENT})


class LedgersheetError(Exception):
    """Base exception for ledgersheet."""
    kind: Optional[ErrorKind] = None

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class TransientError(LedgersheetError):
    """
    Transient error - safe to retry.

    Examples:
    - Rate limit exceeded (429)
    - Server error (5xx)
    - Connection reset or timeout
    """
    pass


class PermanentError(LedgersheetError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid query or dataset definition
    - Output larger than the hard cell ceiling
    - Authorization expired after a refresh attempt
    """
    pass


class RateLimited(TransientError):
    """The remote service asked us to slow down."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ServerTransient(TransientError):
    """5xx-equivalent response or a network failure."""
    kind = ErrorKind.SERVER_TRANSIENT

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class AuthExpired(PermanentError):
    """Authorization failed even after one token refresh."""
    kind = ErrorKind.AUTH_EXPIRED


class ValidationError(PermanentError):
    """Bad query or dataset shape."""
    kind = ErrorKind.VALIDATION


class ServiceFault(ValidationError):
    """
    A 4xx business/validation error reported by the remote service.

    The string form is the service's own message and detail so callers
    see what the service said, not a generic wrapper.
    """

    def __init__(
        self,
        status: int,
        message: str,
        code: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        text = message
        if detail and detail != message:
            text = f"{message} | {detail}"
        super().__init__(text)
        self.status = status
        self.code = code
        self.message = message
        self.detail = detail


class SizingError(PermanentError):
    """Output exceeds the hard cell ceiling or the sheet grid."""
    kind = ErrorKind.SIZING

    def __init__(self, message: str, cells: int = 0, limit: int = 0):
        super().__init__(message)
        self.cells = cells
        self.limit = limit


class NotFound(PermanentError):
    """Dataset or job does not exist."""
    kind = ErrorKind.NOT_FOUND


class LockContention(LedgersheetError):
    """The account lock is held by another run. Callers log a skip."""
    kind = ErrorKind.LOCK_CONTENTION


class TransportExhausted(PermanentError):
    """Retry ceiling reached without a successful response."""
    kind = ErrorKind.TRANSPORT_EXHAUSTED

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        message = f"Request failed after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class ConfigError(PermanentError):
    """Configuration validation error."""
    kind = ErrorKind.CONFIG


class TriggerLimitExceeded(PermanentError):
    """The host refused to create another recurring trigger."""
    kind = ErrorKind.VALIDATION


def classify_status(status: int) -> Optional[ErrorKind]:
    """
    Map an HTTP status code to an ErrorKind.

    Returns None for success statuses.
    """
    if 200 <= status < 300:
        return None
    if status == 401:
        return ErrorKind.AUTH_EXPIRED
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if 500 <= status <= 599:
        return ErrorKind.SERVER_TRANSIENT
    return ErrorKind.VALIDATION
