"""Error taxonomy for the ingestion and retrieval pipeline.

Every error raised by Seshat derives from :class:`SeshatError`, which carries
the name of the operation that failed and whether repeating it could help.
Callers use ``retryable`` to decide between retrying the whole operation and
aborting, and catch :class:`CircuitOpenError` separately to back off longer
when the vector database is known to be degraded.
"""

from datetime import UTC, datetime
import re

import requests

# Messages that mark an error as permanent regardless of transport status.
NON_RETRYABLE_PATTERNS = [
    re.compile(r"invalid.*api.*key", re.IGNORECASE),
    re.compile(r"invalid.*credential", re.IGNORECASE),
    re.compile(r"permission.*denied", re.IGNORECASE),
    re.compile(r"invalid.*request", re.IGNORECASE),
    re.compile(r"quota.*exceeded", re.IGNORECASE),
    re.compile(r"invalid.*dimension", re.IGNORECASE),
    re.compile(r"expected \d+ dimensions", re.IGNORECASE),
    re.compile(r"constraint.*violation", re.IGNORECASE),
    re.compile(r"duplicate key value", re.IGNORECASE),
]

# Gateway failures that surface as plain text rather than a status code.
TRANSIENT_PATTERNS = [
    re.compile(r"cloudflare", re.IGNORECASE),
    re.compile(r"timed? ?out", re.IGNORECASE),
    re.compile(r"connection (reset|refused|aborted)", re.IGNORECASE),
    re.compile(r"bad gateway|service unavailable|gateway timeout", re.IGNORECASE),
]

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504, 520, 522, 524})
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 409, 413, 422})


class SeshatError(Exception):
    """Base class for all Seshat errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        operation: str = "",
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        if retryable is not None:
            self.retryable = retryable
        self.timestamp = datetime.now(UTC).isoformat()


class ConfigurationError(SeshatError):
    """Raised when required settings are missing or invalid."""


class ValidationError(SeshatError):
    """Raised for bad input: empty content, wrong dimensionality, malformed embedding."""

    retryable = False


class RemoteServiceError(SeshatError):
    """Raised by transports when a remote service answers with an error.

    Attributes:
        status_code: HTTP status returned by the service, or None for
            network-level failures.
        code: Service-specific error code (e.g. a PostgREST or Google RPC code).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        operation: str = "",
    ):
        super().__init__(message, operation=operation)
        self.status_code = status_code
        self.code = code
        self.retryable = is_retryable_error(self)


class RateLimitError(RemoteServiceError):
    """Raised when a remote service signals that the request rate is too high."""

    def __init__(self, message: str, status_code: int | None = 429, code: str | None = None, operation: str = ""):
        super().__init__(message, status_code=status_code, code=code, operation=operation)
        self.retryable = True


class RemoteTimeoutError(RemoteServiceError):
    """Raised when a remote call exceeds its timeout."""

    def __init__(self, message: str, operation: str = ""):
        super().__init__(message, status_code=None, code="timeout", operation=operation)
        self.retryable = True


class VectorOperationError(SeshatError):
    """Typed failure of a vector store operation after retry handling.

    Attributes:
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        original_error: BaseException | None = None,
        retryable: bool = True,
    ):
        super().__init__(message, operation=operation, retryable=retryable)
        self.original_error = original_error


class CircuitOpenError(VectorOperationError):
    """Raised without a network call while the circuit breaker is open."""

    def __init__(self, operation: str, retry_after: float = 0.0):
        super().__init__(
            "Circuit breaker is open - service temporarily unavailable",
            operation=operation,
            retryable=False,
        )
        self.retry_after = retry_after


class EmbeddingFailure(SeshatError):
    """Raised when a single text could not be embedded after all attempts."""

    def __init__(
        self,
        message: str,
        chunk_id: str | None = None,
        attempts: int = 0,
        last_error: BaseException | None = None,
    ):
        super().__init__(message, operation="embed", retryable=False)
        self.chunk_id = chunk_id
        self.attempts = attempts
        self.last_error = last_error


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether repeating the failed call could succeed.

    Timeouts, network failures, HTTP 5xx and 429 and gateway errors are
    transient. Credential, permission, malformed-request, quota, dimension
    and constraint errors are permanent, as are validation errors and an
    open circuit.

    Args:
        error: The exception raised by the failed call.

    Returns:
        True when the call should be attempted again.
    """
    if isinstance(error, (ValidationError, CircuitOpenError, EmbeddingFailure, ConfigurationError)):
        return False
    if isinstance(error, (RateLimitError, RemoteTimeoutError)):
        return True
    if isinstance(error, VectorOperationError):
        return error.retryable
    if isinstance(error, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
        return True

    message = str(error)
    if any(pattern.search(message) for pattern in NON_RETRYABLE_PATTERNS):
        return False

    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
            return True
        if status_code in NON_RETRYABLE_STATUS_CODES:
            return False

    if any(pattern.search(message) for pattern in TRANSIENT_PATTERNS):
        return True

    # Unknown failures are treated as transient so that the attempt cap bounds them.
    return True
