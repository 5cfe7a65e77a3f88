"""
Error taxonomy for reliability and budget governance.

Provider failures are classified into a closed set of ``ErrorKind`` values so
retry decisions never depend on exception class hierarchies. Terminal errors
carry the full attempt history of the logical call that produced them.
"""

import socket
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class ErrorKind(Enum):
    """Classification of a provider failure."""
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    BAD_REQUEST = "bad_request"
    AUTHENTICATION = "authentication"
    PERMISSION_DENIED = "permission_denied"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


# Transient failures that are retried by default
DEFAULT_RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.CONNECTION,
    ErrorKind.RATE_LIMIT,
    ErrorKind.SERVER_ERROR,
})

# Never retried, regardless of custom configuration
FATAL_KINDS = frozenset({
    ErrorKind.BAD_REQUEST,
    ErrorKind.AUTHENTICATION,
    ErrorKind.PERMISSION_DENIED,
})

# Programming errors in the invoker: raised at once, no retry and no fallback
DEFAULT_NON_FALLBACK_ERRORS = (TypeError, AttributeError, NameError, NotImplementedError)


class ReliabilityGuardError(Exception):
    """Base exception for all reliability guard errors."""


class ProviderError(ReliabilityGuardError):
    """Raised by a provider invoker when a model call fails."""

    default_kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.kind = kind or self.default_kind


class RetryableProviderError(ProviderError):
    """Transient provider failure (network, rate limit, 5xx).

    The kind is always one of DEFAULT_RETRYABLE_KINDS, so the error is retried
    whatever the custom retry configuration says.
    """

    default_kind = ErrorKind.SERVER_ERROR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        resolved = kind or self.default_kind
        if resolved not in DEFAULT_RETRYABLE_KINDS:
            raise ValueError(f"{resolved.value} is not a retryable error kind")
        super().__init__(message, resolved)


class FatalProviderError(ProviderError):
    """Malformed request or auth failure. Never retried, may still fall back."""

    default_kind = ErrorKind.BAD_REQUEST

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        if kind is not None and kind not in FATAL_KINDS:
            raise ValueError(f"{kind.value} is not a fatal error kind")
        super().__init__(message, kind)


class CircuitOpenError(ReliabilityGuardError):
    """Raised when a circuit breaker blocks calls to a model."""

    def __init__(
        self,
        agent_type: str,
        model_id: str,
        time_until_close: Optional[float] = None,
        tenant_id: Optional[str] = None
    ):
        self.agent_type = agent_type
        self.model_id = model_id
        self.time_until_close = time_until_close
        self.tenant_id = tenant_id
        message = f"Circuit breaker is open for {agent_type} with model {model_id}"
        if time_until_close is not None:
            message += f" (closes in {time_until_close:.1f}s)"
        super().__init__(message)


class TerminalError(ReliabilityGuardError):
    """Base class for failures that end a logical call."""

    def __init__(self, message: str, attempts: Optional[Sequence[Any]] = None):
        super().__init__(message)
        self.attempts: List[Any] = list(attempts or [])


class TotalTimeoutExceeded(TerminalError):
    """Raised when the total timeout across all attempts has elapsed."""

    def __init__(
        self,
        timeout: float,
        elapsed: float,
        attempts: Optional[Sequence[Any]] = None
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        super().__init__(
            f"Total timeout of {timeout}s exceeded (elapsed: {elapsed:.2f}s)",
            attempts
        )


class ExecutionCancelled(TerminalError):
    """Raised when the caller cancels a logical call."""

    def __init__(self, elapsed: float, attempts: Optional[Sequence[Any]] = None):
        self.elapsed = elapsed
        super().__init__(f"Execution cancelled after {elapsed:.2f}s", attempts)


class BudgetExceeded(TerminalError):
    """Raised under hard enforcement when a budget limit would be exceeded."""

    def __init__(
        self,
        scope: str,
        current: float,
        limit: float,
        tenant_id: Optional[str] = None,
        agent_type: Optional[str] = None,
        attempts: Optional[Sequence[Any]] = None
    ):
        self.scope = scope
        self.current = current
        self.limit = limit
        self.tenant_id = tenant_id
        self.agent_type = agent_type
        message = f"Budget exceeded for {scope}"
        if agent_type:
            message += f" ({agent_type})"
        if tenant_id:
            message += f" [tenant {tenant_id}]"
        message += f": limit {limit}, current {current}"
        super().__init__(message, attempts)


class AllModelsExhausted(TerminalError):
    """Raised when every model in the fallback chain failed or was blocked."""

    def __init__(
        self,
        models_tried: Sequence[str],
        last_error: Optional[BaseException],
        attempts: Optional[Sequence[Any]] = None
    ):
        self.models_tried = list(models_tried)
        self.last_error = last_error
        last_message = str(last_error) if last_error else "no attempts were made"
        super().__init__(
            f"All models exhausted: {', '.join(self.models_tried)}. "
            f"Last error: {last_message}",
            attempts
        )


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception to an ErrorKind.

    Provider errors carry their own kind. Standard library network errors are
    mapped by type; anything else is UNKNOWN and left to message patterns.
    """
    if isinstance(error, ProviderError):
        return error.kind
    if isinstance(error, CircuitOpenError):
        return ErrorKind.CIRCUIT_OPEN
    if isinstance(error, (TimeoutError, socket.timeout)):
        return ErrorKind.TIMEOUT
    if isinstance(error, (ConnectionError, socket.gaierror)):
        return ErrorKind.CONNECTION
    return ErrorKind.UNKNOWN


def error_payload(error: BaseException) -> Dict[str, Any]:
    """Structured description of an error for logs and alerts."""
    return {
        "error_class": type(error).__name__,
        "error_kind": classify_error(error).value,
        "error_message": str(error)[:1000],
    }
