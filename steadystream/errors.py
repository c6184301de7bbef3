"""Error handling for steadystream.

Provides structured error types, error codes, network error detection and
the ordered classification rules the retry engine relies on.
"""

from __future__ import annotations

import asyncio
import builtins
import socket
import ssl
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .types import ErrorCategory, ErrorTypeDelays, RetryReason

# ─────────────────────────────────────────────────────────────────────────────
# Error Codes
# ─────────────────────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Error codes for programmatic handling.

    Usage:
        from steadystream import Error, ErrorCode

        try:
            text = await steadystream.run(stream).read()
        except Error as e:
            if e.code == ErrorCode.ZERO_OUTPUT:
                # Model produced nothing - maybe adjust prompt
                pass
    """

    # Stream errors
    STREAM_ABORTED = "STREAM_ABORTED"
    INITIAL_TOKEN_TIMEOUT = "INITIAL_TOKEN_TIMEOUT"
    INTER_TOKEN_TIMEOUT = "INTER_TOKEN_TIMEOUT"

    # Content errors
    ZERO_OUTPUT = "ZERO_OUTPUT"
    INCOMPLETE_OUTPUT = "INCOMPLETE_OUTPUT"
    GUARDRAIL_VIOLATION = "GUARDRAIL_VIOLATION"
    FATAL_GUARDRAIL_VIOLATION = "FATAL_GUARDRAIL_VIOLATION"
    DRIFT_DETECTED = "DRIFT_DETECTED"

    # Configuration errors
    INVALID_STREAM = "INVALID_STREAM"

    # Source reported an error event
    SOURCE_ERROR = "SOURCE_ERROR"

    # Network errors
    NETWORK_ERROR = "NETWORK_ERROR"


class FailureType(str, Enum):
    """What actually went wrong - the root cause of the failure."""

    NETWORK = "network"  # Connection drops, DNS, fetch errors
    PROVIDER = "provider"  # Rate limits, 5xx, auth
    MODEL = "model"  # Guardrail violation, drift, malformed output
    TIMEOUT = "timeout"  # Initial token or inter-token timeout
    ABORT = "abort"  # User or signal abort
    ZERO_OUTPUT = "zero_output"  # Empty response from model
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    """What the session decided to do next after an error."""

    RETRY = "retry"
    FALLBACK = "fallback"
    HALT = "halt"


# ─────────────────────────────────────────────────────────────────────────────
# Error Class
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ErrorContext:
    """State snapshot attached to an error."""

    code: ErrorCode
    checkpoint: str | None = None
    token_count: int = 0
    content_length: int = 0
    model_retry_count: int = 0
    network_retry_count: int = 0
    fallback_index: int = 0
    metadata: dict[str, Any] | None = None


class Error(Exception):
    """steadystream error with context for debugging and recovery.

    Usage:
        try:
            await steadystream.run(stream).read()
        except Error as e:
            print(e.code)            # ErrorCode.GUARDRAIL_VIOLATION
            print(e.has_checkpoint)  # True if checkpoint available
            print(e.to_detailed_string())
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.context = context or ErrorContext(code=code)
        self.timestamp = time.time()

    @property
    def has_checkpoint(self) -> bool:
        """Check if error has a checkpoint for continuation."""
        return bool(self.context.checkpoint)

    def get_checkpoint(self) -> str | None:
        return self.context.checkpoint

    def to_detailed_string(self) -> str:
        """Get detailed string representation for logging."""
        lines = [
            f"Error [{self.code.value}]: {self.args[0]}",
            f"  Token count: {self.context.token_count}",
            f"  Content length: {self.context.content_length}",
            f"  Model retries: {self.context.model_retry_count}",
            f"  Network retries: {self.context.network_retry_count}",
            f"  Fallback index: {self.context.fallback_index}",
        ]
        if self.context.metadata:
            lines.append(f"  Metadata: {self.context.metadata}")
        if self.has_checkpoint:
            preview = (self.context.checkpoint or "")[:100]
            lines.append(f"  Checkpoint preview: {preview!r}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Error(code={self.code.value!r}, message={self.args[0]!r})"


class TimeoutError(Error):
    """Raised when a token watchdog fires."""

    def __init__(self, message: str, timeout_type: str, timeout_seconds: float):
        code = (
            ErrorCode.INITIAL_TOKEN_TIMEOUT
            if timeout_type == "initial_token"
            else ErrorCode.INTER_TOKEN_TIMEOUT
        )
        super().__init__(message, code=code)
        self.timeout_type = timeout_type  # "initial_token" or "inter_token"
        self.timeout_seconds = timeout_seconds


class StreamAbortedError(Error):
    """Raised once an abort request has been honored."""

    def __init__(self, message: str = "Stream aborted", **kwargs: Any) -> None:
        super().__init__(message, code=ErrorCode.STREAM_ABORTED, **kwargs)


# ─────────────────────────────────────────────────────────────────────────────
# Network Error Detection
# ─────────────────────────────────────────────────────────────────────────────


class NetworkErrorType(str, Enum):
    """Network error types that can be detected."""

    CONNECTION_DROPPED = "connection_dropped"
    FETCH_ERROR = "fetch_error"
    ECONNRESET = "econnreset"
    ECONNREFUSED = "econnrefused"
    SSE_ABORTED = "sse_aborted"
    NO_BYTES = "no_bytes"
    PARTIAL_CHUNKS = "partial_chunks"
    RUNTIME_KILLED = "runtime_killed"
    BACKGROUND_THROTTLE = "background_throttle"
    DNS_ERROR = "dns_error"
    SSL_ERROR = "ssl_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


@dataclass
class NetworkErrorAnalysis:
    """Detailed network error analysis."""

    type: NetworkErrorType
    retryable: bool
    suggestion: str
    context: dict[str, Any] = field(default_factory=dict)


# Message fragments per transport failure, checked in this order.
_MESSAGE_PATTERNS: tuple[tuple[NetworkErrorType, tuple[str, ...]], ...] = (
    (
        NetworkErrorType.ECONNRESET,
        ("econnreset", "connection reset by peer"),
    ),
    (
        NetworkErrorType.ECONNREFUSED,
        ("econnrefused", "connection refused"),
    ),
    (
        NetworkErrorType.CONNECTION_DROPPED,
        (
            "connection dropped",
            "connection closed",
            "connection lost",
            "connection reset",
            "broken pipe",
            "socket error",
            "eof occurred",
            "network unreachable",
            "host unreachable",
        ),
    ),
    (
        NetworkErrorType.SSE_ABORTED,
        ("server-sent events", "sse stream", "stream aborted", "eventstream"),
    ),
    (
        NetworkErrorType.NO_BYTES,
        ("no bytes", "empty response", "zero bytes", "no data received"),
    ),
    (
        NetworkErrorType.PARTIAL_CHUNKS,
        (
            "partial chunk",
            "incomplete chunk",
            "truncated",
            "premature close",
            "unexpected end of data",
            "incomplete read",
        ),
    ),
    (
        NetworkErrorType.RUNTIME_KILLED,
        (
            "worker terminated",
            "runtime killed",
            "lambda timeout",
            "function timeout",
            "worker died",
            "sigterm",
            "sigkill",
        ),
    ),
    (
        NetworkErrorType.BACKGROUND_THROTTLE,
        ("background throttle", "tab suspended", "page hidden", "background tab"),
    ),
    (
        NetworkErrorType.DNS_ERROR,
        (
            "dns",
            "enotfound",
            "name resolution",
            "host not found",
            "getaddrinfo",
            "nodename nor servname provided",
        ),
    ),
)

_SSL_PATTERNS = (
    "ssl",
    "tls",
    "certificate",
    "self signed",
    "self-signed",
    "unable to verify",
    "handshake",
)

_TIMEOUT_PATTERNS = ("timeout", "timed out", "deadline exceeded", "etimedout")

# Exception types that identify a failure without looking at the message.
_TYPE_MAP: tuple[tuple[type[BaseException], NetworkErrorType], ...] = (
    (ssl.SSLError, NetworkErrorType.SSL_ERROR),
    (socket.gaierror, NetworkErrorType.DNS_ERROR),
    (ConnectionResetError, NetworkErrorType.ECONNRESET),
    (ConnectionRefusedError, NetworkErrorType.ECONNREFUSED),
    (ConnectionAbortedError, NetworkErrorType.CONNECTION_DROPPED),
    (BrokenPipeError, NetworkErrorType.CONNECTION_DROPPED),
    (asyncio.IncompleteReadError, NetworkErrorType.PARTIAL_CHUNKS),
)

_SUGGESTIONS: dict[NetworkErrorType, str] = {
    NetworkErrorType.CONNECTION_DROPPED: "Retry with backoff - connection was interrupted",
    NetworkErrorType.FETCH_ERROR: "Retry immediately - request failed to initiate",
    NetworkErrorType.ECONNRESET: "Retry with backoff - connection was reset by peer",
    NetworkErrorType.ECONNREFUSED: "Retry with longer delay - server refused connection",
    NetworkErrorType.SSE_ABORTED: "Retry immediately - event stream was aborted",
    NetworkErrorType.NO_BYTES: "Retry immediately - server sent no data",
    NetworkErrorType.PARTIAL_CHUNKS: "Retry immediately - received incomplete data",
    NetworkErrorType.RUNTIME_KILLED: "Retry with shorter requests - runtime was terminated",
    NetworkErrorType.BACKGROUND_THROTTLE: "Retry when the process is foregrounded",
    NetworkErrorType.DNS_ERROR: "Retry with longer delay - DNS lookup failed",
    NetworkErrorType.SSL_ERROR: "Don't retry - SSL/TLS configuration issue",
    NetworkErrorType.TIMEOUT: "Retry with longer timeout - request timed out",
    NetworkErrorType.UNKNOWN: "Retry with caution - unknown network error",
}


class NetworkError:
    """Network error detection and analysis utilities.

    Usage:
        from steadystream import NetworkError

        if NetworkError.is_ssl(error):
            ...

        analysis = NetworkError.analyze(error)
        print(analysis.type)        # NetworkErrorType.ECONNRESET
        print(analysis.suggestion)
    """

    @staticmethod
    def detect_type(error: BaseException) -> NetworkErrorType | None:
        """Return the transport failure type, or None if not network related.

        Timeouts and TLS failures are reported too; callers decide how to
        treat them.
        """
        for exc_type, net_type in _TYPE_MAP:
            if isinstance(error, exc_type):
                return net_type

        msg = str(error).lower()
        if any(p in msg for p in _SSL_PATTERNS):
            return NetworkErrorType.SSL_ERROR
        if isinstance(error, TypeError) and (
            "fetch" in msg or "network request failed" in msg
        ):
            return NetworkErrorType.FETCH_ERROR
        for net_type, patterns in _MESSAGE_PATTERNS:
            if any(p in msg for p in patterns):
                return net_type
        if NetworkError.is_timeout(error):
            return NetworkErrorType.TIMEOUT
        code = NetworkError._get_error_code(error)
        if code == "104":  # ECONNRESET on Linux
            return NetworkErrorType.ECONNRESET
        if code == "111":  # ECONNREFUSED on Linux
            return NetworkErrorType.ECONNREFUSED
        return None

    @staticmethod
    def is_ssl(error: BaseException) -> bool:
        """Detect SSL/TLS and certificate errors."""
        return NetworkError.detect_type(error) is NetworkErrorType.SSL_ERROR

    @staticmethod
    def is_timeout(error: BaseException) -> bool:
        """Detect timeout errors by type or message."""
        if isinstance(error, (builtins.TimeoutError, asyncio.TimeoutError)):
            return True
        msg = str(error).lower()
        return any(p in msg for p in _TIMEOUT_PATTERNS)

    @staticmethod
    def is_transport(error: BaseException) -> bool:
        """Transport failure that is worth retrying (not TLS, not a timeout)."""
        net_type = NetworkError.detect_type(error)
        return net_type is not None and net_type not in (
            NetworkErrorType.SSL_ERROR,
            NetworkErrorType.TIMEOUT,
        )

    @staticmethod
    def check(error: BaseException) -> bool:
        """Check if error is any type of network error."""
        return NetworkError.detect_type(error) is not None

    @staticmethod
    def analyze(error: BaseException) -> NetworkErrorAnalysis:
        """Analyze a network error and provide detailed information."""
        net_type = NetworkError.detect_type(error) or NetworkErrorType.UNKNOWN
        return NetworkErrorAnalysis(
            type=net_type,
            retryable=net_type is not NetworkErrorType.SSL_ERROR,
            suggestion=_SUGGESTIONS[net_type],
        )

    @staticmethod
    def describe(error: BaseException) -> str:
        """Get human-readable description of network error."""
        analysis = NetworkError.analyze(error)
        return f"Network error: {analysis.type.value} ({analysis.suggestion})"

    @staticmethod
    def is_stream_interrupted(error: BaseException, token_count: int) -> bool:
        """Check if error indicates stream was interrupted mid-flight."""
        return token_count > 0 and NetworkError.is_transport(error)

    @staticmethod
    def type_delay(net_type: NetworkErrorType, delays: ErrorTypeDelays) -> float:
        """Get base delay for a specific network error type."""
        if net_type is NetworkErrorType.SSL_ERROR:
            return 0.0
        return float(getattr(delays, net_type.value, delays.unknown))

    @staticmethod
    def suggest_delay(
        error: BaseException,
        attempt: int,
        max_delay: float = 30.0,
        delays: ErrorTypeDelays | None = None,
    ) -> float:
        """Suggest retry delay based on network error type.

        Args:
            error: Error to analyze
            attempt: Retry attempt number (0-based)
            max_delay: Maximum delay cap (default: 30.0 seconds)
            delays: Per-type base delays (default: ErrorTypeDelays())

        Returns:
            Suggested delay in seconds
        """
        analysis = NetworkError.analyze(error)
        base = NetworkError.type_delay(analysis.type, delays or ErrorTypeDelays())
        if base == 0:
            return 0.0
        return float(min(base * (2**attempt), max_delay))

    @staticmethod
    def _get_error_code(error: BaseException) -> str | None:
        """Get error code if present (for OSError, etc.)."""
        errno = getattr(error, "errno", None)
        if errno is not None:
            return str(errno)
        code = getattr(error, "code", None)
        if code is not None:
            return str(code)
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Classification
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Classification:
    """Result of classifying an error."""

    category: ErrorCategory
    reason: RetryReason
    rule: str
    network_type: NetworkErrorType | None = None

    @property
    def counts_toward_limit(self) -> bool:
        """Only model errors are charged against ``Retry.attempts``."""
        return self.category is ErrorCategory.MODEL


@dataclass(frozen=True)
class ClassificationRule:
    """One predicate -> (category, reason) mapping."""

    name: str
    predicate: Callable[[BaseException], bool]
    category: ErrorCategory
    reason: RetryReason


def _has_code(*codes: ErrorCode) -> Callable[[BaseException], bool]:
    def predicate(error: BaseException) -> bool:
        return isinstance(error, Error) and error.code in codes

    return predicate


def _http_status(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _status_in(*ranges: range) -> Callable[[BaseException], bool]:
    def predicate(error: BaseException) -> bool:
        status = _http_status(error)
        return status is not None and any(status in r for r in ranges)

    return predicate


def _message_has(*fragments: str) -> Callable[[BaseException], bool]:
    def predicate(error: BaseException) -> bool:
        msg = str(error).lower()
        return any(f in msg for f in fragments)

    return predicate


# Evaluated top to bottom; the first matching rule wins.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "aborted",
        lambda e: isinstance(e, StreamAbortedError),
        ErrorCategory.FATAL,
        RetryReason.ABORTED,
    ),
    ClassificationRule(
        "fatal_guardrail",
        _has_code(ErrorCode.FATAL_GUARDRAIL_VIOLATION),
        ErrorCategory.FATAL,
        RetryReason.GUARDRAIL_VIOLATION,
    ),
    ClassificationRule(
        "guardrail",
        _has_code(ErrorCode.GUARDRAIL_VIOLATION),
        ErrorCategory.MODEL,
        RetryReason.GUARDRAIL_VIOLATION,
    ),
    ClassificationRule(
        "drift",
        _has_code(ErrorCode.DRIFT_DETECTED),
        ErrorCategory.MODEL,
        RetryReason.DRIFT,
    ),
    ClassificationRule(
        "zero_output",
        _has_code(ErrorCode.ZERO_OUTPUT),
        ErrorCategory.MODEL,
        RetryReason.ZERO_OUTPUT,
    ),
    ClassificationRule(
        "incomplete",
        _has_code(ErrorCode.INCOMPLETE_OUTPUT),
        ErrorCategory.MODEL,
        RetryReason.INCOMPLETE,
    ),
    ClassificationRule(
        "invalid_stream",
        _has_code(ErrorCode.INVALID_STREAM),
        ErrorCategory.FATAL,
        RetryReason.INVALID,
    ),
    ClassificationRule(
        "watchdog",
        lambda e: isinstance(e, TimeoutError),
        ErrorCategory.TRANSIENT,
        RetryReason.TIMEOUT,
    ),
    ClassificationRule(
        "tls",
        NetworkError.is_ssl,
        ErrorCategory.FATAL,
        RetryReason.TLS,
    ),
    ClassificationRule(
        "transport",
        NetworkError.is_transport,
        ErrorCategory.NETWORK,
        RetryReason.NETWORK_ERROR,
    ),
    ClassificationRule(
        "http_429",
        _status_in(range(429, 430)),
        ErrorCategory.TRANSIENT,
        RetryReason.RATE_LIMIT,
    ),
    ClassificationRule(
        "http_auth",
        _status_in(range(401, 402), range(403, 404)),
        ErrorCategory.FATAL,
        RetryReason.AUTH,
    ),
    ClassificationRule(
        "http_408",
        _status_in(range(408, 409)),
        ErrorCategory.TRANSIENT,
        RetryReason.TIMEOUT,
    ),
    ClassificationRule(
        "http_5xx",
        _status_in(range(500, 600)),
        ErrorCategory.TRANSIENT,
        RetryReason.SERVER_ERROR,
    ),
    ClassificationRule(
        "http_4xx",
        _status_in(range(400, 500)),
        ErrorCategory.FATAL,
        RetryReason.CLIENT_ERROR,
    ),
    ClassificationRule(
        "rate_limit_message",
        _message_has("rate limit", "rate_limit", "too many requests"),
        ErrorCategory.TRANSIENT,
        RetryReason.RATE_LIMIT,
    ),
    ClassificationRule(
        "auth_message",
        _message_has("unauthorized", "forbidden", "invalid api key"),
        ErrorCategory.FATAL,
        RetryReason.AUTH,
    ),
    ClassificationRule(
        "timeout",
        NetworkError.is_timeout,
        ErrorCategory.TRANSIENT,
        RetryReason.TIMEOUT,
    ),
)


def classify_error(
    error: BaseException,
    rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
) -> Classification:
    """Classify an error for retry decisions.

    Anything no rule claims is a model error.
    """
    for rule in rules:
        if rule.predicate(error):
            net_type = (
                NetworkError.detect_type(error)
                if rule.category is ErrorCategory.NETWORK
                else None
            )
            return Classification(
                category=rule.category,
                reason=rule.reason,
                rule=rule.name,
                network_type=net_type,
            )
    return Classification(
        category=ErrorCategory.MODEL,
        reason=RetryReason.MALFORMED,
        rule="default",
    )


def categorize_error(error: BaseException) -> ErrorCategory:
    return classify_error(error).category


def is_retryable(error: BaseException) -> bool:
    return classify_error(error).category is not ErrorCategory.FATAL


def failure_type_for(
    error: BaseException, classification: Classification
) -> FailureType:
    """Map an error to the root-cause bucket reported in ERROR events."""
    if isinstance(error, StreamAbortedError):
        return FailureType.ABORT
    if classification.reason is RetryReason.TIMEOUT:
        return FailureType.TIMEOUT
    if classification.reason is RetryReason.ZERO_OUTPUT:
        return FailureType.ZERO_OUTPUT
    if (
        classification.category is ErrorCategory.NETWORK
        or classification.reason is RetryReason.TLS
    ):
        return FailureType.NETWORK
    if classification.reason in (
        RetryReason.RATE_LIMIT,
        RetryReason.SERVER_ERROR,
        RetryReason.AUTH,
        RetryReason.CLIENT_ERROR,
    ):
        return FailureType.PROVIDER
    if classification.category is ErrorCategory.MODEL:
        return FailureType.MODEL
    return FailureType.UNKNOWN
