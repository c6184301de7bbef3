"""Tests for steadystream.errors module."""

import asyncio
import socket
import ssl

import pytest

from steadystream.errors import (
    CLASSIFICATION_RULES,
    Error,
    ErrorCode,
    ErrorContext,
    FailureType,
    NetworkError,
    NetworkErrorType,
    StreamAbortedError,
    TimeoutError,
    categorize_error,
    classify_error,
    failure_type_for,
    is_retryable,
)
from steadystream.types import ErrorCategory, ErrorTypeDelays, RetryReason

Cat = ErrorCategory
Reason = RetryReason


class HTTPError(Exception):
    def __init__(self, status_code, message="http error"):
        super().__init__(message)
        self.status_code = status_code


class Response:
    def __init__(self, status_code):
        self.status_code = status_code


class ResponseError(Exception):
    def __init__(self, status_code):
        super().__init__("request failed")
        self.response = Response(status_code)


class TestError:
    def test_error_carries_code_and_context(self):
        ctx = ErrorContext(
            code=ErrorCode.GUARDRAIL_VIOLATION,
            checkpoint="partial",
            token_count=5,
        )
        error = Error(
            "Guardrail violation", code=ErrorCode.GUARDRAIL_VIOLATION, context=ctx
        )
        assert error.code == ErrorCode.GUARDRAIL_VIOLATION
        assert error.has_checkpoint
        assert error.get_checkpoint() == "partial"
        assert str(error) == "Guardrail violation"

    def test_default_context(self):
        error = Error("nothing", code=ErrorCode.ZERO_OUTPUT)
        assert error.context.code == ErrorCode.ZERO_OUTPUT
        assert not error.has_checkpoint

    def test_detailed_string(self):
        ctx = ErrorContext(
            code=ErrorCode.DRIFT_DETECTED,
            checkpoint="abc",
            token_count=3,
            metadata={"types": ["topic"]},
        )
        detail = Error("Drift", code=ErrorCode.DRIFT_DETECTED, context=ctx)
        text = detail.to_detailed_string()
        assert "DRIFT_DETECTED" in text
        assert "Token count: 3" in text
        assert "Checkpoint preview" in text
        assert "topic" in text

    def test_timeout_error_codes(self):
        initial = TimeoutError(
            "slow", timeout_type="initial_token", timeout_seconds=1.0
        )
        inter = TimeoutError("stall", timeout_type="inter_token", timeout_seconds=2.0)
        assert initial.code == ErrorCode.INITIAL_TOKEN_TIMEOUT
        assert inter.code == ErrorCode.INTER_TOKEN_TIMEOUT
        assert inter.timeout_seconds == 2.0

    def test_aborted_error(self):
        error = StreamAbortedError()
        assert error.code == ErrorCode.STREAM_ABORTED
        assert isinstance(error, Error)


class TestClassification:
    """Ordered classification rules."""

    @pytest.mark.parametrize(
        ("error", "category", "reason"),
        [
            (ConnectionResetError("reset"), Cat.NETWORK, Reason.NETWORK_ERROR),
            (Exception("ECONNRESET"), Cat.NETWORK, Reason.NETWORK_ERROR),
            (HTTPError(429), Cat.TRANSIENT, Reason.RATE_LIMIT),
            (HTTPError(503), Cat.TRANSIENT, Reason.SERVER_ERROR),
            (HTTPError(408), Cat.TRANSIENT, Reason.TIMEOUT),
            (HTTPError(401), Cat.FATAL, Reason.AUTH),
            (HTTPError(403), Cat.FATAL, Reason.AUTH),
            (HTTPError(400), Cat.FATAL, Reason.CLIENT_ERROR),
            (ResponseError(502), Cat.TRANSIENT, Reason.SERVER_ERROR),
            (Exception("Too many requests"), Cat.TRANSIENT, Reason.RATE_LIMIT),
            (Exception("Invalid API key"), Cat.FATAL, Reason.AUTH),
            (asyncio.TimeoutError(), Cat.TRANSIENT, Reason.TIMEOUT),
            (ssl.SSLError("bad cert"), Cat.FATAL, Reason.TLS),
            (ValueError("weird output"), Cat.MODEL, Reason.MALFORMED),
        ],
    )
    def test_categories(self, error, category, reason):
        result = classify_error(error)
        assert result.category is category
        assert result.reason is reason

    def test_coded_errors(self):
        cases = {
            ErrorCode.GUARDRAIL_VIOLATION: (Cat.MODEL, Reason.GUARDRAIL_VIOLATION),
            ErrorCode.FATAL_GUARDRAIL_VIOLATION: (
                Cat.FATAL,
                Reason.GUARDRAIL_VIOLATION,
            ),
            ErrorCode.DRIFT_DETECTED: (Cat.MODEL, Reason.DRIFT),
            ErrorCode.ZERO_OUTPUT: (Cat.MODEL, Reason.ZERO_OUTPUT),
            ErrorCode.INCOMPLETE_OUTPUT: (Cat.MODEL, Reason.INCOMPLETE),
            ErrorCode.INVALID_STREAM: (Cat.FATAL, Reason.INVALID),
        }
        for code, (category, reason) in cases.items():
            result = classify_error(Error("x", code=code))
            assert (result.category, result.reason) == (category, reason), code

    def test_watchdog_timeout_is_transient(self):
        error = TimeoutError("slow", timeout_type="inter_token", timeout_seconds=1.0)
        result = classify_error(error)
        assert result.category is ErrorCategory.TRANSIENT
        assert result.rule == "watchdog"

    def test_aborted_is_fatal(self):
        assert classify_error(StreamAbortedError()).category is ErrorCategory.FATAL

    def test_first_matching_rule_wins(self):
        """A 5xx whose message mentions a reset is still a network error."""
        error = HTTPError(500, "connection reset by peer")
        result = classify_error(error)
        assert result.rule == "transport"
        assert result.network_type is NetworkErrorType.ECONNRESET

    def test_custom_rules(self):
        rules = CLASSIFICATION_RULES[:0]
        result = classify_error(ConnectionResetError("reset"), rules)
        assert result.rule == "default"
        assert result.category is ErrorCategory.MODEL

    def test_deterministic(self):
        error = HTTPError(503)
        assert classify_error(error) == classify_error(error)

    def test_helpers(self):
        assert categorize_error(HTTPError(429)) is ErrorCategory.TRANSIENT
        assert is_retryable(ConnectionResetError("reset"))
        assert not is_retryable(HTTPError(401))


class TestFailureType:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (StreamAbortedError(), FailureType.ABORT),
            (
                TimeoutError("slow", timeout_type="initial_token", timeout_seconds=1),
                FailureType.TIMEOUT,
            ),
            (Error("empty", code=ErrorCode.ZERO_OUTPUT), FailureType.ZERO_OUTPUT),
            (ConnectionResetError("reset"), FailureType.NETWORK),
            (HTTPError(429), FailureType.PROVIDER),
            (HTTPError(401), FailureType.PROVIDER),
            (Error("bad", code=ErrorCode.GUARDRAIL_VIOLATION), FailureType.MODEL),
            (Error("?", code=ErrorCode.INVALID_STREAM), FailureType.UNKNOWN),
        ],
    )
    def test_failure_types(self, error, expected):
        assert failure_type_for(error, classify_error(error)) is expected


class TestNetworkError:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (ConnectionResetError(), NetworkErrorType.ECONNRESET),
            (ConnectionRefusedError(), NetworkErrorType.ECONNREFUSED),
            (BrokenPipeError(), NetworkErrorType.CONNECTION_DROPPED),
            (socket.gaierror("lookup"), NetworkErrorType.DNS_ERROR),
            (
                Exception("Connection closed unexpectedly"),
                NetworkErrorType.CONNECTION_DROPPED,
            ),
            (Exception("SSE stream aborted"), NetworkErrorType.SSE_ABORTED),
            (Exception("No data received"), NetworkErrorType.NO_BYTES),
            (Exception("premature close"), NetworkErrorType.PARTIAL_CHUNKS),
            (Exception("worker terminated"), NetworkErrorType.RUNTIME_KILLED),
            (Exception("getaddrinfo failed"), NetworkErrorType.DNS_ERROR),
            (TypeError("Failed to fetch"), NetworkErrorType.FETCH_ERROR),
            (Exception("request timed out"), NetworkErrorType.TIMEOUT),
            (Exception("certificate verify failed"), NetworkErrorType.SSL_ERROR),
        ],
    )
    def test_detect_type(self, error, expected):
        assert NetworkError.detect_type(error) is expected

    def test_not_network(self):
        assert NetworkError.detect_type(ValueError("bad json")) is None
        assert not NetworkError.check(ValueError("bad json"))

    def test_errno_fallback(self):
        error = OSError(104, "mystery")
        assert NetworkError.detect_type(error) is NetworkErrorType.ECONNRESET

    def test_transport_excludes_tls_and_timeouts(self):
        assert NetworkError.is_transport(ConnectionResetError())
        assert not NetworkError.is_transport(ssl.SSLError("handshake"))
        assert not NetworkError.is_transport(Exception("timed out"))

    def test_analyze(self):
        analysis = NetworkError.analyze(ConnectionResetError())
        assert analysis.type is NetworkErrorType.ECONNRESET
        assert analysis.retryable
        assert "reset" in analysis.suggestion

        tls = NetworkError.analyze(ssl.SSLError("bad cert"))
        assert tls.retryable is False

    def test_describe(self):
        assert "econnrefused" in NetworkError.describe(ConnectionRefusedError())

    def test_stream_interrupted(self):
        error = ConnectionResetError()
        assert NetworkError.is_stream_interrupted(error, token_count=4)
        assert not NetworkError.is_stream_interrupted(error, token_count=0)

    def test_suggest_delay(self):
        delays = ErrorTypeDelays(econnreset=1.0)
        error = ConnectionResetError()
        assert NetworkError.suggest_delay(error, 0, delays=delays) == 1.0
        assert NetworkError.suggest_delay(error, 2, delays=delays) == 4.0
        delay = NetworkError.suggest_delay(error, 10, max_delay=5.0, delays=delays)
        assert delay == 5.0
        assert NetworkError.suggest_delay(ssl.SSLError("x"), 0) == 0.0
