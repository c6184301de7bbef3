"""steadystream types - clean Pythonic naming without module prefixes."""

from __future__ import annotations

from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

# ─────────────────────────────────────────────────────────────────────────────
# Event Types
# ─────────────────────────────────────────────────────────────────────────────


class EventType(str, Enum):
    """Type of normalized streaming event."""

    TOKEN = "token"
    MESSAGE = "message"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass
class Event:
    """Normalized event delivered to the caller.

    Usage:
        async for event in result:
            if event.is_token:
                print(event.text, end="")
            elif event.is_message:
                print(f"[{event.role}] {event.text}")
    """

    type: EventType
    text: str | None = None
    role: str | None = None
    data: dict[str, Any] | None = None
    error: Exception | None = None
    timestamp: float | None = None

    @property
    def is_token(self) -> bool:
        """Check if this is a token event."""
        return self.type is EventType.TOKEN

    @property
    def is_message(self) -> bool:
        """Check if this is a message event."""
        return self.type is EventType.MESSAGE

    @property
    def is_error(self) -> bool:
        """Check if this is an error event."""
        return self.type is EventType.ERROR

    @property
    def is_complete(self) -> bool:
        """Check if this is a complete event."""
        return self.type is EventType.COMPLETE


# ─────────────────────────────────────────────────────────────────────────────
# Error Categories
# ─────────────────────────────────────────────────────────────────────────────


class ErrorCategory(str, Enum):
    """Category of error for retry decisions."""

    NETWORK = "network"
    TRANSIENT = "transient"
    MODEL = "model"
    FATAL = "fatal"


class RetryReason(str, Enum):
    """Why an error happened, matched against ``Retry.retry_on``."""

    ZERO_OUTPUT = "zero_output"
    GUARDRAIL_VIOLATION = "guardrail_violation"
    DRIFT = "drift"
    INCOMPLETE = "incomplete"
    MALFORMED = "malformed"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    AUTH = "auth"
    CLIENT_ERROR = "client_error"
    TLS = "tls"
    INVALID = "invalid"
    ABORTED = "aborted"


DEFAULT_RETRY_ON: tuple[RetryReason, ...] = (
    RetryReason.ZERO_OUTPUT,
    RetryReason.GUARDRAIL_VIOLATION,
    RetryReason.DRIFT,
    RetryReason.INCOMPLETE,
    RetryReason.MALFORMED,
    RetryReason.NETWORK_ERROR,
    RetryReason.TIMEOUT,
    RetryReason.RATE_LIMIT,
    RetryReason.SERVER_ERROR,
)


class BackoffStrategy(str, Enum):
    """Backoff strategy for retries."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    FULL_JITTER = "full-jitter"
    FIXED_JITTER = "fixed-jitter"


# ─────────────────────────────────────────────────────────────────────────────
# State
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class State:
    """State of the currently running attempt.

    Partial content stays readable here after a terminal failure.
    """

    content: str = ""
    checkpoint: str = ""
    token_count: int = 0
    model_retry_count: int = 0
    network_retry_count: int = 0
    transient_retry_count: int = 0
    fallback_index: int = 0
    attempt: int = 0
    violations: list[Any] = field(default_factory=list)
    drift_detected: bool = False
    drift_types: list[str] = field(default_factory=list)
    completed: bool = False
    aborted: bool = False
    first_token_at: float | None = None
    last_token_at: float | None = None
    duration: float | None = None
    resumed: bool = False
    continuation_prompt: str | None = None
    network_errors: deque[Any] = field(default_factory=lambda: deque(maxlen=10))

    def append_content(self, text: str) -> None:
        self.content += text


# ─────────────────────────────────────────────────────────────────────────────
# Retry + Timeout (seconds, not milliseconds)
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ErrorTypeDelays:
    """Base delays (seconds) per network error type."""

    connection_dropped: float = 1.0
    fetch_error: float = 0.5
    econnreset: float = 1.0
    econnrefused: float = 2.0
    sse_aborted: float = 0.5
    no_bytes: float = 0.5
    partial_chunks: float = 0.5
    runtime_killed: float = 2.0
    background_throttle: float = 5.0
    dns_error: float = 3.0
    timeout: float = 1.0
    unknown: float = 1.0


@dataclass(frozen=True)
class RetryContext:
    """What a user retry veto or custom delay function gets to see."""

    attempt: int
    total_attempts: int
    category: ErrorCategory
    reason: RetryReason
    content: str = ""
    token_count: int = 0
    default_delay: float = 0.0


RetryVeto = Callable[[Exception, RetryContext], Union[bool, None, Awaitable[Any]]]


@dataclass
class Retry:
    """Retry configuration.

    All delays are in seconds (float), matching Python conventions
    like asyncio.sleep(), time.sleep(), etc.
    """

    attempts: int = 3  # Model errors only
    max_retries: int | None = 6  # Absolute cap (all errors)
    base_delay: float = 1.0
    max_delay: float = 10.0
    network_max_delay: float = 30.0  # Cap for per-error-type delays
    strategy: BackoffStrategy = BackoffStrategy.FIXED_JITTER
    retry_on: tuple[RetryReason, ...] = DEFAULT_RETRY_ON
    error_type_delays: ErrorTypeDelays | None = None
    max_error_history: int = 10
    should_retry: RetryVeto | None = None
    calculate_delay: Callable[[RetryContext], float | None] | None = None

    @classmethod
    def recommended(cls) -> Retry:
        """Defaults plus per-network-error-type delays."""
        return cls(error_type_delays=ErrorTypeDelays())

    @classmethod
    def strict(cls) -> Retry:
        """Fewer attempts, plain exponential backoff."""
        return cls(attempts=1, max_retries=3, strategy=BackoffStrategy.EXPONENTIAL)

    @classmethod
    def exponential(cls, attempts: int = 3, base_delay: float = 1.0) -> Retry:
        return cls(
            attempts=attempts,
            base_delay=base_delay,
            strategy=BackoffStrategy.EXPONENTIAL,
        )


@dataclass
class Timeout:
    """Timeout configuration.

    All timeouts are in seconds (float), matching Python conventions
    like asyncio.wait_for(), socket.settimeout(), etc.
    ``None`` disables a watchdog.
    """

    initial_token: float | None = 5.0  # Seconds to first token
    inter_token: float | None = 10.0  # Seconds between tokens


@dataclass
class CheckIntervals:
    """Token cadence for periodic checks."""

    guardrails: int = 5
    drift: int = 10
    checkpoint: int = 10


# ─────────────────────────────────────────────────────────────────────────────
# Source types
# ─────────────────────────────────────────────────────────────────────────────

RawStream = AsyncIterator[Any]
StreamFactory = Callable[..., Union[RawStream, Awaitable[RawStream]]]


# ─────────────────────────────────────────────────────────────────────────────
# Stream (the result type)
# ─────────────────────────────────────────────────────────────────────────────


class Stream:
    """Async iterator result with state and abort attached.

    Supports both iteration and context manager patterns:

        # Pattern 1: Direct iteration
        result = steadystream.run(stream=my_stream)
        async for event in result:
            if event.is_token:
                print(event.text, end="")

        # Pattern 2: Context manager (aborts on exit)
        async with steadystream.run(stream=my_stream) as result:
            async for event in result:
                ...

        # Get full text
        text = await result.read()

        # Access state
        print(result.state.content)
        print(result.state.token_count)
    """

    __slots__ = (
        "_iterator",
        "_consumed",
        "_content",
        "state",
        "abort",
        "errors",
        "session_id",
    )

    def __init__(
        self,
        iterator: AsyncIterator[Event],
        state: State,
        abort: Callable[[], None],
        errors: list[Exception] | None = None,
        session_id: str | None = None,
    ) -> None:
        self._iterator = iterator
        self._consumed = False
        self._content: str | None = None
        self.state = state
        self.abort = abort
        self.errors = errors if errors is not None else []
        self.session_id = session_id

    # ─────────────────────────────────────────────────────────────────────────
    # Async iterator protocol
    # ─────────────────────────────────────────────────────────────────────────

    def __aiter__(self) -> Stream:
        return self

    async def __anext__(self) -> Event:
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            self._consumed = True
            raise

    # ─────────────────────────────────────────────────────────────────────────
    # Context manager protocol
    # ─────────────────────────────────────────────────────────────────────────

    async def __aenter__(self) -> Stream:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        if not self._consumed:
            self.abort()
        aclose = getattr(self._iterator, "aclose", None)
        if aclose is not None:
            await aclose()
        return False

    # ─────────────────────────────────────────────────────────────────────────
    # Read interface
    # ─────────────────────────────────────────────────────────────────────────

    async def read(self) -> str:
        """Consume the stream and return the full text content.

        If already consumed, returns the accumulated state.content.
        """
        if self._consumed or self._content is not None:
            return self._content or self.state.content

        async for _ in self:
            pass

        self._content = self.state.content
        return self._content
