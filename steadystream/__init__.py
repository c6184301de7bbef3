"""steadystream - resilience layer for streaming token sources."""

from .adapters import (
    AdaptedEvent,
    Adapter,
    AdapterRegistry,
    EventPassthroughAdapter,
    NormalizingAdapter,
    create_error_event,
    create_message_event,
    create_token_event,
    normalize_chunk,
    to_events,
)
from .callbacks import LifecycleCallbacks
from .continuation import (
    Checkpoint,
    CheckpointStore,
    ContinuationConfig,
    DeduplicationOptions,
    OverlapBuffer,
    OverlapResult,
    build_continuation,
    detect_overlap,
)
from .drift import DriftDetector, DriftResult
from .errors import (
    CLASSIFICATION_RULES,
    Classification,
    ClassificationRule,
    Error,
    ErrorCode,
    ErrorContext,
    FailureType,
    NetworkError,
    NetworkErrorAnalysis,
    NetworkErrorType,
    RecoveryStrategy,
    StreamAbortedError,
    TimeoutError,
    categorize_error,
    classify_error,
    is_retryable,
)
from .events import (
    EventBus,
    EventBusOptions,
    EventHandler,
    ObservabilityEvent,
    ObservabilityEventType,
)
from .guardrails import (
    GuardrailContext,
    GuardrailEngine,
    GuardrailResult,
    GuardrailRule,
    GuardrailViolation,
    RuleEngine,
    is_zero_output,
)
from .interceptors import (
    Interceptor,
    InterceptorError,
    InterceptorManager,
    SessionOptions,
    logging_interceptor,
)
from .logging import disable_debug, enable_debug
from .retry import RetryCounters, RetryDecision, RetryManager
from .runtime import Session, run
from .types import (
    BackoffStrategy,
    CheckIntervals,
    ErrorCategory,
    ErrorTypeDelays,
    Event,
    EventType,
    Retry,
    RetryContext,
    RetryReason,
    State,
    Stream,
    Timeout,
)
from .version import __version__

__all__ = [
    # Version
    "__version__",
    # Core API
    "run",
    "Session",
    "Stream",
    "State",
    "Event",
    "EventType",
    # Config
    "Retry",
    "RetryContext",
    "RetryReason",
    "BackoffStrategy",
    "ErrorTypeDelays",
    "Timeout",
    "CheckIntervals",
    "ContinuationConfig",
    "DeduplicationOptions",
    "LifecycleCallbacks",
    # Interceptors
    "Interceptor",
    "InterceptorError",
    "InterceptorManager",
    "SessionOptions",
    "logging_interceptor",
    # Errors
    "Error",
    "ErrorCode",
    "ErrorContext",
    "ErrorCategory",
    "FailureType",
    "RecoveryStrategy",
    "TimeoutError",
    "StreamAbortedError",
    "NetworkError",
    "NetworkErrorAnalysis",
    "NetworkErrorType",
    "Classification",
    "ClassificationRule",
    "CLASSIFICATION_RULES",
    "classify_error",
    "categorize_error",
    "is_retryable",
    # Retry
    "RetryManager",
    "RetryDecision",
    "RetryCounters",
    # Continuation
    "Checkpoint",
    "CheckpointStore",
    "OverlapBuffer",
    "OverlapResult",
    "build_continuation",
    "detect_overlap",
    # Events
    "EventBus",
    "EventBusOptions",
    "EventHandler",
    "ObservabilityEvent",
    "ObservabilityEventType",
    # Adapters
    "Adapter",
    "AdaptedEvent",
    "AdapterRegistry",
    "EventPassthroughAdapter",
    "NormalizingAdapter",
    "normalize_chunk",
    "to_events",
    "create_token_event",
    "create_message_event",
    "create_error_event",
    # Guardrails & drift
    "GuardrailContext",
    "GuardrailEngine",
    "GuardrailResult",
    "GuardrailRule",
    "GuardrailViolation",
    "RuleEngine",
    "is_zero_output",
    "DriftDetector",
    "DriftResult",
    # Debug
    "disable_debug",
    "enable_debug",
]
