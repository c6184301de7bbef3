"""Sentry integration for steadystream monitoring.

Two entry points: ``SentryExporter.handle_event`` turns recovery events
(retries, fallbacks, timeouts, resumes) into breadcrumbs as a session runs,
and ``capture_error`` / ``capture_telemetry_error`` report the terminal
failure with the session's telemetry attached.
"""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, Field

from ..events import ObservabilityEvent, ObservabilityEventType
from .telemetry import Telemetry

E = ObservabilityEventType

DEFAULT_BREADCRUMB_EVENTS: frozenset[str] = frozenset(
    {
        E.RETRY_ATTEMPT.value,
        E.RETRY_GIVE_UP.value,
        E.FALLBACK_START.value,
        E.TIMEOUT_TRIGGERED.value,
        E.NETWORK_ERROR.value,
        E.RESUME_START.value,
        E.ABORT_REQUESTED.value,
    }
)

_WARNING_EVENTS = frozenset(
    {E.RETRY_GIVE_UP, E.TIMEOUT_TRIGGERED, E.NETWORK_ERROR, E.ABORT_REQUESTED}
)


class SentryConfig(BaseModel):
    """Sentry configuration.

    Usage:
        ```python
        exporter = SentryExporter(
            SentryConfig(dsn="https://xxx@sentry.io/123", environment="prod")
        )
        monitor = Monitor(on_complete=exporter.capture_telemetry_error)
        on_event = combine_events(monitor.handle_event, exporter.handle_event)
        ```

    ``breadcrumb_events`` lists the bus event type names recorded as
    breadcrumbs; an empty set disables breadcrumbs.
    """

    dsn: str | None = None
    environment: str | None = None
    release: str | None = None
    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    traces_sample_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    enabled: bool = True
    debug: bool = False
    max_breadcrumbs: int = Field(default=100, ge=0)
    tags: dict[str, str] = Field(default_factory=dict)
    breadcrumb_events: frozenset[str] = DEFAULT_BREADCRUMB_EVENTS

    @classmethod
    def from_env(cls) -> SentryConfig:
        """Read SENTRY_DSN, SENTRY_ENVIRONMENT, SENTRY_RELEASE and
        SENTRY_TRACES_SAMPLE_RATE."""
        traces = os.getenv("SENTRY_TRACES_SAMPLE_RATE")
        return cls(
            dsn=os.getenv("SENTRY_DSN"),
            environment=os.getenv("SENTRY_ENVIRONMENT"),
            release=os.getenv("SENTRY_RELEASE"),
            traces_sample_rate=float(traces) if traces else 0.0,
        )

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.dsn)


def _sentry() -> Any:
    try:
        import sentry_sdk
    except ImportError as e:
        raise ImportError(
            "Sentry SDK not installed. "
            "Install with: pip install steadystream[observability]"
        ) from e
    return sentry_sdk


def telemetry_tags(telemetry: Telemetry) -> dict[str, str]:
    """Searchable tags for a session."""
    tags = {
        "steadystream.session_id": telemetry.session_id,
        "steadystream.resumed": str(telemetry.resumed).lower(),
        "steadystream.fallback_index": str(telemetry.retries.fallback_index),
    }
    if telemetry.error.category:
        tags["steadystream.error.category"] = telemetry.error.category.value
    return tags


def telemetry_contexts(telemetry: Telemetry) -> dict[str, dict[str, Any]]:
    """Structured contexts for a session, keyed by context name."""
    timing = telemetry.timing
    metrics = telemetry.metrics
    retries = telemetry.retries
    contexts: dict[str, dict[str, Any]] = {
        "steadystream_session": {
            "attempts": telemetry.attempts,
            "duration": timing.duration,
            "time_to_first_token": metrics.time_to_first_token,
            "token_count": metrics.token_count,
            "tokens_per_second": metrics.tokens_per_second,
            "content_length": telemetry.content_length,
        },
        "steadystream_retries": {
            "total": retries.total_retries,
            "model": retries.model_retries,
            "network": retries.network_retries,
            "transient": retries.transient_retries,
            "reasons": list(retries.reasons),
            "last_error": retries.last_error,
        },
    }
    if telemetry.guardrails.violations:
        contexts["steadystream_guardrails"] = {
            "rules_checked": telemetry.guardrails.rules_checked,
            "violations": telemetry.guardrails.violations,
        }
    if telemetry.error.occurred:
        contexts["steadystream_error"] = telemetry.error.model_dump(
            exclude={"occurred"}, mode="json"
        )
    if telemetry.metadata:
        contexts["steadystream_metadata"] = dict(telemetry.metadata)
    return contexts


class SentryExporter:
    """Report session failures and recovery breadcrumbs to Sentry.

    Every method is a no-op while the config is inactive (no DSN or
    disabled), so the exporter can stay wired in unconditionally.

    Requires:
        pip install steadystream[observability]
    """

    def __init__(self, config: SentryConfig) -> None:
        self.config = config
        self._initialized = False

    def init(self) -> None:
        """Initialize the Sentry SDK once."""
        if self._initialized or not self.config.active:
            return

        sentry_sdk = _sentry()
        sentry_sdk.init(
            dsn=self.config.dsn,
            environment=self.config.environment,
            release=self.config.release,
            sample_rate=self.config.sample_rate,
            traces_sample_rate=self.config.traces_sample_rate,
            debug=self.config.debug,
            max_breadcrumbs=self.config.max_breadcrumbs,
        )
        for key, value in self.config.tags.items():
            sentry_sdk.set_tag(key, value)
        self._initialized = True

    def handle_event(self, event: ObservabilityEvent) -> None:
        """Event bus handler recording recovery events as breadcrumbs."""
        if not self.config.active:
            return
        if event.type.value not in self.config.breadcrumb_events:
            return

        self.init()
        _sentry().add_breadcrumb(
            category=f"steadystream.{event.type.value.lower()}",
            message=event.type.value,
            level="warning" if event.type in _WARNING_EVENTS else "info",
            data={"session_id": event.session_id, **event.meta},
        )

    def capture_error(
        self,
        error: BaseException,
        telemetry: Telemetry | None = None,
        **extra: Any,
    ) -> str | None:
        """Capture an exception, returning the Sentry event id."""
        if not self.config.active:
            return None

        self.init()
        sentry_sdk = _sentry()
        with sentry_sdk.new_scope() as scope:
            if telemetry is not None:
                self._add_telemetry_context(scope, telemetry)
            for key, value in extra.items():
                scope.set_extra(key, value)
            return sentry_sdk.capture_exception(error)

    def capture_telemetry_error(self, telemetry: Telemetry) -> str | None:
        """``Monitor(on_complete=...)`` hook; reports only failed sessions."""
        if not self.config.active or not telemetry.error.occurred:
            return None

        self.init()
        sentry_sdk = _sentry()
        with sentry_sdk.new_scope() as scope:
            self._add_telemetry_context(scope, telemetry)
            return sentry_sdk.capture_message(
                telemetry.error.message or "steadystream session failed",
                level="error",
            )

    def _add_telemetry_context(self, scope: Any, telemetry: Telemetry) -> None:
        for key, value in telemetry_tags(telemetry).items():
            scope.set_tag(key, value)
        for name, context in telemetry_contexts(telemetry).items():
            scope.set_context(name, context)

    def flush(self, timeout: float = 2.0) -> None:
        if self._initialized:
            _sentry().flush(timeout=timeout)

    def close(self) -> None:
        if not self._initialized:
            return
        client = _sentry().get_client()
        if client:
            client.close()
        self._initialized = False
