"""Telemetry data model for steadystream monitoring."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from ..types import ErrorCategory


class TimingInfo(BaseModel):
    """Wall-clock timing of a session.

    Attributes:
        started_at: When the session started
        first_token_at: When the first token arrived
        last_token_at: When the last token arrived
        completed_at: When the session ended (success, error or abort)
        duration: Seconds from start to end
    """

    started_at: datetime | None = None
    first_token_at: datetime | None = None
    last_token_at: datetime | None = None
    completed_at: datetime | None = None
    duration: float | None = None


class Metrics(BaseModel):
    """Derived throughput metrics."""

    token_count: int = 0
    time_to_first_token: float | None = None
    tokens_per_second: float | None = None
    avg_inter_token_time: float | None = None

    @classmethod
    def calculate(cls, token_count: int, timing: TimingInfo) -> Metrics:
        """Compute metrics from a token count and timing info."""
        ttft = None
        if timing.started_at and timing.first_token_at:
            ttft = (timing.first_token_at - timing.started_at).total_seconds()

        tps = None
        inter = None
        if timing.first_token_at and timing.last_token_at and token_count > 0:
            span = (timing.last_token_at - timing.first_token_at).total_seconds()
            if span > 0:
                tps = token_count / span
            if token_count > 1:
                inter = span / (token_count - 1)

        return cls(
            token_count=token_count,
            time_to_first_token=ttft,
            tokens_per_second=tps,
            avg_inter_token_time=inter,
        )


class RetryInfo(BaseModel):
    """Retries and fallbacks taken during a session."""

    total_retries: int = 0
    model_retries: int = 0
    network_retries: int = 0
    transient_retries: int = 0
    fallback_index: int = 0
    last_error: str | None = None
    reasons: list[str] = Field(default_factory=list)


class GuardrailInfo(BaseModel):
    """Guardrail activity during a session."""

    rules_checked: int = 0
    violations: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.violations


class ErrorInfo(BaseModel):
    """The terminal error of a session, if any."""

    occurred: bool = False
    message: str | None = None
    category: ErrorCategory | None = None
    code: str | None = None
    failure_type: str | None = None
    recoverable: bool = False


class Telemetry(BaseModel):
    """Everything a monitor learned about one session.

    Usage:
        ```python
        monitor = Monitor()
        result = steadystream.run(stream=factory, on_event=monitor.handle_event)
        await result.read()

        telemetry = monitor.get_telemetry()
        print(telemetry.metrics.time_to_first_token)
        ```
    """

    session_id: str
    timing: TimingInfo = Field(default_factory=TimingInfo)
    metrics: Metrics = Field(default_factory=Metrics)
    retries: RetryInfo = Field(default_factory=RetryInfo)
    guardrails: GuardrailInfo = Field(default_factory=GuardrailInfo)
    error: ErrorInfo = Field(default_factory=ErrorInfo)
    attempts: int = 1
    resumed: bool = False
    completed: bool = False
    aborted: bool = False
    content_length: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.completed or self.aborted or self.error.occurred

    def finalize(self, ended_at: datetime | None = None) -> Telemetry:
        """Close timing and compute derived metrics."""
        timing = self.timing
        timing.completed_at = ended_at or datetime.now(timezone.utc)
        if timing.started_at is not None:
            timing.duration = (timing.completed_at - timing.started_at).total_seconds()
        self.metrics = Metrics.calculate(self.metrics.token_count, timing)
        return self
