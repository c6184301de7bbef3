"""Monitoring configuration."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SamplingConfig(BaseModel):
    """Which sessions get monitored.

    Attributes:
        rate: Fraction of sessions to monitor (0.0 to 1.0)
        always_sample_errors: Keep sessions that end in an error regardless
            of ``rate``
    """

    rate: float = Field(default=1.0, ge=0.0, le=1.0)
    always_sample_errors: bool = True


class MetricsConfig(BaseModel):
    """What a monitor collects per session."""

    track_tokens: bool = True
    track_timing: bool = True
    track_retries: bool = True
    track_guardrails: bool = True
    max_violations: int = Field(default=100, ge=0)


class MonitoringConfig(BaseModel):
    """Monitoring configuration.

    Usage:
        ```python
        from steadystream.monitoring import Monitor, MonitoringConfig

        monitor = Monitor(MonitoringConfig.production())
        ```
    """

    enabled: bool = True
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    include_context: bool = True
    max_sessions: int = Field(default=100, ge=1)

    @classmethod
    def default(cls) -> MonitoringConfig:
        return cls()

    @classmethod
    def production(cls) -> MonitoringConfig:
        """Sample a tenth of sessions, keep every failure."""
        return cls(
            sampling=SamplingConfig(rate=0.1, always_sample_errors=True),
            include_context=False,
        )

    @classmethod
    def development(cls) -> MonitoringConfig:
        return cls(sampling=SamplingConfig(rate=1.0), max_sessions=1000)

    @classmethod
    def minimal(cls) -> MonitoringConfig:
        """Timing and errors only."""
        return cls(
            metrics=MetricsConfig(
                track_tokens=False,
                track_retries=False,
                track_guardrails=False,
            ),
            include_context=False,
        )
