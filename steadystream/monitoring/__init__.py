"""steadystream Monitoring & Telemetry.

Session telemetry built from the event bus, with optional OpenTelemetry and
Sentry export.

Usage:
    ```python
    import steadystream
    from steadystream.monitoring import Monitor

    monitor = Monitor()

    result = steadystream.run(stream=factory, on_event=monitor.handle_event)
    text = await result.read()

    telemetry = monitor.get_telemetry()
    print(f"TTFT: {telemetry.metrics.time_to_first_token}s")
    print(f"Tokens/sec: {telemetry.metrics.tokens_per_second}")

    # With OpenTelemetry
    from steadystream.monitoring import OpenTelemetryConfig, OpenTelemetryExporter

    otel = OpenTelemetryExporter(OpenTelemetryConfig.from_env())
    monitor = Monitor(on_complete=otel.export)
    ```
"""

from .config import (
    MetricsConfig,
    MonitoringConfig,
    SamplingConfig,
)
from .handlers import (
    batch_events,
    combine_events,
    exclude_events,
    filter_events,
    sample_events,
    session_events,
    tap_events,
)
from .monitor import Monitor
from .otel import OpenTelemetryConfig, OpenTelemetryExporter
from .sentry import SentryConfig, SentryExporter
from .telemetry import (
    ErrorInfo,
    GuardrailInfo,
    Metrics,
    RetryInfo,
    Telemetry,
    TimingInfo,
)

__all__ = [
    # Config
    "MonitoringConfig",
    "MetricsConfig",
    "SamplingConfig",
    # Telemetry
    "Telemetry",
    "Metrics",
    "TimingInfo",
    "RetryInfo",
    "GuardrailInfo",
    "ErrorInfo",
    # Monitor
    "Monitor",
    # Handlers
    "combine_events",
    "filter_events",
    "exclude_events",
    "tap_events",
    "sample_events",
    "batch_events",
    "session_events",
    # OpenTelemetry
    "OpenTelemetryConfig",
    "OpenTelemetryExporter",
    # Sentry
    "SentryConfig",
    "SentryExporter",
]
