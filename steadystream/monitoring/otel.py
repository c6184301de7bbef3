"""OpenTelemetry integration for steadystream monitoring.

Each finished session becomes one ``steadystream.session`` span, with one
span event per retry taken, plus a handful of counters and histograms.
The OpenTelemetry SDK is imported on first export only.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from ..logging import logger
from .telemetry import Telemetry

if TYPE_CHECKING:
    from opentelemetry.metrics import Meter
    from opentelemetry.trace import Span, Tracer

SESSION_SPAN = "steadystream.session"


class OpenTelemetryConfig(BaseModel):
    """OpenTelemetry configuration.

    Usage:
        ```python
        exporter = OpenTelemetryExporter(
            OpenTelemetryConfig(service_name="chat", endpoint="http://localhost:4317")
        )
        monitor = Monitor(on_complete=exporter.export)
        ```

    Without ``endpoint`` the providers are still installed but nothing is
    shipped, which keeps local runs quiet.
    """

    service_name: str = "steadystream"
    endpoint: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    insecure: bool = False
    timeout: float = Field(default=30.0, ge=1.0)
    resource_attributes: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    trace_enabled: bool = True
    metrics_enabled: bool = True
    export_interval: float = Field(default=5.0, ge=1.0)

    @classmethod
    def from_env(cls) -> OpenTelemetryConfig:
        """Read the standard OTEL_SERVICE_NAME and OTEL_EXPORTER_OTLP_* vars."""
        headers = {}
        for pair in os.getenv("OTEL_EXPORTER_OTLP_HEADERS", "").split(","):
            if "=" in pair:
                key, value = pair.split("=", 1)
                headers[key.strip()] = value.strip()

        return cls(
            service_name=os.getenv("OTEL_SERVICE_NAME", "steadystream"),
            endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
            headers=headers,
            insecure=os.getenv("OTEL_EXPORTER_OTLP_INSECURE", "").lower() == "true",
        )

    def _otlp_options(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "headers": self.headers or None,
            "insecure": self.insecure,
            "timeout": int(self.timeout),
        }


def span_attributes(telemetry: Telemetry) -> dict[str, Any]:
    """Flat span attributes for a session; ``None`` values are left out."""
    retries = telemetry.retries
    attributes: dict[str, Any] = {
        "steadystream.session_id": telemetry.session_id,
        "steadystream.attempts": telemetry.attempts,
        "steadystream.resumed": telemetry.resumed,
        "steadystream.aborted": telemetry.aborted,
        "steadystream.token_count": telemetry.metrics.token_count,
        "steadystream.content_length": telemetry.content_length,
        "steadystream.retries.total": retries.total_retries,
        "steadystream.retries.model": retries.model_retries,
        "steadystream.retries.network": retries.network_retries,
        "steadystream.retries.transient": retries.transient_retries,
        "steadystream.fallback_index": retries.fallback_index,
        "steadystream.guardrails.checked": telemetry.guardrails.rules_checked,
        "steadystream.guardrails.violations": len(telemetry.guardrails.violations),
        "steadystream.duration": telemetry.timing.duration,
        "steadystream.ttft": telemetry.metrics.time_to_first_token,
        "steadystream.tokens_per_second": telemetry.metrics.tokens_per_second,
    }
    if telemetry.error.occurred:
        attributes["steadystream.error.code"] = telemetry.error.code
        attributes["steadystream.error.failure_type"] = telemetry.error.failure_type
        if telemetry.error.category:
            attributes["steadystream.error.category"] = telemetry.error.category.value
    return {key: value for key, value in attributes.items() if value is not None}


def session_status(telemetry: Telemetry) -> tuple[str, str | None]:
    """Span status name and, for failures only, its description."""
    if telemetry.error.occurred:
        return "ERROR", telemetry.error.message or "session failed"
    if telemetry.aborted or telemetry.completed:
        return "OK", None
    return "UNSET", None


class OpenTelemetryExporter:
    """Export session telemetry to OpenTelemetry.

    Requires:
        pip install steadystream[observability]
    """

    def __init__(self, config: OpenTelemetryConfig) -> None:
        self.config = config
        self._tracer: Tracer | None = None
        self._meter: Meter | None = None
        self._instruments: dict[str, Any] = {}
        self._providers: list[Any] = []
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return

        try:
            from opentelemetry.sdk.resources import Resource
        except ImportError as e:
            raise ImportError(
                "OpenTelemetry packages not installed. "
                "Install with: pip install steadystream[observability]"
            ) from e

        resource = Resource.create(
            {
                "service.name": self.config.service_name,
                **self.config.resource_attributes,
            }
        )
        if self.config.trace_enabled:
            self._setup_tracing(resource)
        if self.config.metrics_enabled:
            self._setup_metrics(resource)
        self._initialized = True

    def _setup_tracing(self, resource: Any) -> None:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider(resource=resource)
        if self.config.endpoint:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )
            from opentelemetry.sdk.trace.export import BatchSpanProcessor

            exporter = OTLPSpanExporter(**self.config._otlp_options())
            provider.add_span_processor(BatchSpanProcessor(exporter))

        trace.set_tracer_provider(provider)
        self._providers.append(provider)
        self._tracer = trace.get_tracer(self.config.service_name)

    def _setup_metrics(self, resource: Any) -> None:
        from opentelemetry import metrics
        from opentelemetry.sdk.metrics import MeterProvider

        readers = []
        if self.config.endpoint:
            from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
                OTLPMetricExporter,
            )
            from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

            readers.append(
                PeriodicExportingMetricReader(
                    OTLPMetricExporter(**self.config._otlp_options()),
                    export_interval_millis=int(self.config.export_interval * 1000),
                )
            )

        provider = MeterProvider(resource=resource, metric_readers=readers)
        metrics.set_meter_provider(provider)
        self._providers.append(provider)
        self._meter = metrics.get_meter(self.config.service_name)

        meter = self._meter
        self._instruments = {
            "tokens": meter.create_counter(
                "steadystream.tokens", unit="tokens", description="Tokens delivered"
            ),
            "duration": meter.create_histogram(
                "steadystream.duration", unit="s", description="Session duration"
            ),
            "ttft": meter.create_histogram(
                "steadystream.ttft", unit="s", description="Time to first token"
            ),
            "retries": meter.create_counter(
                "steadystream.retries", unit="retries", description="Retries by reason"
            ),
            "fallbacks": meter.create_counter(
                "steadystream.fallbacks",
                unit="sessions",
                description="Sessions that finished on a fallback source",
            ),
            "errors": meter.create_counter(
                "steadystream.errors", unit="sessions", description="Failed sessions"
            ),
            "violations": meter.create_counter(
                "steadystream.guardrail_violations",
                unit="violations",
                description="Guardrail violations",
            ),
        }

    def export(self, telemetry: Telemetry) -> None:
        """``Monitor(on_complete=...)`` hook: one span plus metrics."""
        if not self.config.enabled:
            return

        self._ensure_initialized()
        if self._tracer is not None:
            self._export_span(telemetry)
        if self._instruments:
            self._export_metrics(telemetry)

    def _export_span(self, telemetry: Telemetry) -> None:
        from opentelemetry import trace
        from opentelemetry.trace import StatusCode

        with self._tracer.start_as_current_span(
            SESSION_SPAN,
            kind=trace.SpanKind.CLIENT,
            attributes=span_attributes(telemetry),
        ) as span:
            for number, reason in enumerate(telemetry.retries.reasons, start=1):
                span.add_event(
                    "steadystream.retry",
                    {
                        "steadystream.retry.number": number,
                        "steadystream.retry.reason": reason,
                    },
                )
            status, description = session_status(telemetry)
            span.set_status(StatusCode[status], description)

    def _export_metrics(self, telemetry: Telemetry) -> None:
        instruments = self._instruments
        labels = {"fallback_index": str(telemetry.retries.fallback_index)}

        instruments["tokens"].add(telemetry.metrics.token_count, labels)
        if telemetry.timing.duration is not None:
            instruments["duration"].record(telemetry.timing.duration, labels)
        if telemetry.metrics.time_to_first_token is not None:
            instruments["ttft"].record(telemetry.metrics.time_to_first_token, labels)
        for reason in telemetry.retries.reasons:
            instruments["retries"].add(1, {**labels, "reason": reason})
        if telemetry.retries.fallback_index > 0:
            instruments["fallbacks"].add(1, labels)
        if telemetry.error.occurred:
            category = telemetry.error.category
            instruments["errors"].add(
                1, {**labels, "category": category.value if category else "unknown"}
            )
        if telemetry.guardrails.violations:
            instruments["violations"].add(len(telemetry.guardrails.violations), labels)

    def create_span(self, name: str, **attributes: Any) -> Span | None:
        """Span context manager for manual instrumentation, or None."""
        if not self.config.enabled or not self.config.trace_enabled:
            return None

        self._ensure_initialized()
        if self._tracer is None:
            return None
        return self._tracer.start_as_current_span(name, attributes=attributes)

    def shutdown(self) -> None:
        """Flush and shut down the providers this exporter installed."""
        for provider in self._providers:
            try:
                provider.shutdown()
            except Exception as e:
                logger.debug(f"OpenTelemetry shutdown error (ignored): {e}")
        self._providers.clear()
