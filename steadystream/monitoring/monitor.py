"""Event-driven session monitor."""

from __future__ import annotations

import random
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from ..events import ObservabilityEvent, ObservabilityEventType
from ..logging import logger
from ..types import ErrorCategory
from .config import MonitoringConfig
from .telemetry import Telemetry

E = ObservabilityEventType


def _at(ts: float) -> datetime:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc)


class Monitor:
    """Aggregates bus events into one ``Telemetry`` per session.

    Usage:
        ```python
        from steadystream.monitoring import Monitor, OpenTelemetryExporter

        exporter = OpenTelemetryExporter(OpenTelemetryConfig.from_env())
        monitor = Monitor(on_complete=exporter.export)

        result = steadystream.run(stream=factory, on_event=monitor.handle_event)
        text = await result.read()
        ```
    """

    def __init__(
        self,
        config: MonitoringConfig | None = None,
        on_complete: Callable[[Telemetry], Any] | None = None,
    ) -> None:
        self.config = config or MonitoringConfig()
        self.on_complete = on_complete
        self._active: dict[str, Telemetry] = {}
        self._sampled: dict[str, bool] = {}
        self._finished: OrderedDict[str, Telemetry] = OrderedDict()
        self._last: str | None = None

    def handle_event(self, event: ObservabilityEvent) -> None:
        """Event bus handler."""
        if not self.config.enabled:
            return

        if event.type is E.SESSION_START:
            self._start(event)
            return

        telemetry = self._active.get(event.session_id)
        if telemetry is None:
            return

        metrics_cfg = self.config.metrics
        meta = event.meta
        match event.type:
            case E.ATTEMPT_START:
                telemetry.attempts = meta.get("attempt", telemetry.attempts + 1)
            case E.TOKEN:
                if metrics_cfg.track_tokens:
                    telemetry.metrics.token_count += 1
                if metrics_cfg.track_timing:
                    at = _at(event.ts)
                    if telemetry.timing.first_token_at is None:
                        telemetry.timing.first_token_at = at
                    telemetry.timing.last_token_at = at
            case E.RESUME_START:
                telemetry.resumed = True
            case E.RETRY_ATTEMPT if metrics_cfg.track_retries:
                self._retry(telemetry, meta)
            case E.FALLBACK_START if metrics_cfg.track_retries:
                telemetry.retries.fallback_index = meta.get("to_index", 0)
            case E.GUARDRAIL_PHASE_START if metrics_cfg.track_guardrails:
                telemetry.guardrails.rules_checked += 1
            case E.GUARDRAIL_RULE_RESULT if metrics_cfg.track_guardrails:
                violations = telemetry.guardrails.violations
                violation = meta.get("violation")
                room = len(violations) < metrics_cfg.max_violations
                if violation is not None and room:
                    violations.append(violation.as_dict())
            case E.ERROR:
                self._error(telemetry, event)
            case E.ABORT_COMPLETED:
                telemetry.aborted = True
                telemetry.content_length = meta.get("content_length", 0)
                self._finish(telemetry, event)
            case E.COMPLETE:
                telemetry.completed = True
                telemetry.content_length = meta.get("content_length", 0)
                if metrics_cfg.track_tokens:
                    telemetry.metrics.token_count = meta.get(
                        "token_count", telemetry.metrics.token_count
                    )
                self._finish(telemetry, event)

    def _start(self, event: ObservabilityEvent) -> None:
        sampling = self.config.sampling
        self._sampled[event.session_id] = random.random() < sampling.rate
        telemetry = Telemetry(session_id=event.session_id)
        telemetry.timing.started_at = _at(event.ts)
        if self.config.include_context:
            telemetry.metadata = dict(event.context)
        self._active[event.session_id] = telemetry
        self._last = event.session_id

    def _retry(self, telemetry: Telemetry, meta: Any) -> None:
        retries = telemetry.retries
        retries.total_retries += 1
        category = meta.get("category")
        if category == ErrorCategory.MODEL.value:
            retries.model_retries += 1
        elif category == ErrorCategory.NETWORK.value:
            retries.network_retries += 1
        elif category == ErrorCategory.TRANSIENT.value:
            retries.transient_retries += 1
        if meta.get("reason"):
            retries.reasons.append(meta["reason"])

    def _error(self, telemetry: Telemetry, event: ObservabilityEvent) -> None:
        meta = event.meta
        telemetry.retries.last_error = meta.get("message")
        if meta.get("recovery_strategy") != "halt":
            return

        error = meta.get("error")
        category = meta.get("category")
        code = getattr(error, "code", None)
        telemetry.error.occurred = True
        telemetry.error.message = meta.get("message")
        telemetry.error.category = ErrorCategory(category) if category else None
        telemetry.error.code = getattr(code, "value", code)
        telemetry.error.failure_type = meta.get("failure_type")
        telemetry.error.recoverable = category not in (None, ErrorCategory.FATAL.value)
        self._finish(telemetry, event)

    def _finish(self, telemetry: Telemetry, event: ObservabilityEvent) -> None:
        session_id = telemetry.session_id
        self._active.pop(session_id, None)
        telemetry.finalize(_at(event.ts))

        keep = self._sampled.pop(session_id, True) or (
            telemetry.error.occurred and self.config.sampling.always_sample_errors
        )
        if not keep:
            return

        self._finished[session_id] = telemetry
        while len(self._finished) > self.config.max_sessions:
            self._finished.popitem(last=False)

        if self.on_complete is not None:
            try:
                self.on_complete(telemetry)
            except Exception as e:
                logger.debug(f"Monitor on_complete error (silently caught): {e}")

    def get_telemetry(self, session_id: str | None = None) -> Telemetry | None:
        """Telemetry for a session, by default the most recently started one."""
        session_id = session_id or self._last
        if session_id is None:
            return None
        return self._active.get(session_id) or self._finished.get(session_id)

    def get_all_telemetry(self) -> list[Telemetry]:
        """Finished sessions that were kept, oldest first."""
        return list(self._finished.values())

    def clear(self) -> None:
        self._active.clear()
        self._sampled.clear()
        self._finished.clear()
        self._last = None
