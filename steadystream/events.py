"""Observability event bus.

Lifecycle events are dispatched on a later loop turn than the code that
emits them, so handlers never run inside the token pipeline.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from uuid6 import uuid7

from .logging import logger

# ─────────────────────────────────────────────────────────────────────────────
# Event Types
# ─────────────────────────────────────────────────────────────────────────────


class ObservabilityEventType(str, Enum):
    # Session
    SESSION_START = "SESSION_START"
    ATTEMPT_START = "ATTEMPT_START"
    SESSION_SUMMARY = "SESSION_SUMMARY"

    # Stream
    STREAM_INIT = "STREAM_INIT"
    STREAM_READY = "STREAM_READY"
    TOKEN = "TOKEN"

    # Adapter
    ADAPTER_DETECTED = "ADAPTER_DETECTED"
    ADAPTER_WRAP_START = "ADAPTER_WRAP_START"
    ADAPTER_WRAP_END = "ADAPTER_WRAP_END"

    # Timeout
    TIMEOUT_START = "TIMEOUT_START"
    TIMEOUT_RESET = "TIMEOUT_RESET"
    TIMEOUT_TRIGGERED = "TIMEOUT_TRIGGERED"

    # Network
    NETWORK_ERROR = "NETWORK_ERROR"

    # Abort
    ABORT_REQUESTED = "ABORT_REQUESTED"
    ABORT_COMPLETED = "ABORT_COMPLETED"

    # Guardrail
    GUARDRAIL_PHASE_START = "GUARDRAIL_PHASE_START"
    GUARDRAIL_PHASE_END = "GUARDRAIL_PHASE_END"
    GUARDRAIL_RULE_RESULT = "GUARDRAIL_RULE_RESULT"

    # Drift
    DRIFT_CHECK_START = "DRIFT_CHECK_START"
    DRIFT_CHECK_RESULT = "DRIFT_CHECK_RESULT"
    DRIFT_CHECK_END = "DRIFT_CHECK_END"
    DRIFT_CHECK_SKIPPED = "DRIFT_CHECK_SKIPPED"

    # Checkpoint
    CHECKPOINT_START = "CHECKPOINT_START"
    CHECKPOINT_END = "CHECKPOINT_END"
    CHECKPOINT_SAVED = "CHECKPOINT_SAVED"

    # Resume
    RESUME_START = "RESUME_START"
    RESUME_END = "RESUME_END"

    # Retry
    RETRY_START = "RETRY_START"
    RETRY_ATTEMPT = "RETRY_ATTEMPT"
    RETRY_END = "RETRY_END"
    RETRY_GIVE_UP = "RETRY_GIVE_UP"
    RETRY_FN_START = "RETRY_FN_START"
    RETRY_FN_RESULT = "RETRY_FN_RESULT"
    RETRY_FN_ERROR = "RETRY_FN_ERROR"

    # Fallback
    FALLBACK_START = "FALLBACK_START"
    FALLBACK_MODEL_SELECTED = "FALLBACK_MODEL_SELECTED"
    FALLBACK_END = "FALLBACK_END"

    # Completion
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"

    # Continuation
    CONTINUATION_START = "CONTINUATION_START"
    CONTINUATION_END = "CONTINUATION_END"
    DEDUPLICATION_START = "DEDUPLICATION_START"
    DEDUPLICATION_END = "DEDUPLICATION_END"


# ─────────────────────────────────────────────────────────────────────────────
# Observability Event
# ─────────────────────────────────────────────────────────────────────────────


def freeze(value: Any) -> Any:
    """Return a deep, read-only copy of plain containers.

    Mappings become ``MappingProxyType``, lists and tuples become tuples,
    sets become frozensets. Other objects are kept as they are.
    """
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(v) for v in value)
    return value


_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class ObservabilityEvent:
    type: ObservabilityEventType
    ts: float
    session_id: str
    context: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    meta: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)


EventHandler = Callable[[ObservabilityEvent], Any]


@dataclass
class EventBusOptions:
    """Dispatch options.

    With ``batch`` on, events are queued and delivered ``batch_size`` at a
    time, or after ``batch_flush_delay`` seconds, whichever comes first.
    """

    batch: bool = False
    batch_size: int = 10
    batch_flush_delay: float = 0.005


# ─────────────────────────────────────────────────────────────────────────────
# Event Bus
# ─────────────────────────────────────────────────────────────────────────────


class EventBus:
    """Fans lifecycle events out to registered handlers.

    Usage:
        bus = EventBus(context={"request_id": "abc"})
        bus.on(lambda event: print(event.type))
        bus.emit(ObservabilityEventType.SESSION_START, attempt=1)
    """

    def __init__(
        self,
        handler: EventHandler | None = None,
        context: Mapping[str, Any] | None = None,
        options: EventBusOptions | None = None,
        session_id: str | None = None,
    ):
        self._handlers: list[EventHandler] = []
        if handler is not None:
            self._handlers.append(handler)
        self._session_id = session_id or str(uuid7())
        self._context = freeze(context or {})
        self._options = options or EventBusOptions()
        self._last_ts = 0.0
        self._outbox: list[ObservabilityEvent] = []
        self._drain_handle: asyncio.Handle | None = None
        self._drain_soon = False
        self._tasks: set[asyncio.Future[Any]] = set()
        self._closed = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def has_handlers(self) -> bool:
        return bool(self._handlers)

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler. Returns a function that unregisters it."""
        self._handlers.append(handler)
        return lambda: self.off(handler)

    def off(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    # ─────────────────────────────────────────────────────────────────────────
    # Emission
    # ─────────────────────────────────────────────────────────────────────────

    def emit(self, event_type: ObservabilityEventType, **event_meta: Any) -> None:
        if not self._handlers or self._closed:
            return

        self._outbox.append(self._build(event_type, event_meta))
        self._schedule_drain()

    def emit_sync(
        self, event_type: ObservabilityEventType, **event_meta: Any
    ) -> None:
        """Deliver immediately, bypassing the queue."""
        if not self._handlers or self._closed:
            return

        self._deliver([self._build(event_type, event_meta)])

    def _build(
        self, event_type: ObservabilityEventType, event_meta: dict[str, Any]
    ) -> ObservabilityEvent:
        ts = time.time() * 1000
        if ts <= self._last_ts:
            ts = self._last_ts + 0.001
        self._last_ts = ts
        return ObservabilityEvent(
            type=event_type,
            ts=ts,
            session_id=self._session_id,
            context=self._context,
            meta=freeze(event_meta),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    def _schedule_drain(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: nothing can run later, deliver now
            self._drain()
            return

        opts = self._options
        if opts.batch and len(self._outbox) < opts.batch_size:
            if self._drain_handle is None:
                self._drain_handle = loop.call_later(
                    opts.batch_flush_delay, self._drain
                )
                self._drain_soon = False
            return

        if self._drain_handle is not None:
            if self._drain_soon:
                return
            self._drain_handle.cancel()
        self._drain_handle = loop.call_soon(self._drain)
        self._drain_soon = True

    def _drain(self) -> None:
        self._drain_handle = None
        self._drain_soon = False
        events, self._outbox = self._outbox, []
        self._deliver(events)

    def _deliver(self, events: list[ObservabilityEvent]) -> None:
        handlers = list(self._handlers)
        for event in events:
            for handler in handlers:
                self._invoke(handler, event)

    def _invoke(self, handler: EventHandler, event: ObservabilityEvent) -> None:
        try:
            result = handler(event)
        except Exception as e:
            logger.debug(f"Event handler error (silently caught): {e}")
            return

        if not inspect.isawaitable(result):
            return
        try:
            task = asyncio.ensure_future(result)
        except RuntimeError:
            if inspect.iscoroutine(result):
                result.close()
            logger.debug("Async event handler dropped: no running event loop")
            return
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(f"Async event handler error (silently caught): {exc}")

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def flush(self) -> None:
        """Deliver everything queued right now."""
        if self._drain_handle is not None:
            self._drain_handle.cancel()
        self._drain()

    def close(self) -> None:
        """Stop accepting events; queued ones still go out on the next turn."""
        if self._closed:
            return
        self._closed = True
        if self._outbox and self._drain_handle is not None and not self._drain_soon:
            self._drain_handle.cancel()
            self._drain_handle = None
        if self._outbox and self._drain_handle is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self._drain()
                return
            self._drain_handle = loop.call_soon(self._drain)
            self._drain_soon = True

    def cancel(self) -> None:
        """Drop queued events and cancel in-flight async handlers."""
        self._closed = True
        if self._drain_handle is not None:
            self._drain_handle.cancel()
            self._drain_handle = None
        self._outbox.clear()
        for task in list(self._tasks):
            task.cancel()
