"""Composable event bus handlers.

Every helper takes and returns a plain ``handler(event)`` callable, so the
results can be nested and passed as ``on_event`` to ``steadystream.run`` or
to ``EventBus.on``.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Iterable
from typing import Union

from ..events import ObservabilityEvent, ObservabilityEventType
from ..logging import logger

EventHandler = Callable[[ObservabilityEvent], None]
BatchEventHandler = Callable[[list[ObservabilityEvent]], None]
EventSelector = Union[
    Iterable[ObservabilityEventType], Callable[[ObservabilityEvent], bool]
]

# Events that end a session; batches are flushed when one arrives. An
# ERROR only ends the session when nothing else will be tried.
TERMINAL_EVENTS = frozenset(
    {ObservabilityEventType.COMPLETE, ObservabilityEventType.ABORT_COMPLETED}
)


def is_terminal(event: ObservabilityEvent) -> bool:
    if event.type in TERMINAL_EVENTS:
        return True
    return (
        event.type is ObservabilityEventType.ERROR
        and event.meta.get("recovery_strategy") == "halt"
    )


def _guarded(handler: EventHandler, label: str) -> EventHandler:
    def call(event: ObservabilityEvent) -> None:
        try:
            handler(event)
        except Exception as e:
            logger.debug(f"{label} handler failed on {event.type}: {e}")

    return call


def _matcher(selector: EventSelector) -> Callable[[ObservabilityEvent], bool]:
    if callable(selector):
        return selector
    wanted = frozenset(selector)
    return lambda event: event.type in wanted


def combine_events(*handlers: EventHandler | None) -> EventHandler:
    """Fan one event out to several handlers.

    ``None`` entries are skipped, so optional handlers can be passed
    unconditionally. A failing handler does not stop the others.

    Example:
        ```python
        monitor = Monitor()
        result = steadystream.run(
            factory,
            on_event=combine_events(monitor.handle_event, audit_log),
        )
        ```
    """
    active = [_guarded(h, "Combined") for h in handlers if h is not None]
    if not active:
        return lambda event: None
    if len(active) == 1:
        return active[0]

    def fan_out(event: ObservabilityEvent) -> None:
        for handler in active:
            handler(event)

    return fan_out


def filter_events(selector: EventSelector, handler: EventHandler) -> EventHandler:
    """Forward only events matching ``selector``.

    ``selector`` is either a collection of event types or a predicate.

    Example:
        ```python
        alerts = filter_events(
            [ObservabilityEventType.ERROR, ObservabilityEventType.RETRY_GIVE_UP],
            page_on_call,
        )
        ```
    """
    matches = _matcher(selector)

    def filtered(event: ObservabilityEvent) -> None:
        if matches(event):
            handler(event)

    return filtered


def exclude_events(selector: EventSelector, handler: EventHandler) -> EventHandler:
    """Forward everything except events matching ``selector``.

    Handy for dropping per-token noise.
    """
    matches = _matcher(selector)

    def excluded(event: ObservabilityEvent) -> None:
        if not matches(event):
            handler(event)

    return excluded


def session_events(session_id: str, handler: EventHandler) -> EventHandler:
    """Forward only events of one session when a handler is shared."""
    return filter_events(lambda event: event.session_id == session_id, handler)


def batch_events(
    size: int,
    max_wait_seconds: float,
    handler: BatchEventHandler,
) -> EventHandler:
    """Collect events and hand them over ``size`` at a time.

    A partial batch goes out after ``max_wait_seconds``, or immediately when
    a terminal event arrives so the tail of a session is not held back.
    Without a running loop, partial batches wait for the next flush trigger.
    """
    if size < 1:
        raise ValueError(f"Batch size must be at least 1, got {size}")

    pending: list[ObservabilityEvent] = []
    timer: asyncio.TimerHandle | None = None

    def flush() -> None:
        nonlocal timer
        if timer is not None:
            timer.cancel()
            timer = None
        if pending:
            batch = pending[:]
            pending.clear()
            handler(batch)

    def collect(event: ObservabilityEvent) -> None:
        nonlocal timer
        pending.append(event)
        if len(pending) >= size or is_terminal(event):
            flush()
            return
        if timer is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            timer = loop.call_later(max_wait_seconds, flush)

    return collect


def sample_events(rate: float, handler: EventHandler) -> EventHandler:
    """Forward a random ``rate`` fraction of events (0.0 to 1.0)."""
    if not 0.0 <= rate <= 1.0:
        raise ValueError(f"Sampling rate must be between 0 and 1, got {rate}")

    def sampled(event: ObservabilityEvent) -> None:
        if random.random() < rate:
            handler(event)

    return sampled


def tap_events(handler: EventHandler) -> EventHandler:
    """Observe events without letting the observer's errors escape."""
    return _guarded(handler, "Tap")
