"""Lifecycle callbacks on top of the event bus.

Each callback is fed by one event type through a projection that pulls its
arguments out of the event payload. Callbacks run wherever bus handlers
run, on a later loop turn than the session code that emitted the event.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any

from .events import EventHandler, ObservabilityEvent, ObservabilityEventType
from .logging import logger

if TYPE_CHECKING:
    from .guardrails import GuardrailViolation
    from .types import State


@dataclass
class LifecycleCallbacks:
    """All lifecycle callbacks for a session.

    All callbacks are fire-and-forget - they never block the stream
    and errors in callbacks are silently caught.
    """

    on_start: Callable[[int, bool, bool], Any] | None = None
    """Called when a new execution attempt begins.
    Args: (attempt: int, is_retry: bool, is_fallback: bool)
    """

    on_token: Callable[[str], Any] | None = None
    """Called for every delivered token.
    Args: (text: str)
    """

    on_complete: Callable[[State], Any] | None = None
    """Called when the session completes successfully.
    Args: (state: State)
    """

    on_error: Callable[[BaseException, bool, bool], Any] | None = None
    """Called when an error occurs, before the retry/fallback happens.
    Args: (error: BaseException, will_retry: bool, will_fallback: bool)
    """

    on_violation: Callable[[GuardrailViolation], Any] | None = None
    """Called for each guardrail violation.
    Args: (violation: GuardrailViolation)
    """

    on_retry: Callable[[int, str], Any] | None = None
    """Called when a retry is triggered.
    Args: (attempt: int, reason: str)
    """

    on_fallback: Callable[[int, str], Any] | None = None
    """Called when switching to a fallback source.
    Args: (index: int, reason: str), index 0 is the first fallback
    """

    on_resume: Callable[[str, int], Any] | None = None
    """Called when resuming from a checkpoint.
    Args: (checkpoint: str, token_count: int)
    """

    on_checkpoint: Callable[[str, int], Any] | None = None
    """Called when a checkpoint is saved.
    Args: (checkpoint: str, token_count: int)
    """

    on_timeout: Callable[[str, float], Any] | None = None
    """Called when a watchdog fires.
    Args: (timeout_type: str, elapsed_seconds: float)
    """

    on_abort: Callable[[int, int], Any] | None = None
    """Called once an abort has been honored.
    Args: (token_count: int, content_length: int)
    """

    on_drift: Callable[[list[str], float | None], Any] | None = None
    """Called when drift is detected.
    Args: (drift_types: list[str], confidence: float | None)
    """

    def merged(self, **overrides: Callable[..., Any] | None) -> LifecycleCallbacks:
        """Copy with individual callbacks replaced where given."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return LifecycleCallbacks(**values)

    @property
    def empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def as_handler(self) -> EventHandler:
        """Event bus handler that fans events out to the callbacks."""

        def handle(event: ObservabilityEvent) -> Any:
            entry = _PROJECTIONS.get(event.type)
            if entry is None:
                return None
            name, project = entry
            callback = getattr(self, name)
            if callback is None:
                return None
            args = project(event.meta)
            if args is None:
                return None
            return _fire_callback(callback, *args)

        return handle


def _fire_callback(callback: Callable[..., Any], *args: Any) -> Any:
    """Fire a callback without raising errors."""
    try:
        return callback(*args)
    except Exception as e:
        logger.debug(f"Callback error (silently caught): {e}")
        return None


Projection = Callable[[Mapping[str, Any]], "tuple[Any, ...] | None"]


def _start(meta: Mapping[str, Any]) -> tuple[Any, ...]:
    return (meta["attempt"], meta["is_retry"], meta["is_fallback"])


def _drift(meta: Mapping[str, Any]) -> tuple[Any, ...] | None:
    if not meta.get("detected"):
        return None
    return (list(meta.get("types", ())), meta.get("confidence"))


_PROJECTIONS: dict[ObservabilityEventType, tuple[str, Projection]] = {
    ObservabilityEventType.SESSION_START: ("on_start", _start),
    ObservabilityEventType.ATTEMPT_START: ("on_start", _start),
    ObservabilityEventType.TOKEN: ("on_token", lambda m: (m["text"],)),
    ObservabilityEventType.COMPLETE: ("on_complete", lambda m: (m["state"],)),
    ObservabilityEventType.ERROR: (
        "on_error",
        lambda m: (m["error"], m["will_retry"], m["will_fallback"]),
    ),
    ObservabilityEventType.GUARDRAIL_RULE_RESULT: (
        "on_violation",
        lambda m: (m["violation"],),
    ),
    ObservabilityEventType.RETRY_ATTEMPT: (
        "on_retry",
        lambda m: (m["attempt"], m["reason"]),
    ),
    ObservabilityEventType.FALLBACK_START: (
        "on_fallback",
        lambda m: (m["to_index"] - 1, m["reason"]),
    ),
    ObservabilityEventType.RESUME_START: (
        "on_resume",
        lambda m: (m["checkpoint"], m["token_count"]),
    ),
    ObservabilityEventType.CHECKPOINT_SAVED: (
        "on_checkpoint",
        lambda m: (m["checkpoint"], m["token_count"]),
    ),
    ObservabilityEventType.TIMEOUT_TRIGGERED: (
        "on_timeout",
        lambda m: (m["timeout_type"], m["elapsed_seconds"]),
    ),
    ObservabilityEventType.ABORT_COMPLETED: (
        "on_abort",
        lambda m: (m["token_count"], m["content_length"]),
    ),
    ObservabilityEventType.DRIFT_CHECK_RESULT: ("on_drift", _drift),
}
