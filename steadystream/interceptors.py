"""Interceptors: hooks wrapped around a whole session.

``before`` hooks run in order before the first attempt and may replace the
session's settings. ``after`` hooks see the final state of a session that
completed. ``on_error`` hooks see the error that ended a session.

Usage:
    def tighten(options):
        options.timeout = Timeout(initial_token=2.0)
        return options

    result = steadystream.run(
        factory,
        interceptors=[Interceptor(name="tighten", before=tighten)],
    )
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Union

from .logging import logger

if TYPE_CHECKING:
    from .continuation import ContinuationConfig
    from .drift import DriftDetector
    from .guardrails import GuardrailEngine
    from .types import CheckIntervals, Retry, State, StreamFactory, Timeout

Phase = Literal["before", "after", "error"]


@dataclass
class SessionOptions:
    """Session settings a ``before`` hook may change."""

    factories: list[StreamFactory]
    guardrails: GuardrailEngine | None = None
    drift_detector: DriftDetector | None = None
    retry: Retry | None = None
    timeout: Timeout | None = None
    check_intervals: CheckIntervals | None = None
    continuation: ContinuationConfig | None = None
    build_continuation_prompt: Callable[[str], str] | None = None
    detect_zero_tokens: bool = True
    context: Mapping[str, Any] = field(default_factory=dict)  # Read-only


BeforeHook = Callable[
    [SessionOptions], Union[SessionOptions, None, Awaitable[SessionOptions | None]]
]
AfterHook = Callable[["State"], Any]
ErrorHook = Callable[[BaseException, SessionOptions], Any]


@dataclass
class Interceptor:
    """A named set of session hooks; any of them may be async."""

    name: str = "anonymous"
    before: BeforeHook | None = None
    """Returns the options to use; returning None keeps them unchanged."""
    after: AfterHook | None = None
    on_error: ErrorHook | None = None


@dataclass(frozen=True)
class InterceptorRun:
    """One hook invocation, kept for inspection."""

    name: str
    phase: Phase
    started: float
    duration: float
    failed: bool = False


class InterceptorError(Exception):
    """A ``before`` or ``after`` hook raised."""

    def __init__(self, name: str, phase: Phase, cause: BaseException):
        super().__init__(f'Interceptor "{name}" {phase} hook failed: {cause}')
        self.name = name
        self.phase = phase


async def _call(hook: Callable[..., Any], *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class InterceptorManager:
    """Runs interceptor hooks in registration order and records each run."""

    def __init__(self, interceptors: Sequence[Interceptor] | None = None):
        self.interceptors = list(interceptors or [])
        self._runs: list[InterceptorRun] = []

    def __bool__(self) -> bool:
        return bool(self.interceptors)

    @property
    def runs(self) -> list[InterceptorRun]:
        return list(self._runs)

    def reset(self) -> None:
        self._runs.clear()

    def _record(self, name: str, phase: Phase, started: float, failed: bool) -> None:
        self._runs.append(
            InterceptorRun(name, phase, started, time.time() - started, failed)
        )

    async def run_before(self, options: SessionOptions) -> SessionOptions:
        """Thread ``options`` through every ``before`` hook.

        The first failing hook stops the chain with ``InterceptorError``.
        """
        for interceptor in self.interceptors:
            if interceptor.before is None:
                continue
            started = time.time()
            try:
                replaced = await _call(interceptor.before, options)
            except Exception as e:
                self._record(interceptor.name, "before", started, failed=True)
                raise InterceptorError(interceptor.name, "before", e) from e
            self._record(interceptor.name, "before", started, failed=False)
            if replaced is not None:
                options = replaced
        return options

    async def run_after(self, state: State) -> None:
        for interceptor in self.interceptors:
            if interceptor.after is None:
                continue
            started = time.time()
            try:
                await _call(interceptor.after, state)
            except Exception as e:
                self._record(interceptor.name, "after", started, failed=True)
                raise InterceptorError(interceptor.name, "after", e) from e
            self._record(interceptor.name, "after", started, failed=False)

    async def run_error(self, error: BaseException, options: SessionOptions) -> None:
        """Call every ``on_error`` hook; a failing hook is logged and skipped."""
        for interceptor in self.interceptors:
            if interceptor.on_error is None:
                continue
            started = time.time()
            try:
                await _call(interceptor.on_error, error, options)
            except Exception as e:
                self._record(interceptor.name, "error", started, failed=True)
                logger.warning(
                    f'Interceptor "{interceptor.name}" error hook failed: {e}'
                )
                continue
            self._record(interceptor.name, "error", started, failed=False)


def logging_interceptor(log: logging.Logger | None = None) -> Interceptor:
    """Interceptor that logs session start, completion and failure."""
    log = log or logger

    def before(options: SessionOptions) -> None:
        log.info(
            f"Session starting: {len(options.factories)} source(s), "
            f"guardrails={options.guardrails is not None}, "
            f"continuation={options.continuation is not None}"
        )

    def after(state: State) -> None:
        log.info(
            f"Session completed: {state.token_count} token(s), "
            f"{state.model_retry_count} model / "
            f"{state.network_retry_count} network retries"
        )

    def on_error(error: BaseException, options: SessionOptions) -> None:
        log.error(f"Session failed: {error}")

    return Interceptor(name="logging", before=before, after=after, on_error=on_error)
