"""Fast/slow split for guardrail and drift checks.

Small payloads are checked inline before the next token is pulled. Large
ones are run on a later loop turn and their results are picked up at the
next token boundary, so a heavy check never stalls delivery.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from .drift import DriftDetector, DriftResult
from .guardrails import GuardrailContext, GuardrailEngine, GuardrailResult
from .logging import logger

GUARDRAIL_DELTA_LIMIT = 1000
GUARDRAIL_CONTENT_LIMIT = 5000
DRIFT_CONTENT_LIMIT = 10000


def run_guardrails(
    engine: GuardrailEngine, context: GuardrailContext
) -> GuardrailResult:
    """Run a guardrail check; a crashing engine counts as a pass."""
    try:
        return engine.check(context)
    except Exception as e:
        logger.debug(f"Guardrail check raised (ignored): {e}")
        return GuardrailResult()


def run_drift(detector: DriftDetector, content: str, delta: str | None) -> DriftResult:
    """Run a drift check; a crashing detector counts as no drift."""
    try:
        return detector.check(content, delta)
    except Exception as e:
        logger.debug(f"Drift check raised (ignored): {e}")
        return DriftResult(detected=False)


def guardrails_inline(
    engine: GuardrailEngine, context: GuardrailContext
) -> GuardrailResult | None:
    """Check inline when cheap. Returns None when the check must be deferred."""
    if len(context.delta) < GUARDRAIL_DELTA_LIMIT:
        quick = run_guardrails(engine, replace(context, content=context.delta))
        if quick.should_halt or quick.should_retry:
            return quick
    if len(context.content) < GUARDRAIL_CONTENT_LIMIT:
        return run_guardrails(engine, context)
    return None


def drift_inline(
    detector: DriftDetector, content: str, delta: str | None
) -> DriftResult | None:
    """Check inline when cheap. Returns None when the check must be deferred."""
    if len(content) < DRIFT_CONTENT_LIMIT:
        return run_drift(detector, content, delta)
    return None


class DeferredChecks:
    """Runs checks on a later loop turn and queues their results.

    Results are tagged with the attempt that asked for them; results from an
    older attempt are dropped when collected.
    """

    def __init__(self) -> None:
        self._ids = itertools.count()
        self._pending: dict[int, asyncio.Handle] = {}
        self._results: deque[tuple[int, str, Any]] = deque()
        self._cancelled = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    def defer(self, attempt: int, kind: str, check: Callable[[], Any]) -> None:
        if self._cancelled:
            return
        loop = asyncio.get_running_loop()
        check_id = next(self._ids)
        self._pending[check_id] = loop.call_soon(
            self._run, check_id, attempt, kind, check
        )

    def _run(
        self, check_id: int, attempt: int, kind: str, check: Callable[[], Any]
    ) -> None:
        self._pending.pop(check_id, None)
        if self._cancelled:
            return
        self._results.append((attempt, kind, check()))

    def collect(self, attempt: int) -> list[tuple[str, Any]]:
        """Take finished results for ``attempt``."""
        ready = []
        while self._results:
            tag, kind, result = self._results.popleft()
            if tag == attempt:
                ready.append((kind, result))
        return ready

    def discard(self) -> None:
        """Drop pending and finished checks, e.g. when an attempt ends."""
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        self._results.clear()

    def cancel(self) -> None:
        self._cancelled = True
        self.discard()
