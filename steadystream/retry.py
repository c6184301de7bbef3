"""Retry decision engine with error-aware backoff."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from .errors import Classification, NetworkError, classify_error
from .events import EventBus, ObservabilityEventType
from .logging import logger
from .types import BackoffStrategy, ErrorCategory, Retry, RetryContext


@dataclass
class RetryCounters:
    """Retries taken so far, per category. Values only ever go up."""

    model: int = 0
    network: int = 0
    transient: int = 0

    @property
    def total(self) -> int:
        return self.model + self.network + self.transient

    def for_category(self, category: ErrorCategory) -> int:
        if category is ErrorCategory.NETWORK:
            return self.network
        if category is ErrorCategory.TRANSIENT:
            return self.transient
        if category is ErrorCategory.MODEL:
            return self.model
        return 0


@dataclass(frozen=True)
class RetryRecord:
    """One entry of the error history ring."""

    error: str
    category: ErrorCategory
    reason: str
    retried: bool
    delay: float
    timestamp: float


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of ``RetryManager.decide``."""

    should_retry: bool
    delay: float
    classification: Classification
    blocked_by: str | None = None
    veto_applied: bool = False

    @property
    def counts_toward_limit(self) -> bool:
        return self.classification.counts_toward_limit


class RetryManager:
    """Classifies errors, decides on retries and computes backoff.

    Usage:
        mgr = RetryManager(Retry(attempts=2))
        decision = await mgr.decide(error)
        if decision.should_retry:
            mgr.record(decision, error)
            await mgr.wait(decision.delay)
    """

    def __init__(
        self,
        config: Retry | None = None,
        event_bus: EventBus | None = None,
    ):
        self.config = config or Retry()
        self.counters = RetryCounters()
        self.error_history: deque[RetryRecord] = deque(
            maxlen=max(self.config.max_error_history, 1)
        )
        self.total_delay = 0.0
        self._event_bus = event_bus

    @property
    def model_retry_count(self) -> int:
        return self.counters.model

    @property
    def network_retry_count(self) -> int:
        return self.counters.network

    @property
    def transient_retry_count(self) -> int:
        return self.counters.transient

    @property
    def total_retries(self) -> int:
        return self.counters.total

    @property
    def limit_reached(self) -> bool:
        max_retries = self.config.max_retries
        return max_retries is not None and self.counters.total >= max_retries

    def classify(self, error: BaseException) -> Classification:
        return classify_error(error)

    # ─────────────────────────────────────────────────────────────────────────
    # Decision
    # ─────────────────────────────────────────────────────────────────────────

    def _blocked_by(self, classification: Classification) -> str | None:
        """Name of the rule refusing a retry, or None when allowed."""
        if classification.category is ErrorCategory.FATAL:
            return "fatal"
        if classification.reason not in self.config.retry_on:
            return "retry_on"
        if self.limit_reached:
            return "max_retries"
        if (
            classification.category is ErrorCategory.MODEL
            and self.counters.model >= self.config.attempts
        ):
            return "attempts"
        return None

    async def decide(
        self,
        error: BaseException,
        *,
        content: str = "",
        token_count: int = 0,
    ) -> RetryDecision:
        classification = self.classify(error)
        blocked_by = self._blocked_by(classification)
        should_retry = blocked_by is None
        logger.debug(
            f"Error category: {classification.category.value}, "
            f"reason: {classification.reason.value}, "
            f"model_retries: {self.counters.model}, retry: {should_retry}"
        )

        veto_applied = False
        veto = self.config.should_retry
        # The veto may refuse or allow a retry, but never lifts fatal or the caps
        if veto is not None and blocked_by in (None, "retry_on"):
            context = self._context(classification, content, token_count)
            verdict = await self._run_veto(veto, error, context)
            if verdict is not None and verdict != should_retry:
                should_retry = verdict
                veto_applied = True
                blocked_by = None if verdict else "veto"

        delay = 0.0
        if should_retry:
            delay = self.get_delay(classification, error, content, token_count)

        return RetryDecision(
            should_retry=should_retry,
            delay=delay,
            classification=classification,
            blocked_by=blocked_by,
            veto_applied=veto_applied,
        )

    def _context(
        self,
        classification: Classification,
        content: str,
        token_count: int,
        default_delay: float = 0.0,
    ) -> RetryContext:
        return RetryContext(
            attempt=self.counters.for_category(classification.category),
            total_attempts=self.counters.total,
            category=classification.category,
            reason=classification.reason,
            content=content,
            token_count=token_count,
            default_delay=default_delay,
        )

    async def _run_veto(
        self, veto: Any, error: BaseException, context: RetryContext
    ) -> bool | None:
        bus = self._event_bus
        if bus is not None:
            bus.emit(
                ObservabilityEventType.RETRY_FN_START,
                attempt=context.attempt,
                category=context.category.value,
                reason=context.reason.value,
            )
        try:
            verdict = veto(error, context)
            if inspect.isawaitable(verdict):
                verdict = await verdict
        except Exception as e:
            # A broken veto means no retry
            logger.debug(f"Retry veto raised, not retrying: {e}")
            if bus is not None:
                bus.emit(ObservabilityEventType.RETRY_FN_ERROR, error=str(e))
            return False

        result = None if verdict is None else bool(verdict)
        if bus is not None:
            bus.emit(ObservabilityEventType.RETRY_FN_RESULT, should_retry=result)
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # Delay
    # ─────────────────────────────────────────────────────────────────────────

    def get_delay(
        self,
        classification: Classification,
        error: BaseException | None = None,
        content: str = "",
        token_count: int = 0,
    ) -> float:
        """Get backoff delay in seconds.

        ``n`` is the number of retries already taken in the error's category.
        Per-network-error-type delays win over the general strategy and are
        capped by ``network_max_delay`` instead of ``max_delay``.
        """
        cfg = self.config
        n = self.counters.for_category(classification.category)

        if (
            classification.category is ErrorCategory.NETWORK
            and cfg.error_type_delays is not None
            and classification.network_type is not None
        ):
            base = NetworkError.type_delay(
                classification.network_type, cfg.error_type_delays
            )
            delay = min(base * (2**n), cfg.network_max_delay)
        else:
            delay = self._strategy_delay(n)

        if cfg.calculate_delay is not None:
            context = self._context(classification, content, token_count, delay)
            custom = cfg.calculate_delay(context)
            if custom is not None:
                delay = custom

        delay = max(float(delay), 0.0)
        logger.debug(f"Retry delay: {delay:.2f}s (strategy: {cfg.strategy.value})")
        return delay

    def _strategy_delay(self, n: int) -> float:
        base = self.config.base_delay
        cap = self.config.max_delay

        match self.config.strategy:
            case BackoffStrategy.FIXED:
                return base
            case BackoffStrategy.LINEAR:
                return min(base * (n + 1), cap)
            case BackoffStrategy.EXPONENTIAL:
                return min(base * (2**n), cap)
            case BackoffStrategy.FULL_JITTER:
                return random.uniform(0, min(base * (2**n), cap))
            case BackoffStrategy.FIXED_JITTER:
                return min(random.uniform(base / 2, base * 1.5), cap)
            case _:
                return base

    # ─────────────────────────────────────────────────────────────────────────
    # Bookkeeping
    # ─────────────────────────────────────────────────────────────────────────

    def record(self, decision: RetryDecision, error: BaseException) -> None:
        """Record a decision.

        A taken retry bumps exactly one category counter; every decision
        lands in the bounded error history.
        """
        category = decision.classification.category
        if decision.should_retry:
            if category is ErrorCategory.NETWORK:
                self.counters.network += 1
            elif category is ErrorCategory.TRANSIENT:
                self.counters.transient += 1
            else:
                self.counters.model += 1
            self.total_delay += decision.delay

        self.error_history.append(
            RetryRecord(
                error=str(error),
                category=category,
                reason=decision.classification.reason.value,
                retried=decision.should_retry,
                delay=decision.delay,
                timestamp=time.time(),
            )
        )

    async def wait(self, delay: float, abort: asyncio.Event | None = None) -> bool:
        """Sleep for ``delay`` seconds. Returns False if ``abort`` fired first."""
        if abort is None:
            await asyncio.sleep(delay)
            return True
        if abort.is_set():
            return False
        try:
            await asyncio.wait_for(abort.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    def get_state(self) -> dict[str, Any]:
        return {
            "model_retry_count": self.counters.model,
            "network_retry_count": self.counters.network,
            "transient_retry_count": self.counters.transient,
            "total_retries": self.counters.total,
            "total_delay": self.total_delay,
            "limit_reached": self.limit_reached,
        }
