"""Main steadystream runtime engine."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import aclosing
from functools import partial
from typing import Any

from .adapters import AdaptedEvent, Adapter, AdapterRegistry
from .callbacks import LifecycleCallbacks
from .checks import (
    DeferredChecks,
    drift_inline,
    guardrails_inline,
    run_drift,
    run_guardrails,
)
from .continuation import (
    Checkpoint,
    CheckpointStore,
    ContinuationConfig,
    OverlapBuffer,
)
from .drift import DriftDetector, DriftResult
from .errors import (
    Error,
    ErrorCode,
    ErrorContext,
    NetworkError,
    RecoveryStrategy,
    StreamAbortedError,
    TimeoutError,
    failure_type_for,
)
from .events import EventBus, EventBusOptions, EventHandler, ObservabilityEventType
from .guardrails import (
    GuardrailContext,
    GuardrailEngine,
    GuardrailResult,
    GuardrailRule,
    GuardrailViolation,
    as_engine,
    is_zero_output,
)
from .interceptors import Interceptor, InterceptorManager, SessionOptions
from .logging import logger
from .retry import RetryDecision, RetryManager
from .state import (
    append_token,
    create_state,
    mark_completed,
    reset_state,
    seed_state,
    update_checkpoint,
)
from .types import (
    CheckIntervals,
    ErrorCategory,
    Event,
    EventType,
    Retry,
    State,
    Stream,
    StreamFactory,
    Timeout,
)

_EXHAUSTED = object()


async def _pull(iterator: AsyncIterator[AdaptedEvent[Any]]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


async def _close(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug(f"Error closing source (ignored): {e}")


def _takes_prompt(factory: Callable[..., Any]) -> bool:
    """Whether a factory declares a positional parameter for the prompt."""
    try:
        params = inspect.signature(factory).parameters.values()
    except (TypeError, ValueError):
        return False
    return any(
        p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL)
        for p in params
    )


def _reported(
    result: GuardrailResult, preferred: Callable[[GuardrailViolation], bool]
) -> GuardrailViolation | None:
    """The violation to name when a guardrail result stops an attempt."""
    fallback = result.violations[0] if result.violations else None
    return next((v for v in result.violations if preferred(v)), fallback)


def _describe(violation: GuardrailViolation | None) -> str:
    return violation.message if violation else "rejected by guardrail engine"


class Session:
    """One resilient streaming session over a primary source and fallbacks.

    A session runs one attempt at a time. Each failure is classified and
    answered with a retry of the same source, a move to the next fallback,
    or a halt that re-raises the failure to the caller.
    """

    def __init__(
        self,
        factories: Sequence[StreamFactory],
        *,
        guardrails: GuardrailEngine | None = None,
        drift_detector: DriftDetector | None = None,
        retry: Retry | None = None,
        timeout: Timeout | None = None,
        check_intervals: CheckIntervals | None = None,
        continuation: ContinuationConfig | None = None,
        build_continuation_prompt: Callable[[str], str] | None = None,
        detect_zero_tokens: bool = True,
        adapter: Adapter | str | None = None,
        adapters: AdapterRegistry | None = None,
        event_bus: EventBus | None = None,
        signal: asyncio.Event | None = None,
        interceptors: Sequence[Interceptor] | None = None,
    ):
        self.adapter = adapter
        self.adapters = adapters or AdapterRegistry.default()
        self.bus = event_bus or EventBus()
        self.interceptors = InterceptorManager(interceptors)
        self._configure(
            SessionOptions(
                factories=list(factories),
                guardrails=guardrails,
                drift_detector=drift_detector,
                retry=retry,
                timeout=timeout,
                check_intervals=check_intervals,
                continuation=continuation,
                build_continuation_prompt=build_continuation_prompt,
                detect_zero_tokens=detect_zero_tokens,
                context=self.bus.context,
            )
        )
        self.state: State = create_state()
        self.errors: list[Exception] = []
        self.checkpoints = CheckpointStore()
        self.deferred = DeferredChecks()

        self._signal = signal
        self._abort = asyncio.Event()
        self._abort_task: asyncio.Future[Any] | None = None
        self._finished = False

    def _configure(self, options: SessionOptions) -> None:
        """Apply session settings; runs again after ``before`` interceptors."""
        if not options.factories:
            raise ValueError("At least one stream factory is required")
        intervals = options.check_intervals or CheckIntervals()
        checkpoint = intervals.checkpoint
        if options.continuation and options.continuation.checkpoint_interval:
            checkpoint = options.continuation.checkpoint_interval
        for name, every in (
            ("guardrails", intervals.guardrails),
            ("drift", intervals.drift),
            ("checkpoint", checkpoint),
        ):
            if every < 1:
                raise ValueError(
                    f"{name} check interval must be at least 1, got {every}"
                )

        self.options = options
        self.factories = list(options.factories)
        self.guardrails = options.guardrails
        self.drift_detector = options.drift_detector
        self.timeout = options.timeout or Timeout()
        self.intervals = intervals
        self.continuation = options.continuation
        self.build_continuation_prompt = options.build_continuation_prompt
        self.detect_zero_tokens = options.detect_zero_tokens
        self.retry = RetryManager(options.retry, event_bus=self.bus)

    @property
    def session_id(self) -> str:
        return self.bus.session_id

    @property
    def checkpoint_interval(self) -> int:
        if self.continuation and self.continuation.checkpoint_interval:
            return self.continuation.checkpoint_interval
        return self.intervals.checkpoint

    # ─────────────────────────────────────────────────────────────────────────
    # Abort
    # ─────────────────────────────────────────────────────────────────────────

    def abort(self) -> None:
        """Request an abort; honored at the next suspension point."""
        if self._finished or self._abort.is_set():
            return
        logger.debug("Abort requested")
        self._abort.set()
        self.bus.emit(ObservabilityEventType.ABORT_REQUESTED, source="user")

    def _abort_requested(self) -> bool:
        if self._signal is not None and self._signal.is_set():
            if not self._abort.is_set():
                self._abort.set()
                self.bus.emit(ObservabilityEventType.ABORT_REQUESTED, source="signal")
        return self._abort.is_set()

    def _abort_waiter(self) -> asyncio.Future[Any]:
        if self._abort_task is None:
            self._abort_task = asyncio.ensure_future(self._wait_for_abort())
        return self._abort_task

    async def _wait_for_abort(self) -> None:
        if self._signal is None:
            await self._abort.wait()
            return
        waits = {
            asyncio.ensure_future(self._abort.wait()),
            asyncio.ensure_future(self._signal.wait()),
        }
        try:
            await asyncio.wait(waits, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waits:
                task.cancel()

    def _honor_abort(self) -> None:
        """Finish an abort: cancel pending checks and raise."""
        self._abort_requested()
        self._complete_abort()
        raise StreamAbortedError(context=self._error_context(ErrorCode.STREAM_ABORTED))

    def _complete_abort(self) -> None:
        self.deferred.cancel()
        self.state.aborted = True
        self.bus.emit(
            ObservabilityEventType.ABORT_COMPLETED,
            token_count=self.state.token_count,
            content_length=len(self.state.content),
        )

    async def _wait_backoff(self, delay: float) -> None:
        if self._abort_requested():
            self._honor_abort()
        if self._signal is None:
            finished = await self.retry.wait(delay, self._abort)
        else:
            waiter = self._abort_waiter()
            done, _ = await asyncio.wait({waiter}, timeout=delay)
            finished = not done
        if not finished:
            self._honor_abort()

    # ─────────────────────────────────────────────────────────────────────────
    # Session loop
    # ─────────────────────────────────────────────────────────────────────────

    async def events(self) -> AsyncIterator[Event]:
        """Run the session, yielding normalized events to the caller."""
        try:
            if self.interceptors:
                self._configure(await self.interceptors.run_before(self.options))
            self.bus.emit(
                ObservabilityEventType.SESSION_START,
                attempt=1,
                is_retry=False,
                is_fallback=False,
                source_count=len(self.factories),
            )
            async with aclosing(self._run()) as events:
                async for event in events:
                    yield event
            await self.interceptors.run_after(self.state)
        except Exception as error:
            await self.interceptors.run_error(error, self.options)
            raise
        finally:
            self._finished = True
            if self._abort.is_set() and not self.state.aborted:
                # Closed by the consumer before the abort was reached
                self._complete_abort()
            self.deferred.cancel()
            if self._abort_task is not None:
                self._abort_task.cancel()
            self.bus.close()

    async def _run(self) -> AsyncIterator[Event]:
        index = 0
        attempt = 0
        resume: Checkpoint | None = None
        is_fallback = False

        while True:
            attempt += 1
            self.state.attempt = attempt
            self.state.fallback_index = index
            if attempt > 1:
                self.bus.emit(
                    ObservabilityEventType.ATTEMPT_START,
                    attempt=attempt,
                    is_retry=not is_fallback,
                    is_fallback=is_fallback,
                    source_index=index,
                )

            try:
                async with aclosing(self._attempt(index, attempt, resume)) as events:
                    async for event in events:
                        yield event
            except StreamAbortedError:
                raise
            except Exception as error:
                strategy, decision = await self._recover(error, index)
                if strategy is RecoveryStrategy.HALT:
                    raise

                if strategy is RecoveryStrategy.RETRY:
                    await self._retry(decision)
                    is_fallback = False
                else:
                    self._fallback(index, decision)
                    index += 1
                    is_fallback = True
                resume = self._resume_point()
                continue

            self._complete()
            return

    async def _recover(
        self, error: Exception, index: int
    ) -> tuple[RecoveryStrategy, RetryDecision]:
        """Classify a failure and pick what happens next."""
        state = self.state
        self.errors.append(error)

        decision = await self.retry.decide(
            error, content=state.content, token_count=state.token_count
        )
        if decision.should_retry:
            strategy = RecoveryStrategy.RETRY
        elif index + 1 < len(self.factories):
            strategy = RecoveryStrategy.FALLBACK
        else:
            strategy = RecoveryStrategy.HALT

        self.retry.record(decision, error)
        state.model_retry_count = self.retry.model_retry_count
        state.network_retry_count = self.retry.network_retry_count
        state.transient_retry_count = self.retry.transient_retry_count

        classification = decision.classification
        logger.debug(
            f"Attempt {state.attempt} failed ({classification.rule}): {error}; "
            f"strategy: {strategy.value}"
        )

        if classification.category is ErrorCategory.NETWORK:
            analysis = NetworkError.analyze(error)
            state.network_errors.append(analysis)
            self.bus.emit(
                ObservabilityEventType.NETWORK_ERROR,
                error=str(error),
                network_type=analysis.type.value,
                retryable=decision.should_retry,
                suggestion=analysis.suggestion,
            )

        if strategy is RecoveryStrategy.HALT:
            self.bus.emit(
                ObservabilityEventType.RETRY_GIVE_UP,
                attempts=self.retry.total_retries,
                reason=decision.blocked_by,
                last_error=str(error),
            )

        self.bus.emit(
            ObservabilityEventType.ERROR,
            error=error,
            message=str(error),
            failure_type=failure_type_for(error, classification).value,
            recovery_strategy=strategy.value,
            category=classification.category.value,
            reason=classification.reason.value,
            will_retry=strategy is RecoveryStrategy.RETRY,
            will_fallback=strategy is RecoveryStrategy.FALLBACK,
        )
        return strategy, decision

    async def _retry(self, decision: RetryDecision) -> None:
        classification = decision.classification
        total = self.retry.total_retries
        self.bus.emit(
            ObservabilityEventType.RETRY_START,
            attempt=total,
            max_attempts=self.retry.config.max_retries,
            category=classification.category.value,
            reason=classification.reason.value,
        )
        self.bus.emit(
            ObservabilityEventType.RETRY_ATTEMPT,
            attempt=total,
            reason=classification.reason.value,
            category=classification.category.value,
            delay=decision.delay,
            counts_toward_limit=decision.counts_toward_limit,
        )
        await self._wait_backoff(decision.delay)
        self.bus.emit(ObservabilityEventType.RETRY_END, attempt=total)

    def _fallback(self, index: int, decision: RetryDecision) -> None:
        reason = decision.classification.reason.value
        logger.debug(f"Falling back from source {index} to {index + 1}")
        self.bus.emit(ObservabilityEventType.FALLBACK_END, index=index)
        self.bus.emit(
            ObservabilityEventType.FALLBACK_START,
            from_index=index,
            to_index=index + 1,
            reason=reason,
        )
        self.bus.emit(ObservabilityEventType.FALLBACK_MODEL_SELECTED, index=index + 1)

    def _complete(self) -> None:
        state = self.state
        mark_completed(state)
        self.bus.emit(
            ObservabilityEventType.SESSION_SUMMARY,
            attempts=state.attempt,
            token_count=state.token_count,
            content_length=len(state.content),
            duration=state.duration,
            fallback_index=state.fallback_index,
            model_retries=state.model_retry_count,
            network_retries=state.network_retry_count,
            transient_retries=state.transient_retry_count,
            violations=len(state.violations),
            resumed=state.resumed,
        )
        self.bus.emit(
            ObservabilityEventType.COMPLETE,
            state=state,
            token_count=state.token_count,
            content_length=len(state.content),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Continuation
    # ─────────────────────────────────────────────────────────────────────────

    def _resume_point(self) -> Checkpoint | None:
        """Checkpoint to resume from on the next attempt, if any."""
        if self.continuation is None or not self.checkpoints:
            return None
        checkpoint = self.checkpoints.latest
        assert checkpoint is not None
        if self.continuation.validate_checkpoint and not self._validate(checkpoint):
            logger.debug("Checkpoint failed validation, starting fresh")
            self.checkpoints.clear()
            return None
        return checkpoint

    def _validate(self, checkpoint: Checkpoint) -> bool:
        """Re-check checkpoint content before building on it."""
        bus = self.bus
        bus.emit(
            ObservabilityEventType.CHECKPOINT_START,
            checkpoint_length=len(checkpoint.content),
        )
        valid = True
        if self.guardrails is not None:
            result = run_guardrails(
                self.guardrails,
                GuardrailContext(
                    content=checkpoint.content,
                    token_count=checkpoint.token_count,
                    checkpoint=checkpoint.content,
                ),
            )
            for violation in result.violations:
                bus.emit(
                    ObservabilityEventType.GUARDRAIL_RULE_RESULT,
                    rule=violation.rule,
                    violation=violation,
                    checkpoint_validation=True,
                )
            valid = not result.should_halt and not result.should_retry
        if valid and self.drift_detector is not None:
            # Drift in a checkpoint is reported but does not discard it.
            drift = run_drift(self.drift_detector, checkpoint.content, None)
            if drift.detected:
                logger.debug(f"Drift in checkpoint: {drift.types}")
                bus.emit(
                    ObservabilityEventType.DRIFT_CHECK_RESULT,
                    detected=True,
                    types=drift.types,
                    confidence=drift.confidence,
                    checkpoint_validation=True,
                )
        bus.emit(ObservabilityEventType.CHECKPOINT_END, valid=valid)
        return valid

    def _begin_attempt(self, resume: Checkpoint | None) -> OverlapBuffer | None:
        state = self.state
        if resume is None:
            reset_state(state)
            return None

        seed_state(state, resume)
        state.continuation_prompt = self.checkpoints.build_continuation(
            self.build_continuation_prompt
        )
        self.bus.emit(
            ObservabilityEventType.CONTINUATION_START,
            checkpoint_length=len(resume.content),
            token_count=resume.token_count,
        )
        self.bus.emit(
            ObservabilityEventType.RESUME_START,
            checkpoint=resume.content,
            token_count=resume.token_count,
        )
        self.bus.emit(
            ObservabilityEventType.RESUME_END,
            checkpoint=resume.content,
            token_count=resume.token_count,
        )
        assert self.continuation is not None
        if not self.continuation.deduplicate:
            return None
        return OverlapBuffer(resume.content, self.continuation.deduplication_options)

    def _splice(self, dedup: OverlapBuffer, text: str) -> str | None:
        """Run resumed text through the overlap buffer."""
        if not dedup.pending:
            self.bus.emit(
                ObservabilityEventType.DEDUPLICATION_START,
                checkpoint_length=len(dedup.checkpoint),
            )
        released = dedup.push(text)
        if dedup.resolved:
            self._deduplicated(dedup)
        return released

    def _deduplicated(self, dedup: OverlapBuffer) -> None:
        result = dedup.result
        self.bus.emit(
            ObservabilityEventType.DEDUPLICATION_END,
            overlap_found=bool(result and result.has_overlap),
            overlap_length=result.overlap_length if result else 0,
        )
        self.bus.emit(
            ObservabilityEventType.CONTINUATION_END,
            overlap_length=result.overlap_length if result else 0,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Attempt
    # ─────────────────────────────────────────────────────────────────────────

    async def _open(self, factory: StreamFactory) -> Any:
        if not callable(factory):
            raise Error(
                "Stream factory must be callable", code=ErrorCode.INVALID_STREAM
            )
        if _takes_prompt(factory):
            raw = factory(self.state.continuation_prompt)
        else:
            raw = factory()
        if inspect.isawaitable(raw):
            raw = await raw
        if not hasattr(raw, "__aiter__"):
            raise Error(
                f"Stream factory returned {type(raw).__name__}, "
                "expected an async iterator",
                code=ErrorCode.INVALID_STREAM,
            )
        return raw

    def _detect_adapter(self, raw: Any) -> Adapter:
        try:
            return self.adapters.detect(raw, self.adapter)
        except ValueError as e:
            raise Error(str(e), code=ErrorCode.INVALID_STREAM) from e

    async def _attempt(
        self, index: int, attempt: int, resume: Checkpoint | None
    ) -> AsyncIterator[Event]:
        bus = self.bus
        dedup = self._begin_attempt(resume)

        bus.emit(
            ObservabilityEventType.STREAM_INIT, source_index=index, attempt=attempt
        )
        raw = await self._open(self.factories[index])
        adapted: Any = None
        try:
            bus.emit(ObservabilityEventType.ADAPTER_WRAP_START)
            adapter = self._detect_adapter(raw)
            bus.emit(ObservabilityEventType.ADAPTER_DETECTED, adapter=adapter.name)
            adapted = adapter.wrap(raw)
            bus.emit(ObservabilityEventType.STREAM_READY, adapter=adapter.name)
            if self.timeout.initial_token is not None:
                bus.emit(
                    ObservabilityEventType.TIMEOUT_START,
                    timeout_type="initial_token",
                    duration_seconds=self.timeout.initial_token,
                )
            bus.emit(ObservabilityEventType.ADAPTER_WRAP_END, adapter=adapter.name)

            got_token = False
            while True:
                self._apply_deferred(attempt)
                item = await self._next(adapted, got_token)
                if item is _EXHAUSTED:
                    break

                event: Event = item.event
                if event.type is EventType.TOKEN:
                    text = event.text
                    if dedup is not None and not dedup.resolved:
                        text = self._splice(dedup, text or "")
                        if text:
                            event = Event(
                                type=EventType.TOKEN,
                                text=text,
                                timestamp=event.timestamp,
                            )
                    if not text:
                        continue
                    got_token = True
                    self._accept(text)
                    yield event
                    self._run_checks(text, attempt)
                elif event.type is EventType.ERROR:
                    error = event.error
                    if isinstance(error, Exception):
                        raise error
                    raise Error(
                        str(error or "Source error"), code=ErrorCode.SOURCE_ERROR
                    )
                elif event.type is EventType.COMPLETE:
                    break
                else:
                    yield event

            if dedup is not None and dedup.pending:
                tail = dedup.flush()
                self._deduplicated(dedup)
                if tail:
                    self._accept(tail)
                    yield Event(type=EventType.TOKEN, text=tail)
                    self._run_checks(tail, attempt)

            await self._finish(attempt)
        finally:
            self.deferred.discard()
            if adapted is not None:
                await _close(adapted)
            await _close(raw)

    async def _next(
        self, adapted: AsyncIterator[AdaptedEvent[Any]], got_token: bool
    ) -> Any:
        """Pull the next event, racing the watchdog and the abort waiter."""
        if self._abort_requested():
            self._honor_abort()

        if got_token:
            timeout_type, seconds = "inter_token", self.timeout.inter_token
        else:
            timeout_type, seconds = "initial_token", self.timeout.initial_token

        pull = asyncio.ensure_future(_pull(adapted))
        waiter = self._abort_waiter()
        try:
            done, _ = await asyncio.wait(
                {pull, waiter},
                timeout=seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            pull.cancel()
            raise

        if pull in done:
            return pull.result()

        pull.cancel()
        await asyncio.gather(pull, return_exceptions=True)
        if waiter in done:
            self._honor_abort()

        assert seconds is not None
        logger.debug(f"{timeout_type} timeout after {seconds}s")
        self.bus.emit(
            ObservabilityEventType.TIMEOUT_TRIGGERED,
            timeout_type=timeout_type,
            elapsed_seconds=seconds,
        )
        raise TimeoutError(
            f"{'Initial' if timeout_type == 'initial_token' else 'Inter'} token "
            f"timeout after {seconds}s",
            timeout_type=timeout_type,
            timeout_seconds=seconds,
        )

    def _accept(self, text: str) -> None:
        """Record one delivered token."""
        state = self.state
        append_token(state, text)
        count = state.token_count
        self.bus.emit(ObservabilityEventType.TOKEN, text=text, index=count)
        if self.timeout.inter_token is not None:
            self.bus.emit(
                ObservabilityEventType.TIMEOUT_RESET,
                timeout_type="inter_token",
                token_index=count,
            )

    def _run_checks(self, delta: str, attempt: int) -> None:
        """Run the checks due at the current token count."""
        count = self.state.token_count
        if self.guardrails is not None and count % self.intervals.guardrails == 0:
            self._check_guardrails(delta, attempt)
        if self.drift_detector is not None and count % self.intervals.drift == 0:
            self._check_drift(delta, attempt)
        if self.continuation is not None and count % self.checkpoint_interval == 0:
            self._save_checkpoint(attempt)

    def _save_checkpoint(self, attempt: int) -> None:
        state = self.state
        update_checkpoint(state)
        self.checkpoints.capture(state.content, state.token_count, attempt)
        self.bus.emit(
            ObservabilityEventType.CHECKPOINT_SAVED,
            checkpoint=state.content,
            token_count=state.token_count,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Checks
    # ─────────────────────────────────────────────────────────────────────────

    def _guardrail_context(self, delta: str, completed: bool) -> GuardrailContext:
        state = self.state
        return GuardrailContext(
            content=state.content,
            delta=delta,
            completed=completed,
            token_count=state.token_count,
            checkpoint=state.checkpoint,
        )

    def _check_guardrails(self, delta: str, attempt: int) -> None:
        assert self.guardrails is not None
        context = self._guardrail_context(delta, completed=False)
        self.bus.emit(
            ObservabilityEventType.GUARDRAIL_PHASE_START,
            context_size=len(context.content),
            completed=False,
        )
        result = guardrails_inline(self.guardrails, context)
        if result is None:
            self.bus.emit(ObservabilityEventType.GUARDRAIL_PHASE_END, deferred=True)
            self.deferred.defer(
                attempt, "guardrails", partial(run_guardrails, self.guardrails, context)
            )
            return
        self._apply_guardrails(result)

    def _apply_guardrails(self, result: GuardrailResult) -> None:
        state = self.state
        for violation in result.violations:
            state.violations.append(violation)
            self.bus.emit(
                ObservabilityEventType.GUARDRAIL_RULE_RESULT,
                rule=violation.rule,
                violation=violation,
                severity=violation.severity,
            )
        self.bus.emit(
            ObservabilityEventType.GUARDRAIL_PHASE_END,
            violation_count=len(result.violations),
            should_halt=result.should_halt,
            should_retry=result.should_retry,
        )

        if result.should_halt:
            violation = _reported(result, lambda v: v.halts)
            raise Error(
                f"Fatal guardrail violation: {_describe(violation)}",
                code=ErrorCode.FATAL_GUARDRAIL_VIOLATION,
                context=self._error_context(
                    ErrorCode.FATAL_GUARDRAIL_VIOLATION,
                    rule=violation.rule if violation else None,
                ),
            )
        if result.should_retry:
            violation = _reported(result, lambda v: v.severity == "error")
            raise Error(
                f"Guardrail violation: {_describe(violation)}",
                code=ErrorCode.GUARDRAIL_VIOLATION,
                context=self._error_context(
                    ErrorCode.GUARDRAIL_VIOLATION,
                    rule=violation.rule if violation else None,
                ),
            )

    def _check_drift(self, delta: str, attempt: int) -> None:
        assert self.drift_detector is not None
        content = self.state.content
        self.bus.emit(
            ObservabilityEventType.DRIFT_CHECK_START,
            content_length=len(content),
            token_count=self.state.token_count,
        )
        result = drift_inline(self.drift_detector, content, delta)
        if result is None:
            self.bus.emit(ObservabilityEventType.DRIFT_CHECK_END, deferred=True)
            self.deferred.defer(
                attempt,
                "drift",
                partial(run_drift, self.drift_detector, content, delta),
            )
            return
        self._apply_drift(result)

    def _apply_drift(self, result: DriftResult) -> None:
        self.bus.emit(
            ObservabilityEventType.DRIFT_CHECK_RESULT,
            detected=result.detected,
            types=result.types,
            confidence=result.confidence,
        )
        self.bus.emit(ObservabilityEventType.DRIFT_CHECK_END, detected=result.detected)
        if not result.detected:
            return
        state = self.state
        state.drift_detected = True
        state.drift_types = list(result.types)
        raise Error(
            f"Drift detected: {', '.join(result.types) or 'unknown'}",
            code=ErrorCode.DRIFT_DETECTED,
            context=self._error_context(ErrorCode.DRIFT_DETECTED, types=result.types),
        )

    def _apply_deferred(self, attempt: int) -> None:
        for kind, result in self.deferred.collect(attempt):
            if kind == "guardrails":
                self._apply_guardrails(result)
            else:
                self._apply_drift(result)

    async def _finish(self, attempt: int) -> None:
        """End-of-stream checks for the current attempt."""
        if self.deferred.pending:
            await asyncio.sleep(0)
        self._apply_deferred(attempt)

        if self.guardrails is not None:
            context = self._guardrail_context("", completed=True)
            self.bus.emit(
                ObservabilityEventType.GUARDRAIL_PHASE_START,
                context_size=len(context.content),
                completed=True,
            )
            self._apply_guardrails(run_guardrails(self.guardrails, context))

        if self.detect_zero_tokens and is_zero_output(self.state.content):
            raise Error(
                "Stream produced no output",
                code=ErrorCode.ZERO_OUTPUT,
                context=self._error_context(ErrorCode.ZERO_OUTPUT),
            )

    def _error_context(self, code: ErrorCode, **metadata: Any) -> ErrorContext:
        state = self.state
        return ErrorContext(
            code=code,
            checkpoint=state.checkpoint or None,
            token_count=state.token_count,
            content_length=len(state.content),
            model_retry_count=state.model_retry_count,
            network_retry_count=state.network_retry_count,
            fallback_index=state.fallback_index,
            metadata=metadata or None,
        )


def _handlers(
    on_event: EventHandler | Iterable[EventHandler] | None,
) -> list[EventHandler]:
    if on_event is None:
        return []
    if callable(on_event):
        return [on_event]
    return list(on_event)


def run(
    stream: StreamFactory,
    *,
    fallbacks: Sequence[StreamFactory] | None = None,
    guardrails: GuardrailEngine | Iterable[GuardrailRule] | None = None,
    drift_detector: DriftDetector | None = None,
    retry: Retry | None = None,
    timeout: Timeout | None = None,
    check_intervals: CheckIntervals | None = None,
    continue_from_last_good_token: ContinuationConfig | bool = False,
    build_continuation_prompt: Callable[[str], str] | None = None,
    detect_zero_tokens: bool = True,
    adapter: Adapter | str | None = None,
    adapters: AdapterRegistry | None = None,
    on_event: EventHandler | Iterable[EventHandler] | None = None,
    callbacks: LifecycleCallbacks | None = None,
    context: Mapping[str, Any] | None = None,
    signal: asyncio.Event | None = None,
    event_bus_options: EventBusOptions | None = None,
    interceptors: Sequence[Interceptor] | None = None,
    # Individual lifecycle callbacks, merged over ``callbacks``
    on_start: Callable[[int, bool, bool], Any] | None = None,
    on_token: Callable[[str], Any] | None = None,
    on_complete: Callable[[State], Any] | None = None,
    on_error: Callable[[BaseException, bool, bool], Any] | None = None,
    on_violation: Callable[[Any], Any] | None = None,
    on_retry: Callable[[int, str], Any] | None = None,
    on_fallback: Callable[[int, str], Any] | None = None,
    on_resume: Callable[[str, int], Any] | None = None,
    on_checkpoint: Callable[[str, int], Any] | None = None,
    on_timeout: Callable[[str, float], Any] | None = None,
    on_abort: Callable[[int, int], Any] | None = None,
    on_drift: Callable[[list[str], float | None], Any] | None = None,
) -> Stream:
    """Run a stream with retries, fallbacks, checks and continuation.

    Args:
        stream: Factory returning the primary source (an async iterator).
        fallbacks: Factories tried in order once the primary gives up.
        guardrails: Guardrail engine, or a list of ``GuardrailRule``.
        drift_detector: Optional drift detector.
        retry: Retry configuration.
        timeout: Watchdog configuration.
        check_intervals: Token cadence for guardrails, drift and checkpoints.
        continue_from_last_good_token: Resume from the last checkpoint.
        build_continuation_prompt: Turns checkpoint text into the prompt
            passed to factories that accept one.
        detect_zero_tokens: Treat empty output as a failure.
        adapter: Adapter (or registered adapter name) to use.
        adapters: Session-scoped adapter registry.
        on_event: Observability handler(s).
        callbacks: Lifecycle callbacks.
        context: Caller context attached to every event.
        signal: External ``asyncio.Event`` that aborts the session when set.
        event_bus_options: Dispatch options (batching).
        interceptors: Hooks run before the session starts, after it
            completes, and when it fails.

    Returns:
        Stream - async iterator of events with ``state``, ``errors`` and
        ``abort()`` attached.

    Example:
        result = steadystream.run(
            stream=lambda: client.stream(prompt),
            fallbacks=[lambda: backup.stream(prompt)],
            retry=Retry(attempts=2),
        )
        async for event in result:
            if event.is_token:
                print(event.text, end="")
    """
    lifecycle = (callbacks or LifecycleCallbacks()).merged(
        on_start=on_start,
        on_token=on_token,
        on_complete=on_complete,
        on_error=on_error,
        on_violation=on_violation,
        on_retry=on_retry,
        on_fallback=on_fallback,
        on_resume=on_resume,
        on_checkpoint=on_checkpoint,
        on_timeout=on_timeout,
        on_abort=on_abort,
        on_drift=on_drift,
    )

    bus = EventBus(context=context, options=event_bus_options)
    for handler in _handlers(on_event):
        bus.on(handler)
    if not lifecycle.empty:
        bus.on(lifecycle.as_handler())

    session = Session(
        [stream, *(fallbacks or [])],
        guardrails=as_engine(guardrails),
        drift_detector=drift_detector,
        retry=retry,
        timeout=timeout,
        check_intervals=check_intervals,
        continuation=ContinuationConfig.coerce(continue_from_last_good_token),
        build_continuation_prompt=build_continuation_prompt,
        detect_zero_tokens=detect_zero_tokens,
        adapter=adapter,
        adapters=adapters,
        event_bus=bus,
        signal=signal,
        interceptors=interceptors,
    )

    return Stream(
        iterator=session.events(),
        state=session.state,
        abort=session.abort,
        errors=session.errors,
        session_id=session.session_id,
    )
