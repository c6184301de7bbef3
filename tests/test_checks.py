"""Tests for steadystream.checks module."""

import pytest

from steadystream.checks import (
    DRIFT_CONTENT_LIMIT,
    GUARDRAIL_CONTENT_LIMIT,
    DeferredChecks,
    drift_inline,
    guardrails_inline,
    run_drift,
    run_guardrails,
)
from steadystream.drift import DriftResult
from steadystream.guardrails import (
    GuardrailContext,
    GuardrailResult,
    GuardrailRule,
    GuardrailViolation,
    RuleEngine,
)


def flag(word):
    def check(ctx):
        if word in ctx.content:
            return [GuardrailViolation(word, f"found {word}", "error")]
        return []

    return RuleEngine([GuardrailRule(word, check)])


class Detector:
    def __init__(self):
        self.calls = 0

    def check(self, content, delta=None):
        self.calls += 1
        return DriftResult(detected="drift" in content, types=["topic"])


class TestInline:
    def test_small_content_checked_inline(self):
        result = guardrails_inline(flag("bad"), GuardrailContext(content="a bad one"))
        assert result is not None
        assert result.should_retry

    def test_delta_violation_short_circuits(self):
        content = "x" * (GUARDRAIL_CONTENT_LIMIT + 10)
        ctx = GuardrailContext(content=content, delta="bad")
        result = guardrails_inline(flag("bad"), ctx)
        assert result is not None
        assert result.violations[0].rule == "bad"

    def test_delta_warning_does_not_skip_full_check(self):
        def rule(ctx):
            if ctx.content == "bad":
                return [GuardrailViolation("tone", "warn", "warning")]
            if "a bad" in ctx.content:
                return [GuardrailViolation("phrase", "found", "error")]
            return []

        engine = RuleEngine([GuardrailRule("mixed", rule)])
        ctx = GuardrailContext(content="a bad", delta="bad")
        result = guardrails_inline(engine, ctx)
        assert result is not None
        assert result.should_retry
        assert [v.rule for v in result.violations] == ["phrase"]

    def test_large_content_deferred(self):
        ctx = GuardrailContext(content="x" * GUARDRAIL_CONTENT_LIMIT, delta="y")
        assert guardrails_inline(flag("bad"), ctx) is None

    def test_drift_inline_and_deferred(self):
        detector = Detector()
        assert drift_inline(detector, "small drift", None).detected
        assert drift_inline(detector, "x" * DRIFT_CONTENT_LIMIT, None) is None
        assert detector.calls == 1

    def test_crashing_engine_passes(self):
        class Broken:
            def check(self, ctx):
                raise RuntimeError("engine bug")

        result = run_guardrails(Broken(), GuardrailContext(content="x"))
        assert result == GuardrailResult()

    def test_crashing_detector_means_no_drift(self):
        class Broken:
            def check(self, content, delta=None):
                raise RuntimeError("detector bug")

        assert run_drift(Broken(), "x", None).detected is False


class TestDeferredChecks:
    @pytest.mark.asyncio
    async def test_results_collected_for_attempt(self, drain):
        deferred = DeferredChecks()
        deferred.defer(1, "drift", lambda: "result")
        assert deferred.pending == 1
        assert deferred.collect(1) == []
        await drain()
        assert deferred.pending == 0
        assert deferred.collect(1) == [("drift", "result")]
        assert deferred.collect(1) == []

    @pytest.mark.asyncio
    async def test_stale_attempt_results_dropped(self, drain):
        deferred = DeferredChecks()
        deferred.defer(1, "guardrails", lambda: "old")
        deferred.defer(2, "guardrails", lambda: "new")
        await drain()
        assert deferred.collect(2) == [("guardrails", "new")]

    @pytest.mark.asyncio
    async def test_discard_cancels_pending(self, drain):
        ran = []
        deferred = DeferredChecks()
        deferred.defer(1, "drift", lambda: ran.append(1))
        deferred.discard()
        await drain()
        assert ran == []
        assert deferred.collect(1) == []

    @pytest.mark.asyncio
    async def test_cancel_refuses_new_work(self, drain):
        ran = []
        deferred = DeferredChecks()
        deferred.cancel()
        deferred.defer(1, "drift", lambda: ran.append(1))
        await drain()
        assert ran == []
        assert deferred.pending == 0
