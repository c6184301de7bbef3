"""Tests for steadystream.interceptors module."""

import logging

import pytest

from steadystream import (
    CheckIntervals,
    Interceptor,
    InterceptorError,
    InterceptorManager,
    ObservabilityEventType,
    Retry,
    SessionOptions,
    Timeout,
    logging_interceptor,
    run,
)

E = ObservabilityEventType


class FatalError(Exception):
    status_code = 401


def options(*factories):
    return SessionOptions(factories=list(factories) or [lambda: None])


class TestInterceptorManager:
    @pytest.mark.asyncio
    async def test_no_hooks_leaves_options(self):
        opts = options()
        manager = InterceptorManager([Interceptor(name="idle")])
        assert await manager.run_before(opts) is opts
        assert manager.runs == []

    @pytest.mark.asyncio
    async def test_before_hooks_chain_in_order(self):
        order = []

        def first(opts):
            order.append("first")
            opts.timeout = Timeout(initial_token=1.0)
            return opts

        async def second(opts):
            order.append("second")
            return SessionOptions(factories=opts.factories, timeout=opts.timeout)

        manager = InterceptorManager(
            [Interceptor("first", before=first), Interceptor("second", before=second)]
        )
        result = await manager.run_before(options())
        assert order == ["first", "second"]
        assert result.timeout == Timeout(initial_token=1.0)
        assert [(r.name, r.phase) for r in manager.runs] == [
            ("first", "before"),
            ("second", "before"),
        ]

    @pytest.mark.asyncio
    async def test_before_returning_none_keeps_options(self):
        opts = options()
        manager = InterceptorManager([Interceptor(before=lambda o: None)])
        assert await manager.run_before(opts) is opts
        assert manager.runs[0].name == "anonymous"

    @pytest.mark.asyncio
    async def test_failing_before_stops_chain(self):
        called = []

        def broken(opts):
            raise RuntimeError("no auth")

        manager = InterceptorManager(
            [
                Interceptor("auth", before=broken),
                Interceptor("later", before=called.append),
            ]
        )
        with pytest.raises(InterceptorError, match="before hook failed: no auth"):
            await manager.run_before(options())
        assert called == []
        assert manager.runs[0].failed

    @pytest.mark.asyncio
    async def test_error_hooks_all_run(self):
        seen = []

        def broken(error, opts):
            raise RuntimeError("hook")

        async def record(error, opts):
            seen.append(str(error))

        manager = InterceptorManager(
            [Interceptor("a", on_error=broken), Interceptor("b", on_error=record)]
        )
        await manager.run_error(ValueError("boom"), options())
        assert seen == ["boom"]
        assert [r.failed for r in manager.runs] == [True, False]

    @pytest.mark.asyncio
    async def test_reset(self):
        manager = InterceptorManager([Interceptor(after=lambda s: None)])
        await manager.run_after(object())
        assert manager.runs
        manager.reset()
        assert manager.runs == []
        assert not InterceptorManager()


class TestSessionInterceptors:
    @pytest.mark.asyncio
    async def test_before_replaces_sources(self, source):
        def swap(opts):
            opts.factories = [source("swapped")]
            return opts

        result = run(source("original"), interceptors=[Interceptor(before=swap)])
        assert await result.read() == "swapped"

    @pytest.mark.asyncio
    async def test_before_runs_ahead_of_session_start(self, source, recorder, drain):
        contexts = []

        def before(opts):
            contexts.append(dict(opts.context))
            return opts

        result = run(
            source("a"),
            on_event=recorder,
            context={"request_id": "r1"},
            interceptors=[Interceptor(before=before)],
        )
        await result.read()
        await drain()
        assert contexts == [{"request_id": "r1"}]
        assert recorder.types[0] is E.SESSION_START

    @pytest.mark.asyncio
    async def test_after_sees_completed_state(self, source):
        states = []
        result = run(
            source("a", "b"),
            interceptors=[Interceptor(after=lambda state: states.append(state))],
        )
        await result.read()
        assert states == [result.state]
        assert states[0].completed
        assert states[0].content == "ab"

    @pytest.mark.asyncio
    async def test_error_hook_gets_halting_error(self, source):
        errors = []
        after = []
        result = run(
            source("a", error=FatalError("denied")),
            retry=Retry(base_delay=0.0),
            interceptors=[
                Interceptor(
                    on_error=lambda error, opts: errors.append(error),
                    after=after.append,
                )
            ],
        )
        with pytest.raises(FatalError):
            await result.read()
        assert len(errors) == 1
        assert isinstance(errors[0], FatalError)
        assert after == []

    @pytest.mark.asyncio
    async def test_failing_before_reports_and_raises(self, source, recorder, drain):
        errors = []

        def broken(opts):
            raise RuntimeError("bad config")

        result = run(
            source("a"),
            on_event=recorder,
            interceptors=[
                Interceptor("config", before=broken),
                Interceptor(on_error=lambda error, opts: errors.append(error)),
            ],
        )
        with pytest.raises(InterceptorError):
            await result.read()
        await drain()
        assert isinstance(errors[0], InterceptorError)
        assert E.SESSION_START not in recorder.types

    @pytest.mark.asyncio
    async def test_before_output_is_validated(self, source):
        def zero(opts):
            opts.check_intervals = CheckIntervals(guardrails=0)
            return opts

        result = run(source("a"), interceptors=[Interceptor(before=zero)])
        with pytest.raises(ValueError):
            await result.read()

    @pytest.mark.asyncio
    async def test_logging_interceptor(self, source, caplog):
        with caplog.at_level(logging.INFO, logger="steadystream"):
            result = run(source("a"), interceptors=[logging_interceptor()])
            await result.read()
        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith("Session starting: 1 source(s)") for m in messages)
        assert any(m.startswith("Session completed: 1 token(s)") for m in messages)
