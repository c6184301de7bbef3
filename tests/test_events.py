"""Tests for steadystream.events module."""

import asyncio
from types import MappingProxyType

import pytest

from steadystream.events import (
    EventBus,
    EventBusOptions,
    ObservabilityEvent,
    ObservabilityEventType,
    freeze,
)

E = ObservabilityEventType


class TestFreeze:
    def test_nested_containers(self):
        frozen = freeze({"a": [1, {"b": {2, 3}}], "c": (4,)})
        assert isinstance(frozen, MappingProxyType)
        assert frozen["a"][0] == 1
        assert frozen["a"][1]["b"] == frozenset({2, 3})
        assert frozen["c"] == (4,)
        with pytest.raises(TypeError):
            frozen["a"] = 1  # type: ignore[index]

    def test_other_objects_kept(self):
        marker = object()
        assert freeze({"x": marker})["x"] is marker


class TestObservabilityEvent:
    def test_defaults_are_empty_read_only_mappings(self):
        event = ObservabilityEvent(type=E.TOKEN, ts=1.0, session_id="s1")
        assert dict(event.context) == {}
        assert dict(event.meta) == {}
        with pytest.raises(TypeError):
            event.meta["text"] = "x"  # type: ignore[index]

    def test_frozen(self):
        event = ObservabilityEvent(type=E.TOKEN, ts=1.0, session_id="s1")
        with pytest.raises(AttributeError):
            event.ts = 2.0  # type: ignore[misc]


class TestEventBus:
    @pytest.mark.asyncio
    async def test_events_are_dispatched_later(self, recorder, drain):
        bus = EventBus(handler=recorder)
        bus.emit(E.SESSION_START, attempt=1)
        assert recorder.events == []
        await drain()
        assert recorder.types == [E.SESSION_START]

    @pytest.mark.asyncio
    async def test_event_shape(self, recorder, drain):
        bus = EventBus(handler=recorder, context={"user": "u1"})
        bus.emit(E.TOKEN, text="hi", index=1)
        await drain()
        event = recorder.events[0]
        assert isinstance(event, ObservabilityEvent)
        assert event.session_id == bus.session_id
        assert event.context["user"] == "u1"
        assert event.meta["text"] == "hi"
        assert event.ts > 0

    def test_session_ids_are_unique(self):
        assert EventBus().session_id != EventBus().session_id

    def test_explicit_session_id(self):
        assert EventBus(session_id="abc").session_id == "abc"

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self, recorder, drain):
        bus = EventBus(handler=recorder)
        for i in range(50):
            bus.emit(E.TOKEN, index=i)
        await drain()
        stamps = [e.ts for e in recorder.events]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    @pytest.mark.asyncio
    async def test_no_handlers_builds_nothing(self, monkeypatch):
        bus = EventBus()
        built = []
        monkeypatch.setattr(bus, "_build", lambda *a: built.append(a))
        bus.emit(E.TOKEN, text="x")
        bus.emit_sync(E.TOKEN, text="x")
        assert built == []

    @pytest.mark.asyncio
    async def test_meta_is_frozen_copy(self, recorder, drain):
        bus = EventBus(handler=recorder)
        payload = ["a"]
        bus.emit(E.DRIFT_CHECK_RESULT, types=payload)
        payload.append("b")
        await drain()
        assert recorder.events[0].meta["types"] == ("a",)

    @pytest.mark.asyncio
    async def test_throwing_handler_isolated(self, recorder, drain):
        def broken(event):
            raise RuntimeError("boom")

        bus = EventBus(handler=broken)
        bus.on(recorder)
        bus.emit(E.TOKEN)
        bus.emit(E.COMPLETE)
        await drain()
        assert recorder.types == [E.TOKEN, E.COMPLETE]

    @pytest.mark.asyncio
    async def test_async_handler(self, drain):
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event.type)

        bus = EventBus(handler=handler)
        bus.emit(E.TOKEN)
        await drain()
        assert seen == [E.TOKEN]

    @pytest.mark.asyncio
    async def test_failing_async_handler_isolated(self, recorder, drain):
        async def broken(event):
            raise RuntimeError("boom")

        bus = EventBus(handler=broken)
        bus.on(recorder)
        bus.emit(E.TOKEN)
        await drain()
        assert recorder.types == [E.TOKEN]

    @pytest.mark.asyncio
    async def test_on_off(self, recorder, drain):
        bus = EventBus()
        unsubscribe = bus.on(recorder)
        assert bus.has_handlers
        bus.emit(E.TOKEN)
        await drain()
        unsubscribe()
        assert not bus.has_handlers
        bus.emit(E.COMPLETE)
        await drain()
        assert recorder.types == [E.TOKEN]

    def test_emit_without_loop_delivers_now(self, recorder):
        bus = EventBus(handler=recorder)
        bus.emit(E.TOKEN)
        assert recorder.types == [E.TOKEN]

    @pytest.mark.asyncio
    async def test_emit_sync(self, recorder):
        bus = EventBus(handler=recorder)
        bus.emit_sync(E.ERROR, message="now")
        assert recorder.types == [E.ERROR]

    @pytest.mark.asyncio
    async def test_close_drains_queued_then_stops(self, recorder, drain):
        bus = EventBus(handler=recorder)
        bus.emit(E.TOKEN)
        bus.close()
        bus.emit(E.COMPLETE)
        assert bus.closed
        await drain()
        assert recorder.types == [E.TOKEN]

    @pytest.mark.asyncio
    async def test_cancel_drops_queued(self, recorder, drain):
        bus = EventBus(handler=recorder)
        bus.emit(E.TOKEN)
        bus.cancel()
        await drain()
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_cancel_stops_async_handlers(self, drain):
        finished = []

        async def slow(event):
            await asyncio.sleep(10)
            finished.append(event)

        bus = EventBus(handler=slow)
        bus.emit(E.TOKEN)
        await drain()
        bus.cancel()
        await drain()
        assert finished == []

    @pytest.mark.asyncio
    async def test_flush(self, recorder):
        bus = EventBus(handler=recorder)
        bus.emit(E.TOKEN)
        bus.flush()
        assert recorder.types == [E.TOKEN]


class TestBatching:
    @pytest.mark.asyncio
    async def test_batch_waits_for_delay(self, recorder):
        options = EventBusOptions(batch=True, batch_size=10, batch_flush_delay=0.01)
        bus = EventBus(handler=recorder, options=options)
        bus.emit(E.TOKEN)
        bus.emit(E.TOKEN)
        await asyncio.sleep(0)
        assert recorder.events == []
        await asyncio.sleep(0.05)
        assert len(recorder.events) == 2

    @pytest.mark.asyncio
    async def test_full_batch_goes_out_next_turn(self, recorder, drain):
        options = EventBusOptions(batch=True, batch_size=3, batch_flush_delay=10.0)
        bus = EventBus(handler=recorder, options=options)
        for _ in range(3):
            bus.emit(E.TOKEN)
        await drain()
        assert len(recorder.events) == 3

    @pytest.mark.asyncio
    async def test_close_flushes_pending_batch(self, recorder, drain):
        options = EventBusOptions(batch=True, batch_size=10, batch_flush_delay=10.0)
        bus = EventBus(handler=recorder, options=options)
        bus.emit(E.TOKEN)
        bus.close()
        await drain()
        assert recorder.types == [E.TOKEN]
