"""Tests for steadystream.adapters module."""

import pytest

from steadystream.adapters import (
    AdaptedEvent,
    Adapter,
    AdapterRegistry,
    EventPassthroughAdapter,
    NormalizingAdapter,
    create_error_event,
    create_message_event,
    create_token_event,
    normalize_chunk,
    to_events,
)
from steadystream.types import Event, EventType


async def collect(iterator):
    return [item async for item in iterator]


class ProviderAdapter:
    """Adapter for a made-up provider yielding objects with ``.delta``."""

    name = "provider"

    def detect(self, stream):
        return getattr(stream, "provider", False)

    async def wrap(self, stream):
        async for chunk in stream:
            yield AdaptedEvent(event=create_token_event(chunk.delta), raw_chunk=chunk)


class Chunk:
    def __init__(self, delta):
        self.delta = delta


class ProviderStream:
    provider = True

    def __init__(self, *deltas):
        self._deltas = list(deltas)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._deltas:
            raise StopAsyncIteration
        return Chunk(self._deltas.pop(0))


async def plain(*chunks):
    for chunk in chunks:
        yield chunk


class TestNormalizeChunk:
    def test_string(self):
        event = normalize_chunk("hi")
        assert event.type is EventType.TOKEN
        assert event.text == "hi"

    def test_empty_string_dropped(self):
        assert normalize_chunk("") is None

    def test_event_passthrough(self):
        event = Event(type=EventType.COMPLETE)
        assert normalize_chunk(event) is event

    def test_token_mapping(self):
        assert normalize_chunk({"type": "token", "value": "a"}).text == "a"
        assert normalize_chunk({"text": "b"}).text == "b"
        assert normalize_chunk({"type": "token", "value": ""}) is None

    def test_message_mapping(self):
        event = normalize_chunk({"type": "message", "value": "m", "role": "tool"})
        assert event.is_message
        assert event.role == "tool"

    def test_error_mapping(self):
        event = normalize_chunk({"type": "error", "error": "broken"})
        assert event.is_error
        assert str(event.error) == "broken"

    def test_done_mapping(self):
        assert normalize_chunk({"type": "done"}).is_complete
        assert normalize_chunk({"type": "complete"}).is_complete

    def test_unknown(self):
        assert normalize_chunk(42) is None
        assert normalize_chunk({"type": "ping"}) is None


class TestAdapters:
    @pytest.mark.asyncio
    async def test_normalizing_adapter(self):
        stream = plain("a", 3, {"value": "b"})
        adapted = await collect(NormalizingAdapter().wrap(stream))
        assert [a.event.text for a in adapted] == ["a", "b"]
        assert adapted[0].raw_chunk == "a"

    @pytest.mark.asyncio
    async def test_passthrough_adapter_keeps_events_only(self):
        token = create_token_event("x")
        adapted = await collect(EventPassthroughAdapter().wrap(plain(token, "raw")))
        assert [a.event for a in adapted] == [token]

    def test_protocol(self):
        assert isinstance(ProviderAdapter(), Adapter)
        assert isinstance(NormalizingAdapter(), Adapter)


class TestAdapterRegistry:
    def test_default_registry(self):
        assert AdapterRegistry.default().names() == ["normalize"]

    def test_registered_adapter_takes_priority(self):
        registry = AdapterRegistry.default()
        registry.register(ProviderAdapter())
        assert registry.detect(ProviderStream()).name == "provider"
        assert registry.detect(plain()).name == "normalize"

    def test_lookup_by_name(self):
        registry = AdapterRegistry([NormalizingAdapter(), EventPassthroughAdapter()])
        assert registry.detect(plain(), "event").name == "event"

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown adapter"):
            AdapterRegistry.default().detect(plain(), "nope")

    def test_instance_hint_wins(self):
        adapter = ProviderAdapter()
        assert AdapterRegistry().detect(plain(), adapter) is adapter

    def test_no_match(self):
        with pytest.raises(ValueError, match="No adapter"):
            AdapterRegistry().detect(plain())

    def test_unregister(self):
        registry = AdapterRegistry.default()
        assert registry.unregister("normalize")
        assert not registry.unregister("normalize")
        assert registry.names() == []

    def test_registries_are_independent(self):
        first = AdapterRegistry.default()
        first.register(ProviderAdapter())
        assert AdapterRegistry.default().names() == ["normalize"]

    @pytest.mark.asyncio
    async def test_provider_adapter_in_session(self):
        import steadystream

        registry = AdapterRegistry.default()
        registry.register(ProviderAdapter())
        result = steadystream.run(
            lambda: ProviderStream("Hello", ", ", "world"), adapters=registry
        )
        assert await result.read() == "Hello, world"


class TestHelpers:
    @pytest.mark.asyncio
    async def test_to_events(self):
        stream = plain(Chunk("a"), Chunk(""), Chunk("b"))
        events = await collect(to_events(stream, lambda c: c.delta))
        assert [e.type for e in events] == [
            EventType.TOKEN,
            EventType.TOKEN,
            EventType.COMPLETE,
        ]

    @pytest.mark.asyncio
    async def test_to_events_error(self):
        async def failing():
            yield Chunk("a")
            raise ConnectionResetError("reset")

        events = await collect(to_events(failing(), lambda c: c.delta))
        assert events[-1].is_error
        assert isinstance(events[-1].error, ConnectionResetError)

    def test_factories(self):
        assert create_message_event("m", "user").role == "user"
        assert isinstance(create_error_event("oops").error, Exception)
        error = ValueError("x")
        assert create_error_event(error).error is error
