"""Source adapters.

Adapters turn whatever a source yields into normalized ``Event``s. The
session never looks at provider chunk shapes. Registries are plain objects
handed to ``run(adapters=...)``; there is no process-wide registry.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from .logging import logger
from .types import Event, EventType

AdapterChunkT = TypeVar("AdapterChunkT")


@dataclass
class AdaptedEvent(Generic[AdapterChunkT]):
    """A normalized event plus the raw chunk it came from."""

    event: Event
    raw_chunk: AdapterChunkT | None = None


@runtime_checkable
class Adapter(Protocol):
    """Protocol for stream adapters."""

    name: str

    def detect(self, stream: Any) -> bool:
        """Check if this adapter can handle the given stream."""
        ...

    def wrap(self, stream: Any) -> AsyncIterator[AdaptedEvent[Any]]:
        """Wrap a raw stream into adapted events."""
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Built-in adapters
# ─────────────────────────────────────────────────────────────────────────────


def normalize_chunk(chunk: Any) -> Event | None:
    """Normalize a generic chunk into an Event.

    Accepts ``Event`` instances, plain strings (tokens) and mappings shaped
    like ``{"type": "token" | "message" | "error" | "done", "value": ...,
    "role": ..., "error": ..., "timestamp": ...}``. Returns None for chunks
    that carry nothing.
    """
    if isinstance(chunk, Event):
        return chunk
    if isinstance(chunk, str):
        return create_token_event(chunk) if chunk else None
    if isinstance(chunk, Mapping):
        kind = chunk.get("type", "token")
        timestamp = chunk.get("timestamp")
        if kind == "token":
            value = chunk.get("value") or chunk.get("text")
            if not value:
                return None
            return Event(type=EventType.TOKEN, text=value, timestamp=timestamp)
        if kind == "message":
            return Event(
                type=EventType.MESSAGE,
                text=chunk.get("value") or chunk.get("text"),
                role=chunk.get("role"),
                timestamp=timestamp,
            )
        if kind == "error":
            error = chunk.get("error") or chunk.get("value") or "Source error"
            return create_error_event(error)
        if kind in ("done", "complete"):
            return Event(type=EventType.COMPLETE, timestamp=timestamp)
    return None


class EventPassthroughAdapter:
    """Adapter for async iterators that already yield ``Event`` objects."""

    name = "event"

    def detect(self, stream: Any) -> bool:
        return hasattr(stream, "__aiter__")

    async def wrap(self, stream: Any) -> AsyncIterator[AdaptedEvent[Any]]:
        async for event in stream:
            if isinstance(event, Event):
                yield AdaptedEvent(event=event, raw_chunk=None)


class NormalizingAdapter:
    """Fallback adapter for strings, dicts and Events mixed in one stream."""

    name = "normalize"

    def detect(self, stream: Any) -> bool:
        return hasattr(stream, "__aiter__")

    async def wrap(self, stream: Any) -> AsyncIterator[AdaptedEvent[Any]]:
        async for chunk in stream:
            event = normalize_chunk(chunk)
            if event is not None:
                yield AdaptedEvent(event=event, raw_chunk=chunk)


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────


class AdapterRegistry:
    """Ordered set of adapters scoped to whoever built it.

    Usage:
        registry = AdapterRegistry.default()
        registry.register(MyProviderAdapter())  # takes priority
        result = steadystream.run(stream=factory, adapters=registry)
    """

    def __init__(self, adapters: Iterable[Adapter] | None = None) -> None:
        self._adapters: list[Adapter] = list(adapters or [])

    @classmethod
    def default(cls) -> AdapterRegistry:
        return cls([NormalizingAdapter()])

    def register(self, adapter: Adapter) -> None:
        """Register an adapter ahead of the existing ones."""
        self._adapters.insert(0, adapter)

    def unregister(self, name: str) -> bool:
        for i, adapter in enumerate(self._adapters):
            if adapter.name == name:
                self._adapters.pop(i)
                return True
        return False

    def names(self) -> list[str]:
        return [a.name for a in self._adapters]

    def detect(self, stream: Any, hint: Adapter | str | None = None) -> Adapter:
        """Detect or look up the adapter for a stream.

        Raises:
            ValueError: If no adapter matches or the hint is unknown.
        """
        if hint is not None and not isinstance(hint, str):
            return hint

        if isinstance(hint, str):
            for a in self._adapters:
                if a.name == hint:
                    return a
            raise ValueError(f"Unknown adapter: {hint}")

        for a in self._adapters:
            if a.detect(stream):
                logger.debug(f"Detected adapter: {a.name}")
                return a

        raise ValueError("No adapter found for stream")


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

T = TypeVar("T")


async def to_events(
    stream: AsyncIterator[T],
    extract_text: Callable[[T], str | None],
) -> AsyncIterator[Event]:
    """Convert any async stream into token events.

    Example:
        async def my_source():
            async for chunk in provider_stream:
                yield chunk

        events = to_events(my_source(), lambda chunk: chunk.text)
    """
    try:
        async for chunk in stream:
            text = extract_text(chunk)
            if text:
                yield create_token_event(text)
    except Exception as e:
        yield create_error_event(e)
        return
    yield Event(type=EventType.COMPLETE)


def create_token_event(value: str) -> Event:
    return Event(type=EventType.TOKEN, text=value)


def create_message_event(value: str, role: str | None = None) -> Event:
    return Event(type=EventType.MESSAGE, text=value, role=role)


def create_error_event(error: BaseException | str) -> Event:
    """Create an error event, wrapping strings in an Exception."""
    if isinstance(error, str):
        error = Exception(error)
    return Event(type=EventType.ERROR, error=error)  # type: ignore[arg-type]
