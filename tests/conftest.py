"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from steadystream import ObservabilityEvent, ObservabilityEventType


class Recorder:
    """Event bus handler that keeps every event it sees."""

    def __init__(self) -> None:
        self.events: list[ObservabilityEvent] = []

    def __call__(self, event: ObservabilityEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[ObservabilityEventType]:
        return [e.type for e in self.events]

    def of(self, event_type: ObservabilityEventType) -> list[ObservabilityEvent]:
        return [e for e in self.events if e.type is event_type]

    def index(self, event_type: ObservabilityEventType) -> int:
        return self.types.index(event_type)

    def only(self, *event_types: ObservabilityEventType) -> list[ObservabilityEvent]:
        wanted = set(event_types)
        return [e for e in self.events if e.type in wanted]


def make_source(
    *texts: Any,
    error: BaseException | None = None,
    delay: float = 0.0,
    first_delay: float = 0.0,
) -> Callable[[], AsyncIterator[Any]]:
    """Factory for a source that yields ``texts`` and then optionally raises."""

    async def source() -> AsyncIterator[Any]:
        for i, text in enumerate(texts):
            if i == 0 and first_delay:
                await asyncio.sleep(first_delay)
            elif delay:
                await asyncio.sleep(delay)
            yield text
        if error is not None:
            raise error

    return source


async def drain_loop(turns: int = 5) -> None:
    for _ in range(turns):
        await asyncio.sleep(0)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def source() -> Callable[..., Callable[[], AsyncIterator[Any]]]:
    return make_source


@pytest.fixture
def drain() -> Callable[..., Any]:
    """Let the loop turn so queued bus events get dispatched."""
    return drain_loop
